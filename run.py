#!/usr/bin/env python3
"""
Scheduler process runner.

Starts the app as the process that owns the background jobs (periodic purge
passes, storage snapshots, retention pruning) and serves `/health` for
liveness checks. Operator actions go through `flask offsite ...` instead.

    python run.py                # FLASK_ENV, default production
    python run.py development    # debug; jobs run in the reloader child

Run exactly one of these per deployment; other processes started from the
same app should set SCHEDULER_WORKER=false so jobs are not scheduled twice.
"""
import os
import sys

from offsite import create_app


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    config_name = argv[0] if argv else os.environ.get('FLASK_ENV', 'production')

    # This process is the designated scheduler worker
    os.environ.setdefault('SCHEDULER_WORKER', 'true')
    app = create_app(config_name)

    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=app.config.get('DEBUG', False))
    return app


if __name__ == '__main__':
    main()
