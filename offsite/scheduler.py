"""
APScheduler configuration and job scheduling for offsite.

Manages:
- The periodic remote purge pass
- Periodic remote storage metrics refresh
- One-shot follow-up purge passes (schedule_once)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor


logger = logging.getLogger(__name__)

PURGE_JOB_ID = 'remote_purge'
METRICS_JOB_ID = 'storage_metrics'
FOLLOWUP_JOB_ID = 'remote_purge_followup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    scheduler.add_job(
        func=_run_purge_wrapper,
        trigger=IntervalTrigger(seconds=app.config['PURGE_INTERVAL_SECONDS']),
        id=PURGE_JOB_ID,
        name='Remote Purge Pass',
        replace_existing=True
    )

    scheduler.add_job(
        func=_refresh_metrics_wrapper,
        trigger=IntervalTrigger(seconds=max(300, app.config['STORAGE_METRICS_TTL'])),
        id=METRICS_JOB_ID,
        name='Remote Storage Metrics Refresh',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def schedule_once(timestamp: int, hook: Callable, args: Sequence[Any] = (),
                  job_id: Optional[str] = None) -> Optional[str]:
    """
    Run `hook(*args)` once at an epoch timestamp.

    Args:
        timestamp: Epoch seconds
        hook: Module-level callable (must be importable by reference)
        args: Positional arguments for the hook
        job_id: Fixed job id; an existing job with this id is replaced

    Returns:
        The job id, or None when the scheduler is not running in this process
    """
    if scheduler is None:
        logger.debug(f"Scheduler not initialized, not scheduling {getattr(hook, '__name__', hook)}")
        return None

    run_date = datetime.fromtimestamp(timestamp, timezone.utc)
    job_id = job_id or f"once_{getattr(hook, '__name__', 'hook')}_{int(timestamp)}"

    scheduler.add_job(
        func=hook,
        args=list(args),
        trigger=DateTrigger(run_date=run_date),
        id=job_id,
        name=f"One-shot: {getattr(hook, '__name__', 'hook')}",
        replace_existing=True
    )
    logger.debug(f"Scheduled {job_id} at {run_date.isoformat()}")
    return job_id


def schedule_purge_pass(timestamp: int) -> Optional[str]:
    """
    Schedule a follow-up purge pass.

    Only one follow-up is pending at a time; scheduling another replaces it
    unless the existing one runs earlier.
    """
    if scheduler is not None:
        existing = scheduler.get_job(FOLLOWUP_JOB_ID)
        if existing is not None and existing.next_run_time is not None \
                and existing.next_run_time.timestamp() <= timestamp:
            return FOLLOWUP_JOB_ID

    return schedule_once(timestamp, _run_purge_wrapper, job_id=FOLLOWUP_JOB_ID)


def _run_purge_wrapper():
    """Run a purge pass inside the application context."""
    from offsite.services import get_services

    with flask_app.app_context():
        try:
            report = get_services(flask_app).worker.run()
            logger.info(
                f"Purge pass finished: processed={report['processed']} "
                f"completed={len(report['completed'])} retry={len(report['retry'])} "
                f"failed={len(report['failed'])}"
            )
        except Exception:
            logger.exception("Scheduled purge pass failed")


def _refresh_metrics_wrapper():
    """Refresh remote storage metrics inside the application context."""
    from offsite.services import get_services

    with flask_app.app_context():
        try:
            get_services(flask_app).storage_metrics.refresh_snapshot()
        except Exception:
            logger.exception("Scheduled storage metrics refresh failed")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """Check if the scheduler is running in this process."""
    return scheduler is not None and scheduler.running
