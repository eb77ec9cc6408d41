import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (skipped when LOG_DIR is unset, e.g. in tests)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'offsite.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def _init_crypto(app):
    """Derive the credentials key from CREDENTIALS_PASSPHRASE, if set."""
    from offsite.utils.crypto import CryptoManager, load_or_create_salt

    crypto = CryptoManager()
    passphrase = app.config.get('CREDENTIALS_PASSPHRASE')

    if passphrase:
        crypto.initialize(passphrase, load_or_create_salt())
        app.logger.info("Credentials encryption initialized")
    else:
        app.logger.warning("CREDENTIALS_PASSPHRASE not set - destination secrets cannot be stored or read")

    return crypto


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from offsite.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure the SQLite directory exists
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        database_dir = os.path.dirname(database_uri.replace('sqlite:///', ''))
        if database_dir:
            os.makedirs(database_dir, exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Create tables and wire services
    from offsite import models  # noqa: F401
    from offsite.services import EXTENSION_KEY, Services

    with app.app_context():
        db.create_all()
        crypto = _init_crypto(app)
        app.extensions[EXTENSION_KEY] = Services(app, crypto)

    # Operator commands (flask offsite ...)
    from offsite.cli import offsite_cli
    app.cli.add_command(offsite_cli)

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Scheduler disabled by configuration")
        return app

    # Initialize and start scheduler (only in designated worker or development child process)
    from offsite.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    # Determine if this process should initialize the scheduler
    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # Scheduler initialization logic:
    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true)
    if is_development:
        should_init_scheduler = is_reloader_child
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
    else:
        should_init_scheduler = is_scheduler_worker
        app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
