import os


def _int_env(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _float_env(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


class Config:
    """Base configuration"""

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/offsite.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Passphrase for destination secrets stored in the database
    CREDENTIALS_PASSPHRASE = os.environ.get('CREDENTIALS_PASSPHRASE')

    # Destinations
    HTTP_TIMEOUT = _float_env('HTTP_TIMEOUT', 60)
    MAX_CHUNK_RETRIES = _int_env('MAX_CHUNK_RETRIES', 3)
    # Comma-separated destination ids to enable (empty = all known providers)
    DESTINATION_IDS = [d.strip() for d in os.environ.get('DESTINATION_IDS', '').split(',') if d.strip()]

    # Remote purge
    PURGE_MAX_ATTEMPTS = _int_env('PURGE_MAX_ATTEMPTS', 5)
    PURGE_BACKOFF_BASE = _int_env('PURGE_BACKOFF_BASE', 60)
    PURGE_BACKOFF_MULTIPLIER = _float_env('PURGE_BACKOFF_MULTIPLIER', 2)
    PURGE_BACKOFF_CAP = _int_env('PURGE_BACKOFF_CAP', 3600)
    PURGE_BATCH_SIZE = _int_env('PURGE_BATCH_SIZE', 3)
    PURGE_INTERVAL_SECONDS = _int_env('PURGE_INTERVAL_SECONDS', 300)
    PURGE_LOCK_TTL = _int_env('PURGE_LOCK_TTL', 300)
    SLA_HISTORY_LIMIT = _int_env('SLA_HISTORY_LIMIT', 20)

    # Manifest
    MAX_INCREMENTAL_BACKUPS = _int_env('MAX_INCREMENTAL_BACKUPS', 10)

    # Storage metrics
    STORAGE_WARNING_PERCENT = _float_env('STORAGE_WARNING_PERCENT', 85)
    STORAGE_METRICS_TTL = _int_env('STORAGE_METRICS_TTL', 900)

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "offsite.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = None
    CREDENTIALS_PASSPHRASE = 'test-passphrase'
    SCHEDULER_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
