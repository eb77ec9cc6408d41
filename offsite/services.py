"""
Service container.

Builds the object graph once per application and stores it in
`app.extensions['offsite']`. Everything is wired explicitly; no component
looks up another through a global.
"""

from typing import Optional

from flask import Flask, current_app

from offsite.destinations.registry import DestinationRegistry
from offsite.destinations.settings import DestinationSettingsStore
from offsite.events import EventBus
from offsite.persistence import OptionStore, TaskLockManager
from offsite.purge.forecast import SlaForecaster
from offsite.purge.manifest import ManifestStore
from offsite.purge.worker import PurgeWorker
from offsite.storage_metrics import StorageMetrics
from offsite.utils.crypto import CryptoManager


EXTENSION_KEY = 'offsite'


class Services:
    """All long-lived components of the application."""

    def __init__(self, app: Flask, crypto: Optional[CryptoManager] = None):
        cfg = app.config

        self.options = OptionStore()
        self.locks = TaskLockManager()
        self.events = EventBus()
        self.crypto = crypto

        self.settings = DestinationSettingsStore(self.options, crypto)
        self.registry = DestinationRegistry.from_settings(
            self.settings,
            timeout=cfg['HTTP_TIMEOUT'],
            max_chunk_retries=cfg['MAX_CHUNK_RETRIES'],
            enabled_ids=cfg['DESTINATION_IDS'] or None,
        )

        self.manifest = ManifestStore(self.options, max_incrementals=cfg['MAX_INCREMENTAL_BACKUPS'])
        self.forecaster = SlaForecaster(self.options, history_limit=cfg['SLA_HISTORY_LIMIT'])
        self.storage_metrics = StorageMetrics(
            self.registry,
            self.options,
            events=self.events,
            ttl=cfg['STORAGE_METRICS_TTL'],
            warning_percent=cfg['STORAGE_WARNING_PERCENT'],
        )

        self.worker = PurgeWorker(
            self.manifest,
            self.registry,
            events=self.events,
            forecaster=self.forecaster,
            locks=self.locks,
            schedule_once=_schedule_purge_pass,
            storage_metrics=self.storage_metrics,
            max_attempts=cfg['PURGE_MAX_ATTEMPTS'],
            backoff_base=cfg['PURGE_BACKOFF_BASE'],
            backoff_multiplier=cfg['PURGE_BACKOFF_MULTIPLIER'],
            backoff_cap=cfg['PURGE_BACKOFF_CAP'],
            batch_size=cfg['PURGE_BATCH_SIZE'],
            lock_ttl=cfg['PURGE_LOCK_TTL'],
        )


def _schedule_purge_pass(timestamp: int):
    from offsite.scheduler import schedule_purge_pass
    return schedule_purge_pass(timestamp)


def get_services(app: Optional[Flask] = None) -> Services:
    """Return the service container of `app` (default: the current app)."""
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
