"""
Remote purge: the manifest store, the purge worker and SLA forecasting.
"""

from .forecast import SlaForecaster
from .manifest import Manifest, ManifestConflict, ManifestError, ManifestStore, QueueEntry
from .worker import PurgeWorker

__all__ = [
    'Manifest',
    'ManifestConflict',
    'ManifestError',
    'ManifestStore',
    'QueueEntry',
    'PurgeWorker',
    'SlaForecaster',
]
