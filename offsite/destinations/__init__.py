"""
Remote destinations for backup archives.

This package handles:
- Request signing (SigV4, SharedKey, bearer and basic tokens)
- The generic transfer engine (upload, list, delete, usage, prune)
- Provider adapters (S3 family, Azure Blob, B2, Dropbox, OneDrive, pCloud,
  Google Drive, SFTP)
- Retention selection
- The destination registry
"""

from .engine import Destination
from .errors import DestinationError, NotConfigured, NotFound, TransferError, TransportError
from .registry import DestinationRegistry, build_destination
from .retention import select_for_deletion
from .types import DeleteResult, PruneResult, RemoteObject, StorageUsage

__all__ = [
    'Destination',
    'DestinationRegistry',
    'build_destination',
    'select_for_deletion',
    'DestinationError',
    'NotConfigured',
    'NotFound',
    'TransferError',
    'TransportError',
    'RemoteObject',
    'StorageUsage',
    'DeleteResult',
    'PruneResult',
]
