"""
Backup manifest and remote purge queue.

The manifest is one JSON document holding the backup chain (full backup,
synthetic full, incrementals) and the remote purge queue. It is only changed
through load -> mutate -> save transactions; each save bumps `revision`, and
a save whose expected revision no longer matches raises ManifestConflict so
concurrent writers never silently overwrite each other.
"""

import hashlib
import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from offsite.persistence import OptionStore


logger = logging.getLogger(__name__)

MANIFEST_OPTION = 'backup_manifest'
MANIFEST_VERSION = '2.0'

STATUS_PENDING = 'pending'
STATUS_RETRY = 'retry'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'


class ManifestError(Exception):
    """Raised when the manifest cannot be persisted."""
    pass


class ManifestConflict(ManifestError):
    """Raised when the stored manifest changed since it was loaded."""
    pass


@dataclass
class QueueEntry:
    """One archive waiting to be deleted from remote destinations."""
    file: str
    destinations: List[str]
    status: str = STATUS_PENDING
    attempts: int = 0
    registered_at: int = 0
    last_attempt_at: int = 0
    next_attempt_at: int = 0
    last_error: str = ''
    errors: List[str] = field(default_factory=list)
    failed_at: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueEntry':
        return cls(
            file=str(data.get('file', '')),
            destinations=[str(d) for d in data.get('destinations') or []],
            status=data.get('status') or STATUS_PENDING,
            attempts=int(data.get('attempts') or 0),
            registered_at=int(data.get('registered_at') or 0),
            last_attempt_at=int(data.get('last_attempt_at') or 0),
            next_attempt_at=int(data.get('next_attempt_at') or 0),
            last_error=str(data.get('last_error') or ''),
            errors=[str(e) for e in data.get('errors') or []],
            failed_at=int(data.get('failed_at') or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def is_due(self, now: int) -> bool:
        return self.status in (STATUS_PENDING, STATUS_RETRY) and self.next_attempt_at <= now

    def stamp(self) -> Tuple[Any, ...]:
        """Fields that change whenever another writer touches the entry."""
        return self.status, self.attempts, self.last_attempt_at, tuple(self.destinations)


@dataclass
class Manifest:
    """Versioned manifest document."""
    full_backup: Optional[Dict[str, Any]] = None
    incremental_backups: List[Dict[str, Any]] = field(default_factory=list)
    synthetic_full: List[Dict[str, Any]] = field(default_factory=list)
    file_hashes: Dict[str, str] = field(default_factory=dict)
    database_checksums: Dict[str, str] = field(default_factory=dict)
    remote_purge_queue: List[QueueEntry] = field(default_factory=list)
    last_scan: Optional[int] = None
    last_signature: Optional[str] = None
    version: str = MANIFEST_VERSION
    revision: int = 0

    REQUIRED_KEYS = ('full_backup', 'incremental_backups', 'file_hashes', 'database_checksums')

    @classmethod
    def from_dict(cls, data: Any) -> 'Manifest':
        """Build a manifest, starting fresh when the document is malformed."""
        if not isinstance(data, dict) or any(key not in data for key in cls.REQUIRED_KEYS):
            if data:
                logger.warning("Stored manifest is malformed, starting a new one")
            return cls(revision=int(data.get('revision') or 0) if isinstance(data, dict) else 0)

        return cls(
            full_backup=data.get('full_backup'),
            incremental_backups=list(data.get('incremental_backups') or []),
            synthetic_full=list(data.get('synthetic_full') or []),
            file_hashes=dict(data.get('file_hashes') or {}),
            database_checksums=dict(data.get('database_checksums') or {}),
            remote_purge_queue=[
                QueueEntry.from_dict(item) for item in data.get('remote_purge_queue') or []
                if isinstance(item, dict) and item.get('file')
            ],
            last_scan=data.get('last_scan'),
            last_signature=data.get('last_signature'),
            version=data.get('version') or MANIFEST_VERSION,
            revision=int(data.get('revision') or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['remote_purge_queue'] = [entry.to_dict() for entry in self.remote_purge_queue]
        return data

    def find_entry(self, file: str) -> Optional[QueueEntry]:
        for entry in self.remote_purge_queue:
            if entry.file == file:
                return entry
        return None

    def remove_entry(self, file: str) -> bool:
        before = len(self.remote_purge_queue)
        self.remote_purge_queue = [entry for entry in self.remote_purge_queue if entry.file != file]
        return len(self.remote_purge_queue) < before

    def restore_chain(self) -> List[Dict[str, Any]]:
        """Full backup, then synthetic full members, then incrementals, oldest first."""
        chain = [self.full_backup] if self.full_backup else []
        return chain + list(self.synthetic_full) + list(self.incremental_backups)


class ManifestStore:
    """
    Load, mutate and save the manifest.

    Args:
        options: OptionStore holding the manifest document
        clock: Callable returning epoch seconds
        max_incrementals: Incrementals kept before the oldest is rotated
            into the synthetic full and queued for remote purge
        conflict_retries: Attempts for update() when a save conflicts
    """

    def __init__(self, options: OptionStore, clock: Optional[Callable[[], float]] = None,
                 max_incrementals: int = 10, conflict_retries: int = 3):
        self.options = options
        self.clock = clock or time.time
        self.max_incrementals = max(1, max_incrementals)
        self.conflict_retries = max(1, conflict_retries)

    def _now(self) -> int:
        return int(self.clock())

    def load(self) -> Manifest:
        return Manifest.from_dict(self.options.get_json(MANIFEST_OPTION, {}))

    def save(self, manifest: Manifest) -> Manifest:
        """
        Persist a manifest loaded earlier.

        Raises:
            ManifestConflict: If another writer saved since it was loaded
            ManifestError: If the document could not be stored
        """
        current = self.options.get_json(MANIFEST_OPTION, {}) or {}
        stored_revision = int(current.get('revision') or 0) if isinstance(current, dict) else 0
        if stored_revision != manifest.revision:
            raise ManifestConflict(
                f"Manifest revision changed ({manifest.revision} -> {stored_revision})"
            )

        manifest.revision += 1
        if not self.options.set_json(MANIFEST_OPTION, manifest.to_dict()):
            manifest.revision -= 1
            raise ManifestError("Failed to save manifest")
        return manifest

    @contextmanager
    def transaction(self) -> Iterator[Manifest]:
        """Load the manifest, yield it for mutation, save it if the block succeeds."""
        manifest = self.load()
        yield manifest
        self.save(manifest)

    def update(self, mutate: Callable[[Manifest], Any]) -> Any:
        """
        Apply a mutation in a transaction, retrying on conflict.

        Returns:
            Whatever mutate returned on the successful attempt
        """
        for attempt in range(1, self.conflict_retries + 1):
            try:
                with self.transaction() as manifest:
                    result = mutate(manifest)
                return result
            except ManifestConflict as e:
                if attempt >= self.conflict_retries:
                    raise
                logger.warning(f"Manifest conflict, retrying ({attempt}/{self.conflict_retries}): {e}")

    # Purge queue

    def register_purge(self, file: str, destinations: List[str]) -> QueueEntry:
        """
        Queue an archive for deletion from remote destinations.

        Registering a file that is already queued adds any new destinations;
        a failed entry that gains destinations goes back to pending.
        """
        now = self._now()

        def mutate(manifest: Manifest) -> QueueEntry:
            entry = manifest.find_entry(file)
            if entry is None:
                entry = QueueEntry(
                    file=file,
                    destinations=list(dict.fromkeys(destinations)),
                    registered_at=now,
                    next_attempt_at=now,
                )
                manifest.remote_purge_queue.append(entry)
                return entry

            added = [d for d in destinations if d not in entry.destinations]
            entry.destinations.extend(dict.fromkeys(added))
            if added and entry.status == STATUS_FAILED:
                # Reopened entries get a full set of attempts, as with retry_entry
                entry.status = STATUS_PENDING
                entry.attempts = 0
                entry.last_error = ''
                entry.next_attempt_at = now
                entry.failed_at = 0
            return entry

        entry = self.update(mutate)
        logger.info(f"Registered {file} for remote purge on {', '.join(entry.destinations)}")
        return entry

    def get_queue(self) -> List[QueueEntry]:
        return self.load().remote_purge_queue

    def get_entry(self, file: str) -> Optional[QueueEntry]:
        return self.load().find_entry(file)

    def update_entry(self, entry: QueueEntry) -> bool:
        """Replace a queued entry (matched by file). Returns False if it is gone."""
        def mutate(manifest: Manifest) -> bool:
            for index, existing in enumerate(manifest.remote_purge_queue):
                if existing.file == entry.file:
                    manifest.remote_purge_queue[index] = entry
                    return True
            return False

        return self.update(mutate)

    def apply_queue_changes(self, updated: Dict[str, QueueEntry], removed: List[str],
                            expected: Optional[Dict[str, Tuple[Any, ...]]] = None
                            ) -> Tuple[Manifest, List[str]]:
        """
        Write the outcome of a purge pass in one save.

        Entries registered by other writers during the pass are preserved;
        entries deleted meanwhile stay deleted.

        Args:
            updated: Entries to write back, by file
            removed: Files to drop from the queue
            expected: QueueEntry.stamp() of each entry as the pass found it;
                an entry whose stored stamp differs was changed by another
                writer and keeps its stored state

        Returns:
            (saved manifest, files whose outcome was discarded as stale)
        """
        expected = expected or {}

        def mutate(manifest: Manifest) -> Tuple[Manifest, List[str]]:
            stale = []
            for file in list(removed) + list(updated):
                current = manifest.find_entry(file)
                if file in expected and current is not None and current.stamp() != tuple(expected[file]):
                    stale.append(file)

            for file in removed:
                if file not in stale:
                    manifest.remove_entry(file)
            for index, existing in enumerate(manifest.remote_purge_queue):
                if existing.file in updated and existing.file not in stale:
                    manifest.remote_purge_queue[index] = updated[existing.file]
            return manifest, stale

        manifest, stale = self.update(mutate)
        if stale:
            logger.warning(f"Purge queue entries changed during the pass, outcome discarded: {', '.join(stale)}")
        return manifest, stale

    def mark_completed(self, file: str, destinations: List[str]) -> bool:
        """
        Record that `file` was deleted from `destinations`.

        The entry is removed once no destination remains.

        Returns:
            True if the entry existed
        """
        def mutate(manifest: Manifest) -> bool:
            entry = manifest.find_entry(file)
            if entry is None:
                return False
            entry.destinations = [d for d in entry.destinations if d not in destinations]
            if not entry.destinations:
                manifest.remove_entry(file)
            return True

        return self.update(mutate)

    def retry_entry(self, file: str) -> bool:
        """Reset an entry so the next pass picks it up immediately."""
        now = self._now()

        def mutate(manifest: Manifest) -> bool:
            entry = manifest.find_entry(file)
            if entry is None:
                return False
            entry.status = STATUS_PENDING
            entry.attempts = 0
            entry.last_error = ''
            entry.next_attempt_at = now
            entry.failed_at = 0
            return True

        return self.update(mutate)

    def delete_entry(self, file: str) -> bool:
        return self.update(lambda manifest: manifest.remove_entry(file))

    # Backup chain

    def record_backup(self, info: Dict[str, Any], incremental: bool,
                      destinations: Optional[List[str]] = None) -> bool:
        """
        Record a completed backup in the chain.

        A full backup replaces the chain. An incremental is appended; past
        max_incrementals the oldest incremental moves into the synthetic
        full and is queued for purge on the destinations it was sent to.
        Recording the same backup twice is a no-op.

        Args:
            info: {'file', 'path', 'timestamp', 'size', 'components'}
            incremental: True for an incremental backup
            destinations: Destination ids the archive was uploaded to

        Returns:
            False if the backup was already recorded
        """
        now = self._now()
        record = {
            'file': info.get('file', ''),
            'path': info.get('path', ''),
            'timestamp': int(info.get('timestamp') or now),
            'components': list(info.get('components') or []),
            'size': int(info.get('size') or 0),
            'destinations': list(destinations or []),
        }
        signature = hashlib.md5(
            json.dumps(dict(record, incremental=incremental), sort_keys=True).encode()
        ).hexdigest()

        def mutate(manifest: Manifest) -> bool:
            if manifest.last_signature == signature:
                logger.debug(f"Backup {record['file']} already recorded in manifest")
                return False
            manifest.last_signature = signature

            if incremental:
                manifest.incremental_backups.append(record)
                while len(manifest.incremental_backups) > self.max_incrementals:
                    oldest = manifest.incremental_backups.pop(0)
                    manifest.synthetic_full.append(oldest)
                    if oldest.get('destinations') and manifest.find_entry(oldest['file']) is None:
                        manifest.remote_purge_queue.append(QueueEntry(
                            file=oldest['file'],
                            destinations=list(oldest['destinations']),
                            registered_at=now,
                            next_attempt_at=now,
                        ))
                        logger.info(f"Rotated {oldest['file']} into synthetic full and queued remote purge")
            else:
                manifest.full_backup = record
                manifest.incremental_backups = []
                manifest.synthetic_full = []

            manifest.last_scan = now
            return True

        return self.update(mutate)

    def restore_chain(self) -> List[Dict[str, Any]]:
        return self.load().restore_chain()

