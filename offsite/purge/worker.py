"""
Remote purge worker.

Drains the remote purge queue: for every due entry it deletes the archive
from each remaining destination, then moves the entry to completed (removed
from the queue), retry (with exponential backoff) or failed (kept for an
operator to inspect).

A pass:
- takes the `remote_purge` task lock (no-op if another pass holds it) and
  renews it as it goes, stopping early if the lock was lost
- snapshots at most `batch_size` due entries
- processes them sequentially
- saves the manifest once, discarding outcomes for entries another writer
  changed in the meantime
- emits events, updates SLA metrics and schedules a follow-up pass
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from offsite.destinations.errors import DestinationError, NotFound
from offsite.destinations.registry import DestinationRegistry
from offsite.events import EventBus, PurgeCompleted, PurgePermanentFailure
from offsite.persistence import TaskLockManager
from .forecast import SlaForecaster
from .manifest import (
    ManifestError, ManifestStore, QueueEntry,
    STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_RETRY,
)


logger = logging.getLogger(__name__)

LOCK_NAME = 'remote_purge'

MAX_ATTEMPTS = 5
BACKOFF_BASE = 60
BACKOFF_MULTIPLIER = 2
BACKOFF_CAP = 3600
BATCH_SIZE = 3
LOCK_TTL = 300
FOLLOWUP_DELAY = 15

ScheduleOnce = Callable[[int], Any]


class PurgeWorker:
    """
    Processes the remote purge queue.

    Args:
        manifest_store: ManifestStore holding the queue
        registry: DestinationRegistry used to resolve destination ids
        events: EventBus receiving completion and permanent failure events
        forecaster: SlaForecaster updated after every pass
        locks: TaskLockManager guarding against overlapping passes
        schedule_once: Callable taking an epoch timestamp that schedules a
            one-shot pass at that time
        storage_metrics: Object with record_quota_sample(destination_id, usage),
            fed with the quota payloads returned by deletes
        clock: Callable returning epoch seconds
    """

    def __init__(self, manifest_store: ManifestStore, registry: DestinationRegistry,
                 events: Optional[EventBus] = None, forecaster: Optional[SlaForecaster] = None,
                 locks: Optional[TaskLockManager] = None, schedule_once: Optional[ScheduleOnce] = None,
                 storage_metrics=None, clock: Optional[Callable[[], float]] = None,
                 max_attempts: int = MAX_ATTEMPTS, backoff_base: int = BACKOFF_BASE,
                 backoff_multiplier: float = BACKOFF_MULTIPLIER, backoff_cap: int = BACKOFF_CAP,
                 batch_size: int = BATCH_SIZE, lock_ttl: int = LOCK_TTL):
        self.manifest_store = manifest_store
        self.registry = registry
        self.events = events or EventBus()
        self.forecaster = forecaster
        self.locks = locks
        self.schedule_once = schedule_once
        self.storage_metrics = storage_metrics
        self.clock = clock or time.time
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_multiplier = backoff_multiplier
        self.backoff_cap = backoff_cap
        self.batch_size = max(1, batch_size)
        self.lock_ttl = lock_ttl
        self.logs: List[str] = []
        self._lock_token: Optional[str] = None

    def _now(self) -> int:
        return int(self.clock())

    def backoff(self, attempts: int) -> int:
        """Delay in seconds before the next attempt after `attempts` failures."""
        delay = self.backoff_base * (self.backoff_multiplier ** max(0, attempts - 1))
        return int(min(self.backoff_cap, delay))

    def run(self) -> Dict[str, Any]:
        """
        Run one purge pass.

        Returns:
            Dict with summary of the pass:
            {
                'acquired': bool,
                'processed': int,
                'completed': List[str],
                'retry': List[str],
                'failed': List[str],
                'next_run_at': Optional[int],
                'errors': List[str],
                'logs': List[str]
            }
        """
        self.logs = []
        report = {
            'acquired': False,
            'processed': 0,
            'completed': [],
            'retry': [],
            'failed': [],
            'next_run_at': None,
            'errors': [],
            'logs': self.logs,
        }

        token = None
        if self.locks is not None:
            token = self.locks.acquire(LOCK_NAME, self.lock_ttl)
            if token is None:
                self._log("Another purge pass holds the lock, skipping")
                return report

        report['acquired'] = True
        self._lock_token = token
        try:
            self._process_queue(report)
        finally:
            self._lock_token = None
            if token is not None:
                self.locks.release(LOCK_NAME, token)

        return report

    def _process_queue(self, report: Dict[str, Any]):
        now = self._now()
        manifest = self.manifest_store.load()
        due = [entry for entry in manifest.remote_purge_queue if entry.is_due(now)][:self.batch_size]

        if not due:
            self._log("No due entries in the remote purge queue")
            self._finish(manifest.remote_purge_queue, [], now, report)
            return

        self._log(f"Processing {len(due)} of {len(manifest.remote_purge_queue)} queued entries")

        updated: Dict[str, QueueEntry] = {}
        removed: List[str] = []
        results: List[Dict[str, Any]] = []
        pending_events: List[Tuple[str, Any]] = []
        outcomes: List[Tuple[str, str]] = []
        expected = {entry.file: entry.stamp() for entry in due}

        for entry in due:
            if not self._keep_lock():
                report['errors'].append("Purge lock lost, stopping the pass early")
                break

            outcome, event, result = self._process_entry(entry, now)
            report['processed'] += 1
            outcomes.append((entry.file, outcome))
            results.append(result)

            if outcome == 'completed':
                removed.append(entry.file)
            else:
                updated[entry.file] = entry
            if event is not None:
                pending_events.append((entry.file, event))

        try:
            manifest, stale = self.manifest_store.apply_queue_changes(updated, removed, expected)
        except ManifestError as e:
            # Nothing was persisted; the same entries are picked up next pass
            logger.error(f"Failed to save purge queue: {e}")
            report['errors'].append(f"Failed to save purge queue: {e}")
            return

        for file in stale:
            report['errors'].append(f"{file} changed during the pass, outcome discarded")
        for file, outcome in outcomes:
            if file not in stale:
                report[outcome].append(file)
        for file, event in pending_events:
            if file not in stale:
                self.events.emit(event)

        results = [result for result in results if result['file'] not in stale]
        self._finish(manifest.remote_purge_queue, results, now, report)

    def _keep_lock(self) -> bool:
        """Renew the pass lock. Returns False once another holder has taken it."""
        if self.locks is None or self._lock_token is None:
            return True
        if self.locks.renew(LOCK_NAME, self._lock_token, self.lock_ttl):
            return True
        logger.warning("Purge lock expired and was taken over by another pass")
        return False

    def _process_entry(self, entry: QueueEntry, now: int) -> Tuple[str, Any, Dict[str, Any]]:
        entry.attempts += 1
        entry.last_attempt_at = now
        attempted = list(entry.destinations)

        succeeded, errors, permanent = self._delete_everywhere(entry)
        entry.destinations = [d for d in entry.destinations if d not in succeeded]

        if not entry.destinations:
            entry.status = STATUS_COMPLETED
            self._log(f"Purged {entry.file} from {', '.join(attempted)} (attempt {entry.attempts})")
            return 'completed', PurgeCompleted(entry.file, attempted, entry.attempts), {
                'file': entry.file,
                'outcome': 'completed',
                'destinations': attempted,
                'duration': max(0, now - entry.registered_at) if entry.registered_at else None,
                'timestamp': now,
            }

        entry.errors.extend(errors)
        entry.last_error = ' | '.join(errors)

        if permanent or entry.attempts >= self.max_attempts:
            entry.status = STATUS_FAILED
            entry.failed_at = now
            entry.next_attempt_at = 0
            self._log(f"Purge of {entry.file} failed permanently after {entry.attempts} attempts: {entry.last_error}")
            event = PurgePermanentFailure(entry.file, entry.to_dict(), list(entry.errors))
            return 'failed', event, {'file': entry.file, 'outcome': 'failed', 'destinations': entry.destinations}

        entry.status = STATUS_RETRY
        entry.next_attempt_at = now + self.backoff(entry.attempts)
        self._log(
            f"Purge of {entry.file} failed (attempt {entry.attempts}/{self.max_attempts}), "
            f"retrying at {entry.next_attempt_at}: {entry.last_error}"
        )
        return 'retry', None, {'file': entry.file, 'outcome': 'retry', 'destinations': entry.destinations}

    def _delete_everywhere(self, entry: QueueEntry) -> Tuple[List[str], List[str], bool]:
        """
        Delete the entry's file from each remaining destination.

        Returns:
            (succeeded destination ids, error messages, permanent failure seen)
        """
        succeeded = []
        errors = []
        permanent = False

        for destination_id in entry.destinations:
            # Slow providers can outlast the TTL within a single entry
            self._keep_lock()
            try:
                with self.registry.resolve(destination_id) as destination:
                    result = destination.delete_remote_backup_by_name(entry.file)
            except NotFound as e:
                permanent = True
                errors.append(f"{destination_id}: {e}")
                continue
            except DestinationError as e:
                errors.append(f"{destination_id}: {e}")
                continue
            except Exception as e:
                logger.exception(f"Unexpected error deleting {entry.file} from {destination_id}")
                errors.append(f"{destination_id}: {e}")
                continue

            if not result.success:
                errors.append(f"{destination_id}: {result.message or 'delete failed'}")
                continue

            succeeded.append(destination_id)
            if result.quota is not None and self.storage_metrics is not None:
                self.storage_metrics.record_quota_sample(destination_id, result.quota)

        return succeeded, errors, permanent

    def _finish(self, queue: List[QueueEntry], results: List[Dict[str, Any]], now: int,
                report: Dict[str, Any]):
        if self.forecaster is not None:
            self.forecaster.update(queue, results, now=now)

        next_due = min(
            (entry.next_attempt_at for entry in queue if entry.status in (STATUS_PENDING, STATUS_RETRY)),
            default=None
        )
        if next_due is None or self.schedule_once is None:
            return

        run_at = max(next_due, now + FOLLOWUP_DELAY)
        self.schedule_once(run_at)
        report['next_run_at'] = run_at
        self._log(f"Next purge pass scheduled at {run_at}")

    # Operator actions

    def register(self, file: str, destinations: List[str]) -> QueueEntry:
        """Queue a file for purge and schedule a pass shortly after."""
        entry = self.manifest_store.register_purge(file, destinations)
        if self.schedule_once is not None:
            self.schedule_once(self._now() + FOLLOWUP_DELAY)
        return entry

    def retry(self, file: str) -> bool:
        """
        Reset an entry (typically a failed one) so it is attempted again.

        Returns:
            False if the file is not queued
        """
        if not self.manifest_store.retry_entry(file):
            return False
        logger.info(f"Purge of {file} reset for retry")
        if self.schedule_once is not None:
            self.schedule_once(self._now() + FOLLOWUP_DELAY)
        return True

    def delete(self, file: str) -> bool:
        """Drop an entry without deleting anything remotely."""
        deleted = self.manifest_store.delete_entry(file)
        if deleted:
            logger.info(f"Purge entry for {file} discarded")
        return deleted

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.fromtimestamp(self._now(), timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
