"""
Remote storage metrics.

Collects a cached snapshot of every configured destination's storage usage:
used/quota/free bytes, backup count, latency, collection errors and a growth
projection (daily delta and days until the warning threshold is reached).

A destination whose used/quota ratio reaches the warning threshold emits a
`storage.usage_warning` event once; the event fires again only after usage
has dropped back below the threshold.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from offsite.destinations.engine import Destination
from offsite.destinations.errors import NotFound
from offsite.destinations.registry import DestinationRegistry
from offsite.destinations.types import StorageUsage
from offsite.events import EventBus, StorageUsageWarning
from offsite.persistence import OptionStore
from offsite.utils.formatting import format_bytes, format_days


logger = logging.getLogger(__name__)

METRICS_OPTION = 'remote_storage_metrics'
QUOTA_SAMPLES_OPTION = 'remote_storage_quota_samples'

DAY = 86400


class StorageMetrics:
    """
    Cached storage usage snapshot for all destinations.

    Args:
        registry: DestinationRegistry to collect from
        options: OptionStore holding the snapshot and quota samples
        events: EventBus receiving usage warnings
        clock: Callable returning epoch seconds
        ttl: Seconds before a snapshot is considered stale
        warning_percent: Usage percentage that triggers a warning
    """

    def __init__(self, registry: DestinationRegistry, options: OptionStore,
                 events: Optional[EventBus] = None, clock: Optional[Callable[[], float]] = None,
                 ttl: int = 900, warning_percent: float = 85.0):
        self.registry = registry
        self.options = options
        self.events = events or EventBus()
        self.clock = clock or time.time
        self.ttl = max(0, int(ttl))
        self.warning_percent = max(1.0, min(100.0, float(warning_percent)))

    def _now(self) -> int:
        return int(self.clock())

    def get_snapshot(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Return the cached snapshot, refreshing it when stale or empty.

        Returns:
            Snapshot dict with 'generated_at', 'stale', 'destinations',
            'threshold_percent'
        """
        snapshot = self.options.get_json(METRICS_OPTION, {})
        if not isinstance(snapshot, dict):
            snapshot = {}

        generated_at = int(snapshot.get('generated_at') or 0)
        stale = generated_at + self.ttl < self._now()

        if force_refresh or stale or not snapshot.get('destinations'):
            snapshot = self.refresh_snapshot()
            stale = False

        snapshot['stale'] = stale
        snapshot.setdefault('destinations', [])
        return snapshot

    def refresh_snapshot(self) -> Dict[str, Any]:
        """Collect fresh metrics from every registered destination and store them."""
        previous = self.options.get_json(METRICS_OPTION, {}) or {}
        previous_entries = {
            entry['id']: entry for entry in previous.get('destinations') or []
            if isinstance(entry, dict) and entry.get('id')
        }

        snapshot = {
            'generated_at': self._now(),
            'destinations': [],
            'threshold_percent': self.warning_percent,
        }

        for destination_id in self.registry.known_ids:
            try:
                destination = self.registry.resolve(destination_id)
            except NotFound:
                continue
            with destination:
                snapshot['destinations'].append(
                    self._collect(destination, previous_entries.get(destination_id))
                )

        self.options.set_json(METRICS_OPTION, snapshot)
        logger.info(f"Remote storage metrics refreshed for {len(snapshot['destinations'])} destinations")
        return snapshot

    def _collect(self, destination: Destination, previous: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        now = self._now()
        entry = {
            'id': destination.id,
            'name': destination.name,
            'connected': destination.connected,
            'used_bytes': None,
            'quota_bytes': None,
            'free_bytes': None,
            'used_human': '',
            'quota_human': '',
            'free_human': '',
            'source': None,
            'backups_count': 0,
            'errors': [],
            'refreshed_at': now,
            'latency_ms': None,
            'daily_delta_bytes': None,
            'daily_delta_label': '',
            'days_to_threshold': None,
            'days_to_threshold_label': '',
            'projection_intent': 'neutral',
            'over_threshold': False,
        }

        if not entry['connected']:
            return entry

        started = time.monotonic()
        try:
            usage = destination.get_storage_usage()
        except Exception as e:
            logger.warning(f"Could not collect storage usage for {destination.name}: {e}")
            entry['errors'].append(str(e))
            usage = None
        entry['latency_ms'] = int((time.monotonic() - started) * 1000)

        if usage is not None:
            entry['used_bytes'] = usage.used_bytes
            entry['quota_bytes'] = usage.quota_bytes
            entry['free_bytes'] = usage.free_bytes
            entry['source'] = usage.source
            if usage.latency_ms is not None:
                entry['latency_ms'] = usage.latency_ms

        sample = self.quota_sample(destination.id)
        if sample:
            if entry['used_bytes'] is None:
                # Nothing measured: take the sample as a whole
                entry['used_bytes'] = sample.get('used_bytes')
                entry['free_bytes'] = sample.get('free_bytes')
            if entry['quota_bytes'] is None:
                entry['quota_bytes'] = sample.get('quota_bytes')

        if entry['free_bytes'] is None and entry['quota_bytes'] is not None and entry['used_bytes'] is not None:
            entry['free_bytes'] = max(0, entry['quota_bytes'] - entry['used_bytes'])

        entry['backups_count'] = len(destination.list_remote_backups())

        for field in ('used', 'quota', 'free'):
            entry[f'{field}_human'] = format_bytes(entry[f'{field}_bytes'])

        self._project(entry, previous, now)
        self._check_threshold(entry, previous)
        return entry

    def _project(self, entry: Dict[str, Any], previous: Optional[Dict[str, Any]], now: int):
        """Fill the daily growth and days-to-threshold fields from the previous snapshot."""
        if entry['used_bytes'] is None or not previous:
            return

        previous_used = previous.get('used_bytes')
        previous_refreshed = int(previous.get('refreshed_at') or 0)
        if previous_used is None or previous_refreshed <= 0 or previous_refreshed >= now:
            return

        elapsed = max(1, now - previous_refreshed)
        daily_delta = (entry['used_bytes'] - int(previous_used)) / (elapsed / DAY)
        entry['daily_delta_bytes'] = daily_delta
        entry['daily_delta_label'] = f"{'+' if daily_delta >= 0 else ''}{format_bytes(daily_delta)}/day"

        quota = entry['quota_bytes']
        if not quota:
            return

        threshold_bytes = int(quota * self.warning_percent / 100)
        if entry['used_bytes'] >= threshold_bytes:
            entry['days_to_threshold'] = 0.0
            entry['days_to_threshold_label'] = 'Threshold reached'
            entry['projection_intent'] = 'critical'
        elif daily_delta > 0:
            days = (threshold_bytes - entry['used_bytes']) / daily_delta
            entry['days_to_threshold'] = days
            entry['days_to_threshold_label'] = f"Threshold in {format_days(days)}"
            if days <= 1:
                entry['projection_intent'] = 'critical'
            elif days <= 3:
                entry['projection_intent'] = 'warning'
            else:
                entry['projection_intent'] = 'watch'
        elif daily_delta < 0:
            entry['days_to_threshold_label'] = 'Usage decreasing'
            entry['projection_intent'] = 'success'
        else:
            entry['days_to_threshold_label'] = 'Usage stable'

    def _check_threshold(self, entry: Dict[str, Any], previous: Optional[Dict[str, Any]]):
        used, quota = entry['used_bytes'], entry['quota_bytes']
        if used is None or not quota:
            return

        ratio = used / quota
        entry['over_threshold'] = ratio >= self.warning_percent / 100
        if entry['over_threshold'] and not (previous or {}).get('over_threshold'):
            self.events.emit(StorageUsageWarning(entry['id'], ratio, used, quota))

    # Quota samples

    def record_quota_sample(self, destination_id: str, usage: StorageUsage) -> bool:
        """Store the quota a provider reported alongside another operation (e.g. a delete)."""
        samples = self.options.get_json(QUOTA_SAMPLES_OPTION, {}) or {}
        sample = usage.to_dict()
        sample['refreshed_at'] = usage.refreshed_at or self._now()
        samples[destination_id] = sample
        return self.options.set_json(QUOTA_SAMPLES_OPTION, samples)

    def quota_sample(self, destination_id: str) -> Optional[Dict[str, Any]]:
        samples = self.options.get_json(QUOTA_SAMPLES_OPTION, {}) or {}
        return samples.get(destination_id)
