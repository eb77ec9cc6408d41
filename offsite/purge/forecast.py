"""
SLA metrics for the remote purge queue.

Keeps rolling histories of how long completed entries waited in the queue
(overall and per destination) and projects how long the current backlog
will take to drain.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from offsite.persistence import OptionStore
from offsite.utils.formatting import format_duration
from .manifest import STATUS_PENDING, STATUS_RETRY, QueueEntry


logger = logging.getLogger(__name__)

SLA_OPTION = 'purge_sla_metrics'
DEFAULT_HISTORY_LIMIT = 20


def _empty_metrics() -> Dict[str, Any]:
    return {
        'overall': {'history': [], 'average_seconds': None, 'completed': 0, 'failed': 0},
        'destinations': {},
        'forecast': {},
        'updated_at': 0,
    }


def _average(history: List[Dict[str, Any]]) -> Optional[float]:
    durations = [float(sample['duration']) for sample in history if sample.get('duration') is not None]
    if not durations:
        return None
    return sum(durations) / len(durations)


class SlaForecaster:
    """
    Rolling purge SLA metrics stored in the `purge_sla_metrics` option.

    Args:
        options: OptionStore holding the metrics document
        clock: Callable returning epoch seconds
        history_limit: Samples kept per history
    """

    def __init__(self, options: OptionStore, clock: Optional[Callable[[], float]] = None,
                 history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.options = options
        self.clock = clock or time.time
        self.history_limit = max(1, history_limit)

    def load(self) -> Dict[str, Any]:
        metrics = self.options.get_json(SLA_OPTION, None)
        if not isinstance(metrics, dict):
            return _empty_metrics()

        base = _empty_metrics()
        base.update(metrics)
        if not isinstance(base.get('overall'), dict):
            base['overall'] = _empty_metrics()['overall']
        if not isinstance(base.get('destinations'), dict):
            base['destinations'] = {}
        return base

    def update(self, queue: Iterable[QueueEntry], results: Iterable[Dict[str, Any]] = (),
               now: Optional[int] = None) -> Dict[str, Any]:
        """
        Fold one pass's results into the histories and recompute the forecast.

        Args:
            queue: Current queue entries after the pass
            results: Outcomes of the pass, each
                {'outcome': 'completed'|'failed'|..., 'destinations': [...],
                 'duration': seconds, 'timestamp': epoch}
            now: Override for the current time

        Returns:
            The stored metrics document, or {} if it could not be computed
        """
        try:
            now = int(self.clock()) if now is None else int(now)
            metrics = self.load()

            for result in results:
                self._record(metrics, result)

            metrics['forecast'] = self._forecast(metrics, list(queue), now)
            metrics['updated_at'] = now

            if not self.options.set_json(SLA_OPTION, metrics):
                logger.warning("Could not store purge SLA metrics")
            return metrics
        except Exception:
            logger.exception("Failed to update purge SLA metrics")
            return {}

    def record_completion(self, destinations: List[str], registered_at: int,
                          completed_at: int) -> Dict[str, Any]:
        """
        Record a single completed entry outside of a worker pass.

        Only the histories change; the stored forecast describes the queue
        as of the last pass and is left as is.
        """
        try:
            metrics = self.load()
            self._record(metrics, {
                'outcome': 'completed',
                'destinations': destinations,
                'duration': max(0, int(completed_at) - int(registered_at)),
                'timestamp': int(completed_at),
            })

            if not self.options.set_json(SLA_OPTION, metrics):
                logger.warning("Could not store purge SLA metrics")
            return metrics
        except Exception:
            logger.exception("Failed to record purge completion")
            return {}

    def _record(self, metrics: Dict[str, Any], result: Dict[str, Any]):
        overall = metrics['overall']
        outcome = result.get('outcome')

        if outcome == 'failed':
            overall['failed'] = int(overall.get('failed') or 0) + 1
            return
        if outcome != 'completed' or result.get('duration') is None:
            return

        sample = {
            'duration': max(0, int(result['duration'])),
            'timestamp': int(result.get('timestamp') or 0),
        }

        overall['completed'] = int(overall.get('completed') or 0) + 1
        overall['history'] = self._append(overall.get('history'), sample)
        overall['average_seconds'] = _average(overall['history'])

        for destination_id in result.get('destinations') or []:
            stats = metrics['destinations'].setdefault(destination_id, {'history': []})
            stats['history'] = self._append(stats.get('history'), sample)
            stats['average_seconds'] = _average(stats['history'])

    def _append(self, history: Optional[List[Dict[str, Any]]], sample: Dict[str, Any]) -> List[Dict[str, Any]]:
        history = list(history or [])
        history.append(sample)
        return history[-self.history_limit:]

    def _forecast(self, metrics: Dict[str, Any], queue: List[QueueEntry], now: int) -> Dict[str, Any]:
        pending = [entry for entry in queue if entry.status in (STATUS_PENDING, STATUS_RETRY)]
        overall_average = _average(metrics['overall'].get('history') or [])

        oldest = min((entry.registered_at for entry in pending if entry.registered_at), default=None)
        forecast = {
            'overall': self._projection(len(pending), overall_average),
            'destinations': {},
        }
        forecast['overall']['oldest_pending_seconds'] = max(0, now - oldest) if oldest else None

        pending_by_destination: Dict[str, int] = {}
        for entry in pending:
            for destination_id in entry.destinations:
                pending_by_destination[destination_id] = pending_by_destination.get(destination_id, 0) + 1

        destination_ids = set(pending_by_destination) | set(metrics['destinations'])
        for destination_id in sorted(destination_ids):
            stats = metrics['destinations'].get(destination_id) or {}
            history = stats.get('history') or []
            # Destinations without samples of their own use the overall average
            average = _average(history)
            if average is None:
                average = overall_average

            projection = self._projection(pending_by_destination.get(destination_id, 0), average)
            projection['samples'] = len(history)
            forecast['destinations'][destination_id] = projection

        return forecast

    @staticmethod
    def _projection(pending: int, average: Optional[float]) -> Dict[str, Any]:
        if average is None:
            return {'pending': pending, 'average_seconds': None, 'forecast_seconds': None, 'forecast_label': ''}

        seconds = average * pending
        return {
            'pending': pending,
            'average_seconds': average,
            'forecast_seconds': seconds,
            'forecast_label': format_duration(seconds) if pending else 'Queue empty',
        }
