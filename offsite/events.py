"""
Event bus for purge and storage notifications.

Handlers subscribe by event name. A failing handler is logged and does not
stop delivery to the others or break the caller.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)

PURGE_COMPLETED = 'purge.completed'
PURGE_PERMANENT_FAILURE = 'purge.permanent_failure'
STORAGE_USAGE_WARNING = 'storage.usage_warning'


@dataclass
class PurgeCompleted:
    file: str
    destinations: List[str]
    attempts: int
    name: str = field(default=PURGE_COMPLETED, init=False)


@dataclass
class PurgePermanentFailure:
    file: str
    entry: Dict[str, Any]
    errors: List[str]
    name: str = field(default=PURGE_PERMANENT_FAILURE, init=False)


@dataclass
class StorageUsageWarning:
    destination_id: str
    ratio: float
    used_bytes: int
    quota_bytes: int
    name: str = field(default=STORAGE_USAGE_WARNING, init=False)


class EventBus:
    """Synchronous publish/subscribe."""

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self.history: List[Any] = []
        self.history_limit = 100

    def subscribe(self, event_name: str, handler: Callable):
        self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: Callable):
        if handler in self._handlers[event_name]:
            self._handlers[event_name].remove(handler)

    def emit(self, event) -> int:
        """
        Deliver an event to its subscribers.

        Returns:
            Number of handlers that ran without error
        """
        self.history.append(event)
        del self.history[:-self.history_limit]

        delivered = 0
        for handler in list(self._handlers[event.name]):
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(f"Handler {handler!r} failed for event {event.name}")

        logger.info(f"Event {event.name}: {_summary(event)}")
        return delivered

    def recent(self, event_name: Optional[str] = None) -> List[Any]:
        if event_name is None:
            return list(self.history)
        return [event for event in self.history if event.name == event_name]


def _summary(event) -> str:
    data = asdict(event)
    data.pop('name', None)
    data.pop('entry', None)
    return ', '.join(f"{key}={value}" for key, value in data.items())
