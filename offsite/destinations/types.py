"""Value types returned by destination operations."""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


@dataclass
class RemoteObject:
    """A backup archive stored on a remote destination."""
    name: str
    size_bytes: int = 0
    modified_at: int = 0
    id: Optional[str] = None
    key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StorageUsage:
    """Storage usage reported by (or estimated for) a destination."""
    used_bytes: Optional[int] = None
    quota_bytes: Optional[int] = None
    free_bytes: Optional[int] = None
    source: str = 'provider'
    refreshed_at: int = 0
    latency_ms: Optional[int] = None

    def __post_init__(self):
        if self.free_bytes is None and self.quota_bytes is not None and self.used_bytes is not None:
            self.free_bytes = max(0, self.quota_bytes - self.used_bytes)

    @property
    def ratio(self) -> Optional[float]:
        """Used/quota ratio, or None when the quota is unknown."""
        if not self.quota_bytes or self.used_bytes is None:
            return None
        return self.used_bytes / self.quota_bytes

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeleteResult:
    """Outcome of deleting one remote archive."""
    success: bool
    message: str = ''
    quota: Optional[StorageUsage] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'success': self.success, 'message': self.message}
        if self.quota is not None:
            data['quota'] = self.quota.to_dict()
        return data


@dataclass
class PruneResult:
    """
    Outcome of a retention prune on one destination.

    Per-item delete failures are collected in `errors`; a prune that deleted
    some objects and failed on others is reported as partial, never raised.
    """
    inspected: int = 0
    deleted: int = 0
    deleted_items: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.errors) and self.deleted > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['partial'] = self.partial
        return data
