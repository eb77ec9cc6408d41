"""
Exception types raised by remote destinations.

Every failure that crosses the destination boundary is one of these, so
callers (the purge worker, the CLI, storage metrics) only need to catch
DestinationError.
"""

from typing import Optional


class DestinationError(Exception):
    """Base class for all destination failures."""
    pass


class NotConfigured(DestinationError):
    """Raised when required credentials or settings are missing."""
    pass


class NotFound(DestinationError):
    """Raised when a destination id cannot be resolved."""
    pass


class TransportError(DestinationError):
    """Raised on DNS, TLS, connection or timeout failures."""
    pass


class TransferError(DestinationError):
    """
    Raised when a provider answers with an unexpected HTTP status.

    Attributes:
        http_status: Status code returned by the provider (0 when not HTTP)
        message: Provider error message
        code: Provider-specific error code, when the API returns one
    """

    def __init__(self, http_status: int, message: str, code=None):
        self.http_status = http_status
        self.message = message
        self.code = code
        super().__init__(f"HTTP {http_status}: {message}" if http_status else message)

    @property
    def is_not_found(self) -> bool:
        return self.http_status == 404

    @classmethod
    def from_body(cls, http_status: int, body: Optional[str], default: str = 'Unexpected response') -> 'TransferError':
        """Build an error from a response body, trimming large payloads."""
        message = (body or '').strip() or default
        if len(message) > 500:
            message = message[:500] + '...'
        return cls(http_status, message)
