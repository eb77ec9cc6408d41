"""
HTTP transport shared by all HTTP-based destinations.

Wraps a synchronous httpx client with a bounded timeout and maps failures
onto the destination error types:
- timeouts, DNS, TLS and connection errors -> TransportError
- unexpected status codes -> TransferError(http_status, message)
"""

import logging
from typing import Any, Dict, Iterable, Optional

import httpx

from .errors import TransferError, TransportError


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


class HttpTransport:
    """
    Thin request helper around httpx.Client.

    Args:
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, transport: Optional[httpx.BaseTransport] = None):
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport, follow_redirects=False)

    def close(self):
        self._client.close()

    def __enter__(self) -> 'HttpTransport':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
                content: Optional[bytes] = None, json: Any = None,
                data: Optional[Dict[str, Any]] = None,
                accept: Iterable[int] = ()) -> httpx.Response:
        """
        Send a request and return the response.

        Any 2xx status is accepted, plus the statuses listed in `accept`
        (e.g. 308 for resumable uploads, 404 for idempotent deletes).

        Raises:
            TransportError: If the request could not be completed
            TransferError: If the provider answered with another status
        """
        try:
            response = self._client.request(
                method, url, headers=headers, content=content, json=json, data=data
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {_redact(url)} timed out after {self.timeout}s: {e}")
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {_redact(url)} failed: {e}")

        if response.is_success or response.status_code in set(accept):
            return response

        logger.debug("%s %s returned HTTP %s", method, _redact(url), response.status_code)
        raise TransferError.from_body(response.status_code, _error_message(response))


def _redact(url: str) -> str:
    """Strip the query string (it may carry upload ids or tokens)."""
    return url.split('?', 1)[0]


def _error_message(response: httpx.Response) -> str:
    """Extract a readable error message from JSON or XML error bodies."""
    text = response.text or ''
    content_type = response.headers.get('content-type', '')
    if 'json' in content_type:
        try:
            payload = response.json()
        except ValueError:
            return text
        if isinstance(payload, dict):
            if payload.get('error_summary'):
                return str(payload['error_summary'])
            error = payload.get('error')
            if isinstance(error, dict):
                return str(error.get('message') or error.get('code') or error)
            for key in ('message', 'error_description', 'error', 'code'):
                if payload.get(key):
                    return str(payload[key])
        return text
    if '<Message>' in text:
        return text.split('<Message>', 1)[1].split('</Message>', 1)[0]
    return text or response.reason_phrase
