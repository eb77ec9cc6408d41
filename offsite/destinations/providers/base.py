"""
Provider adapter base.

A provider adapter knows one storage service's wire protocol. The generic
Destination engine drives adapters through these hooks:

    is_configured()                       -> bool
    should_chunk(size)                    -> bool
    upload_single(local_path, name, size)
    begin_chunked(name, size)             -> handle
    upload_chunk(handle, chunk, data, total_size) -> token
    commit_chunked(handle, tokens)
    abort_chunked(handle)
    list_objects()                        -> List[RemoteObject] (raises)
    locate(name)                          -> Optional[RemoteObject]
    delete_object(obj)
    fetch_usage()                         -> Optional[StorageUsage]
    test_connection()
"""

import re
import time
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..chunking import Chunk
from ..errors import TransferError
from ..transport import DEFAULT_TIMEOUT, HttpTransport
from ..types import RemoteObject, StorageUsage


BACKUP_NAME_PATTERN = re.compile(r'\.zip(\.[A-Za-z0-9]+)?$', re.IGNORECASE)

MB = 1024 * 1024


def is_backup_name(name: str) -> bool:
    """True for archive names like backup.zip or backup.zip.enc."""
    return bool(BACKUP_NAME_PATTERN.search(name or ''))


def join_key(prefix: str, name: str) -> str:
    """Join an object prefix and a file name with a single slash."""
    prefix = (prefix or '').strip('/')
    return f"{prefix}/{name}" if prefix else name


def parse_timestamp(value: Any) -> int:
    """Parse ISO-8601, RFC 1123 or epoch values into epoch seconds (0 if unknown)."""
    if value is None or value == '':
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def strip_namespaces(root: ET.Element) -> ET.Element:
    """Drop XML namespaces in place so lookups can use plain tag names."""
    for element in root.iter():
        if isinstance(element.tag, str) and '}' in element.tag:
            element.tag = element.tag.split('}', 1)[1]
    return root


def parse_xml(text: str) -> ET.Element:
    try:
        return strip_namespaces(ET.fromstring(text))
    except ET.ParseError as e:
        raise TransferError(0, f"Invalid XML response: {e}")


def int_setting(settings: Dict[str, Any], name: str, default: int) -> int:
    try:
        return int(settings.get(name) or default)
    except (TypeError, ValueError):
        return default


class Provider:
    """Base class for provider adapters."""

    provider_id = ''
    label = ''
    required_settings: Tuple[str, ...] = ()
    # Query the provider's quota after a successful delete
    report_quota = False

    def __init__(self, settings: Optional[Dict[str, Any]] = None,
                 transport: Optional[HttpTransport] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.settings = dict(settings or {})
        self.clock = clock or time.time
        self._transport = transport
        self._owns_transport = False

    @property
    def transport(self) -> HttpTransport:
        if self._transport is None:
            timeout = float(self.settings.get('timeout') or DEFAULT_TIMEOUT)
            self._transport = HttpTransport(timeout=timeout)
            self._owns_transport = True
        return self._transport

    def close(self):
        """Close the HTTP client this adapter opened itself (injected transports belong to the caller)."""
        if self._owns_transport and self._transport is not None:
            self._transport.close()
            self._transport = None
            self._owns_transport = False

    @property
    def chunk_size(self) -> int:
        return 0

    def now(self) -> int:
        return int(self.clock())

    def is_configured(self) -> bool:
        return all(str(self.settings.get(name) or '').strip() for name in self.required_settings)

    def should_chunk(self, size: int) -> bool:
        return False

    def upload_single(self, local_path: str, remote_name: str, size: int):
        raise NotImplementedError

    def begin_chunked(self, remote_name: str, size: int) -> Any:
        raise NotImplementedError

    def upload_chunk(self, handle: Any, chunk: Chunk, data: bytes, total_size: int) -> Any:
        raise NotImplementedError

    def commit_chunked(self, handle: Any, tokens: List[Any]):
        raise NotImplementedError

    def abort_chunked(self, handle: Any):
        pass

    def list_objects(self) -> List[RemoteObject]:
        raise NotImplementedError

    def locate(self, name: str) -> Optional[RemoteObject]:
        for obj in self.list_objects():
            if obj.name == name:
                return obj
        return None

    def delete_object(self, obj: RemoteObject):
        raise NotImplementedError

    def fetch_usage(self) -> Optional[StorageUsage]:
        return None

    def test_connection(self):
        self.list_objects()
