"""
Request signing strategies for remote destinations.

Each signer exposes the same call:

    sign(method, url, headers, body, timestamp) -> headers

and returns a new header dict with authentication added. Signers never
perform network calls, and given a fixed timestamp they are deterministic.
Missing credentials raise NotConfigured before anything is sent.

Supported:
- SigV4Signer: AWS Signature Version 4 (S3, Wasabi, S3-compatible)
- SharedKeySigner: Azure Storage SharedKey
- BearerSigner: OAuth bearer tokens or raw token headers (Backblaze B2)
- BasicSigner: HTTP Basic (Backblaze B2 account authorization)
"""

import base64
import binascii
import hashlib
import hmac
import time
from datetime import datetime, timezone
from email.utils import formatdate
from typing import Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qsl, quote, unquote, urlsplit

from .errors import NotConfigured


Timestamp = Union[int, float, datetime, None]

EMPTY_SHA256 = hashlib.sha256(b'').hexdigest()


def _epoch(timestamp: Timestamp) -> float:
    if timestamp is None:
        return time.time()
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return timestamp.timestamp()
    return float(timestamp)


def rawurlencode(value: str, keep: str = '') -> str:
    """Percent-encode everything except RFC 3986 unreserved characters."""
    return quote(value, safe='-_.~' + keep)


def hash_payload(body: Optional[bytes]) -> str:
    """Hex SHA-256 of a request body (empty body when None)."""
    if not body:
        return EMPTY_SHA256
    return hashlib.sha256(body).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode('utf-8'), hashlib.sha256).digest()


class SigV4Signer:
    """
    AWS Signature Version 4.

    Adds Host, X-Amz-Date and (for S3) X-Amz-Content-Sha256, then an
    Authorization header over every header passed in.
    """

    algorithm = 'AWS4-HMAC-SHA256'

    def __init__(self, access_key: str, secret_key: str, region: str = 'us-east-1',
                 service: str = 's3', include_content_sha: bool = True,
                 session_token: Optional[str] = None):
        self.access_key = access_key or ''
        self.secret_key = secret_key or ''
        self.region = region or 'us-east-1'
        self.service = service
        self.include_content_sha = include_content_sha
        self.session_token = session_token

    def signing_key(self, date_stamp: str) -> bytes:
        """Derive the signing key for a YYYYMMDD date."""
        key = _hmac(('AWS4' + self.secret_key).encode('utf-8'), date_stamp)
        key = _hmac(key, self.region)
        key = _hmac(key, self.service)
        return _hmac(key, 'aws4_request')

    def credential_scope(self, date_stamp: str) -> str:
        return f"{date_stamp}/{self.region}/{self.service}/aws4_request"

    @staticmethod
    def canonical_uri(path: str) -> str:
        if not path:
            return '/'
        segments = [rawurlencode(unquote(segment)) for segment in path.split('/')]
        return '/'.join(segments)

    @staticmethod
    def canonical_query(query: str) -> str:
        pairs = [
            (rawurlencode(key), rawurlencode(value))
            for key, value in parse_qsl(query, keep_blank_values=True)
        ]
        pairs.sort()
        return '&'.join(f"{key}={value}" for key, value in pairs)

    @staticmethod
    def canonical_headers(headers: Dict[str, str]) -> Tuple[str, str]:
        """Return (canonical header block, signed header list)."""
        normalized = {}
        for name, value in headers.items():
            normalized[name.lower().strip()] = ' '.join(str(value).split())
        names = sorted(normalized)
        block = ''.join(f"{name}:{normalized[name]}\n" for name in names)
        return block, ';'.join(names)

    def canonical_request(self, method: str, url: str, headers: Dict[str, str],
                          payload_hash: str) -> Tuple[str, str]:
        parts = urlsplit(url)
        header_block, signed_headers = self.canonical_headers(headers)
        canonical = '\n'.join([
            method.upper(),
            self.canonical_uri(parts.path),
            self.canonical_query(parts.query),
            header_block,
            signed_headers,
            payload_hash,
        ])
        return canonical, signed_headers

    def sign(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
             body: Optional[bytes] = None, timestamp: Timestamp = None) -> Dict[str, str]:
        if not self.access_key or not self.secret_key:
            raise NotConfigured("Access key and secret key are required for SigV4 signing")

        moment = datetime.fromtimestamp(_epoch(timestamp), tz=timezone.utc)
        amz_date = moment.strftime('%Y%m%dT%H%M%SZ')
        date_stamp = moment.strftime('%Y%m%d')
        payload_hash = hash_payload(body)

        signed = dict(headers or {})
        signed['Host'] = urlsplit(url).netloc
        signed['X-Amz-Date'] = amz_date
        if self.include_content_sha:
            signed['X-Amz-Content-Sha256'] = payload_hash
        if self.session_token:
            signed['X-Amz-Security-Token'] = self.session_token

        canonical, signed_headers = self.canonical_request(method, url, signed, payload_hash)
        scope = self.credential_scope(date_stamp)
        string_to_sign = '\n'.join([
            self.algorithm,
            amz_date,
            scope,
            hashlib.sha256(canonical.encode('utf-8')).hexdigest(),
        ])
        signature = hmac.new(
            self.signing_key(date_stamp), string_to_sign.encode('utf-8'), hashlib.sha256
        ).hexdigest()

        signed['Authorization'] = (
            f"{self.algorithm} Credential={self.access_key}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        return signed


class SharedKeySigner:
    """Azure Storage SharedKey authorization."""

    # Standard header slots between the verb and the canonical x-ms-* headers
    _STANDARD_HEADERS = [
        'content-encoding',
        'content-language',
        'content-length',
        'content-md5',
        'content-type',
        'date',
        'if-modified-since',
        'if-match',
        'if-none-match',
        'if-unmodified-since',
        'range',
    ]

    def __init__(self, account_name: str, account_key: str, api_version: str = '2023-08-03'):
        self.account_name = account_name or ''
        self.account_key = account_key or ''
        self.api_version = api_version

    def _decoded_key(self) -> bytes:
        if not self.account_name or not self.account_key:
            raise NotConfigured("Storage account name and key are required for SharedKey signing")
        try:
            return base64.b64decode(self.account_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise NotConfigured(f"Storage account key is not valid base64: {e}")

    def canonical_resource(self, url: str) -> str:
        parts = urlsplit(url)
        resource = f"/{self.account_name}{parts.path or '/'}"
        grouped: Dict[str, List[str]] = {}
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            grouped.setdefault(key.lower(), []).append(value)
        for key in sorted(grouped):
            resource += f"\n{key}:{','.join(sorted(grouped[key]))}"
        return resource

    def string_to_sign(self, method: str, url: str, headers: Dict[str, str]) -> str:
        lowered = {name.lower(): str(value).strip() for name, value in headers.items()}

        slots = []
        for name in self._STANDARD_HEADERS:
            value = lowered.get(name, '')
            if name == 'content-length' and value == '0':
                value = ''
            slots.append(value)

        ms_headers = sorted(
            (name, ' '.join(value.split())) for name, value in lowered.items() if name.startswith('x-ms-')
        )
        canonical_headers = ''.join(f"{name}:{value}\n" for name, value in ms_headers)

        return method.upper() + '\n' + '\n'.join(slots) + '\n' + canonical_headers + self.canonical_resource(url)

    def sign(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
             body: Optional[bytes] = None, timestamp: Timestamp = None) -> Dict[str, str]:
        key = self._decoded_key()

        signed = dict(headers or {})
        signed['x-ms-date'] = formatdate(_epoch(timestamp), usegmt=True)
        signed['x-ms-version'] = self.api_version
        if body and not any(name.lower() == 'content-length' for name in signed):
            signed['Content-Length'] = str(len(body))

        digest = hmac.new(key, self.string_to_sign(method, url, signed).encode('utf-8'), hashlib.sha256).digest()
        signature = base64.b64encode(digest).decode()
        signed['Authorization'] = f"SharedKey {self.account_name}:{signature}"
        return signed


class BearerSigner:
    """
    Token authorization.

    The token comes from a callable so refreshable OAuth tokens can be
    renewed between requests. With scheme=None the raw token is sent as the
    header value (Backblaze B2 style).
    """

    def __init__(self, token_provider: Callable[[], Optional[str]], scheme: Optional[str] = 'Bearer',
                 header: str = 'Authorization'):
        self.token_provider = token_provider
        self.scheme = scheme
        self.header = header

    def sign(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
             body: Optional[bytes] = None, timestamp: Timestamp = None) -> Dict[str, str]:
        token = self.token_provider()
        if not token:
            raise NotConfigured("An access token is required")

        signed = dict(headers or {})
        signed[self.header] = f"{self.scheme} {token}" if self.scheme else token
        return signed


class BasicSigner:
    """HTTP Basic authorization."""

    def __init__(self, username: str, password: str):
        self.username = username or ''
        self.password = password or ''

    def sign(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
             body: Optional[bytes] = None, timestamp: Timestamp = None) -> Dict[str, str]:
        if not self.username or not self.password:
            raise NotConfigured("Both key id and secret are required for Basic authorization")

        credentials = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        signed = dict(headers or {})
        signed['Authorization'] = f"Basic {credentials}"
        return signed
