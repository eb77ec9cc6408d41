"""Google Drive provider (resumable uploads, OAuth refresh)."""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from ..chunking import Chunk, align_chunk_size
from ..errors import NotConfigured, TransferError
from ..signing import BearerSigner, rawurlencode
from ..types import RemoteObject, StorageUsage
from .base import MB, Provider, int_setting, parse_timestamp


logger = logging.getLogger(__name__)

UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3/files'
FILES_URL = 'https://www.googleapis.com/drive/v3/files'
ABOUT_URL = 'https://www.googleapis.com/drive/v3/about'
TOKEN_URL = 'https://oauth2.googleapis.com/token'

# Resumable chunks must be multiples of 256 KiB
CHUNK_MULTIPLE = 256 * 1024
# Refresh tokens this many seconds before they expire
TOKEN_REFRESH_MARGIN = 60


class GoogleDriveProvider(Provider):
    """
    Google Drive adapter.

    Archives go through a resumable upload session; each chunk is a PUT
    with a Content-Range header and the final chunk completes the file.
    Access tokens are refreshed with the refresh-token grant when expired.
    """

    provider_id = 'google_drive'
    label = 'Google Drive'
    report_quota = True

    def __init__(self, settings=None, transport=None, clock=None):
        super().__init__(settings, transport, clock)
        self._access_token = self.settings.get('access_token') or ''
        self._expires_at = int(self.settings.get('token_expires_at') or 0)

    def is_configured(self) -> bool:
        if self._can_refresh():
            return True
        return bool(self._access_token)

    def _can_refresh(self) -> bool:
        return all(self.settings.get(name) for name in ('client_id', 'client_secret', 'refresh_token'))

    def access_token(self) -> str:
        """Return a valid access token, refreshing it when needed."""
        expired = self._expires_at and self._expires_at - TOKEN_REFRESH_MARGIN <= self.now()
        if self._access_token and not expired:
            return self._access_token
        if not self._can_refresh():
            if self._access_token:
                return self._access_token
            raise NotConfigured("Google Drive needs an access token or refresh credentials")

        response = self.transport.request('POST', TOKEN_URL, data={
            'grant_type': 'refresh_token',
            'refresh_token': self.settings['refresh_token'],
            'client_id': self.settings['client_id'],
            'client_secret': self.settings['client_secret'],
        })
        data = response.json()
        if not data.get('access_token'):
            raise TransferError(response.status_code, "Token refresh returned no access token")

        self._access_token = data['access_token']
        self._expires_at = self.now() + int(data.get('expires_in') or 3600)
        logger.info("Refreshed Google Drive access token")
        return self._access_token

    def signer(self) -> BearerSigner:
        return BearerSigner(self.access_token)

    @property
    def folder_id(self) -> str:
        return self.settings.get('folder_id') or 'root'

    @property
    def chunk_size(self) -> int:
        return align_chunk_size(int_setting(self.settings, 'chunk_size_mb', 8) * MB, CHUNK_MULTIPLE)

    def _request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs):
        signed = self.signer().sign(method, url, headers or {})
        return self.transport.request(method, url, headers=signed, **kwargs)

    def should_chunk(self, size: int) -> bool:
        return size > 0

    def upload_single(self, local_path: str, remote_name: str, size: int):
        # Only empty files take this path; everything else is chunked
        handle = self.begin_chunked(remote_name, size)
        self._request('PUT', handle['session_uri'], {'Content-Range': 'bytes */0'}, content=b'')

    def begin_chunked(self, remote_name: str, size: int) -> Dict[str, Any]:
        url = f"{UPLOAD_URL}?uploadType=resumable"
        response = self._request('POST', url, {
            'X-Upload-Content-Type': 'application/zip',
            'X-Upload-Content-Length': str(size),
        }, json={'name': remote_name, 'parents': [self.folder_id]})
        session_uri = response.headers.get('location')
        if not session_uri:
            raise TransferError(response.status_code, "Resumable session URI missing from response")
        return {'session_uri': session_uri}

    def upload_chunk(self, handle: Dict[str, Any], chunk: Chunk, data: bytes, total_size: int) -> int:
        # 308 means the session accepted the range and expects more
        self._request('PUT', handle['session_uri'], {
            'Content-Range': f"bytes {chunk.offset}-{chunk.end}/{total_size}",
            'Content-Length': str(len(data)),
        }, content=data, accept=(308,))
        return chunk.index

    def commit_chunked(self, handle: Dict[str, Any], tokens: List[int]):
        """Nothing to do: the final chunk completes the upload."""

    def abort_chunked(self, handle: Dict[str, Any]):
        self._request('DELETE', handle['session_uri'], accept=(404, 499))

    def list_objects(self) -> List[RemoteObject]:
        query = {
            'q': f"'{self.folder_id}' in parents and trashed = false",
            'fields': 'nextPageToken,files(id,name,size,modifiedTime)',
            'pageSize': '1000',
        }
        objects: List[RemoteObject] = []

        while True:
            url = f"{FILES_URL}?{urlencode(query)}"
            data = self._request('GET', url).json()
            for item in data.get('files', []):
                objects.append(RemoteObject(
                    name=item.get('name', ''),
                    size_bytes=int(item.get('size') or 0),
                    modified_at=parse_timestamp(item.get('modifiedTime')),
                    id=item.get('id'),
                ))
            if not data.get('nextPageToken'):
                break
            query['pageToken'] = data['nextPageToken']

        return objects

    def delete_object(self, obj: RemoteObject):
        self._request('DELETE', f"{FILES_URL}/{rawurlencode(obj.id or '')}", accept=(404,))

    def fetch_usage(self) -> Optional[StorageUsage]:
        data = self._request('GET', f"{ABOUT_URL}?fields=storageQuota").json()
        quota = data.get('storageQuota') or {}
        if not quota:
            return None
        limit = quota.get('limit')
        return StorageUsage(
            used_bytes=int(quota['usage']) if quota.get('usage') is not None else None,
            quota_bytes=int(limit) if limit is not None else None,
        )

    def test_connection(self):
        self._request('GET', f"{ABOUT_URL}?fields=user")
