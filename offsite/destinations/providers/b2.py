"""Backblaze B2 provider (native API v2)."""

import hashlib
import logging
from typing import Any, Dict, List, Optional

from ..chunking import Chunk
from ..errors import TransferError
from ..signing import BasicSigner, BearerSigner, rawurlencode
from ..types import RemoteObject, StorageUsage
from .base import MB, Provider, int_setting, join_key


logger = logging.getLogger(__name__)

AUTHORIZE_URL = 'https://api.backblazeb2.com/b2api/v2/b2_authorize_account'
AUTH_TTL = 86400
MIN_PART_SIZE = 5 * MB


def encode_file_name(name: str) -> str:
    return rawurlencode(name, keep='/')


def _positive_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 0 else None


class BackblazeB2Provider(Provider):
    """
    Backblaze B2 adapter.

    Files up to one chunk are sent with b2_upload_file; larger files use the
    large-file flow (start, upload parts with SHA-1, finish).
    """

    provider_id = 'backblaze_b2'
    label = 'Backblaze B2'
    required_settings = ('key_id', 'application_key', 'bucket_id')

    def __init__(self, settings=None, transport=None, clock=None):
        super().__init__(settings, transport, clock)
        self._auth: Optional[Dict[str, Any]] = None

    @property
    def chunk_size(self) -> int:
        return max(MIN_PART_SIZE, int_setting(self.settings, 'chunk_size_mb', 100) * MB)

    def authorize(self) -> Dict[str, Any]:
        """Authorize the account, reusing the token for a day."""
        if self._auth and self._auth.get('expires_at', 0) > self.now():
            return self._auth

        signer = BasicSigner(self.settings.get('key_id'), self.settings.get('application_key'))
        response = self.transport.request('GET', AUTHORIZE_URL, headers=signer.sign('GET', AUTHORIZE_URL))
        data = response.json()
        if not data.get('authorizationToken') or not data.get('apiUrl'):
            raise TransferError(response.status_code, "Backblaze authorization failed")

        data['expires_at'] = self.now() + AUTH_TTL
        self._auth = data
        logger.debug("Authorized Backblaze account %s", data.get('accountId'))
        return data

    def _api(self, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        auth = self.authorize()
        url = f"{auth['apiUrl'].rstrip('/')}/b2api/v2/{operation}"
        signer = BearerSigner(lambda: auth['authorizationToken'], scheme=None)
        try:
            response = self.transport.request('POST', url, headers=signer.sign('POST', url), json=payload)
        except TransferError as e:
            if e.http_status == 401:
                # Expired token; authorize again on the next call
                self._auth = None
            raise
        return response.json()

    def key_for(self, remote_name: str) -> str:
        return join_key(self.settings.get('object_prefix'), remote_name)

    def should_chunk(self, size: int) -> bool:
        return size > self.chunk_size

    def upload_single(self, local_path: str, remote_name: str, size: int):
        with open(local_path, 'rb') as f:
            body = f.read()

        target = self._api('b2_get_upload_url', {'bucketId': self.settings['bucket_id']})
        signer = BearerSigner(lambda: target['authorizationToken'], scheme=None)
        headers = signer.sign('POST', target['uploadUrl'], {
            'X-Bz-File-Name': encode_file_name(self.key_for(remote_name)),
            'Content-Type': 'application/zip',
            'Content-Length': str(len(body)),
            'X-Bz-Content-Sha1': hashlib.sha1(body).hexdigest(),
        })
        self.transport.request('POST', target['uploadUrl'], headers=headers, content=body)

    def begin_chunked(self, remote_name: str, size: int) -> Dict[str, Any]:
        data = self._api('b2_start_large_file', {
            'bucketId': self.settings['bucket_id'],
            'fileName': self.key_for(remote_name),
            'contentType': 'application/zip',
            'fileInfo': {'src_size': str(size)},
        })
        if not data.get('fileId'):
            raise TransferError(0, "b2_start_large_file returned no fileId")
        return {'file_id': data['fileId']}

    def upload_chunk(self, handle: Dict[str, Any], chunk: Chunk, data: bytes, total_size: int) -> str:
        sha1 = hashlib.sha1(data).hexdigest()
        target = self._api('b2_get_upload_part_url', {'fileId': handle['file_id']})
        signer = BearerSigner(lambda: target['authorizationToken'], scheme=None)
        headers = signer.sign('POST', target['uploadUrl'], {
            'X-Bz-Part-Number': str(chunk.index + 1),
            'Content-Length': str(len(data)),
            'X-Bz-Content-Sha1': sha1,
        })
        self.transport.request('POST', target['uploadUrl'], headers=headers, content=data)
        return sha1

    def commit_chunked(self, handle: Dict[str, Any], tokens: List[str]):
        self._api('b2_finish_large_file', {'fileId': handle['file_id'], 'partSha1Array': tokens})

    def abort_chunked(self, handle: Dict[str, Any]):
        self._api('b2_cancel_large_file', {'fileId': handle['file_id']})

    def list_objects(self) -> List[RemoteObject]:
        prefix = str(self.settings.get('object_prefix') or '').strip('/')
        payload: Dict[str, Any] = {
            'bucketId': self.settings['bucket_id'],
            'prefix': f"{prefix}/" if prefix else '',
            'maxFileCount': 1000,
        }
        objects: List[RemoteObject] = []

        while True:
            data = self._api('b2_list_file_names', payload)
            for item in data.get('files', []):
                if item.get('action', 'upload') != 'upload':
                    continue
                name = item.get('fileName', '')
                objects.append(RemoteObject(
                    name=name.rsplit('/', 1)[-1],
                    size_bytes=int(item.get('contentLength') or 0),
                    modified_at=int(item.get('uploadTimestamp') or 0) // 1000,
                    id=item.get('fileId'),
                    key=name,
                ))
            if not data.get('nextFileName'):
                break
            payload['startFileName'] = data['nextFileName']

        return objects

    def delete_object(self, obj: RemoteObject):
        self._api('b2_delete_file_version', {'fileName': obj.key or self.key_for(obj.name), 'fileId': obj.id})

    def fetch_usage(self) -> Optional[StorageUsage]:
        auth = self.authorize()
        payload = {'bucketId': self.settings['bucket_id']}
        if auth.get('accountId'):
            payload['accountId'] = auth['accountId']
        data = self._api('b2_get_usage', payload)

        used = quota = free = None
        storage = data.get('storage') or {}
        for bucket in storage.get('buckets') or []:
            if bucket.get('bucketId') and bucket['bucketId'] != self.settings['bucket_id']:
                continue
            used = _positive_int(bucket.get('currentValue', bucket.get('usage')))
            quota = _positive_int(bucket.get('limit', bucket.get('quota')))
            free = _positive_int(bucket.get('remaining'))
            break

        if used is None:
            used = _positive_int(storage.get('currentValue', data.get('usageInBytes')))
        if quota is None:
            quota = _positive_int(storage.get('limit'))
        if free is None:
            free = _positive_int(storage.get('remaining'))
        if quota is None and used is not None and free is not None:
            quota = used + free

        if used is None and quota is None and free is None:
            return None
        return StorageUsage(used_bytes=used, quota_bytes=quota, free_bytes=free)

    def test_connection(self):
        self.authorize()
