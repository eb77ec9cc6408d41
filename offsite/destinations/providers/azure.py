"""Azure Blob Storage provider (block blobs, SharedKey auth)."""

import base64
from typing import Dict, List, Optional
from urllib.parse import urlencode

from ..chunking import Chunk
from ..signing import SharedKeySigner, rawurlencode
from ..types import RemoteObject
from .base import MB, Provider, int_setting, join_key, parse_timestamp, parse_xml


def block_id(index: int) -> str:
    """Block ids must all have the same length, so the index is zero-padded."""
    return base64.b64encode(f"block-{index:010d}".encode()).decode()


def block_list_xml(block_ids: List[str]) -> bytes:
    latest = ''.join(f"<Latest>{bid}</Latest>" for bid in block_ids)
    return f'<?xml version="1.0" encoding="utf-8"?><BlockList>{latest}</BlockList>'.encode()


class AzureBlobProvider(Provider):
    """
    Azure Blob adapter.

    Non-empty archives are always uploaded as blocks and committed with a
    block list, so a failed block can be retried on its own.
    """

    provider_id = 'azure_blob'
    label = 'Azure Blob Storage'
    required_settings = ('account_name', 'account_key', 'container')
    api_version = '2023-08-03'

    @property
    def chunk_size(self) -> int:
        return max(1, int_setting(self.settings, 'chunk_size_mb', 4)) * MB

    def signer(self) -> SharedKeySigner:
        return SharedKeySigner(self.settings.get('account_name'), self.settings.get('account_key'),
                               api_version=self.api_version)

    def url(self, key: str = '', query: Optional[Dict[str, str]] = None) -> str:
        use_https = self.settings.get('use_https', True) not in (False, 'false', '0', 0)
        scheme = 'https' if use_https else 'http'
        suffix = self.settings.get('endpoint_suffix') or 'core.windows.net'
        host = f"{self.settings.get('account_name')}.blob.{suffix}"
        path = '/' + str(self.settings.get('container') or '').strip('/')
        if key:
            path += '/' + rawurlencode(key, keep='/')
        url = f"{scheme}://{host}{path}"
        if query:
            url += '?' + urlencode(query, quote_via=lambda value, *args: rawurlencode(value))
        return url

    def _send(self, method: str, url: str, body: Optional[bytes] = None,
              headers: Optional[Dict[str, str]] = None, accept=()):
        headers = dict(headers or {})
        headers.setdefault('Content-Length', str(len(body or b'')))
        signed = self.signer().sign(method, url, headers, body, self.now())
        return self.transport.request(method, url, headers=signed, content=body, accept=accept)

    def key_for(self, remote_name: str) -> str:
        return join_key(self.settings.get('object_prefix'), remote_name)

    def should_chunk(self, size: int) -> bool:
        return size > 0

    def upload_single(self, local_path: str, remote_name: str, size: int):
        with open(local_path, 'rb') as f:
            body = f.read()
        self._send('PUT', self.url(self.key_for(remote_name)), body, {
            'x-ms-blob-type': 'BlockBlob',
            'Content-Type': 'application/zip',
        })

    def begin_chunked(self, remote_name: str, size: int) -> str:
        # Uncommitted blocks need no session; the blob key is the handle
        return self.key_for(remote_name)

    def upload_chunk(self, handle: str, chunk: Chunk, data: bytes, total_size: int) -> str:
        bid = block_id(chunk.index)
        self._send('PUT', self.url(handle, {'comp': 'block', 'blockid': bid}), data, {
            'Content-Type': 'application/octet-stream',
        })
        return bid

    def commit_chunked(self, handle: str, tokens: List[str]):
        self._send('PUT', self.url(handle, {'comp': 'blocklist'}), block_list_xml(tokens), {
            'Content-Type': 'application/xml',
            'x-ms-blob-content-type': 'application/zip',
        })

    def list_objects(self) -> List[RemoteObject]:
        prefix = str(self.settings.get('object_prefix') or '').strip('/')
        objects: List[RemoteObject] = []
        marker = ''

        while True:
            query = {'restype': 'container', 'comp': 'list'}
            if prefix:
                query['prefix'] = prefix + '/'
            if marker:
                query['marker'] = marker
            response = self._send('GET', self.url('', query))
            root = parse_xml(response.text)

            for blob in root.iter('Blob'):
                key = blob.findtext('Name') or ''
                objects.append(RemoteObject(
                    name=key.rsplit('/', 1)[-1],
                    size_bytes=int(blob.findtext('Properties/Content-Length') or 0),
                    modified_at=parse_timestamp(blob.findtext('Properties/Last-Modified')),
                    id=key,
                    key=key,
                ))

            marker = root.findtext('NextMarker') or ''
            if not marker:
                break

        return objects

    def locate(self, name: str) -> Optional[RemoteObject]:
        return RemoteObject(name=name, key=self.key_for(name))

    def delete_object(self, obj: RemoteObject):
        self._send('DELETE', self.url(obj.key or self.key_for(obj.name)), accept=(404,))

    def test_connection(self):
        self._send('GET', self.url('', {'restype': 'container'}))
