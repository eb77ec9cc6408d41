"""Dropbox provider (API v2, bearer token)."""

import json
from typing import Any, Dict, List, Optional

from ..errors import TransferError
from ..signing import BearerSigner
from ..types import RemoteObject, StorageUsage
from .base import Provider, parse_timestamp


CONTENT_URL = 'https://content.dropboxapi.com/2'
API_URL = 'https://api.dropboxapi.com/2'


def normalize_folder(path: Optional[str]) -> str:
    """Dropbox paths start with a slash; the root folder is ''."""
    path = (path or '').strip().strip('/')
    return f"/{path}" if path else ''


class DropboxProvider(Provider):
    """Single-shot uploads to a Dropbox folder."""

    provider_id = 'dropbox'
    label = 'Dropbox'
    required_settings = ('access_token',)
    report_quota = True

    def signer(self) -> BearerSigner:
        return BearerSigner(lambda: self.settings.get('access_token'))

    @property
    def folder(self) -> str:
        return normalize_folder(self.settings.get('remote_path'))

    def path_for(self, remote_name: str) -> str:
        return f"{self.folder}/{remote_name}"

    def _rpc(self, endpoint: str, payload: Any = None) -> Dict[str, Any]:
        url = f"{API_URL}/{endpoint}"
        headers = self.signer().sign('POST', url, {'Content-Type': 'application/json'})
        response = self.transport.request('POST', url, headers=headers, content=json.dumps(payload).encode())
        return response.json() if response.content else {}

    def upload_single(self, local_path: str, remote_name: str, size: int):
        with open(local_path, 'rb') as f:
            body = f.read()

        url = f"{CONTENT_URL}/files/upload"
        api_arg = {
            'path': self.path_for(remote_name),
            'mode': 'overwrite',
            'mute': True,
            'strict_conflict': False,
        }
        headers = self.signer().sign('POST', url, {
            'Content-Type': 'application/octet-stream',
            'Dropbox-API-Arg': json.dumps(api_arg),
        })
        self.transport.request('POST', url, headers=headers, content=body)

    def list_objects(self) -> List[RemoteObject]:
        objects: List[RemoteObject] = []
        data = self._rpc('files/list_folder', {
            'path': self.folder,
            'recursive': False,
            'include_deleted': False,
        })

        while True:
            for entry in data.get('entries', []):
                if entry.get('.tag') != 'file':
                    continue
                objects.append(RemoteObject(
                    name=entry.get('name', ''),
                    size_bytes=int(entry.get('size') or 0),
                    modified_at=parse_timestamp(entry.get('client_modified') or entry.get('server_modified')),
                    id=entry.get('id'),
                    key=entry.get('path_lower') or entry.get('path_display'),
                ))
            if not data.get('has_more'):
                break
            data = self._rpc('files/list_folder/continue', {'cursor': data['cursor']})

        return objects

    def locate(self, name: str) -> Optional[RemoteObject]:
        return RemoteObject(name=name, key=self.path_for(name))

    def delete_object(self, obj: RemoteObject):
        try:
            self._rpc('files/delete_v2', {'path': obj.key or self.path_for(obj.name)})
        except TransferError as e:
            # Dropbox reports a missing path as 409 path_lookup/not_found
            if e.http_status == 409 and 'not_found' in e.message:
                return
            raise

    def fetch_usage(self) -> Optional[StorageUsage]:
        data = self._rpc('users/get_space_usage')
        allocation = data.get('allocation') or {}
        quota = allocation.get('allocated')
        return StorageUsage(
            used_bytes=int(data['used']) if data.get('used') is not None else None,
            quota_bytes=int(quota) if quota is not None else None,
        )

    def test_connection(self):
        self._rpc('users/get_current_account')
