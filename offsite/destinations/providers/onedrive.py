"""OneDrive provider (Microsoft Graph)."""

from typing import List, Optional

from ..signing import BearerSigner, rawurlencode
from ..types import RemoteObject, StorageUsage
from .base import Provider, join_key, parse_timestamp


GRAPH_URL = 'https://graph.microsoft.com/v1.0'
LIST_FIELDS = 'id,name,size,file,lastModifiedDateTime'


class OneDriveProvider(Provider):
    """Single-shot PUT uploads into a OneDrive folder."""

    provider_id = 'onedrive'
    label = 'Microsoft OneDrive'
    required_settings = ('access_token',)
    report_quota = True

    def signer(self) -> BearerSigner:
        return BearerSigner(lambda: self.settings.get('access_token'))

    @property
    def drive_url(self) -> str:
        drive_id = (self.settings.get('drive_id') or '').strip()
        if drive_id:
            return f"{GRAPH_URL}/drives/{rawurlencode(drive_id)}"
        return f"{GRAPH_URL}/me/drive"

    @property
    def folder(self) -> str:
        return (self.settings.get('folder') or '').strip('/')

    def _get(self, url: str, accept=()):
        return self.transport.request('GET', url, headers=self.signer().sign('GET', url), accept=accept)

    def upload_single(self, local_path: str, remote_name: str, size: int):
        with open(local_path, 'rb') as f:
            body = f.read()

        path = rawurlencode(join_key(self.folder, remote_name), keep='/')
        url = f"{self.drive_url}/root:/{path}:/content"
        headers = self.signer().sign('PUT', url, {'Content-Type': 'application/zip'})
        self.transport.request('PUT', url, headers=headers, content=body)

    def list_objects(self) -> List[RemoteObject]:
        if self.folder:
            url = f"{self.drive_url}/root:/{rawurlencode(self.folder, keep='/')}:/children?$select={LIST_FIELDS}"
        else:
            url = f"{self.drive_url}/root/children?$select={LIST_FIELDS}"

        objects: List[RemoteObject] = []
        while url:
            data = self._get(url).json()
            for item in data.get('value', []):
                if 'file' not in item:
                    continue
                objects.append(RemoteObject(
                    name=item.get('name', ''),
                    size_bytes=int(item.get('size') or 0),
                    modified_at=parse_timestamp(item.get('lastModifiedDateTime')),
                    id=item.get('id'),
                ))
            url = data.get('@odata.nextLink')

        return objects

    def delete_object(self, obj: RemoteObject):
        url = f"{self.drive_url}/items/{rawurlencode(obj.id or '')}"
        headers = self.signer().sign('DELETE', url)
        self.transport.request('DELETE', url, headers=headers, accept=(404,))

    def fetch_usage(self) -> Optional[StorageUsage]:
        quota = self._get(self.drive_url).json().get('quota') or {}
        if not quota:
            return None
        return StorageUsage(
            used_bytes=quota.get('used'),
            quota_bytes=quota.get('total'),
            free_bytes=quota.get('remaining'),
        )

    def test_connection(self):
        self._get(self.drive_url)
