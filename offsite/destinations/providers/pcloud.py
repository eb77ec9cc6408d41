"""pCloud provider."""

from typing import Any, Dict, List, Optional

from ..errors import TransferError
from ..signing import BearerSigner
from ..types import RemoteObject, StorageUsage
from .base import Provider, parse_timestamp


# pCloud error code for a missing file
FILE_NOT_FOUND = 2009


def normalize_folder(path: Optional[str]) -> str:
    path = (path or '').strip().strip('/')
    return f"/{path}" if path else ''


def _check(data: Dict[str, Any], http_status: int) -> Dict[str, Any]:
    result = int(data.get('result') or 0)
    if result != 0:
        raise TransferError(http_status, str(data.get('error') or f"pCloud error {result}"), code=result)
    return data


class PCloudProvider(Provider):
    """
    Single-shot uploads to a pCloud folder.

    API errors come back as HTTP 200 with a non-zero `result`; they are
    raised as TransferError with the status of the response.
    """

    provider_id = 'pcloud'
    label = 'pCloud'
    required_settings = ('access_token',)
    report_quota = True

    def signer(self) -> BearerSigner:
        return BearerSigner(lambda: self.settings.get('access_token'))

    @property
    def api_url(self) -> str:
        return f"https://{self.settings.get('api_host') or 'api.pcloud.com'}"

    @property
    def folder(self) -> str:
        return normalize_folder(self.settings.get('folder'))

    def path_for(self, remote_name: str) -> str:
        return f"{self.folder}/{remote_name}"

    def _api(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.api_url}/{method}"
        headers = self.signer().sign('POST', url, {'Content-Type': 'application/json'})
        response = self.transport.request('POST', url, headers=headers, json=payload)
        return _check(response.json(), response.status_code)

    def upload_single(self, local_path: str, remote_name: str, size: int):
        with open(local_path, 'rb') as f:
            body = f.read()

        url = f"{self.api_url}/uploadfile"
        headers = self.signer().sign('POST', url, {
            'Content-Type': 'application/octet-stream',
            'X-PCloud-Path': self.path_for(remote_name),
            'X-PCloud-Overwrite': '1',
        })
        response = self.transport.request('POST', url, headers=headers, content=body)
        _check(response.json(), response.status_code)

    def list_objects(self) -> List[RemoteObject]:
        data = self._api('listfolder', {'path': self.folder or '/', 'recursive': 0})
        objects = []
        for entry in (data.get('metadata') or {}).get('contents') or []:
            if entry.get('isfolder'):
                continue
            path = entry.get('path') or self.path_for(entry.get('name', ''))
            objects.append(RemoteObject(
                name=path.rsplit('/', 1)[-1],
                size_bytes=int(entry.get('size') or 0),
                modified_at=parse_timestamp(entry.get('modified')),
                id=str(entry['fileid']) if entry.get('fileid') is not None else None,
                key=path,
            ))
        return objects

    def locate(self, name: str) -> Optional[RemoteObject]:
        return RemoteObject(name=name, key=self.path_for(name))

    def delete_object(self, obj: RemoteObject):
        payload = {'fileid': obj.id} if obj.id else {'path': obj.key or self.path_for(obj.name)}
        try:
            self._api('deletefile', payload)
        except TransferError as e:
            if e.code == FILE_NOT_FOUND:
                return
            raise

    def fetch_usage(self) -> Optional[StorageUsage]:
        data = self._api('userinfo', {})
        if data.get('quota') is None and data.get('usedquota') is None:
            return None
        return StorageUsage(used_bytes=data.get('usedquota'), quota_bytes=data.get('quota'))

    def test_connection(self):
        self._api('userinfo', {})
