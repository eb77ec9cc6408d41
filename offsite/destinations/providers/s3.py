"""
S3-family providers: Amazon S3, Wasabi and generic S3-compatible storage.

The three services share one adapter; they differ only in how the endpoint
host is derived, which is expressed as a profile.
"""

import logging
from typing import Dict, List, Optional
from urllib.parse import urlencode

from ..chunking import Chunk
from ..errors import TransferError
from ..signing import SigV4Signer, rawurlencode
from ..types import RemoteObject
from .base import MB, Provider, int_setting, join_key, parse_timestamp, parse_xml


logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * MB

S3_PROFILES: Dict[str, Dict[str, str]] = {
    'aws_s3': {'label': 'Amazon S3', 'endpoint': ''},
    'wasabi': {'label': 'Wasabi', 'endpoint': 's3.{region}.wasabisys.com'},
    's3': {'label': 'S3-compatible storage', 'endpoint': ''},
}


class S3Provider(Provider):
    """
    S3 protocol adapter signed with SigV4.

    Settings:
        access_key, secret_key, bucket: required
        region: default us-east-1
        endpoint: custom host (S3-compatible), scheme optional
        endpoint_scheme: 'https' (default) or 'http'
        use_path_style_endpoint: address the bucket as https://endpoint/bucket
        object_prefix: key prefix for archives
        multipart_threshold_mb: default 128
        multipart_chunk_mb: default 16 (never below 5)
    """

    required_settings = ('access_key', 'secret_key', 'bucket')

    def __init__(self, settings=None, transport=None, clock=None, provider_id: str = 'aws_s3'):
        super().__init__(settings, transport, clock)
        profile = S3_PROFILES.get(provider_id, S3_PROFILES['s3'])
        self.provider_id = provider_id
        self.label = profile['label']
        self._profile_endpoint = profile['endpoint']

    @property
    def region(self) -> str:
        return (self.settings.get('region') or 'us-east-1').strip()

    @property
    def bucket(self) -> str:
        return (self.settings.get('bucket') or '').strip()

    @property
    def prefix(self) -> str:
        return self.settings.get('object_prefix') or ''

    @property
    def chunk_size(self) -> int:
        return max(MIN_PART_SIZE, int_setting(self.settings, 'multipart_chunk_mb', 16) * MB)

    @property
    def multipart_threshold(self) -> int:
        return int_setting(self.settings, 'multipart_threshold_mb', 128) * MB

    def signer(self) -> SigV4Signer:
        return SigV4Signer(
            self.settings.get('access_key'),
            self.settings.get('secret_key'),
            region=self.region,
            service='s3',
            session_token=self.settings.get('session_token') or None,
        )

    @property
    def path_style(self) -> bool:
        value = self.settings.get('use_path_style_endpoint')
        return value not in (None, '', False, 'false', '0', 0)

    def _endpoint(self) -> str:
        endpoint = (self.settings.get('endpoint') or '').strip()
        if not endpoint and self._profile_endpoint:
            endpoint = self._profile_endpoint.format(region=self.region)
        for scheme in ('https://', 'http://'):
            if endpoint.startswith(scheme):
                endpoint = endpoint[len(scheme):]
        return endpoint.strip('/')

    def host(self) -> str:
        """Host used for requests and signing."""
        endpoint = self._endpoint()
        if endpoint:
            if self.path_style or endpoint.startswith(self.bucket + '.'):
                return endpoint
            return f"{self.bucket}.{endpoint}"
        if self.region == 'us-east-1':
            return f"{self.bucket}.s3.amazonaws.com"
        return f"{self.bucket}.s3.{self.region}.amazonaws.com"

    def url(self, key: str = '', query: Optional[Dict[str, str]] = None) -> str:
        scheme = (self.settings.get('endpoint_scheme') or 'https').lower()
        if scheme not in ('http', 'https'):
            scheme = 'https'
        path = '/' + rawurlencode(key, keep='/') if key else '/'
        if self.path_style and self._endpoint():
            path = f"/{self.bucket}{path}"
        url = f"{scheme}://{self.host()}{path}"
        if query is not None:
            url += '?' + urlencode(query, quote_via=lambda value, *args: rawurlencode(value))
        return url

    def _send(self, method: str, url: str, body: Optional[bytes] = None,
              headers: Optional[Dict[str, str]] = None, accept=()):
        signed = self.signer().sign(method, url, headers or {}, body, self.now())
        return self.transport.request(method, url, headers=signed, content=body, accept=accept)

    def key_for(self, remote_name: str) -> str:
        return join_key(self.prefix, remote_name)

    def upload_single(self, local_path: str, remote_name: str, size: int):
        with open(local_path, 'rb') as f:
            body = f.read()
        self._send('PUT', self.url(self.key_for(remote_name)), body,
                   {'Content-Type': 'application/zip'})

    def should_chunk(self, size: int) -> bool:
        return size >= self.multipart_threshold

    def begin_chunked(self, remote_name: str, size: int) -> Dict[str, str]:
        key = self.key_for(remote_name)
        response = self._send('POST', self.url(key, {'uploads': ''}), b'',
                              {'Content-Type': 'application/zip'})
        root = parse_xml(response.text)
        upload_id = root.findtext('UploadId')
        if not upload_id:
            raise TransferError(response.status_code, "Multipart upload id missing from response")
        return {'key': key, 'upload_id': upload_id}

    def upload_chunk(self, handle: Dict[str, str], chunk: Chunk, data: bytes, total_size: int) -> str:
        url = self.url(handle['key'], {'partNumber': str(chunk.index + 1), 'uploadId': handle['upload_id']})
        response = self._send('PUT', url, data)
        etag = response.headers.get('etag')
        if not etag:
            raise TransferError(response.status_code, f"ETag missing for part {chunk.index + 1}")
        return etag

    def commit_chunked(self, handle: Dict[str, str], tokens: List[str]):
        parts = ''.join(
            f"<Part><PartNumber>{number}</PartNumber><ETag>{etag}</ETag></Part>"
            for number, etag in enumerate(tokens, start=1)
        )
        body = f"<CompleteMultipartUpload>{parts}</CompleteMultipartUpload>".encode()
        response = self._send('POST', self.url(handle['key'], {'uploadId': handle['upload_id']}), body,
                              {'Content-Type': 'application/xml'})
        # S3 can report a failed completion inside a 200 response
        if '<Error>' in response.text:
            raise TransferError(response.status_code, response.text)

    def abort_chunked(self, handle: Dict[str, str]):
        self._send('DELETE', self.url(handle['key'], {'uploadId': handle['upload_id']}), accept=(404,))

    def list_objects(self) -> List[RemoteObject]:
        prefix = self.prefix.strip('/')
        prefix = f"{prefix}/" if prefix else ''
        objects: List[RemoteObject] = []
        token = None

        while True:
            query = {'list-type': '2', 'prefix': prefix}
            if token:
                query['continuation-token'] = token
            response = self._send('GET', self.url('', query))
            root = parse_xml(response.text)

            for item in root.findall('Contents'):
                key = item.findtext('Key') or ''
                objects.append(RemoteObject(
                    name=key.rsplit('/', 1)[-1],
                    size_bytes=int(item.findtext('Size') or 0),
                    modified_at=parse_timestamp(item.findtext('LastModified')),
                    key=key,
                ))

            token = root.findtext('NextContinuationToken')
            if (root.findtext('IsTruncated') or '').lower() != 'true' or not token:
                break

        return objects

    def locate(self, name: str) -> Optional[RemoteObject]:
        # Keys are deterministic, so no listing is needed
        return RemoteObject(name=name, key=self.key_for(name))

    def delete_object(self, obj: RemoteObject):
        self._send('DELETE', self.url(obj.key or self.key_for(obj.name)), accept=(404,))

    def test_connection(self):
        self._send('GET', self.url('', {'list-type': '2', 'max-keys': '1'}))
