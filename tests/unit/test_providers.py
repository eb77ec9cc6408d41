"""
Unit tests for provider adapters (offsite/destinations/providers/).

HTTP providers are driven through httpx.MockTransport; SFTP patches the
paramiko SSHClient.
"""

import hashlib
import json
import socket
import stat
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import paramiko
import pytest

from offsite.destinations import build_destination
from offsite.destinations.errors import NotConfigured, TransferError, TransportError
from offsite.destinations.providers.azure import block_id
from offsite.destinations.providers.base import MB, is_backup_name, join_key, parse_timestamp
from offsite.destinations.transport import HttpTransport


class Recorder:
    """MockTransport handler that records requests and delegates to a responder."""

    def __init__(self, responder):
        self.responder = responder
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def transport(self) -> HttpTransport:
        return HttpTransport(transport=httpx.MockTransport(self))


def _write(tmp_path, name: str, size: int) -> str:
    path = tmp_path / name
    path.write_bytes((bytes(range(251)) * (size // 251 + 1))[:size])
    return str(path)


class TestBaseHelpers:
    """Test shared provider helpers."""

    def test_backup_names(self):
        """Test archive names with optional extra extension are recognised."""
        assert is_backup_name('site.zip')
        assert is_backup_name('site.ZIP.enc')
        assert not is_backup_name('site.tar.gz')
        assert not is_backup_name('')

    def test_join_key(self):
        """Test prefixes are joined with a single slash."""
        assert join_key('/backups/', 'a.zip') == 'backups/a.zip'
        assert join_key('', 'a.zip') == 'a.zip'

    def test_parse_timestamp(self):
        """Test ISO-8601, RFC 1123 and epoch values."""
        expected = int(datetime(2023, 11, 1, 10, tzinfo=timezone.utc).timestamp())

        assert parse_timestamp('2023-11-01T10:00:00Z') == expected
        assert parse_timestamp('Wed, 01 Nov 2023 10:00:00 GMT') == expected
        assert parse_timestamp('1698832800') == 1698832800
        assert parse_timestamp('not a date') == 0
        assert parse_timestamp(None) == 0

    def test_closing_destination_closes_own_http_client(self):
        """Test a destination closes the client its provider opened lazily."""
        clients = []
        for _ in range(3):
            with build_destination('dropbox', {'access_token': 'token'}) as destination:
                clients.append(destination.provider.transport._client)

        assert [client.is_closed for client in clients] == [True, True, True]

    def test_injected_transport_left_open(self):
        """Test a transport passed in by the caller is not closed by the destination."""
        transport = Recorder(lambda request: httpx.Response(200)).transport()

        with build_destination('dropbox', {'access_token': 'token'}, transport=transport) as destination:
            assert destination.provider.transport is transport

        assert transport._client.is_closed is False
        transport.close()


class TestTransport:
    """Test error mapping in HttpTransport."""

    def test_unexpected_status_raises_transfer_error(self):
        """Test a non-2xx status becomes TransferError with the provider message."""
        recorder = Recorder(lambda request: httpx.Response(
            403, text='<Error><Code>AccessDenied</Code><Message>Access Denied</Message></Error>'
        ))

        with pytest.raises(TransferError) as exc_info:
            recorder.transport().request('GET', 'https://h/x?token=secret')

        assert exc_info.value.http_status == 403
        assert exc_info.value.message == 'Access Denied'

    def test_accepted_status_is_returned(self):
        """Test statuses listed in accept are not errors."""
        recorder = Recorder(lambda request: httpx.Response(404))

        response = recorder.transport().request('DELETE', 'https://h/x', accept=(404,))

        assert response.status_code == 404

    def test_connection_error_raises_transport_error(self):
        """Test network failures become TransportError."""
        def refuse(request):
            raise httpx.ConnectError('connection refused', request=request)

        with pytest.raises(TransportError):
            Recorder(refuse).transport().request('GET', 'https://h/x')

    def test_timeout_raises_transport_error(self):
        """Test timeouts become TransportError."""
        def slow(request):
            raise httpx.ReadTimeout('timed out', request=request)

        with pytest.raises(TransportError, match='timed out'):
            Recorder(slow).transport().request('GET', 'https://h/x')


class TestS3Provider:
    """Test the S3-family adapter."""

    SETTINGS = {'access_key': 'AKID', 'secret_key': 'secret', 'bucket': 'my-bucket'}

    def _destination(self, recorder, destination_id='aws_s3', **settings):
        return build_destination(destination_id, dict(self.SETTINGS, **settings),
                                 clock=lambda: 1_700_000_000, transport=recorder.transport())

    def test_virtual_hosted_urls(self):
        """Test bucket host for default, regional and Wasabi endpoints."""
        recorder = Recorder(lambda request: httpx.Response(200))

        assert self._destination(recorder).provider.url('a.zip') == 'https://my-bucket.s3.amazonaws.com/a.zip'
        assert self._destination(recorder, region='eu-west-1').provider.url('a b.zip') == \
            'https://my-bucket.s3.eu-west-1.amazonaws.com/a%20b.zip'
        assert self._destination(recorder, 'wasabi', region='eu-central-1').provider.host() == \
            'my-bucket.s3.eu-central-1.wasabisys.com'

    def test_path_style_custom_endpoint(self):
        """Test path-style addressing puts the bucket in the path."""
        recorder = Recorder(lambda request: httpx.Response(200))
        destination = self._destination(recorder, 's3', endpoint='http://minio.local:9000',
                                        endpoint_scheme='http', use_path_style_endpoint=True)

        assert destination.provider.url('backups/a.zip') == 'http://minio.local:9000/my-bucket/backups/a.zip'

    def test_single_upload_is_signed(self, tmp_path):
        """Test small files are sent with one signed PUT."""
        recorder = Recorder(lambda request: httpx.Response(200))
        destination = self._destination(recorder, object_prefix='backups')

        destination.upload(_write(tmp_path, 'site.zip', 100))

        request = recorder.requests[0]
        assert request.method == 'PUT'
        assert request.url.path == '/backups/site.zip'
        assert request.headers['Authorization'].startswith('AWS4-HMAC-SHA256 Credential=AKID/')
        assert request.headers['X-Amz-Content-Sha256'] == hashlib.sha256(request.content).hexdigest()

    def test_multipart_upload(self, tmp_path):
        """Test large files go through initiate, part uploads and completion."""
        def respond(request):
            if 'uploads' in request.url.params:
                return httpx.Response(200, text=(
                    '<InitiateMultipartUploadResult><Bucket>my-bucket</Bucket>'
                    '<Key>site.zip</Key><UploadId>up-1</UploadId></InitiateMultipartUploadResult>'
                ))
            if 'partNumber' in request.url.params:
                return httpx.Response(200, headers={'ETag': f'"etag-{request.url.params["partNumber"]}"'})
            return httpx.Response(200, text='<CompleteMultipartUploadResult/>')

        recorder = Recorder(respond)
        destination = self._destination(recorder, multipart_threshold_mb=5, multipart_chunk_mb=5)

        destination.upload(_write(tmp_path, 'site.zip', 11 * MB))

        parts = [r for r in recorder.requests if 'partNumber' in r.url.params]
        assert [r.url.params['partNumber'] for r in parts] == ['1', '2', '3']
        assert all(r.url.params['uploadId'] == 'up-1' for r in parts)
        complete = recorder.requests[-1]
        assert complete.method == 'POST'
        assert b'<PartNumber>3</PartNumber><ETag>"etag-3"</ETag>' in complete.content

    def test_completion_error_in_200_response(self, tmp_path):
        """Test an <Error> body on a 200 completion is treated as failure."""
        def respond(request):
            if 'uploads' in request.url.params:
                return httpx.Response(200, text='<InitiateMultipartUploadResult><UploadId>up-1</UploadId>'
                                                '</InitiateMultipartUploadResult>')
            if 'partNumber' in request.url.params:
                return httpx.Response(200, headers={'ETag': '"e"'})
            return httpx.Response(200, text='<Error><Code>InternalError</Code></Error>')

        destination = self._destination(Recorder(respond), multipart_threshold_mb=5, multipart_chunk_mb=5)

        with pytest.raises(TransferError):
            destination.upload(_write(tmp_path, 'site.zip', 6 * MB))

    def test_list_follows_continuation(self):
        """Test paginated listings are followed to the end."""
        pages = {
            None: ('<ListBucketResult><IsTruncated>true</IsTruncated>'
                   '<NextContinuationToken>page-2</NextContinuationToken>'
                   '<Contents><Key>backups/a.zip</Key><Size>10</Size>'
                   '<LastModified>2023-11-01T10:00:00.000Z</LastModified></Contents></ListBucketResult>'),
            'page-2': ('<ListBucketResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
                       '<IsTruncated>false</IsTruncated>'
                       '<Contents><Key>backups/b.zip</Key><Size>20</Size></Contents></ListBucketResult>'),
        }
        recorder = Recorder(lambda request: httpx.Response(
            200, text=pages[request.url.params.get('continuation-token')]
        ))
        destination = self._destination(recorder, object_prefix='backups')

        objects = destination.list_remote_backups()

        assert [(obj.name, obj.key, obj.size_bytes) for obj in objects] == [
            ('a.zip', 'backups/a.zip', 10), ('b.zip', 'backups/b.zip', 20),
        ]
        assert recorder.requests[0].url.params['prefix'] == 'backups/'

    def test_delete_missing_key_succeeds(self):
        """Test a 404 on delete is success."""
        recorder = Recorder(lambda request: httpx.Response(404))

        assert self._destination(recorder).delete_remote_backup_by_name('a.zip').success is True
        assert recorder.requests[0].method == 'DELETE'


class TestAzureBlobProvider:
    """Test the Azure Blob adapter."""

    SETTINGS = {
        'account_name': 'account',
        'account_key': 'YXp1cmUta2V5',
        'container': 'backups',
        'object_prefix': 'site',
        'chunk_size_mb': 1,
    }

    def _destination(self, recorder):
        return build_destination('azure_blob', dict(self.SETTINGS), clock=lambda: 1_700_000_000,
                                 transport=recorder.transport())

    def test_block_upload_and_commit(self, tmp_path):
        """Test each block is put with a fixed-length id and committed in order."""
        recorder = Recorder(lambda request: httpx.Response(201))
        destination = self._destination(recorder)

        destination.upload(_write(tmp_path, 'a.zip', int(2.5 * MB)))

        blocks = [r for r in recorder.requests if r.url.params.get('comp') == 'block']
        assert [r.url.params['blockid'] for r in blocks] == [block_id(0), block_id(1), block_id(2)]
        assert len({len(block_id(i)) for i in (0, 9, 12345)}) == 1
        commit = recorder.requests[-1]
        assert commit.url.params['comp'] == 'blocklist'
        assert commit.url.path == '/backups/site/a.zip'
        assert commit.content.decode().count('<Latest>') == 3
        assert commit.content.decode().index(block_id(0)) < commit.content.decode().index(block_id(2))
        assert all(r.headers['Authorization'].startswith('SharedKey account:') for r in recorder.requests)

    def test_list_follows_next_marker(self):
        """Test listing continues while NextMarker is set."""
        pages = {
            None: ('<?xml version="1.0" encoding="utf-8"?><EnumerationResults><Blobs>'
                   '<Blob><Name>site/a.zip</Name><Properties>'
                   '<Last-Modified>Wed, 01 Nov 2023 10:00:00 GMT</Last-Modified>'
                   '<Content-Length>100</Content-Length></Properties></Blob>'
                   '</Blobs><NextMarker>m2</NextMarker></EnumerationResults>'),
            'm2': ('<?xml version="1.0" encoding="utf-8"?><EnumerationResults><Blobs>'
                   '<Blob><Name>site/b.zip</Name><Properties><Content-Length>5</Content-Length>'
                   '</Properties></Blob></Blobs><NextMarker /></EnumerationResults>'),
        }
        recorder = Recorder(lambda request: httpx.Response(200, text=pages[request.url.params.get('marker')]))

        objects = self._destination(recorder).list_remote_backups()

        assert [obj.name for obj in objects] == ['a.zip', 'b.zip']
        assert objects[0].modified_at == int(datetime(2023, 11, 1, 10, tzinfo=timezone.utc).timestamp())
        assert recorder.requests[0].url.params['prefix'] == 'site/'

    def test_delete_missing_blob_succeeds(self):
        """Test a 404 on delete is success."""
        recorder = Recorder(lambda request: httpx.Response(404))

        assert self._destination(recorder).delete_remote_backup_by_name('a.zip').success is True
        assert recorder.requests[0].url.path == '/backups/site/a.zip'


class TestBackblazeB2Provider:
    """Test the Backblaze B2 adapter."""

    SETTINGS = {'key_id': 'kid', 'application_key': 'appkey', 'bucket_id': 'bucket-1', 'chunk_size_mb': 5}

    def _respond(self, request):
        path = request.url.path
        if path.endswith('b2_authorize_account'):
            return httpx.Response(200, json={
                'authorizationToken': 'auth-token',
                'apiUrl': 'https://api001.backblazeb2.com',
                'accountId': 'acc',
            })
        if request.url.host == 'pod-000.backblaze.com':
            return httpx.Response(200, json={})
        if path.endswith('b2_start_large_file'):
            return httpx.Response(200, json={'fileId': 'file-1'})
        if path.endswith('b2_get_upload_part_url') or path.endswith('b2_get_upload_url'):
            return httpx.Response(200, json={
                'uploadUrl': 'https://pod-000.backblaze.com/b2api/v2/upload',
                'authorizationToken': 'upload-token',
            })
        if path.endswith('b2_list_file_names'):
            return httpx.Response(200, json={'files': [
                {'fileName': 'a.zip', 'fileId': 'id-a', 'contentLength': 10,
                 'uploadTimestamp': 1_700_000_000_000, 'action': 'upload'},
                {'fileName': 'old.zip', 'fileId': 'id-old', 'action': 'hide'},
            ]})
        return httpx.Response(200, json={})

    def _destination(self, recorder):
        return build_destination('backblaze_b2', dict(self.SETTINGS), clock=lambda: 1_700_000_000,
                                 transport=recorder.transport())

    def test_large_file_upload(self, tmp_path):
        """Test parts carry 1-based numbers and finish lists their SHA-1s in order."""
        recorder = Recorder(self._respond)
        path = _write(tmp_path, 'site.zip', 11 * MB)

        self._destination(recorder).upload(path)

        parts = [r for r in recorder.requests if r.url.host == 'pod-000.backblaze.com']
        assert [r.headers['X-Bz-Part-Number'] for r in parts] == ['1', '2', '3']
        assert all(r.headers['Authorization'] == 'upload-token' for r in parts)
        finish = recorder.requests[-1]
        assert finish.url.path.endswith('b2_finish_large_file')
        assert json.loads(finish.content)['partSha1Array'] == [
            hashlib.sha1(r.content).hexdigest() for r in parts
        ]
        authorizations = [r for r in recorder.requests if r.url.path.endswith('b2_authorize_account')]
        assert len(authorizations) == 1
        assert authorizations[0].headers['Authorization'].startswith('Basic ')

    def test_small_file_upload(self, tmp_path):
        """Test files up to one part use b2_upload_file with a SHA-1 header."""
        recorder = Recorder(self._respond)

        self._destination(recorder).upload(_write(tmp_path, 'site.zip', 100))

        upload = recorder.requests[-1]
        assert upload.headers['X-Bz-File-Name'] == 'site.zip'
        assert upload.headers['X-Bz-Content-Sha1'] == hashlib.sha1(upload.content).hexdigest()

    def test_list_skips_hidden_versions(self):
        """Test only live file versions are listed."""
        objects = self._destination(Recorder(self._respond)).list_remote_backups()

        assert [(obj.name, obj.id, obj.modified_at) for obj in objects] == [('a.zip', 'id-a', 1_700_000_000)]

    def test_unauthorized_clears_token(self):
        """Test a 401 forces a new authorization on the next call."""
        calls = {'list': 0}

        def respond(request):
            if request.url.path.endswith('b2_list_file_names'):
                calls['list'] += 1
                if calls['list'] == 1:
                    return httpx.Response(401, json={'code': 'expired_auth_token'})
            return self._respond(request)

        recorder = Recorder(respond)
        provider = self._destination(recorder).provider

        with pytest.raises(TransferError):
            provider.list_objects()
        provider.list_objects()

        authorizations = [r for r in recorder.requests if r.url.path.endswith('b2_authorize_account')]
        assert len(authorizations) == 2


class TestDropboxProvider:
    """Test the Dropbox adapter."""

    def _destination(self, recorder):
        return build_destination('dropbox', {'access_token': 'tok', 'remote_path': 'backups/'},
                                 clock=lambda: 1_700_000_000, transport=recorder.transport())

    def test_upload_api_arg(self, tmp_path):
        """Test the target path travels in the Dropbox-API-Arg header."""
        recorder = Recorder(lambda request: httpx.Response(200, json={}))

        self._destination(recorder).upload(_write(tmp_path, 'site.zip', 10))

        request = recorder.requests[0]
        assert request.url.host == 'content.dropboxapi.com'
        assert json.loads(request.headers['Dropbox-API-Arg'])['path'] == '/backups/site.zip'
        assert request.headers['Authorization'] == 'Bearer tok'

    def test_delete_not_found_is_success(self):
        """Test a 409 path_lookup/not_found delete counts as deleted."""
        def respond(request):
            if request.url.path.endswith('files/delete_v2'):
                return httpx.Response(409, json={
                    'error_summary': 'path_lookup/not_found/..',
                    'error': {'.tag': 'path_lookup', 'path_lookup': {'.tag': 'not_found'}},
                })
            return httpx.Response(200, json={'used': 40, 'allocation': {'allocated': 100}})

        result = self._destination(Recorder(respond)).delete_remote_backup_by_name('site.zip')

        assert result.success is True
        assert result.quota.used_bytes == 40
        assert result.quota.free_bytes == 60

    def test_delete_conflict_raises(self):
        """Test other 409 errors are failures."""
        recorder = Recorder(lambda request: httpx.Response(409, json={'error_summary': 'path_write/conflict/'}))

        with pytest.raises(TransferError):
            self._destination(recorder).delete_remote_backup_by_name('site.zip')

    def test_list_follows_cursor(self):
        """Test list_folder/continue is called while has_more is set."""
        def respond(request):
            if request.url.path.endswith('continue'):
                return httpx.Response(200, json={'entries': [
                    {'.tag': 'file', 'name': 'b.zip', 'size': 2, 'server_modified': '2023-11-01T10:00:00Z'},
                ], 'has_more': False})
            return httpx.Response(200, json={'entries': [
                {'.tag': 'file', 'name': 'a.zip', 'size': 1},
                {'.tag': 'folder', 'name': 'nested'},
            ], 'has_more': True, 'cursor': 'c1'})

        recorder = Recorder(respond)

        objects = self._destination(recorder).list_remote_backups()

        assert [obj.name for obj in objects] == ['a.zip', 'b.zip']
        assert json.loads(recorder.requests[1].content) == {'cursor': 'c1'}


class TestOneDriveProvider:
    """Test the OneDrive adapter."""

    def _destination(self, recorder):
        return build_destination('onedrive', {'access_token': 'tok', 'folder': 'Backups'},
                                 clock=lambda: 1_700_000_000, transport=recorder.transport())

    def _respond(self, request):
        url = str(request.url)
        if request.method == 'DELETE':
            return httpx.Response(404)
        if 'page2' in url:
            return httpx.Response(200, json={'value': [
                {'id': 'id-b', 'name': 'b.zip', 'size': 2, 'file': {}},
            ]})
        if 'children' in url:
            return httpx.Response(200, json={'value': [
                {'id': 'id-a', 'name': 'a.zip', 'size': 1, 'file': {},
                 'lastModifiedDateTime': '2023-11-01T10:00:00Z'},
                {'id': 'id-dir', 'name': 'nested', 'folder': {}},
            ], '@odata.nextLink': 'https://graph.microsoft.com/v1.0/me/drive/page2'})
        return httpx.Response(200, json={'quota': {'used': 10, 'total': 100, 'remaining': 90}})

    def test_list_follows_next_link(self):
        """Test folders are skipped and nextLink pages are followed."""
        objects = self._destination(Recorder(self._respond)).list_remote_backups()

        assert [(obj.name, obj.id) for obj in objects] == [('a.zip', 'id-a'), ('b.zip', 'id-b')]

    def test_delete_by_item_id(self):
        """Test delete resolves the item id and accepts 404."""
        recorder = Recorder(self._respond)

        result = self._destination(recorder).delete_remote_backup_by_name('b.zip')

        assert result.success is True
        deletes = [r for r in recorder.requests if r.method == 'DELETE']
        assert deletes[0].url.path == '/v1.0/me/drive/items/id-b'
        assert result.quota.quota_bytes == 100

    def test_delete_unknown_name_is_already_absent(self):
        """Test a name missing from the listing is reported as already absent."""
        recorder = Recorder(self._respond)

        result = self._destination(recorder).delete_remote_backup_by_name('zzz.zip')

        assert result.success is True
        assert not [r for r in recorder.requests if r.method == 'DELETE']

    def test_upload_path(self, tmp_path):
        """Test uploads PUT to the folder path."""
        recorder = Recorder(lambda request: httpx.Response(201, json={}))

        self._destination(recorder).upload(_write(tmp_path, 'site.zip', 10))

        assert recorder.requests[0].url.path == '/v1.0/me/drive/root:/Backups/site.zip:/content'


class TestPCloudProvider:
    """Test the pCloud adapter."""

    def _destination(self, recorder):
        return build_destination('pcloud', {'access_token': 'tok', 'folder': 'backups'},
                                 clock=lambda: 1_700_000_000, transport=recorder.transport())

    def test_missing_file_delete_is_success(self):
        """Test result 2009 on delete counts as deleted."""
        def respond(request):
            if request.url.path == '/deletefile':
                return httpx.Response(200, json={'result': 2009, 'error': 'File not found.'})
            return httpx.Response(200, json={'result': 0, 'quota': 100, 'usedquota': 30})

        result = self._destination(Recorder(respond)).delete_remote_backup_by_name('a.zip')

        assert result.success is True
        assert result.quota.free_bytes == 70

    def test_api_error_carries_code(self):
        """Test non-zero results raise TransferError with the pCloud code."""
        recorder = Recorder(lambda request: httpx.Response(200, json={'result': 2000, 'error': 'Log in failed.'}))

        with pytest.raises(TransferError) as exc_info:
            self._destination(recorder).delete_remote_backup_by_name('a.zip')

        assert exc_info.value.code == 2000
        assert exc_info.value.http_status == 200

    def test_upload_headers(self, tmp_path):
        """Test the target path is sent in X-PCloud-Path."""
        recorder = Recorder(lambda request: httpx.Response(200, json={'result': 0}))

        self._destination(recorder).upload(_write(tmp_path, 'site.zip', 10))

        assert recorder.requests[0].headers['X-PCloud-Path'] == '/backups/site.zip'


class TestGoogleDriveProvider:
    """Test the Google Drive adapter."""

    SETTINGS = {'client_id': 'cid', 'client_secret': 'csecret', 'refresh_token': 'refresh',
                'folder_id': 'folder-1', 'chunk_size_mb': 1}

    def _respond(self, request):
        url = str(request.url)
        if url.startswith('https://oauth2.googleapis.com/token'):
            return httpx.Response(200, json={'access_token': 'fresh-token', 'expires_in': 3600})
        if 'uploadType=resumable' in url:
            return httpx.Response(200, headers={'Location': 'https://upload.example/session-1'})
        if request.url.host == 'upload.example':
            total = request.headers['Content-Range'].rsplit('/', 1)[1]
            end = request.headers['Content-Range'].split('-', 1)[1].split('/', 1)[0]
            return httpx.Response(200 if int(end) + 1 == int(total) else 308)
        if request.method == 'DELETE':
            return httpx.Response(204)
        return httpx.Response(200, json={'files': [{'id': 'file-a', 'name': 'a.zip', 'size': '5'}]})

    def _destination(self, recorder):
        return build_destination('google_drive', dict(self.SETTINGS), clock=lambda: 1_700_000_000,
                                 transport=recorder.transport())

    def test_resumable_upload(self, tmp_path):
        """Test the session is opened once and chunks carry Content-Range."""
        recorder = Recorder(self._respond)
        size = int(2.5 * MB)

        self._destination(recorder).upload(_write(tmp_path, 'site.zip', size))

        chunks = [r for r in recorder.requests if r.url.host == 'upload.example']
        assert [r.headers['Content-Range'] for r in chunks] == [
            f'bytes 0-{MB - 1}/{size}',
            f'bytes {MB}-{2 * MB - 1}/{size}',
            f'bytes {2 * MB}-{size - 1}/{size}',
        ]
        assert all(r.headers['Authorization'] == 'Bearer fresh-token' for r in chunks)

    def test_token_refreshed_once(self):
        """Test the refresh grant runs once and the token is reused."""
        recorder = Recorder(self._respond)
        destination = self._destination(recorder)

        destination.list_remote_backups()
        destination.list_remote_backups()

        refreshes = [r for r in recorder.requests if r.url.host == 'oauth2.googleapis.com']
        assert len(refreshes) == 1
        assert b'grant_type=refresh_token' in refreshes[0].content

    def test_delete_resolves_file_id(self):
        """Test delete finds the file id through the listing."""
        recorder = Recorder(self._respond)

        assert self._destination(recorder).delete_remote_backup_by_name('a.zip').success is True

        deletes = [r for r in recorder.requests if r.method == 'DELETE']
        assert deletes[0].url.path == '/drive/v3/files/file-a'

    def test_not_configured_without_credentials(self, tmp_path):
        """Test no token and no refresh credentials is NotConfigured."""
        destination = build_destination('google_drive', {}, transport=Recorder(self._respond).transport())

        assert destination.connected is False
        with pytest.raises(NotConfigured):
            destination.upload(_write(tmp_path, 'site.zip', 10))


class TestSFTPProvider:
    """Test the SFTP adapter with a mocked SSH client."""

    SETTINGS = {'host': 'backup.example.com', 'username': 'backup', 'password': 'secret',
                'remote_path': '/srv/backups'}

    def _destination(self):
        return build_destination('sftp', dict(self.SETTINGS), clock=lambda: 1_700_000_000)

    @patch('offsite.destinations.providers.sftp.SSHClient')
    def test_upload_puts_file(self, mock_ssh, tmp_path):
        """Test uploads use sftp.put into the remote directory."""
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        path = _write(tmp_path, 'site.zip', 10)

        self._destination().upload(path)

        mock_sftp.put.assert_called_once_with(path, '/srv/backups/site.zip')
        connect_kwargs = mock_ssh.return_value.connect.call_args.kwargs
        assert connect_kwargs['hostname'] == 'backup.example.com'
        assert connect_kwargs['password'] == 'secret'
        mock_ssh.return_value.close.assert_called()

    @patch('offsite.destinations.providers.sftp.SSHClient')
    def test_list_regular_files(self, mock_ssh):
        """Test directories are skipped when listing."""
        mock_sftp = MagicMock()
        mock_sftp.listdir_attr.return_value = [
            SimpleNamespace(filename='a.zip', st_size=10, st_mtime=100, st_mode=stat.S_IFREG | 0o644),
            SimpleNamespace(filename='old.zip', st_size=0, st_mtime=50, st_mode=stat.S_IFDIR | 0o755),
        ]
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        objects = self._destination().list_remote_backups()

        assert [(obj.name, obj.key, obj.modified_at) for obj in objects] == [('a.zip', '/srv/backups/a.zip', 100)]

    @patch('offsite.destinations.providers.sftp.SSHClient')
    def test_delete_missing_file_succeeds(self, mock_ssh):
        """Test FileNotFoundError on remove counts as deleted."""
        mock_sftp = MagicMock()
        mock_sftp.remove.side_effect = FileNotFoundError('gone')
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        assert self._destination().delete_remote_backup_by_name('a.zip').success is True
        mock_sftp.remove.assert_called_once_with('/srv/backups/a.zip')

    @patch('offsite.destinations.providers.sftp.SSHClient')
    def test_authentication_failure_is_not_configured(self, mock_ssh, tmp_path):
        """Test rejected credentials raise NotConfigured."""
        mock_ssh.return_value.connect.side_effect = paramiko.AuthenticationException('denied')

        with pytest.raises(NotConfigured):
            self._destination().upload(_write(tmp_path, 'site.zip', 10))

    @patch('offsite.destinations.providers.sftp.SSHClient')
    def test_connection_failure_is_transport_error(self, mock_ssh):
        """Test network failures raise TransportError."""
        mock_ssh.return_value.connect.side_effect = socket.error('connection refused')

        with pytest.raises(TransportError):
            self._destination().delete_remote_backup_by_name('a.zip')

    def test_requires_a_secret(self):
        """Test host and username alone are not enough."""
        destination = build_destination('sftp', {'host': 'h', 'username': 'u'})

        assert destination.connected is False
