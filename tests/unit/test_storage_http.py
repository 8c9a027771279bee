"""
Unit tests for HTTP storage adapters (b2.py, drives.py, pcloud.py).

Every adapter runs against a FakeSession that replays queued responses.
"""

import hashlib
import json
from datetime import datetime, timezone

import pytest
import requests

from cloudkeep.backup.storage import StorageError, StorageItem
from cloudkeep.backup.storage.b2 import AUTHORIZE_URL, B2Storage
from cloudkeep.backup.storage.base import parse_timestamp, split_key
from cloudkeep.backup.storage.drives import (
    BoxStorage,
    DropboxStorage,
    GoogleDriveStorage,
    OneDriveStorage,
)
from cloudkeep.backup.storage.pcloud import PCloudStorage


B2_AUTH = {
    'apiUrl': 'https://api001.backblazeb2.com',
    'downloadUrl': 'https://f001.backblazeb2.com',
    'authorizationToken': 'account-token',
}


@pytest.fixture
def backup_file(tmp_path):
    path = tmp_path / 'backup-full-20240101-000000.tar.zst'
    path.write_bytes(b'archive bytes')
    return path


class TestHelpers:
    """Test shared helpers in storage/base.py."""

    def test_split_key(self):
        assert split_key('backups/a.tar.zst') == ('backups/', 'a.tar.zst')
        assert split_key('a.tar.zst') == ('', 'a.tar.zst')
        assert split_key('backups/') == ('backups/', '')

    def test_parse_timestamp(self):
        assert parse_timestamp('2024-01-02T03:04:05Z') == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert parse_timestamp('2024-01-02T05:04:05+02:00') == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert parse_timestamp(None) is None
        assert parse_timestamp('yesterday') is None

    def test_http_error_becomes_storage_error(self, fake_session):
        fake_session.add(status_code=401, text='unauthorized')

        with pytest.raises(StorageError, match='HTTP 401: unauthorized'):
            B2Storage('id', 'key', 'bucket-id', 'bucket', session=fake_session)

    def test_connection_error_becomes_storage_error(self, fake_session):
        fake_session.add_error(requests.ConnectionError('refused'))

        with pytest.raises(StorageError) as exc_info:
            B2Storage('id', 'key', 'bucket-id', 'bucket', session=fake_session)

        assert isinstance(exc_info.value.__cause__, requests.ConnectionError)


class TestB2Storage:
    """Test Backblaze B2 adapter."""

    @pytest.fixture
    def b2(self, fake_session):
        fake_session.add(B2_AUTH)
        storage = B2Storage('key-id', 'app-key', 'bucket-id', 'my-bucket', session=fake_session)
        fake_session.requests.clear()
        return storage

    def test_authorize(self, fake_session):
        fake_session.add(B2_AUTH)

        storage = B2Storage('key-id', 'app-key', 'bucket-id', 'my-bucket', session=fake_session)

        method, url, kwargs = fake_session.requests[0]
        assert (method, url) == ('GET', AUTHORIZE_URL)
        assert kwargs['auth'] == ('key-id', 'app-key')
        assert storage.api_url == B2_AUTH['apiUrl']

    def test_authorize_missing_field(self, fake_session):
        fake_session.add({'apiUrl': 'https://api', 'authorizationToken': 'token'})

        with pytest.raises(StorageError, match='downloadUrl'):
            B2Storage('key-id', 'app-key', 'bucket-id', 'my-bucket', session=fake_session)

    def test_upload(self, b2, fake_session, backup_file):
        fake_session.add({'uploadUrl': 'https://pod/upload', 'authorizationToken': 'upload-token'})
        fake_session.add({'fileId': 'f1'})

        b2.upload('backups/backup-full-20240101-000000.tar.zst', str(backup_file))

        method, url, kwargs = fake_session.requests[0]
        assert url == 'https://api001.backblazeb2.com/b2api/v2/b2_get_upload_url'
        assert kwargs['json'] == {'bucketId': 'bucket-id'}

        method, url, kwargs = fake_session.requests[1]
        assert (method, url) == ('POST', 'https://pod/upload')
        assert kwargs['headers']['Authorization'] == 'upload-token'
        assert kwargs['headers']['X-Bz-File-Name'] == 'backups/backup-full-20240101-000000.tar.zst'
        assert kwargs['headers']['X-Bz-Content-Sha1'] == hashlib.sha1(b'archive bytes').hexdigest()
        assert kwargs['data'] == b'archive bytes'

    def test_download(self, b2, fake_session, tmp_path):
        fake_session.add(content=b'archive bytes')
        output = tmp_path / 'out.tar.zst'

        b2.download('backups/a.tar.zst', str(output))

        assert fake_session.urls() == ['https://f001.backblazeb2.com/file/my-bucket/backups/a.tar.zst']
        assert output.read_bytes() == b'archive bytes'

    def test_list_follows_next_file_name(self, b2, fake_session):
        fake_session.add({
            'files': [{'fileName': 'backups/a.tar.zst', 'contentLength': 10, 'uploadTimestamp': 1704067200000}],
            'nextFileName': 'backups/b.tar.zst',
        })
        fake_session.add({
            'files': [{'fileName': 'backups/b.tar.zst', 'contentLength': 20, 'uploadTimestamp': 1704153600000}],
            'nextFileName': None,
        })

        items = b2.list('backups/')

        assert items == [
            StorageItem('backups/a.tar.zst', 10, datetime(2024, 1, 1, tzinfo=timezone.utc)),
            StorageItem('backups/b.tar.zst', 20, datetime(2024, 1, 2, tzinfo=timezone.utc)),
        ]
        assert fake_session.requests[0][2]['json']['prefix'] == 'backups/'
        assert fake_session.requests[1][2]['json']['startFileName'] == 'backups/b.tar.zst'

    def test_list_malformed(self, b2, fake_session):
        fake_session.add({'unexpected': True})

        with pytest.raises(StorageError, match='files'):
            b2.list('backups/')

    def test_delete(self, b2, fake_session):
        fake_session.add({'files': [{'fileName': 'backups/a.tar.zst', 'fileId': 'f1'}]})
        fake_session.add({'fileId': 'f1'})

        b2.delete('backups/a.tar.zst')

        assert fake_session.requests[1][1].endswith('/b2_delete_file_version')
        assert fake_session.requests[1][2]['json'] == {'fileId': 'f1', 'fileName': 'backups/a.tar.zst'}

    def test_delete_missing_is_noop(self, b2, fake_session):
        fake_session.add({'files': [{'fileName': 'backups/z.tar.zst', 'fileId': 'f9'}]})

        b2.delete('backups/a.tar.zst')

        assert len(fake_session.requests) == 1


class TestGoogleDriveStorage:
    """Test Google Drive adapter."""

    def test_list_pages_and_keeps_directory(self, fake_session):
        fake_session.add({
            'files': [
                {'id': '1', 'name': 'backup-a.tar.zst', 'size': '10', 'modifiedTime': '2024-01-01T00:00:00Z'},
                {'id': 'd', 'name': 'folder', 'mimeType': 'application/vnd.google-apps.folder'},
            ],
            'nextPageToken': 'page2',
        })
        fake_session.add({
            'files': [{'id': '2', 'name': 'notes.txt', 'size': '1'}],
        })
        storage = GoogleDriveStorage('token', folder_id='folder-1', session=fake_session)

        items = storage.list('backups/backup-')

        assert items == [
            StorageItem('backups/backup-a.tar.zst', 10, datetime(2024, 1, 1, tzinfo=timezone.utc)),
        ]
        first, second = fake_session.requests
        assert first[2]['headers'] == {'Authorization': 'Bearer token'}
        assert "'folder-1' in parents" in first[2]['params']['q']
        assert second[2]['params']['pageToken'] == 'page2'

    def test_upload(self, fake_session, backup_file):
        fake_session.add({'files': []})
        fake_session.add({'id': 'new'})
        storage = GoogleDriveStorage('token', session=fake_session)

        storage.upload('backups/backup-full-20240101-000000.tar.zst', str(backup_file))

        assert "name='backup-full-20240101-000000.tar.zst'" in fake_session.requests[0][2]['params']['q']
        method, url, kwargs = fake_session.requests[1]
        assert (method, url) == ('POST', GoogleDriveStorage.UPLOAD_URL)
        assert kwargs['params'] == {'uploadType': 'multipart'}
        metadata = json.loads(kwargs['files']['metadata'][1])
        assert metadata == {'name': 'backup-full-20240101-000000.tar.zst', 'parents': ['root']}

    def test_upload_replaces_existing_file(self, fake_session, backup_file):
        """Test re-uploading a key updates the existing file instead of adding a duplicate."""
        fake_session.add({'files': [{'id': 'abc', 'name': 'a.tar.zst'}]})
        fake_session.add({'id': 'abc'})
        storage = GoogleDriveStorage('token', session=fake_session)

        storage.upload('backups/a.tar.zst', str(backup_file))

        assert len(fake_session.requests) == 2
        method, url, kwargs = fake_session.requests[1]
        assert (method, url) == ('PATCH', f'{GoogleDriveStorage.UPLOAD_URL}/abc')
        assert kwargs['params'] == {'uploadType': 'media'}
        assert kwargs['data'] == b'archive bytes'

    def test_download_missing_file(self, fake_session, tmp_path):
        fake_session.add({'files': []})
        storage = GoogleDriveStorage('token', session=fake_session)

        with pytest.raises(StorageError, match='not found'):
            storage.download('backups/a.tar.zst', str(tmp_path / 'out'))

    def test_delete(self, fake_session):
        fake_session.add({'files': [{'id': 'abc', 'name': 'a.tar.zst'}]})
        fake_session.add(status_code=204)
        storage = GoogleDriveStorage('token', session=fake_session)

        storage.delete('backups/a.tar.zst')

        method, url, _ = fake_session.requests[1]
        assert (method, url) == ('DELETE', f'{GoogleDriveStorage.API_URL}/abc')


class TestOneDriveStorage:
    """Test OneDrive adapter."""

    def test_list_follows_next_link(self, fake_session):
        fake_session.add({'id': 'folder-id'})
        fake_session.add({
            'value': [{'id': '1', 'name': 'a.tar.zst', 'size': 5}],
            '@odata.nextLink': 'https://graph.microsoft.com/v1.0/next',
        })
        fake_session.add({
            'value': [
                {'id': '2', 'name': 'b.tar.zst', 'size': 6, 'lastModifiedDateTime': '2024-01-02T00:00:00Z'},
                {'id': '3', 'name': 'sub', 'folder': {}},
            ],
        })
        storage = OneDriveStorage('token', folder_path='/drive/root:/Backups', session=fake_session)

        items = storage.list('backups/')

        assert [i.key for i in items] == ['backups/a.tar.zst', 'backups/b.tar.zst']
        assert fake_session.urls()[0] == 'https://graph.microsoft.com/v1.0/me/drive/root:/Backups'
        assert fake_session.urls()[2] == 'https://graph.microsoft.com/v1.0/next'

    def test_upload_caches_folder_id(self, fake_session, backup_file):
        fake_session.add({'id': 'folder-id'})
        fake_session.add({'id': 'f1'})
        fake_session.add({'id': 'f2'})
        storage = OneDriveStorage('token', session=fake_session)

        storage.upload('backups/a.tar.zst', str(backup_file))
        storage.upload('backups/b.tar.zst', str(backup_file))

        assert fake_session.urls() == [
            'https://graph.microsoft.com/v1.0/me/drive/root:',
            'https://graph.microsoft.com/v1.0/me/drive/items/folder-id:/a.tar.zst:/content',
            'https://graph.microsoft.com/v1.0/me/drive/items/folder-id:/b.tar.zst:/content',
        ]


class TestDropboxStorage:
    """Test Dropbox adapter."""

    def test_upload_path(self, fake_session, backup_file):
        fake_session.add({'name': 'a.tar.zst'})
        storage = DropboxStorage('token', folder_path='/Apps/cloudkeep/', session=fake_session)

        storage.upload('backups/a.tar.zst', str(backup_file))

        headers = fake_session.requests[0][2]['headers']
        assert json.loads(headers['Dropbox-API-Arg']) == {
            'path': '/Apps/cloudkeep/backups/a.tar.zst',
            'mode': 'overwrite',
        }

    def test_list_with_cursor(self, fake_session):
        fake_session.add({
            'entries': [
                {'.tag': 'file', 'name': 'a.tar.zst', 'size': 1, 'client_modified': '2024-01-01T00:00:00Z'},
                {'.tag': 'folder', 'name': 'old'},
            ],
            'has_more': True,
            'cursor': 'c1',
        })
        fake_session.add({
            'entries': [{'.tag': 'file', 'name': 'b.tar.zst', 'size': 2}],
            'has_more': False,
        })
        storage = DropboxStorage('token', session=fake_session)

        items = storage.list('backups/')

        assert [i.key for i in items] == ['backups/a.tar.zst', 'backups/b.tar.zst']
        assert fake_session.requests[0][2]['json'] == {'path': '/backups', 'recursive': False}
        assert fake_session.requests[1][2]['json'] == {'cursor': 'c1'}

    def test_list_missing_folder(self, fake_session):
        fake_session.add(status_code=409, text='{"error_summary": "path/not_found/.."}')
        storage = DropboxStorage('token', session=fake_session)

        assert storage.list('backups/') == []

    def test_list_other_error(self, fake_session):
        fake_session.add(status_code=401, text='invalid_access_token')
        storage = DropboxStorage('token', session=fake_session)

        with pytest.raises(StorageError, match='invalid_access_token'):
            storage.list('backups/')


class TestBoxStorage:
    """Test Box adapter."""

    def test_upload_new_file(self, fake_session, backup_file):
        fake_session.add({'entries': [], 'total_count': 0})
        fake_session.add({'entries': [{'id': '9'}]})
        storage = BoxStorage('token', folder_id='42', session=fake_session)

        storage.upload('backups/a.tar.zst', str(backup_file))

        method, url, kwargs = fake_session.requests[1]
        assert (method, url) == ('POST', 'https://upload.box.com/api/2.0/files/content')
        assert json.loads(kwargs['files']['attributes'][1]) == {'name': 'a.tar.zst', 'parent': {'id': '42'}}
        assert kwargs['files']['file'] == ('a.tar.zst', b'archive bytes')

    def test_upload_existing_file_adds_version(self, fake_session, backup_file):
        """Test re-uploading a key posts a new version of the existing file."""
        fake_session.add({'entries': [{'id': '7', 'type': 'file', 'name': 'a.tar.zst'}], 'total_count': 1})
        fake_session.add({'entries': [{'id': '7'}]})
        storage = BoxStorage('token', session=fake_session)

        storage.upload('backups/a.tar.zst', str(backup_file))

        method, url, kwargs = fake_session.requests[1]
        assert (method, url) == ('POST', 'https://upload.box.com/api/2.0/files/7/content')
        assert 'attributes' not in kwargs['files']

    def test_list_pages_by_offset(self, fake_session):
        fake_session.add({
            'entries': [{'id': '1', 'type': 'file', 'name': 'a.tar.zst', 'size': 1}],
            'total_count': 2,
        })
        fake_session.add({
            'entries': [{'id': '2', 'type': 'folder', 'name': 'nested'}],
            'total_count': 2,
        })
        storage = BoxStorage('token', session=fake_session)

        items = storage.list('backups/')

        assert [i.key for i in items] == ['backups/a.tar.zst']
        assert fake_session.requests[1][2]['params']['offset'] == 1
        assert fake_session.urls()[0] == 'https://api.box.com/2.0/folders/0/items'

    def test_download(self, fake_session, tmp_path):
        fake_session.add({'entries': [{'id': '7', 'type': 'file', 'name': 'a.tar.zst'}], 'total_count': 1})
        fake_session.add(content=b'box bytes')
        storage = BoxStorage('token', session=fake_session)
        output = tmp_path / 'out'

        storage.download('backups/a.tar.zst', str(output))

        assert fake_session.urls()[1] == 'https://api.box.com/2.0/files/7/content'
        assert output.read_bytes() == b'box bytes'


class TestPCloudStorage:
    """Test pCloud adapter."""

    def test_eu_region(self):
        assert PCloudStorage('token', region='eu').api_host == 'https://eapi.pcloud.com'
        assert PCloudStorage('token', region='us-east-1').api_host == 'https://api.pcloud.com'

    def test_upload_creates_folder(self, fake_session, backup_file):
        fake_session.add({'result': 0, 'digest': 'd1'})
        fake_session.add({'result': 0})
        fake_session.add({'result': 0, 'digest': 'd2'})
        fake_session.add({'result': 0, 'metadata': []})
        storage = PCloudStorage('token', folder_path='/Backups', session=fake_session)

        storage.upload('backups/a.tar.zst', str(backup_file))

        _, url, kwargs = fake_session.requests[1]
        assert url == 'https://api.pcloud.com/createfolderifnotexists'
        assert kwargs['params'] == {'path': '/Backups/backups', 'auth': 'token', 'digest': 'd1'}

        method, url, kwargs = fake_session.requests[3]
        assert (method, url) == ('POST', 'https://api.pcloud.com/uploadfile')
        assert kwargs['data']['filename'] == 'a.tar.zst'
        assert kwargs['data']['digest'] == 'd2'

    def test_list(self, fake_session):
        fake_session.add({'result': 0, 'digest': 'd1'})
        fake_session.add({'result': 0, 'metadata': {'contents': [
            {'name': 'a.tar.zst', 'size': 3, 'modified': 'Mon, 01 Jan 2024 00:00:00 +0000'},
            {'name': 'dir', 'isfolder': True},
        ]}})
        storage = PCloudStorage('token', session=fake_session)

        items = storage.list('backups/')

        assert items == [StorageItem('backups/a.tar.zst', 3, datetime(2024, 1, 1, tzinfo=timezone.utc))]
        assert fake_session.requests[1][2]['params']['path'] == '/backups'

    def test_list_missing_folder(self, fake_session):
        fake_session.add({'result': 0, 'digest': 'd1'})
        fake_session.add({'result': 2005, 'error': 'Directory does not exist.'})
        storage = PCloudStorage('token', session=fake_session)

        assert storage.list('backups/') == []

    def test_api_error(self, fake_session):
        fake_session.add({'result': 0, 'digest': 'd1'})
        fake_session.add({'result': 2009, 'error': 'File not found.'})
        storage = PCloudStorage('token', session=fake_session)

        with pytest.raises(StorageError, match='File not found'):
            storage.delete('backups/a.tar.zst')

    def test_download_uses_file_link(self, fake_session, tmp_path):
        fake_session.add({'result': 0, 'digest': 'd1'})
        fake_session.add({'result': 0, 'hosts': ['c1.pcloud.com'], 'path': '/dl/a.tar.zst'})
        fake_session.add(content=b'pcloud bytes')
        storage = PCloudStorage('token', session=fake_session)
        output = tmp_path / 'out'

        storage.download('backups/a.tar.zst', str(output))

        assert fake_session.urls()[2] == 'https://c1.pcloud.com/dl/a.tar.zst'
        assert output.read_bytes() == b'pcloud bytes'
