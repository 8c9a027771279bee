"""
Consumer drive providers: Google Drive, OneDrive, Dropbox and Box.

All four take an OAuth access token as-is (no refresh). Drive, OneDrive
and Box address files by name inside one parent folder; Dropbox addresses
them by path. In every case the directory part of a key is kept on the
way back out, so `list('backups/')` reports `backups/<name>` keys.
"""

import json
import logging
from abc import abstractmethod
from typing import Dict, Iterator, List, Optional

import requests

from cloudkeep.backup.storage.base import (
    HttpStorageProvider,
    StorageError,
    StorageItem,
    parse_timestamp,
    read_file,
    split_key,
)


logger = logging.getLogger(__name__)


class FolderStorage(HttpStorageProvider):
    """
    Base for providers that store every backup inside a single folder.

    Subclasses yield the folder's file entries as dicts with `id`, `name`,
    `size` and `modified` keys; listing and lookup by name build on that.
    """

    def __init__(self, access_token: str, session: Optional[requests.Session] = None):
        super().__init__(session)
        self.access_token = access_token

    def _auth(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.access_token}"}

    @abstractmethod
    def _iter_files(self) -> Iterator[dict]:
        """Yield every file entry of the folder, across all pages."""

    def list(self, prefix: str = '') -> List[StorageItem]:
        directory, name_prefix = split_key(prefix)
        return [
            StorageItem(
                key=directory + entry['name'],
                size=int(entry.get('size') or 0),
                last_modified=parse_timestamp(entry.get('modified'))
            )
            for entry in self._iter_files()
            if entry['name'].startswith(name_prefix)
        ]

    def _lookup_file_id(self, key: str) -> Optional[str]:
        _, name = split_key(key)
        for entry in self._iter_files():
            if entry['name'] == name:
                return entry['id']
        return None

    def _find_file_id(self, key: str) -> str:
        file_id = self._lookup_file_id(key)
        if file_id is None:
            raise StorageError(f"File not found in {self.name}: {key}")
        return file_id


class GoogleDriveStorage(FolderStorage):
    """Google Drive v3 REST API."""

    name = 'Google Drive'
    API_URL = 'https://www.googleapis.com/drive/v3/files'
    UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3/files'

    def __init__(self, access_token: str, folder_id: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        super().__init__(access_token, session)
        self.folder_id = folder_id or 'root'

    def _iter_files(self) -> Iterator[dict]:
        params = {
            'q': f"'{self.folder_id}' in parents and trashed=false",
            'fields': 'nextPageToken, files(id,name,size,modifiedTime,mimeType)',
            'pageSize': 1000,
        }
        while True:
            data = self._json('GET', self.API_URL, headers=self._auth(), params=params)
            for entry in data.get('files', []):
                if entry.get('mimeType') == 'application/vnd.google-apps.folder':
                    continue
                yield {
                    'id': entry['id'],
                    'name': entry['name'],
                    'size': entry.get('size'),
                    'modified': entry.get('modifiedTime'),
                }

            page_token = data.get('nextPageToken')
            if not page_token:
                break
            params = dict(params, pageToken=page_token)

    def _lookup_file_id(self, key: str) -> Optional[str]:
        _, name = split_key(key)
        escaped = name.replace("'", "\\'")
        data = self._json('GET', self.API_URL, headers=self._auth(), params={
            'q': f"name='{escaped}' and '{self.folder_id}' in parents and trashed=false",
            'fields': 'files(id,name)',
        })
        files = data.get('files') or []
        return files[0]['id'] if files else None

    def upload(self, key: str, local_file: str):
        logger.info(f"Uploading {key} to Google Drive...")
        _, name = split_key(key)
        data = read_file(local_file)

        # Drive allows duplicate names; an existing file gets new content instead
        file_id = self._lookup_file_id(key)
        if file_id:
            self._request(
                'PATCH',
                f"{self.UPLOAD_URL}/{file_id}",
                headers=dict(self._auth(), **{'Content-Type': 'application/octet-stream'}),
                params={'uploadType': 'media'},
                data=data
            )
        else:
            metadata = {'name': name, 'parents': [self.folder_id]}
            self._request(
                'POST',
                self.UPLOAD_URL,
                headers=self._auth(),
                params={'uploadType': 'multipart'},
                files={
                    'metadata': (None, json.dumps(metadata), 'application/json; charset=UTF-8'),
                    'file': (name, data, 'application/octet-stream'),
                }
            )
        logger.info(f"Successfully uploaded: {key}")

    def download(self, key: str, local_file: str):
        logger.info(f"Downloading {key} from Google Drive...")
        file_id = self._find_file_id(key)
        response = self._request(
            'GET', f"{self.API_URL}/{file_id}",
            headers=self._auth(), params={'alt': 'media'}, stream=True
        )
        self._save(response, local_file)

    def delete(self, key: str):
        file_id = self._find_file_id(key)
        self._request('DELETE', f"{self.API_URL}/{file_id}", headers=self._auth())
        logger.info(f"Deleted from Google Drive: {key}")


class OneDriveStorage(FolderStorage):
    """Microsoft Graph API, files under one drive folder."""

    name = 'OneDrive'
    GRAPH_URL = 'https://graph.microsoft.com/v1.0'

    def __init__(self, access_token: str, folder_path: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        """
        Args:
            access_token: Graph API bearer token
            folder_path: Path below /me, e.g. `/drive/root:/Backups`
        """
        super().__init__(access_token, session)
        self.folder_path = folder_path or '/drive/root:'
        self._folder_id = None

    def _get_folder_id(self) -> str:
        if self._folder_id is None:
            data = self._json('GET', f"{self.GRAPH_URL}/me{self.folder_path}", headers=self._auth())
            if not data.get('id'):
                raise StorageError(f"Failed to get OneDrive folder ID for {self.folder_path}")
            self._folder_id = data['id']
        return self._folder_id

    def _iter_files(self) -> Iterator[dict]:
        url = f"{self.GRAPH_URL}/me/drive/items/{self._get_folder_id()}/children"
        while url:
            data = self._json('GET', url, headers=self._auth())
            for entry in data.get('value', []):
                if 'folder' in entry:
                    continue
                yield {
                    'id': entry['id'],
                    'name': entry['name'],
                    'size': entry.get('size'),
                    'modified': entry.get('lastModifiedDateTime'),
                }
            url = data.get('@odata.nextLink')

    def upload(self, key: str, local_file: str):
        logger.info(f"Uploading {key} to OneDrive...")
        _, name = split_key(key)
        folder_id = self._get_folder_id()
        self._request(
            'PUT',
            f"{self.GRAPH_URL}/me/drive/items/{folder_id}:/{name}:/content",
            headers=self._auth(),
            data=read_file(local_file)
        )
        logger.info(f"Successfully uploaded: {key}")

    def download(self, key: str, local_file: str):
        logger.info(f"Downloading {key} from OneDrive...")
        file_id = self._find_file_id(key)
        response = self._request(
            'GET', f"{self.GRAPH_URL}/me/drive/items/{file_id}/content",
            headers=self._auth(), stream=True
        )
        self._save(response, local_file)

    def delete(self, key: str):
        file_id = self._find_file_id(key)
        self._request('DELETE', f"{self.GRAPH_URL}/me/drive/items/{file_id}", headers=self._auth())
        logger.info(f"Deleted from OneDrive: {key}")


class DropboxStorage(HttpStorageProvider):
    """Dropbox API v2, files addressed by path below an optional base folder."""

    name = 'Dropbox'
    API_URL = 'https://api.dropboxapi.com/2'
    CONTENT_URL = 'https://content.dropboxapi.com/2'

    def __init__(self, access_token: str, folder_path: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        super().__init__(session)
        self.access_token = access_token
        self.folder_path = (folder_path or '').rstrip('/')

    def _auth(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.access_token}"}

    def _path(self, key: str) -> str:
        key = key.strip('/')
        if not key:
            return self.folder_path
        return f"{self.folder_path}/{key}"

    def upload(self, key: str, local_file: str):
        logger.info(f"Uploading {key} to Dropbox...")
        headers = self._auth()
        headers['Dropbox-API-Arg'] = json.dumps({'path': self._path(key), 'mode': 'overwrite'})
        headers['Content-Type'] = 'application/octet-stream'
        self._request('POST', f"{self.CONTENT_URL}/files/upload",
                      headers=headers, data=read_file(local_file))
        logger.info(f"Successfully uploaded: {key}")

    def download(self, key: str, local_file: str):
        logger.info(f"Downloading {key} from Dropbox...")
        headers = self._auth()
        headers['Dropbox-API-Arg'] = json.dumps({'path': self._path(key)})
        response = self._request('POST', f"{self.CONTENT_URL}/files/download",
                                 headers=headers, stream=True)
        self._save(response, local_file)

    def list(self, prefix: str = '') -> List[StorageItem]:
        directory, name_prefix = split_key(prefix)
        try:
            data = self._json('POST', f"{self.API_URL}/files/list_folder", headers=self._auth(),
                              json={'path': self._path(directory), 'recursive': False})
        except StorageError as e:
            # A folder that was never written to is an empty listing
            if 'not_found' in str(e):
                return []
            raise

        items = []
        while True:
            for entry in data.get('entries', []):
                name = entry.get('name', '')
                if entry.get('.tag') != 'file' or not name.startswith(name_prefix):
                    continue
                items.append(StorageItem(
                    key=directory + name,
                    size=entry.get('size') or 0,
                    last_modified=parse_timestamp(entry.get('client_modified'))
                ))

            if not data.get('has_more'):
                break
            data = self._json('POST', f"{self.API_URL}/files/list_folder/continue",
                              headers=self._auth(), json={'cursor': data['cursor']})

        return items

    def delete(self, key: str):
        self._request('POST', f"{self.API_URL}/files/delete_v2",
                      headers=self._auth(), json={'path': self._path(key)})
        logger.info(f"Deleted from Dropbox: {key}")


class BoxStorage(FolderStorage):
    """Box Content API, files inside one folder (root folder is `0`)."""

    name = 'Box'
    API_URL = 'https://api.box.com/2.0'
    UPLOAD_API = 'https://upload.box.com/api/2.0'
    PAGE_SIZE = 1000

    def __init__(self, access_token: str, folder_id: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        super().__init__(access_token, session)
        self.folder_id = folder_id or '0'

    def _iter_files(self) -> Iterator[dict]:
        offset = 0
        while True:
            data = self._json(
                'GET', f"{self.API_URL}/folders/{self.folder_id}/items",
                headers=self._auth(),
                params={
                    'fields': 'id,type,name,size,modified_at',
                    'limit': self.PAGE_SIZE,
                    'offset': offset,
                }
            )
            entries = data.get('entries', [])
            for entry in entries:
                if entry.get('type') != 'file':
                    continue
                yield {
                    'id': entry['id'],
                    'name': entry['name'],
                    'size': entry.get('size'),
                    'modified': entry.get('modified_at'),
                }

            offset += len(entries)
            if not entries or offset >= data.get('total_count', 0):
                break

    def upload(self, key: str, local_file: str):
        logger.info(f"Uploading {key} to Box...")
        _, name = split_key(key)
        data = read_file(local_file)

        # Box rejects a second file with the same name, so replace as a new version
        file_id = self._lookup_file_id(key)
        if file_id:
            self._request(
                'POST',
                f"{self.UPLOAD_API}/files/{file_id}/content",
                headers=self._auth(),
                files={'file': (name, data)}
            )
        else:
            attributes = {'name': name, 'parent': {'id': self.folder_id}}
            self._request(
                'POST',
                f"{self.UPLOAD_API}/files/content",
                headers=self._auth(),
                files={
                    'attributes': (None, json.dumps(attributes)),
                    'file': (name, data),
                }
            )
        logger.info(f"Successfully uploaded: {key}")

    def download(self, key: str, local_file: str):
        logger.info(f"Downloading {key} from Box...")
        file_id = self._find_file_id(key)
        response = self._request('GET', f"{self.API_URL}/files/{file_id}/content",
                                 headers=self._auth(), stream=True)
        self._save(response, local_file)

    def delete(self, key: str):
        file_id = self._find_file_id(key)
        self._request('DELETE', f"{self.API_URL}/files/{file_id}", headers=self._auth())
        logger.info(f"Deleted from Box: {key}")
