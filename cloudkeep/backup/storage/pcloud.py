"""
pCloud storage.

pCloud wants a fresh digest alongside the access token on every API call,
so each operation starts with a getdigest request.
"""

import logging
import posixpath
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional

import requests

from cloudkeep.backup.storage.base import (
    HttpStorageProvider,
    StorageError,
    StorageItem,
    read_file,
    split_key,
)


logger = logging.getLogger(__name__)

US_API_HOST = 'https://api.pcloud.com'
EU_API_HOST = 'https://eapi.pcloud.com'

# listfolder result code for a missing directory
DIRECTORY_NOT_FOUND = 2005


def _parse_modified(value) -> Optional[datetime]:
    if value in (None, ''):
        return None
    if isinstance(value, (int, float)) or str(value).isdigit():
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    try:
        return parsedate_to_datetime(value).astimezone(timezone.utc)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable pCloud timestamp: {value}")
        return None


class PCloudStorage(HttpStorageProvider):
    """Handler for pCloud, files addressed by path below a base folder."""

    name = 'pCloud'

    def __init__(self, access_token: str, region: Optional[str] = None,
                 folder_path: Optional[str] = None, session: Optional[requests.Session] = None):
        """
        Args:
            access_token: pCloud auth token
            region: `eu`/`europe` selects the EU API host, anything else the US one
            folder_path: Base folder (default: /)
        """
        super().__init__(session)
        self.access_token = access_token
        self.api_host = EU_API_HOST if (region or '').lower() in ('eu', 'europe') else US_API_HOST
        self.folder_path = folder_path or '/'

    def _full_path(self, key: str) -> str:
        key = key.strip('/')
        if self.folder_path == '/':
            return f"/{key}" if key else '/'
        base = self.folder_path.rstrip('/')
        return f"{base}/{key}" if key else base

    def _get_digest(self) -> str:
        data = self._json('GET', f"{self.api_host}/getdigest")
        if data.get('result') != 0:
            raise StorageError(f"pCloud digest error: {data.get('error', 'Unknown error')}")
        if not data.get('digest'):
            raise StorageError("Missing digest in pCloud response")
        return data['digest']

    def _call(self, method: str, params: dict, http_method: str = 'GET',
              check: bool = True, **kwargs) -> dict:
        """Call an API method with a freshly fetched digest."""
        auth = {'auth': self.access_token, 'digest': self._get_digest()}
        if http_method == 'GET':
            kwargs['params'] = dict(params, **auth)
        else:
            kwargs['data'] = dict(params, **auth)

        data = self._json(http_method, f"{self.api_host}/{method}", **kwargs)
        if check and data.get('result') != 0:
            raise StorageError(f"pCloud {method} failed: {data.get('error', 'Unknown error')}")
        return data

    def upload(self, key: str, local_file: str):
        logger.info(f"Uploading {key} to pCloud...")
        data = read_file(local_file)
        full_path = self._full_path(key)
        folder = posixpath.dirname(full_path) or '/'
        name = posixpath.basename(full_path)

        if folder != '/':
            self._call('createfolderifnotexists', {'path': folder})

        self._call(
            'uploadfile',
            {'path': folder, 'filename': name, 'nopartial': 1},
            http_method='POST',
            files={'file': (name, data)}
        )
        logger.info(f"Successfully uploaded: {key}")

    def download(self, key: str, local_file: str):
        logger.info(f"Downloading {key} from pCloud...")
        link = self._call('getfilelink', {'path': self._full_path(key)})
        hosts = link.get('hosts') or []
        if not hosts or not link.get('path'):
            raise StorageError(f"pCloud returned no download link for {key}")

        response = self._request('GET', f"https://{hosts[0]}{link['path']}", stream=True)
        self._save(response, local_file)

    def list(self, prefix: str = '') -> List[StorageItem]:
        directory, name_prefix = split_key(prefix)
        data = self._call('listfolder', {'path': self._full_path(directory)}, check=False)

        if data.get('result') == DIRECTORY_NOT_FOUND:
            return []
        if data.get('result') != 0:
            raise StorageError(f"pCloud list failed: {data.get('error', 'Unknown error')}")

        items = []
        for entry in (data.get('metadata') or {}).get('contents', []):
            name = entry.get('name', '')
            if entry.get('isfolder') or not name.startswith(name_prefix):
                continue
            items.append(StorageItem(
                key=directory + name,
                size=entry.get('size') or 0,
                last_modified=_parse_modified(entry.get('modified'))
            ))
        return items

    def delete(self, key: str):
        self._call('deletefile', {'path': self._full_path(key)})
        logger.info(f"Deleted from pCloud: {key}")
