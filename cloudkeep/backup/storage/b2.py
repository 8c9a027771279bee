"""
Backblaze B2 through its native API.

The account is authorized once when the adapter is built. Each upload
first asks for a fresh upload URL and token, then posts the file with its
SHA1 hash.
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import quote

import requests

from cloudkeep.backup.storage.base import (
    HttpStorageProvider,
    StorageError,
    StorageItem,
    read_file,
)


logger = logging.getLogger(__name__)

AUTHORIZE_URL = 'https://api.backblazeb2.com/b2api/v2/b2_authorize_account'
MAX_FILE_COUNT = 1000


class B2Storage(HttpStorageProvider):
    """Handler for Backblaze B2 buckets."""

    name = 'b2'

    def __init__(self, account_id: str, application_key: str, bucket_id: str,
                 bucket_name: str, session: Optional[requests.Session] = None):
        """
        Initialize and authorize against B2.

        Args:
            account_id: Key ID (or account ID for the master key)
            application_key: Application key
            bucket_id: Bucket ID, used by the API calls
            bucket_name: Bucket name, used by download URLs
        """
        super().__init__(session)
        self.account_id = account_id
        self.application_key = application_key
        self.bucket_id = bucket_id
        self.bucket_name = bucket_name

        self.api_url = None
        self.download_url = None
        self.auth_token = None
        self._authorize()

    def _authorize(self):
        data = self._json('GET', AUTHORIZE_URL, auth=(self.account_id, self.application_key))

        for field in ('apiUrl', 'downloadUrl', 'authorizationToken'):
            if not data.get(field):
                raise StorageError(f"Missing {field} in B2 authorization response")

        self.api_url = data['apiUrl']
        self.download_url = data['downloadUrl']
        self.auth_token = data['authorizationToken']

    def _api(self, operation: str, payload: dict) -> dict:
        return self._json(
            'POST',
            f"{self.api_url}/b2api/v2/{operation}",
            headers={'Authorization': self.auth_token},
            json=payload
        )

    def _get_upload_url(self):
        data = self._api('b2_get_upload_url', {'bucketId': self.bucket_id})
        if not data.get('uploadUrl') or not data.get('authorizationToken'):
            raise StorageError("Missing uploadUrl or authorizationToken in B2 response")
        return data['uploadUrl'], data['authorizationToken']

    def upload(self, key: str, local_file: str):
        logger.info(f"Uploading {key} to B2...")
        data = read_file(local_file)
        upload_url, upload_token = self._get_upload_url()

        self._request(
            'POST',
            upload_url,
            headers={
                'Authorization': upload_token,
                'X-Bz-File-Name': quote(key, safe='/'),
                'Content-Type': 'b2/x-auto',
                'X-Bz-Content-Sha1': hashlib.sha1(data).hexdigest(),
            },
            data=data
        )
        logger.info(f"Successfully uploaded: {key}")

    def download(self, key: str, local_file: str):
        logger.info(f"Downloading {key} from B2...")
        response = self._request(
            'GET',
            f"{self.download_url}/file/{self.bucket_name}/{quote(key, safe='/')}",
            headers={'Authorization': self.auth_token},
            stream=True
        )
        self._save(response, local_file)

    def list(self, prefix: str = '') -> List[StorageItem]:
        items = []
        start_file_name = None

        while True:
            payload = {'bucketId': self.bucket_id, 'maxFileCount': MAX_FILE_COUNT}
            if prefix:
                payload['prefix'] = prefix
            if start_file_name:
                payload['startFileName'] = start_file_name

            data = self._api('b2_list_file_names', payload)
            files = data.get('files')
            if not isinstance(files, list):
                raise StorageError("Missing files array in B2 response")

            for entry in files:
                if 'fileName' not in entry:
                    raise StorageError("Missing fileName in B2 response")
                timestamp_ms = entry.get('uploadTimestamp')
                items.append(StorageItem(
                    key=entry['fileName'],
                    size=entry.get('contentLength') or 0,
                    last_modified=(
                        datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
                        if timestamp_ms else None
                    )
                ))

            start_file_name = data.get('nextFileName')
            if not files or not start_file_name:
                break

        return items

    def delete(self, key: str):
        data = self._api('b2_list_file_versions', {
            'bucketId': self.bucket_id,
            'startFileName': key,
            'maxFileCount': 1,
        })
        files = data.get('files') or []
        if not files or files[0].get('fileName') != key:
            logger.warning(f"B2 file not found, nothing to delete: {key}")
            return

        self._api('b2_delete_file_version', {
            'fileId': files[0]['fileId'],
            'fileName': key,
        })
        logger.info(f"Deleted from B2: {key}")
