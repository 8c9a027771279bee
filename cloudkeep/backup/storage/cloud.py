"""
Google Cloud Storage and Azure Blob Storage.

Both SDKs manage credentials and listing pagination themselves. They are
imported when an adapter is constructed so that installing one does not
require the other.
"""

import logging
from typing import List, Optional

from cloudkeep.backup.storage.base import StorageError, StorageItem, StorageProvider, as_utc


logger = logging.getLogger(__name__)


class GCSStorage(StorageProvider):
    """Handler for Google Cloud Storage buckets."""

    name = 'gcs'

    def __init__(self, bucket_name: str, credentials_path: Optional[str] = None, client=None):
        """
        Args:
            bucket_name: GCS bucket name
            credentials_path: Service account JSON file, application default
                credentials when omitted
            client: Pre-built google.cloud.storage.Client
        """
        self.bucket_name = bucket_name

        if client is None:
            from google.auth.exceptions import GoogleAuthError
            from google.cloud import storage

            try:
                if credentials_path:
                    client = storage.Client.from_service_account_json(credentials_path)
                else:
                    client = storage.Client()
            except (GoogleAuthError, OSError, ValueError) as e:
                raise StorageError(f"Failed to initialize GCS client: {e}") from e

        self.client = client
        self.bucket = client.bucket(bucket_name)

    def upload(self, key: str, local_file: str):
        from google.api_core.exceptions import GoogleAPIError

        try:
            self.bucket.blob(key).upload_from_filename(local_file)
        except (GoogleAPIError, OSError) as e:
            raise StorageError(f"GCS upload failed for {key}: {e}") from e
        logger.info(f"Uploaded to gs://{self.bucket_name}/{key}")

    def download(self, key: str, local_file: str):
        from google.api_core.exceptions import GoogleAPIError

        try:
            self.bucket.blob(key).download_to_filename(local_file)
        except (GoogleAPIError, OSError) as e:
            raise StorageError(f"GCS download failed for {key}: {e}") from e

    def list(self, prefix: str = '') -> List[StorageItem]:
        from google.api_core.exceptions import GoogleAPIError

        try:
            return [
                StorageItem(
                    key=blob.name,
                    size=blob.size or 0,
                    last_modified=as_utc(blob.updated)
                )
                for blob in self.client.list_blobs(self.bucket_name, prefix=prefix or None)
            ]
        except GoogleAPIError as e:
            raise StorageError(f"GCS list failed: {e}") from e

    def delete(self, key: str):
        from google.api_core.exceptions import GoogleAPIError

        try:
            self.bucket.blob(key).delete()
        except GoogleAPIError as e:
            raise StorageError(f"GCS delete failed for {key}: {e}") from e


class AzureBlobStorage(StorageProvider):
    """Handler for Azure Blob Storage containers."""

    name = 'azure'

    def __init__(self, account_name: str, account_key: str, container: str, service_client=None):
        """
        Args:
            account_name: Storage account name
            account_key: Storage account key
            container: Blob container name
            service_client: Pre-built azure.storage.blob.BlobServiceClient
        """
        self.account_name = account_name
        self.container = container

        if service_client is None:
            from azure.storage.blob import BlobServiceClient

            account_url = f"https://{account_name}.blob.core.windows.net"
            service_client = BlobServiceClient(account_url=account_url, credential=account_key)

        self.blob_service_client = service_client
        self.container_client = service_client.get_container_client(container)

    def upload(self, key: str, local_file: str):
        from azure.core.exceptions import AzureError

        try:
            with open(local_file, 'rb') as data:
                self.container_client.upload_blob(name=key, data=data, overwrite=True)
        except (AzureError, OSError) as e:
            raise StorageError(f"Azure upload failed for {key}: {e}") from e
        logger.info(f"Uploaded to azure://{self.container}/{key}")

    def download(self, key: str, local_file: str):
        from azure.core.exceptions import AzureError

        try:
            downloader = self.container_client.download_blob(key)
            with open(local_file, 'wb') as f:
                downloader.readinto(f)
        except (AzureError, OSError) as e:
            raise StorageError(f"Azure download failed for {key}: {e}") from e

    def list(self, prefix: str = '') -> List[StorageItem]:
        from azure.core.exceptions import AzureError

        try:
            return [
                StorageItem(
                    key=blob.name,
                    size=blob.size or 0,
                    last_modified=as_utc(blob.last_modified)
                )
                for blob in self.container_client.list_blobs(name_starts_with=prefix or None)
            ]
        except AzureError as e:
            raise StorageError(f"Azure list failed: {e}") from e

    def delete(self, key: str):
        from azure.core.exceptions import AzureError

        try:
            self.container_client.delete_blob(key)
        except AzureError as e:
            raise StorageError(f"Azure delete failed for {key}: {e}") from e
