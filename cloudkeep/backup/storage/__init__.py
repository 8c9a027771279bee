"""
Storage providers for backup archives.

create_storage() maps a provider name onto one adapter:
- s3, aws, contabo, digitalocean, wasabi, minio, r2: S3Storage
- gcs, google: GCSStorage
- azure: AzureBlobStorage
- b2, backblaze: B2Storage
- googledrive, gdrive: GoogleDriveStorage
- onedrive, dropbox, box, pcloud, mega
"""

from typing import Optional

import requests

from cloudkeep.config import ConfigurationError, StorageSettings
from cloudkeep.backup.sources import ProcessRunner
from cloudkeep.backup.storage.base import StorageError, StorageItem, StorageProvider


__all__ = [
    'BACKUP_PREFIX',
    'StorageError',
    'StorageItem',
    'StorageProvider',
    'backup_key',
    'create_storage',
    's3_endpoint',
]

BACKUP_PREFIX = 'backups/'

S3_PROVIDERS = ('s3', 'aws', 'contabo', 'digitalocean', 'wasabi', 'minio', 'r2')

PROVIDER_ALIASES = {
    'google': 'gcs',
    'backblaze': 'b2',
    'gdrive': 'googledrive',
}


def backup_key(filename: str) -> str:
    """Remote key of a backup file: backups/<filename>."""
    return f"{BACKUP_PREFIX}{filename}"


def s3_endpoint(settings: StorageSettings) -> Optional[str]:
    """
    Endpoint URL for an S3-compatible provider.

    aws, digitalocean, wasabi and r2 derive it from region or account;
    the rest use the configured endpoint (None means the AWS default).
    """
    provider = (settings.provider or '').strip().lower()
    if provider == 'aws':
        return f"https://s3.{settings.region}.amazonaws.com"
    if provider == 'digitalocean':
        return f"https://{settings.region}.digitaloceanspaces.com"
    if provider == 'wasabi':
        return f"https://s3.{settings.region}.wasabisys.com"
    if provider == 'r2':
        return f"https://{_require(settings.account_id, 'R2 account_id')}.r2.cloudflarestorage.com"
    return settings.endpoint or None


def _require(value, description: str):
    if not value:
        raise ConfigurationError(f"{description} required")
    return value


def create_storage(settings: StorageSettings, runner: Optional[ProcessRunner] = None,
                   session: Optional[requests.Session] = None) -> StorageProvider:
    """
    Factory function to create the storage adapter for a provider.

    Args:
        settings: Storage section of the configuration
        runner: Process runner for MEGAcmd (default: subprocess)
        session: requests.Session shared by HTTP adapters

    Returns:
        StorageProvider instance

    Raises:
        ConfigurationError: If the provider is unknown or a required field is missing
        StorageError: If the backend rejects the initial authorization
    """
    provider = (settings.provider or '').strip().lower()
    provider = PROVIDER_ALIASES.get(provider, provider)

    if provider in S3_PROVIDERS:
        from cloudkeep.backup.storage.s3 import S3Storage
        return S3Storage(
            access_key=_require(settings.access_key, 'S3 access_key'),
            secret_key=_require(settings.secret_key, 'S3 secret_key'),
            bucket_name=_require(settings.bucket, 'S3 bucket'),
            region=settings.region,
            endpoint_url=s3_endpoint(settings)
        )

    if provider == 'gcs':
        from cloudkeep.backup.storage.cloud import GCSStorage
        return GCSStorage(
            bucket_name=_require(settings.bucket, 'GCS bucket'),
            credentials_path=settings.credentials_path
        )

    if provider == 'azure':
        from cloudkeep.backup.storage.cloud import AzureBlobStorage
        return AzureBlobStorage(
            account_name=_require(settings.account_name, 'Azure account_name'),
            account_key=_require(
                settings.account_key,
                'Azure account_key (or AZURE_STORAGE_ACCOUNT_KEY)'
            ),
            container=_require(settings.bucket, 'Azure container (bucket)')
        )

    if provider == 'b2':
        from cloudkeep.backup.storage.b2 import B2Storage
        return B2Storage(
            account_id=_require(settings.account_id, 'B2 account_id'),
            application_key=_require(settings.application_key, 'B2 application_key'),
            bucket_id=_require(settings.bucket_id, 'B2 bucket_id'),
            bucket_name=_require(settings.bucket, 'B2 bucket'),
            session=session
        )

    if provider == 'googledrive':
        from cloudkeep.backup.storage.drives import GoogleDriveStorage
        return GoogleDriveStorage(
            _require(settings.access_key, 'Google Drive access token (set as access_key)'),
            folder_id=settings.bucket_id,
            session=session
        )

    if provider == 'onedrive':
        from cloudkeep.backup.storage.drives import OneDriveStorage
        return OneDriveStorage(
            _require(settings.access_key, 'OneDrive access token (set as access_key)'),
            folder_path=settings.bucket_id,
            session=session
        )

    if provider == 'dropbox':
        from cloudkeep.backup.storage.drives import DropboxStorage
        return DropboxStorage(
            _require(settings.access_key, 'Dropbox access token (set as access_key)'),
            folder_path=settings.bucket_id,
            session=session
        )

    if provider == 'box':
        from cloudkeep.backup.storage.drives import BoxStorage
        return BoxStorage(
            _require(settings.access_key, 'Box access token (set as access_key)'),
            folder_id=settings.bucket_id,
            session=session
        )

    if provider == 'pcloud':
        from cloudkeep.backup.storage.pcloud import PCloudStorage
        return PCloudStorage(
            _require(settings.access_key, 'pCloud access token (set as access_key)'),
            region=settings.region,
            folder_path=settings.bucket_id,
            session=session
        )

    if provider == 'mega':
        from cloudkeep.backup.storage.mega import MegaStorage
        return MegaStorage(
            email=_require(settings.account_name, 'MEGA email (set as account_name)'),
            password=_require(settings.account_key, 'MEGA password (set as account_key)'),
            folder_path=settings.bucket_id,
            runner=runner
        )

    raise ConfigurationError(f"Unknown provider: {settings.provider}")
