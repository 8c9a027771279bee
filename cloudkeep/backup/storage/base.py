"""
Storage provider contract shared by every backend.

Every adapter exposes the same four operations over a flat key
namespace (keys look like `backups/backup-full-20240101-000000.tar.zst`):
upload, download, list and delete. Authentication, pagination and
addressing stay inside the adapter.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import requests


logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 300


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


@dataclass(frozen=True)
class StorageItem:
    key: str
    size: int
    last_modified: Optional[datetime] = None


class StorageProvider(ABC):
    """Upload/download/list/delete over a remote namespace."""

    name = 'storage'

    @abstractmethod
    def upload(self, key: str, local_file: str):
        """Upload local_file under key, replacing any existing object."""

    @abstractmethod
    def download(self, key: str, local_file: str):
        """Write the object stored under key to local_file."""

    @abstractmethod
    def list(self, prefix: str = '') -> List[StorageItem]:
        """Every item whose key starts with prefix, across all pages."""

    @abstractmethod
    def delete(self, key: str):
        """Remove the object stored under key."""


class HttpStorageProvider(StorageProvider):
    """
    Base for adapters that talk to a JSON HTTP API through requests.

    A requests.Session can be injected for connection reuse (or for tests);
    every call goes through _request so failures surface uniformly as
    StorageError.
    """

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', REQUEST_TIMEOUT)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise StorageError(f"{self.name} request failed ({method} {url}): {e}") from e

        if not response.ok:
            raise StorageError(
                f"{self.name} request failed ({method} {url}): "
                f"HTTP {response.status_code}: {response.text}"
            )
        return response

    def _json(self, method: str, url: str, **kwargs) -> Any:
        response = self._request(method, url, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise StorageError(f"{self.name} returned malformed JSON from {url}: {e}") from e

    def _save(self, response: requests.Response, local_file: str):
        try:
            with open(local_file, 'wb') as f:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    if chunk:
                        f.write(chunk)
        except OSError as e:
            raise StorageError(f"Failed to write {local_file}: {e}") from e


def split_key(key: str) -> Tuple[str, str]:
    """
    Split a key into its directory part and its name part.

    >>> split_key('backups/x.tar.zst')
    ('backups/', 'x.tar.zst')
    """
    slash = key.rfind('/')
    if slash == -1:
        return '', key
    return key[:slash + 1], key[slash + 1:]


def read_file(local_file: str) -> bytes:
    try:
        with open(local_file, 'rb') as f:
            return f.read()
    except OSError as e:
        raise StorageError(f"Local file not found or unreadable: {local_file}: {e}") from e


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
