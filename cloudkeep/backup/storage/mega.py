"""
MEGA storage through MEGAcmd.

MEGA encrypts client-side, so there is no plain HTTP API to call. The
MEGAcmd executables (mega-login, mega-put, ...) keep a session in the
background; every operation checks it with mega-whoami first and logs in
when needed.
"""

import logging
import posixpath
from datetime import datetime, timezone
from typing import List, Optional

from cloudkeep.backup.sources import ProcessResult, ProcessRunner, SubprocessRunner
from cloudkeep.backup.storage.base import StorageError, StorageItem, StorageProvider, split_key


logger = logging.getLogger(__name__)

LS_DATE_FORMAT = '%d%b%Y %H:%M:%S'


def parse_ls_line(line: str):
    """
    Parse one line of `mega-ls -l` output.

    Columns are FLAGS VERS SIZE DATE TIME NAME, e.g.
    `-ep---- 1 1048576 14Mar2024 10:22:05 backup-full-20240314-102200.tar.zst`.
    Folders have a `d` flag and are ignored.

    Returns:
        (name, size, last_modified) for files, None otherwise
    """
    parts = line.split()
    if len(parts) < 6 or not parts[0].startswith('-'):
        return None

    try:
        size = int(parts[2])
    except ValueError:
        return None

    try:
        modified = datetime.strptime(f"{parts[3]} {parts[4]}", LS_DATE_FORMAT)
        modified = modified.replace(tzinfo=timezone.utc)
    except ValueError:
        modified = None

    return ' '.join(parts[5:]), size, modified


class MegaStorage(StorageProvider):
    """Handler for MEGA via MEGAcmd."""

    name = 'MEGA'

    def __init__(self, email: str, password: str, folder_path: Optional[str] = None,
                 runner: Optional[ProcessRunner] = None):
        self.email = email
        self.password = password
        self.folder_path = folder_path or '/'
        self.runner = runner or SubprocessRunner()

    def _remote_path(self, key: str) -> str:
        key = key.strip('/')
        base = self.folder_path.rstrip('/')
        if not key:
            return base or '/'
        return f"{base}/{key}"

    def _run(self, command: str, args: List[str]) -> ProcessResult:
        try:
            return self.runner.run(command, args)
        except OSError as e:
            raise StorageError(f"Failed to execute {command}. Is MEGAcmd installed? {e}") from e

    def _ensure_logged_in(self):
        if self._run('mega-whoami', []).success:
            return

        logger.info("Logging into MEGA...")
        result = self._run('mega-login', [self.email, self.password])
        if not result.success:
            raise StorageError(f"MEGA login failed: {result.stderr_text()}")
        logger.info("Successfully logged into MEGA")

    def upload(self, key: str, local_file: str):
        logger.info(f"Uploading {key} to MEGA...")
        self._ensure_logged_in()

        # -c creates missing remote folders
        result = self._run('mega-put', ['-c', local_file, self._remote_path(key)])
        if not result.success:
            raise StorageError(f"MEGA upload failed: {result.stderr_text()}")
        logger.info(f"Successfully uploaded: {key}")

    def download(self, key: str, local_file: str):
        logger.info(f"Downloading {key} from MEGA...")
        self._ensure_logged_in()

        result = self._run('mega-get', [self._remote_path(key), local_file])
        if not result.success:
            raise StorageError(f"MEGA download failed: {result.stderr_text()}")

    def list(self, prefix: str = '') -> List[StorageItem]:
        self._ensure_logged_in()
        directory, name_prefix = split_key(prefix)

        result = self._run('mega-ls', ['-l', self._remote_path(directory)])
        if not result.success:
            stderr = result.stderr_text()
            if "Couldn't find" in stderr:
                return []
            raise StorageError(f"MEGA list failed: {stderr}")

        items = []
        for line in result.stdout.decode('utf-8', errors='replace').splitlines():
            parsed = parse_ls_line(line)
            if parsed is None:
                continue
            name, size, modified = parsed
            name = posixpath.basename(name)
            if name.startswith(name_prefix):
                items.append(StorageItem(key=directory + name, size=size, last_modified=modified))
        return items

    def delete(self, key: str):
        logger.info(f"Deleting {key} from MEGA...")
        self._ensure_logged_in()

        result = self._run('mega-rm', [self._remote_path(key)])
        if not result.success:
            raise StorageError(f"MEGA delete failed: {result.stderr_text()}")
        logger.info(f"Deleted from MEGA: {key}")
