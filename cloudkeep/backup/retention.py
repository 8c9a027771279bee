"""
Retention policy enforcement for backups.

Removes local backup files and remote `backups/` objects older than the
retention period. Local and remote cutoffs are computed separately at the
time each side is swept.
"""

import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from cloudkeep.backup.compression import list_local_backups
from cloudkeep.backup.storage import BACKUP_PREFIX, StorageProvider


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Age-based cleanup of local and remote backups.

    Usage:
        manager = RetentionManager('/var/backups/app', storage)
        summary = manager.sweep(retention_days=7, dry_run=False)
    """

    def __init__(self, backup_dir: str, storage: Optional[StorageProvider] = None):
        """
        Args:
            backup_dir: Local backup directory
            storage: Remote provider; remote cleanup is skipped without one
        """
        self.backup_dir = backup_dir
        self.storage = storage
        self.logs: List[str] = []

    def sweep(self, retention_days: int, dry_run: bool = False) -> Dict[str, Any]:
        """
        Delete backups older than retention_days.

        A dry run only reports local candidates and never touches remote
        storage.

        Returns:
            Dict with summary of cleanup operations:
            {
                'local_deleted': List[str],
                'local_candidates': List[str],
                'remote_deleted': List[str],
                'dry_run': bool,
                'logs': List[str]
            }

        Raises:
            OSError: If a local file cannot be deleted
            StorageError: If remote listing or deletion fails
        """
        if retention_days < 0:
            raise ValueError(f"retention_days must be non-negative, got {retention_days}")

        summary = {
            'local_deleted': [],
            'local_candidates': [],
            'remote_deleted': [],
            'dry_run': dry_run,
        }

        self._log(f"Cleaning local backups (retention: {retention_days} days)...")
        candidates = self._expired_local(retention_days)
        summary['local_candidates'] = candidates

        for path in candidates:
            if dry_run:
                self._log(f"Would delete: {path}")
            else:
                os.remove(path)
                summary['local_deleted'].append(path)
                self._log(f"Deleted: {path}")

        if not dry_run:
            if self.storage is None:
                self._log("No remote storage configured, skipping remote cleanup")
            else:
                summary['remote_deleted'] = self._cleanup_remote(retention_days)

        self._log(
            f"Retention cleanup complete. "
            f"Local deleted: {len(summary['local_deleted'])}, "
            f"Remote deleted: {len(summary['remote_deleted'])}"
        )
        summary['logs'] = self.logs
        return summary

    def _expired_local(self, retention_days: int) -> List[str]:
        """Local backup files modified before the cutoff, oldest first."""
        cutoff_date = datetime.now() - timedelta(days=retention_days)

        expired = []
        for path in list_local_backups(self.backup_dir):
            modified = datetime.fromtimestamp(os.path.getmtime(path))
            if modified < cutoff_date:
                expired.append((modified, path))

        return [path for _, path in sorted(expired)]

    def _cleanup_remote(self, retention_days: int) -> List[str]:
        self._log("Cleaning remote backups...")
        cutoff_date = datetime.now(timezone.utc) - timedelta(days=retention_days)

        deleted = []
        for item in self.storage.list(BACKUP_PREFIX):
            if item.last_modified is None:
                logger.debug(f"No modification time for {item.key}, keeping it")
                continue
            if item.last_modified < cutoff_date:
                self.storage.delete(item.key)
                deleted.append(item.key)
                self._log(f"Deleted remote object: {item.key}")

        return deleted

    def _log(self, message: str):
        """Log a message and keep it for the summary."""
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
