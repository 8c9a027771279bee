"""
Unit tests for retention policy management (cloudkeep/backup/retention.py).

Tests RetentionManager for cleaning up old local and remote backups.
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from cloudkeep.backup.retention import RetentionManager
from cloudkeep.backup.storage import StorageItem


NOW = datetime(2024, 1, 15, 12, 0, 0)


def make_backup(backup_dir, name, age_days):
    """Create a backup file whose mtime is age_days before NOW."""
    backup_dir.mkdir(parents=True, exist_ok=True)
    path = backup_dir / name
    path.write_bytes(b'archive')
    mtime = (NOW - timedelta(days=age_days)).timestamp()
    os.utime(path, (mtime, mtime))
    return str(path)


def remote_item(name, age_days):
    modified = NOW.replace(tzinfo=timezone.utc) - timedelta(days=age_days)
    return StorageItem(key=f'backups/{name}', size=7, last_modified=modified)


class TestRetentionManager:
    """Test RetentionManager basic functionality."""

    def test_retention_manager_initialization(self, tmp_path):
        """Test RetentionManager initializes correctly."""
        manager = RetentionManager(str(tmp_path))

        assert manager.storage is None
        assert manager.logs == []

    def test_negative_retention(self, tmp_path):
        with pytest.raises(ValueError):
            RetentionManager(str(tmp_path)).sweep(-1)

    def test_missing_backup_dir(self, tmp_path):
        summary = RetentionManager(str(tmp_path / 'missing')).sweep(7)

        assert summary['local_deleted'] == []


@freeze_time(NOW)
class TestLocalCleanup:
    """Test local backup cleanup."""

    def test_old_backups_deleted(self, tmp_path):
        """Test a 10 day old backup goes and a 3 day old one stays with 7 days retention."""
        backup_dir = tmp_path / 'backups'
        old = make_backup(backup_dir, 'backup-incr-20240105-120000.tar.zst', 10)
        recent = make_backup(backup_dir, 'backup-incr-20240112-120000.tar.zst', 3)

        summary = RetentionManager(str(backup_dir)).sweep(7)

        assert summary['local_deleted'] == [old]
        assert not os.path.exists(old)
        assert os.path.exists(recent)

    def test_non_backup_files_untouched(self, tmp_path):
        backup_dir = tmp_path / 'backups'
        notes = make_backup(backup_dir, 'notes.txt', 30)

        RetentionManager(str(backup_dir)).sweep(7)

        assert os.path.exists(notes)

    def test_zero_retention_deletes_everything_older_than_now(self, tmp_path):
        backup_dir = tmp_path / 'backups'
        make_backup(backup_dir, 'backup-incr-20240115-110000.tar.zst', 0.01)
        make_backup(backup_dir, 'backup-incr-20240114-120000.tar.zst', 1)

        summary = RetentionManager(str(backup_dir)).sweep(0)

        assert len(summary['local_deleted']) == 2
        assert os.listdir(backup_dir) == []

    def test_deleted_oldest_first(self, tmp_path):
        backup_dir = tmp_path / 'backups'
        newer = make_backup(backup_dir, 'a.tar.zst', 9)
        older = make_backup(backup_dir, 'b.tar.zst', 20)

        summary = RetentionManager(str(backup_dir)).sweep(7)

        assert summary['local_deleted'] == [older, newer]

    def test_sweep_is_idempotent(self, tmp_path):
        backup_dir = tmp_path / 'backups'
        make_backup(backup_dir, 'backup-incr-20240105-120000.tar.zst', 10)
        manager = RetentionManager(str(backup_dir))

        first = manager.sweep(7)
        second = manager.sweep(7)

        assert len(first['local_deleted']) == 1
        assert second['local_deleted'] == []

    def test_dry_run_deletes_nothing(self, tmp_path):
        """Test a dry run reports candidates and never touches remote storage."""
        backup_dir = tmp_path / 'backups'
        old = make_backup(backup_dir, 'backup-incr-20240105-120000.tar.zst', 10)
        storage = MagicMock()

        summary = RetentionManager(str(backup_dir), storage).sweep(7, dry_run=True)

        assert summary['dry_run'] is True
        assert summary['local_candidates'] == [old]
        assert summary['local_deleted'] == []
        assert os.path.exists(old)
        assert storage.mock_calls == []
        assert any('Would delete' in line for line in summary['logs'])


@freeze_time(NOW)
class TestRemoteCleanup:
    """Test remote backup cleanup."""

    def test_old_remote_objects_deleted(self, tmp_path):
        storage = MagicMock()
        storage.list.return_value = [
            remote_item('backup-incr-20240105-120000.tar.zst', 10),
            remote_item('backup-incr-20240114-120000.tar.zst', 1),
            StorageItem(key='backups/unknown.tar.zst', size=1, last_modified=None),
        ]

        summary = RetentionManager(str(tmp_path), storage).sweep(7)

        storage.list.assert_called_once_with('backups/')
        storage.delete.assert_called_once_with('backups/backup-incr-20240105-120000.tar.zst')
        assert summary['remote_deleted'] == ['backups/backup-incr-20240105-120000.tar.zst']

    def test_no_storage_skips_remote(self, tmp_path):
        summary = RetentionManager(str(tmp_path)).sweep(7)

        assert summary['remote_deleted'] == []
        assert any('skipping remote cleanup' in line for line in summary['logs'])
