"""
Backup executor - orchestrates backup creation and archive transfer.

Backup stages, in order:
1. Project directory (fatal on failure)
2. Additional paths (missing ones skipped)
3. Systemd services and timers
4. Presets (nginx, crontab, dotfiles, /etc)
5. Command outputs (failures skipped)
6. Database dump (if enabled, fatal on failure)
7. Finish the archive

A stage failure leaves the partial archive on disk; only a file whose
creation returned successfully is a complete backup.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from cloudkeep.config import AppConfig, ConfigurationError
from cloudkeep.backup.compression import (
    ArchiveWriter,
    CompressionError,
    generate_backup_filename,
    get_archive_size,
    list_local_backups,
)
from cloudkeep.backup.sources import (
    CommandOutputCollector,
    DatabaseDumper,
    FilesystemCollector,
    PresetCollector,
    ProcessRunner,
    SourceError,
    SubprocessRunner,
    SystemdCollector,
)
from cloudkeep.backup.storage import (
    BACKUP_PREFIX,
    StorageItem,
    StorageProvider,
    backup_key,
    create_storage,
)


logger = logging.getLogger(__name__)

DEFAULT_RESTORE_DIR = './restored'


class BackupError(Exception):
    """Raised when a backup stage fails; the cause holds the underlying error."""
    pass


class BackupExecutor:
    """
    Runs backups and moves archives between the local backup directory
    and remote storage.
    """

    def __init__(self, config: AppConfig, runner: Optional[ProcessRunner] = None,
                 storage: Optional[StorageProvider] = None,
                 systemd_dir: Optional[str] = None, etc_dir: Optional[str] = None):
        """
        Args:
            config: Resolved application configuration
            runner: Process runner for external commands (default: subprocess)
            storage: Storage provider, built from config.storage on first use if omitted
            systemd_dir: Override for /etc/systemd/system
            etc_dir: Override for /etc
        """
        self.config = config
        self.runner = runner or SubprocessRunner()
        self._storage = storage
        self.systemd_dir = systemd_dir
        self.etc_dir = etc_dir
        self.logs: List[str] = []

    @property
    def storage(self) -> StorageProvider:
        if self._storage is None:
            self._storage = create_storage(self.config.storage, runner=self.runner)
        return self._storage

    def create_backup(self, full: bool = False, now: Optional[datetime] = None) -> str:
        """
        Create a backup archive in the local backup directory.

        Args:
            full: Name the backup as full instead of incremental
            now: Timestamp for the filename (default: local now)

        Returns:
            Path of the finished archive

        Raises:
            BackupError: If a fatal stage fails
            ValueError: If the compression level is out of range
        """
        backup = self.config.backup
        self._log("Starting backup creation...")

        try:
            os.makedirs(backup.local_backup_dir, exist_ok=True)
        except OSError as e:
            raise BackupError("Failed to create backup directory") from e

        backup_path = os.path.join(backup.local_backup_dir, generate_backup_filename(full, now))
        self._log(f"Creating backup: {backup_path}")

        try:
            writer = ArchiveWriter(backup_path, backup.compression_level)
        except CompressionError as e:
            raise BackupError("Failed to create backup file") from e

        try:
            self._write_stages(writer)
            writer.finish()
        except BaseException:
            writer.abort()
            raise

        size = get_archive_size(backup_path)
        self._log(f"Backup created successfully: {backup_path} ({size / 1024 / 1024:.2f} MB)")
        return backup_path

    def _write_stages(self, writer: ArchiveWriter):
        backup = self.config.backup
        filesystem = FilesystemCollector(backup.exclude)

        try:
            filesystem.collect_project(writer, backup.project_path)
        except (SourceError, CompressionError) as e:
            raise BackupError("Failed to backup project directory") from e

        try:
            filesystem.collect_additional(writer, backup.additional_paths)
        except (SourceError, CompressionError) as e:
            raise BackupError("Failed to backup additional paths") from e

        system = self.config.system
        if system is not None:
            try:
                self._write_system(writer, system)
            except (SourceError, CompressionError) as e:
                raise BackupError("Failed to backup system configuration") from e

        database = self.config.database
        if database is not None and database.enabled:
            self._log("Backing up database...")
            dumper = DatabaseDumper(self.runner)
            try:
                dumper.dump(writer, database)
            except (ConfigurationError, SourceError, CompressionError, OSError) as e:
                raise BackupError("Failed to backup database") from e

        self._log(f"Archive entries written: {writer.entry_count}")

    def _write_system(self, writer: ArchiveWriter, system):
        systemd = SystemdCollector(self.systemd_dir) if self.systemd_dir else SystemdCollector()
        systemd.collect(writer, system.systemd_services, system.systemd_timers)

        if system.presets is not None:
            kwargs = {'etc_dir': self.etc_dir} if self.etc_dir else {}
            presets = PresetCollector(self.runner, self.config.backup.exclude, **kwargs)
            presets.collect(writer, system.presets)

        if system.command_outputs:
            self._log("Backing up command outputs...")
            CommandOutputCollector(self.runner).collect(writer, system.command_outputs)

    def upload(self, backup_file: Optional[str] = None) -> List[str]:
        """
        Upload one backup, or every local backup when none is given.

        Returns:
            Remote keys that were written

        Raises:
            StorageError: On the first failed upload
        """
        if backup_file:
            files = [backup_file]
        else:
            files = list_local_backups(self.config.backup.local_backup_dir)

        keys = []
        for path in files:
            key = backup_key(os.path.basename(path))
            self._log(f"Uploading {os.path.basename(path)} to {self.config.storage.provider}...")
            self.storage.upload(key, path)
            keys.append(key)

        return keys

    def list_local(self) -> List[Dict]:
        """Local backups, newest name first."""
        backups = []
        for path in reversed(list_local_backups(self.config.backup.local_backup_dir)):
            stat = os.stat(path)
            backups.append({
                'name': os.path.basename(path),
                'path': path,
                'size': stat.st_size,
                'modified': datetime.fromtimestamp(stat.st_mtime),
            })
        return backups

    def list_remote(self) -> List[StorageItem]:
        return list_remote_backups(self.storage)

    def download(self, key: str, output_dir: str = DEFAULT_RESTORE_DIR) -> str:
        return download_backup(self.storage, key, output_dir)

    def restore(self, backup_file: str, target_dir: str = DEFAULT_RESTORE_DIR) -> str:
        return restore_backup(backup_file, target_dir, self.runner)

    def _log(self, message: str):
        """Log a message and keep it for the run summary."""
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def list_remote_backups(storage: StorageProvider) -> List[StorageItem]:
    return storage.list(BACKUP_PREFIX)


def download_backup(storage: StorageProvider, key: str, output_dir: str = DEFAULT_RESTORE_DIR) -> str:
    """
    Download a backup by key or bare filename.

    Returns:
        Local path of the downloaded file
    """
    name = key[len(BACKUP_PREFIX):] if key.startswith(BACKUP_PREFIX) else key
    storage_key = backup_key(name)

    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as e:
        raise BackupError("Failed to create output directory") from e

    output_path = os.path.join(output_dir, name)
    storage.download(storage_key, output_path)
    logger.info(f"Downloaded to: {output_path}")
    return output_path


def restore_backup(backup_file: str, target_dir: str = DEFAULT_RESTORE_DIR,
                   runner: Optional[ProcessRunner] = None) -> str:
    """
    Extract a backup with `tar -I "zstd -d"`.

    Returns:
        Target directory
    """
    runner = runner or SubprocessRunner()
    logger.info(f"Restoring backup from {backup_file} to {target_dir}")

    try:
        os.makedirs(target_dir, exist_ok=True)
    except OSError as e:
        raise BackupError("Failed to create target directory") from e

    try:
        result = runner.run('tar', ['-I', 'zstd -d', '-xf', backup_file, '-C', target_dir])
    except OSError as e:
        raise BackupError("Failed to execute tar command") from e

    if not result.success:
        raise BackupError(f"Restore failed: {result.stderr_text()}")

    logger.info("Restore completed successfully")
    return target_dir
