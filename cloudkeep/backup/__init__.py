"""
Backup module for cloudkeep.

This module handles the core backup functionality including:
- Source collection (project, system files, command outputs, databases)
- Streaming tar+zstd compression
- Storage providers (S3-compatible, cloud object stores, drive services)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, BackupError
from .compression import ArchiveWriter, generate_backup_filename
from .storage import StorageProvider, create_storage
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'BackupError',
    'ArchiveWriter',
    'generate_backup_filename',
    'StorageProvider',
    'create_storage',
    'RetentionManager'
]
