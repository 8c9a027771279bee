"""
Archive writer for backup files.

A backup is a tar stream nested inside a single zstd frame:
- entries are appended as they are produced, nothing is held in memory
- tar headers carry path and size only (GNU format, default metadata)
- the result restores with `tar -I "zstd -d" -xf FILE`
"""

import io
import os
import logging
import tarfile
from datetime import datetime
from typing import Iterable, List, Optional

import zstandard as zstd


logger = logging.getLogger(__name__)

DEFAULT_COMPRESSION_LEVEL = 3
MIN_COMPRESSION_LEVEL = 0
MAX_COMPRESSION_LEVEL = 22

BACKUP_EXTENSION = '.zst'
ARCHIVE_SUFFIX = '.tar.zst'
TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


class ExclusionSet:
    """
    Ordered exclusion patterns.

    Paths visited during a tree walk are excluded when they contain any
    pattern as a plain substring. Single files appended on their own go
    through matches_file, where `*.ext` patterns are suffix tests.
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        self.patterns: List[str] = [p for p in (patterns or []) if p]

    def matches(self, path: str) -> bool:
        """Substring test used while walking a tree."""
        path_str = str(path)
        return any(pattern in path_str for pattern in self.patterns)

    def matches_file(self, path: str) -> bool:
        """Suffix test for `*.ext` patterns, substring test for the rest."""
        path_str = str(path)
        for pattern in self.patterns:
            if pattern.startswith('*.'):
                if path_str.endswith(pattern[1:]):
                    return True
            elif pattern in path_str:
                return True
        return False


def validate_compression_level(level: int) -> int:
    """
    Reject levels zstd does not accept for backups.

    Raises:
        ValueError: If level is outside 0-22
    """
    if isinstance(level, bool) or not isinstance(level, int):
        raise ValueError(f"Compression level must be an integer, got {level!r}")
    if not MIN_COMPRESSION_LEVEL <= level <= MAX_COMPRESSION_LEVEL:
        raise ValueError(
            f"Invalid compression level: {level}. "
            f"Valid range: {MIN_COMPRESSION_LEVEL}-{MAX_COMPRESSION_LEVEL}"
        )
    return level


class ArchiveWriter:
    """
    Streaming append-only tar+zstd sink.

    Usage:
        writer = ArchiveWriter('/backups/backup-full-20240101-000000.tar.zst', 3)
        writer.append_entry('commands/uptime.txt', b'up 3 days')
        writer.append_tree('/srv/app', 'project', exclusions)
        writer.finish()

    If anything fails before finish(), call abort() to release the file
    handle. The partial file stays on disk.
    """

    def __init__(self, destination: str, compression_level: int = DEFAULT_COMPRESSION_LEVEL):
        self.compression_level = validate_compression_level(compression_level)
        self.destination = str(destination)
        self.entry_count = 0
        self._finished = False

        try:
            self._file = open(self.destination, 'wb')
        except OSError as e:
            raise CompressionError(f"Failed to create archive file {self.destination}: {e}") from e

        try:
            compressor = zstd.ZstdCompressor(level=self.compression_level)
            self._writer = compressor.stream_writer(self._file, closefd=False)
            self._tar = tarfile.open(
                fileobj=self._writer,
                mode='w|',
                format=tarfile.GNU_FORMAT
            )
        except (zstd.ZstdError, tarfile.TarError, OSError) as e:
            self._file.close()
            raise CompressionError(f"Failed to initialize archive stream: {e}") from e

    def append_entry(self, archive_path: str, data: bytes):
        """
        Append one file entry built from in-memory bytes.

        Args:
            archive_path: Forward-slash virtual path inside the archive
            data: Entry content
        """
        self._check_open()
        if isinstance(data, str):
            data = data.encode('utf-8')

        info = tarfile.TarInfo(name=archive_path)
        info.size = len(data)
        try:
            self._tar.addfile(info, io.BytesIO(data))
        except (tarfile.TarError, zstd.ZstdError, OSError, ValueError) as e:
            raise CompressionError(f"Failed to add {archive_path} to archive: {e}") from e
        self.entry_count += 1

    def append_file(self, source_path: str, archive_path: str):
        """
        Append a single file from disk.

        The file is read and written with a fresh header. If that fails,
        tarfile copies it from disk under the same name. A failing copy is
        fatal.
        """
        self._check_open()
        try:
            with open(source_path, 'rb') as f:
                data = f.read()
            info = tarfile.TarInfo(name=archive_path)
            info.size = len(data)
            self._tar.addfile(info, io.BytesIO(data))
            self.entry_count += 1
            return
        except zstd.ZstdError as e:
            raise CompressionError(f"Failed to add file to archive: {source_path}: {e}") from e
        except (OSError, ValueError, tarfile.TarError) as e:
            logger.debug(f"Direct append failed for {source_path}, copying from disk: {e}")

        try:
            self._tar.add(source_path, arcname=archive_path, recursive=False)
        except (OSError, tarfile.TarError, zstd.ZstdError) as e:
            raise CompressionError(f"Failed to add file to archive: {source_path}: {e}") from e
        self.entry_count += 1

    def append_tree(self, source_root: str, prefix: str, exclusions: Optional[ExclusionSet] = None):
        """
        Append every file below source_root.

        Symlinks are not followed and directories get no entries of their
        own. Each file lands at `<prefix>/<path relative to source_root's parent>`,
        so walking /srv/app with prefix `project` yields `project/app/...`.

        Args:
            source_root: Directory (or single file) to walk
            prefix: Archive path prefix, may be empty
            exclusions: Paths containing any of these substrings are skipped
        """
        self._check_open()
        exclusions = exclusions or ExclusionSet()
        root = os.path.normpath(str(source_root))
        base = os.path.dirname(root) or os.curdir

        if os.path.isfile(root):
            if not exclusions.matches(root):
                self.append_file(root, _join_archive_path(prefix, os.path.relpath(root, base)))
            return

        def on_error(error):
            raise CompressionError(f"Failed to read directory entry: {error}") from error

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error, followlinks=False):
            # Pruning an excluded directory drops exactly the paths that contain it
            dirnames[:] = sorted(
                d for d in dirnames
                if not exclusions.matches(os.path.join(dirpath, d))
            )

            for filename in sorted(filenames):
                file_path = os.path.join(dirpath, filename)
                if exclusions.matches(file_path):
                    continue

                relative = os.path.relpath(file_path, base).replace(os.sep, '/')
                self.append_file(file_path, _join_archive_path(prefix, relative))

    def finish(self) -> str:
        """
        Write the tar trailer, end the zstd frame and close the file.

        Returns:
            Path of the finished archive
        """
        self._check_open()
        try:
            self._tar.close()
            # Closing the writer ends the frame; closefd=False keeps the file open
            self._writer.close()
            self._file.close()
        except (tarfile.TarError, zstd.ZstdError, OSError) as e:
            raise CompressionError(f"Failed to finish archive {self.destination}: {e}") from e

        self._finished = True
        logger.debug(f"Archive finished: {self.destination} ({self.entry_count} entries)")
        return self.destination

    def abort(self):
        """Release the file handle after a failure, leaving the partial file."""
        if self._finished:
            return
        self._finished = True
        if not self._file.closed:
            self._file.close()

    def _check_open(self):
        if self._finished:
            raise CompressionError(f"Archive already closed: {self.destination}")


def _join_archive_path(prefix: str, relative: str) -> str:
    if not prefix:
        return relative
    return f"{prefix}/{relative}"


def generate_backup_filename(full: bool, now: Optional[datetime] = None) -> str:
    """
    Generate a backup filename.

    Format: backup-{full|incr}-{YYYYMMDD-HHMMSS}.tar.zst

    Args:
        full: Full backup (otherwise named incremental)
        now: Timestamp to encode (default: local now)

    Returns:
        Filename (without path)
    """
    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    kind = 'full' if full else 'incr'
    return f"backup-{kind}-{timestamp}{ARCHIVE_SUFFIX}"


def is_backup_file(filename: str) -> bool:
    return filename.endswith(BACKUP_EXTENSION)


def list_local_backups(backup_dir: str) -> List[str]:
    """Full paths of backup files in backup_dir, sorted by name."""
    if not os.path.isdir(backup_dir):
        return []
    return sorted(
        os.path.join(backup_dir, name)
        for name in os.listdir(backup_dir)
        if is_backup_file(name) and os.path.isfile(os.path.join(backup_dir, name))
    )


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError as e:
        raise CompressionError(f"Archive not found: {archive_path}") from e
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}") from e
