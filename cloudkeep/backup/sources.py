"""
Source collectors for backup operations.

Each collector appends entries to an ArchiveWriter:
- FilesystemCollector: project directory and additional paths
- SystemdCollector: unit files from the systemd directory
- CommandOutputCollector: stdout of configured commands
- DatabaseDumper: output of the matching dump utility
- PresetCollector: nginx, crontab, home dotfiles and /etc paths

External programs run through a ProcessRunner so collectors can be
tested with a fake one.
"""

import os
import shutil
import logging
import tempfile
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from cloudkeep.config import (
    CommandOutput,
    ConfigurationError,
    DatabaseSettings,
    PresetSettings,
)
from cloudkeep.backup.compression import ArchiveWriter, ExclusionSet


logger = logging.getLogger(__name__)

SYSTEMD_DIR = '/etc/systemd/system'
ETC_DIR = '/etc'

SUPPORTED_DATABASES = (
    'postgres', 'postgresql', 'mariadb', 'mysql', 'mongodb',
    'cassandra', 'scylla', 'redis', 'sqlite',
)

DUMP_EXTENSIONS = {
    'postgres': 'sql',
    'postgresql': 'sql',
    'mariadb': 'sql',
    'mysql': 'sql',
    'cassandra': 'cql',
    'scylla': 'cql',
    'redis': 'rdb',
}


class SourceError(Exception):
    """Raised when source acquisition fails."""
    pass


@dataclass(frozen=True)
class ProcessResult:
    exit_status: int
    stdout: bytes = b''
    stderr: bytes = b''

    @property
    def success(self) -> bool:
        return self.exit_status == 0

    def stderr_text(self) -> str:
        return self.stderr.decode('utf-8', errors='replace').strip()


class ProcessRunner(ABC):
    """Runs an external program without a shell."""

    @abstractmethod
    def run(self, command: str, args: Iterable[str] = (),
            env: Optional[Dict[str, str]] = None) -> ProcessResult:
        """Run command with args and return its exit status and output."""


class SubprocessRunner(ProcessRunner):
    """
    ProcessRunner backed by subprocess.run.

    Extra env entries are layered over the inherited environment. Spawn
    failures (missing executable, permissions) raise OSError.
    """

    def run(self, command: str, args: Iterable[str] = (),
            env: Optional[Dict[str, str]] = None) -> ProcessResult:
        args = list(args)
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        logger.debug(f"Running: {command} {' '.join(args)}")
        completed = subprocess.run(
            [command, *args],
            capture_output=True,
            env=full_env,
            check=False
        )
        return ProcessResult(completed.returncode, completed.stdout, completed.stderr)


def append_if_readable(writer: ArchiveWriter, path: str, archive_path: str) -> bool:
    """
    Append a file when it can be opened, otherwise skip it.

    Returns:
        True if the file was added
    """
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        logger.warning(f"Skipping unreadable file {path}: {e}")
        return False

    writer.append_entry(archive_path, data)
    return True


class FilesystemCollector:
    """Walks the project directory and additional paths into the archive."""

    def __init__(self, exclude_patterns: Optional[Iterable[str]] = None):
        self.exclusions = ExclusionSet(exclude_patterns)

    def collect_project(self, writer: ArchiveWriter, project_path: str):
        """
        Append the project tree under the `project` prefix.

        Raises:
            SourceError: If the project path does not exist
        """
        if not os.path.exists(project_path):
            raise SourceError(f"Project path does not exist: {project_path}")

        logger.info(f"Backing up project: {project_path}")
        writer.append_tree(project_path, 'project', self.exclusions)

    def collect_additional(self, writer: ArchiveWriter, paths: Iterable[str]) -> List[str]:
        """
        Append each additional path under `system/`.

        Directories go to system/<basename>/..., files to system/<filename>.
        Missing paths are logged and skipped.

        Returns:
            Paths that were backed up
        """
        collected = []
        for path in paths:
            source = Path(path)
            if not source.exists():
                logger.warning(f"Path does not exist: {path}")
                continue

            logger.info(f"Backing up: {path}")
            name = source.name or 'unknown'
            if source.is_dir():
                writer.append_tree(str(source), f"system/{name}", self.exclusions)
            else:
                if self.exclusions.matches_file(str(source)):
                    logger.debug(f"Excluded: {path}")
                    continue
                writer.append_file(str(source), f"system/{name}")
            collected.append(path)

        return collected


class SystemdCollector:
    """Copies systemd unit files into systemd/services and systemd/timers."""

    def __init__(self, systemd_dir: str = SYSTEMD_DIR):
        self.systemd_dir = systemd_dir

    def collect(self, writer: ArchiveWriter, services: Iterable[str] = (),
                timers: Iterable[str] = ()):
        services = list(services)
        if services:
            logger.info("Backing up systemd services...")
        for service in services:
            self._append_unit(writer, service, 'services')

        for timer in timers:
            self._append_unit(writer, timer, 'timers')

    def _append_unit(self, writer: ArchiveWriter, unit: str, kind: str):
        unit_path = os.path.join(self.systemd_dir, unit)
        if not os.path.exists(unit_path):
            logger.debug(f"Systemd unit not found: {unit_path}")
            return
        append_if_readable(writer, unit_path, f"systemd/{kind}/{unit}")


class CommandOutputCollector:
    """
    Captures command stdout into commands/<output_file>.

    A command that cannot be started or exits non-zero is logged and
    skipped; it never aborts the backup.
    """

    def __init__(self, runner: ProcessRunner):
        self.runner = runner

    def collect(self, writer: ArchiveWriter, commands: Iterable[CommandOutput]) -> int:
        """
        Run every enabled command.

        Returns:
            Number of outputs added to the archive
        """
        added = 0
        for cmd in commands:
            if not cmd.enabled:
                continue
            if self.collect_one(writer, cmd):
                added += 1
        return added

    def collect_one(self, writer: ArchiveWriter, cmd: CommandOutput) -> bool:
        logger.info(f"Executing command: {cmd.command}")
        try:
            result = self.runner.run(cmd.command, list(cmd.args))
        except OSError as e:
            logger.warning(f"Failed to execute command: {cmd.command} - {e}")
            return False

        if not result.success:
            logger.warning(f"Command failed: {cmd.command} - {result.stderr_text()}")
            return False

        writer.append_entry(f"commands/{cmd.output_file}", result.stdout)
        logger.info(f"Successfully backed up command output: {cmd.output_file}")
        return True


class DatabaseDumper:
    """
    Dumps a database with its native utility and appends the dump.

    Supported types:
    - postgres/postgresql: pg_dump (password via PGPASSWORD) -> database/<name>.sql
    - mariadb/mysql: mysqldump -> database/<name>.sql
    - mongodb: mongodump --archive -> database/<name>.dump
    - cassandra/scylla: cqlsh DESCRIBE KEYSPACE -> database/<name>.cql
    - redis: redis-cli --rdb -> database/<name>.rdb
    - sqlite: file copy, no external process -> database/<basename>.sqlite

    Any failure here aborts the backup.
    """

    def __init__(self, runner: ProcessRunner, temp_dir: Optional[str] = None):
        self.runner = runner
        self.temp_dir = temp_dir

    def dump(self, writer: ArchiveWriter, db: DatabaseSettings) -> str:
        """
        Dump the configured database into the archive.

        Returns:
            Archive path of the dump entry

        Raises:
            ConfigurationError: If a connection field is missing
            SourceError: If the type is unsupported or the dump fails
        """
        db_type = (db.type or 'postgres').lower()
        self._check_required(db)

        if db_type not in SUPPORTED_DATABASES:
            raise SourceError(
                f"Unsupported database type: {db_type}. "
                f"Supported: {', '.join(SUPPORTED_DATABASES)}"
            )

        fd, dump_file = tempfile.mkstemp(
            prefix=f"cloudkeep_db_{os.path.basename(db.database)}_",
            suffix='.dump',
            dir=self.temp_dir
        )
        os.close(fd)

        try:
            if db_type == 'sqlite':
                return self._copy_sqlite(writer, db, dump_file)

            command, args, env = self._build_command(db_type, db, dump_file)
            try:
                result = self.runner.run(command, args, env=env)
            except OSError as e:
                raise SourceError(f"Failed to execute {db_type} dump command: {e}") from e

            if not result.success:
                raise SourceError(f"Database dump failed: {result.stderr_text()}")

            # redis-cli writes the snapshot to the file itself
            if db_type != 'redis':
                with open(dump_file, 'wb') as f:
                    f.write(result.stdout)

            extension = DUMP_EXTENSIONS.get(db_type, 'dump')
            archive_path = f"database/{db.database}.{extension}"
            writer.append_file(dump_file, archive_path)
            logger.info(f"Database dump added: {archive_path}")
            return archive_path
        finally:
            try:
                os.remove(dump_file)
            except OSError as e:
                logger.debug(f"Could not remove temp dump file {dump_file}: {e}")

    def _check_required(self, db: DatabaseSettings):
        missing = [
            name for name in ('host', 'port', 'database', 'username', 'password')
            if getattr(db, name) in (None, '')
        ]
        if 'password' in missing:
            raise ConfigurationError(
                "Database password not found. Set password in config, "
                "DB_PASSWORD env var, or .env file"
            )
        if missing:
            raise ConfigurationError(f"Database {missing[0]} not configured")

    def _build_command(self, db_type: str, db: DatabaseSettings, dump_file: str):
        port = str(db.port)

        if db_type in ('postgres', 'postgresql'):
            args = ['-h', db.host, '-p', port, '-U', db.username,
                    '-d', db.database, '-F', 'plain']
            return 'pg_dump', args, {'PGPASSWORD': db.password}

        if db_type in ('mariadb', 'mysql'):
            args = [f"-h{db.host}", f"-P{port}", f"-u{db.username}",
                    f"-p{db.password}", db.database]
            return 'mysqldump', args, None

        if db_type == 'mongodb':
            args = [f"--host={db.host}:{port}", f"--username={db.username}",
                    f"--password={db.password}", f"--db={db.database}", '--archive']
            return 'mongodump', args, None

        if db_type in ('cassandra', 'scylla'):
            args = [db.host, port, '-u', db.username, '-p', db.password,
                    '-e', f"DESCRIBE KEYSPACE {db.database};"]
            return 'cqlsh', args, None

        # redis
        args = ['-h', db.host, '-p', port, '-a', db.password, '--rdb', dump_file]
        return 'redis-cli', args, None

    def _copy_sqlite(self, writer: ArchiveWriter, db: DatabaseSettings, dump_file: str) -> str:
        if not os.path.isfile(db.database):
            raise SourceError(f"SQLite database file not found: {db.database}")

        try:
            shutil.copyfile(db.database, dump_file)
        except OSError as e:
            raise SourceError(f"Failed to read SQLite database: {db.database}: {e}") from e

        archive_path = f"database/{os.path.basename(db.database)}.sqlite"
        writer.append_file(dump_file, archive_path)
        logger.info(f"Database file added: {archive_path}")
        return archive_path


class PresetCollector:
    """
    Resolves presets to paths and appends whatever exists.

    - nginx: nginx.conf, sites-available/, sites-enabled/ and named sites
    - crontab: `crontab -l` for the configured or current user
    - user_configs: files or directories relative to the home directory
    - etc_files / etc_dirs: paths relative to /etc

    Paths that don't exist are silently omitted.
    """

    def __init__(self, runner: ProcessRunner, exclude_patterns: Optional[Iterable[str]] = None,
                 etc_dir: str = ETC_DIR):
        self.runner = runner
        self.exclusions = ExclusionSet(exclude_patterns)
        self.etc_dir = etc_dir

    def collect(self, writer: ArchiveWriter, presets: PresetSettings):
        if presets.nginx_enabled:
            self._collect_nginx(writer)
        for site in presets.nginx_sites:
            self._collect_nginx_site(writer, site)

        if presets.crontab_enabled:
            self._collect_crontab(writer, presets)

        if presets.user_configs:
            home = presets.user_configs_home or '/root'
            logger.info(f"Backing up user config files from: {home}")
            for name in presets.user_configs:
                self._collect_path(writer, os.path.join(home, name), f"user-configs/{name}")

        for name in presets.etc_files:
            self._collect_path(writer, os.path.join(self.etc_dir, name), f"etc/{name}")

        for name in presets.etc_dirs:
            etc_path = os.path.join(self.etc_dir, name)
            if os.path.isdir(etc_path):
                writer.append_tree(etc_path, f"etc/{name}", self.exclusions)

    def _collect_nginx(self, writer: ArchiveWriter):
        logger.info("Backing up nginx configuration...")
        nginx_dir = os.path.join(self.etc_dir, 'nginx')

        nginx_conf = os.path.join(nginx_dir, 'nginx.conf')
        if os.path.exists(nginx_conf):
            append_if_readable(writer, nginx_conf, 'system/nginx/nginx.conf')

        for subdir in ('sites-available', 'sites-enabled'):
            path = os.path.join(nginx_dir, subdir)
            if os.path.exists(path):
                writer.append_tree(path, f"system/nginx/{subdir}", self.exclusions)

    def _collect_nginx_site(self, writer: ArchiveWriter, site: str):
        logger.info(f"Backing up nginx site: {site}")
        nginx_dir = os.path.join(self.etc_dir, 'nginx')
        for subdir in ('sites-available', 'sites-enabled'):
            path = os.path.join(nginx_dir, subdir, site)
            if os.path.exists(path):
                append_if_readable(writer, path, f"system/nginx/{subdir}/{site}")

    def _collect_crontab(self, writer: ArchiveWriter, presets: PresetSettings):
        logger.info("Backing up crontab...")
        current_user = presets.current_user or ''
        user = presets.crontab_user or current_user or 'root'

        if user == 'root' or user == current_user:
            args = ['-l']
        else:
            args = ['-u', user, '-l']

        try:
            result = self.runner.run('crontab', args)
        except OSError as e:
            logger.debug(f"crontab unavailable: {e}")
            return

        if result.success:
            writer.append_entry(f"system/crontab-{user}.txt", result.stdout)
        else:
            logger.debug(f"No crontab for {user}: {result.stderr_text()}")

    def _collect_path(self, writer: ArchiveWriter, path: str, archive_path: str):
        if os.path.isfile(path):
            append_if_readable(writer, path, archive_path)
        elif os.path.isdir(path):
            writer.append_tree(path, archive_path, self.exclusions)
