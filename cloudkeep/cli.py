"""Command line interface for cloudkeep.

    cloudkeep [-c FILE] [-v] <command> [options]

Every handler returns an exit code. Errors propagate to main(), which
prints the message with its chain of causes and exits non-zero.
"""

import argparse
import os
import sys
from collections import deque
from typing import Callable, Dict, Optional

from cloudkeep import LOG_FILE_NAME, __version__, configure_logging
from cloudkeep.config import (
    AppConfig,
    ConfigurationError,
    LoggingSettings,
    default_config_path,
    load_config,
    parse_storage,
    write_example_config,
)
from cloudkeep.backup.compression import list_local_backups
from cloudkeep.backup.executor import (
    DEFAULT_RESTORE_DIR,
    BackupExecutor,
    download_backup,
    list_remote_backups,
    restore_backup,
)
from cloudkeep.backup.retention import RetentionManager
from cloudkeep.backup.storage import BACKUP_PREFIX, create_storage
from cloudkeep.scheduler import (
    DEFAULT_BACKUP_INTERVAL_HOURS,
    DEFAULT_PID_FILE,
    DEFAULT_UPLOAD_INTERVAL_HOURS,
    run_daemon,
)

MB = 1024 * 1024

CLIENT_STORAGE_FLAGS = (
    'provider', 'endpoint', 'region', 'bucket', 'access_key', 'secret_key',
    'account_id', 'account_name', 'account_key', 'application_key',
    'bucket_id', 'credentials_path', 'tenant_id',
)


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog='cloudkeep',
        description='Compressed backups of projects, system files and databases to cloud storage',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-V', '--version', action='store_true', help='Show version and exit')
    parser.add_argument('-c', '--config', metavar='FILE',
                        help='Path to configuration file (default: $CLOUDKEEP_CONFIG or config.toml)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(
        dest='command',
        title='commands',
        description="Available commands (use 'command --help' for details)",
    )

    backup_parser = subparsers.add_parser('backup', help='Create a backup')
    backup_parser.add_argument('--full', action='store_true',
                               help='Name the backup as a full backup')

    upload_parser = subparsers.add_parser('upload', help='Upload backups to remote storage')
    upload_parser.add_argument('-f', '--file', help='Backup file to upload (default: all local backups)')

    list_parser = subparsers.add_parser('list', help='List backups')
    list_parser.add_argument('--remote', action='store_true', help='List remote backups')

    download_parser = subparsers.add_parser('download', help='Download a backup')
    download_parser.add_argument('key', help='Backup key or filename')
    download_parser.add_argument('-o', '--output', default=DEFAULT_RESTORE_DIR,
                                 help=f"Output directory (default: {DEFAULT_RESTORE_DIR})")

    clean_parser = subparsers.add_parser('clean', help='Delete backups older than the retention period')
    clean_parser.add_argument('--dry-run', action='store_true',
                              help='Show what would be deleted locally without deleting')

    restore_parser = subparsers.add_parser('restore', help='Extract a backup archive')
    restore_parser.add_argument('file', help='Backup file')
    restore_parser.add_argument('-t', '--target', default=DEFAULT_RESTORE_DIR,
                                help=f"Target directory (default: {DEFAULT_RESTORE_DIR})")

    daemon_parser = subparsers.add_parser('daemon', help='Run scheduled backups and uploads')
    daemon_parser.add_argument('-b', '--backup-interval', type=int, default=DEFAULT_BACKUP_INTERVAL_HOURS,
                               metavar='HOURS', help='Hours between backups')
    daemon_parser.add_argument('-u', '--upload-interval', type=int, default=DEFAULT_UPLOAD_INTERVAL_HOURS,
                               metavar='HOURS', help='Hours between uploads')
    daemon_parser.add_argument('-p', '--pid-file', default=DEFAULT_PID_FILE, help='PID file path')

    client_parser = subparsers.add_parser(
        'client',
        help='Access remote backups without a server configuration',
        description='Storage flags override the config file; with --provider no config file is needed',
    )
    for flag in CLIENT_STORAGE_FLAGS:
        client_parser.add_argument(f"--{flag.replace('_', '-')}", dest=flag)
    client_actions = client_parser.add_subparsers(dest='client_command', title='client commands')
    client_actions.add_parser('list', help='List remote backups')
    client_download = client_actions.add_parser('download', help='Download a remote backup')
    client_download.add_argument('key', help='Backup key or filename')
    client_download.add_argument('-o', '--output', default=DEFAULT_RESTORE_DIR,
                                 help=f"Output directory (default: {DEFAULT_RESTORE_DIR})")

    generate_parser = subparsers.add_parser('generate-config', help='Write an example configuration')
    generate_parser.add_argument('-o', '--output', default='config.toml', help='Output path')

    subparsers.add_parser('status', help='Show configuration and backup status')

    logs_parser = subparsers.add_parser('logs', help='Show recent log lines')
    logs_parser.add_argument('-n', '--lines', type=int, default=50, help='Number of lines')

    return parser


def _config_path(args: argparse.Namespace) -> str:
    return args.config or default_config_path()


def _load(args: argparse.Namespace) -> AppConfig:
    config = load_config(_config_path(args))
    level = 'debug' if args.verbose else config.logging.level
    configure_logging(level, config.logging.log_dir)
    return config


def _format_item_line(name: str, size: int, modified=None) -> str:
    line = f"  {name} ({size / MB:.2f} MB)"
    if modified is not None:
        line += f" - {modified.isoformat(sep=' ', timespec='seconds')}"
    return line


def _print_remote(items) -> None:
    print("Remote backups:")
    for item in items:
        name = item.key[len(BACKUP_PREFIX):] if item.key.startswith(BACKUP_PREFIX) else item.key
        print(_format_item_line(name, item.size, item.last_modified))


def cmd_backup(args: argparse.Namespace) -> int:
    executor = BackupExecutor(_load(args))
    path = executor.create_backup(full=args.full)
    print(f"Backup created: {path}")
    return 0


def cmd_upload(args: argparse.Namespace) -> int:
    executor = BackupExecutor(_load(args))
    keys = executor.upload(args.file)
    for key in keys:
        print(f"Uploaded: {key}")
    if not keys:
        print("No backups to upload")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    executor = BackupExecutor(_load(args))
    if args.remote:
        _print_remote(executor.list_remote())
    else:
        print("Local backups:")
        for backup in executor.list_local():
            print(_format_item_line(backup['name'], backup['size']))
    return 0


def cmd_download(args: argparse.Namespace) -> int:
    executor = BackupExecutor(_load(args))
    path = executor.download(args.key, args.output)
    print(f"Downloaded to: {path}")
    return 0


def cmd_clean(args: argparse.Namespace) -> int:
    config = _load(args)
    storage = None
    if not args.dry_run:
        storage = create_storage(config.storage)

    manager = RetentionManager(config.backup.local_backup_dir, storage)
    summary = manager.sweep(config.backup.retention_days, dry_run=args.dry_run)

    if args.dry_run:
        for path in summary['local_candidates']:
            print(f"Would delete: {path}")
    else:
        print(f"Deleted {len(summary['local_deleted'])} local and "
              f"{len(summary['remote_deleted'])} remote backup(s)")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    configure_logging('debug' if args.verbose else 'info')
    target = restore_backup(args.file, args.target)
    print(f"Restored to: {target}")
    return 0


def cmd_daemon(args: argparse.Namespace) -> int:
    executor = BackupExecutor(_load(args))
    run_daemon(executor, args.backup_interval, args.upload_interval, args.pid_file)
    return 0


def cmd_client(args: argparse.Namespace) -> int:
    configure_logging('debug' if args.verbose else 'info')

    overrides = {
        flag: getattr(args, flag) for flag in CLIENT_STORAGE_FLAGS
        if getattr(args, flag) is not None
    }
    if 'provider' in overrides:
        settings = parse_storage(overrides)
    else:
        base = load_config(_config_path(args)).storage
        settings = parse_storage(dict(vars(base), **overrides))

    storage = create_storage(settings)

    if args.client_command == 'download':
        path = download_backup(storage, args.key, args.output)
        print(f"Downloaded to: {path}")
    elif args.client_command == 'list':
        _print_remote(list_remote_backups(storage))
    else:
        print("No client command specified. Use 'client --help' for usage information.")
        return 1
    return 0


def cmd_generate_config(args: argparse.Namespace) -> int:
    path = write_example_config(args.output)
    print(f"Example configuration written to: {path}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    path = _config_path(args)
    try:
        config = _load(args)
    except ConfigurationError as e:
        print(f"Could not load configuration from {path}: {e}")
        return 1

    print("Backup System Status")
    print("-" * 40)
    print(f"Config: {path}")
    print(f"Provider: {config.storage.provider}")
    print(f"Bucket: {config.storage.bucket}")
    if config.storage.endpoint:
        print(f"Endpoint: {config.storage.endpoint}")
    print(f"Backup Directory: {config.backup.local_backup_dir}")
    print(f"Project Path: {config.backup.project_path}")
    print(f"Retention: {config.backup.retention_days} days")
    print("-" * 40)

    local = list_local_backups(config.backup.local_backup_dir)
    total = sum(os.path.getsize(p) for p in local)
    print(f"Local Backups: {len(local)} ({total / MB:.2f} MB)")
    if local:
        print(f"Latest: {os.path.basename(local[-1])}")

    _print_remote(BackupExecutor(config).list_remote())
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    try:
        logging_settings = load_config(_config_path(args)).logging
    except ConfigurationError:
        logging_settings = LoggingSettings()

    log_file = os.path.join(logging_settings.log_dir, LOG_FILE_NAME)
    if not os.path.exists(log_file):
        print(f"No log file found at: {log_file}")
        return 0

    with open(log_file, 'r', encoding='utf-8', errors='replace') as f:
        for line in deque(f, maxlen=max(args.lines, 0)):
            print(line.rstrip('\n'))
    return 0


HANDLERS: Dict[str, Callable[[argparse.Namespace], int]] = {
    'backup': cmd_backup,
    'upload': cmd_upload,
    'list': cmd_list,
    'download': cmd_download,
    'clean': cmd_clean,
    'restore': cmd_restore,
    'daemon': cmd_daemon,
    'client': cmd_client,
    'generate-config': cmd_generate_config,
    'status': cmd_status,
    'logs': cmd_logs,
}


def format_error(error: BaseException) -> str:
    """Render an exception followed by its chain of causes."""
    lines = [f"Error: {error}"]
    cause = error.__cause__
    while cause is not None:
        lines.append(f"  caused by: {cause}")
        cause = cause.__cause__
    return '\n'.join(lines)


def main(argv: Optional[list] = None) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"cloudkeep {__version__}")
        return 0

    if not args.command:
        print("No command specified. Use --help for usage information.")
        return 1

    handler = HANDLERS[args.command]
    try:
        return handler(args)
    except KeyboardInterrupt:
        print("Interrupted")
        return 130
    except Exception as e:
        print(format_error(e), file=sys.stderr)
        return 1


def run():
    sys.exit(main())
