"""
APScheduler configuration for daemon mode.

Two interval jobs share a single worker thread:
- backup: create an incremental backup every N hours (first run after one interval)
- upload: upload local backups every M hours (first run immediately)

With one worker the handlers never overlap; a long backup delays a due
upload, and coalescing collapses missed ticks into one run.
"""

import os
import logging
from datetime import datetime

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cloudkeep.backup.executor import BackupExecutor


logger = logging.getLogger(__name__)

DEFAULT_BACKUP_INTERVAL_HOURS = 6
DEFAULT_UPLOAD_INTERVAL_HOURS = 24
DEFAULT_PID_FILE = '/tmp/cloudkeep.pid'

# Global scheduler instance and executor reference
scheduler = None
backup_executor = None


def init_scheduler(executor: BackupExecutor,
                   backup_interval: int = DEFAULT_BACKUP_INTERVAL_HOURS,
                   upload_interval: int = DEFAULT_UPLOAD_INTERVAL_HOURS):
    """
    Initialize and configure the daemon scheduler.

    Args:
        executor: BackupExecutor used by both jobs
        backup_interval: Hours between backups
        upload_interval: Hours between uploads
    """
    global scheduler, backup_executor

    if backup_interval <= 0 or upload_interval <= 0:
        raise ValueError("Backup and upload intervals must be positive")

    backup_executor = executor

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': None  # A late run still runs
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults
    )

    scheduler.add_job(
        func=_backup_job_wrapper,
        trigger=IntervalTrigger(hours=backup_interval),
        id='scheduled_backup',
        name='Scheduled Backup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_upload_job_wrapper,
        trigger=IntervalTrigger(hours=upload_interval),
        id='scheduled_upload',
        name='Scheduled Upload',
        next_run_time=datetime.now(),
        replace_existing=True
    )

    return scheduler


def write_pid_file(pid_file: str) -> int:
    """Write the current PID to pid_file and return it."""
    pid = os.getpid()
    with open(pid_file, 'w') as f:
        f.write(f"{pid}\n")
    return pid


def run_daemon(executor: BackupExecutor,
               backup_interval: int = DEFAULT_BACKUP_INTERVAL_HOURS,
               upload_interval: int = DEFAULT_UPLOAD_INTERVAL_HOURS,
               pid_file: str = DEFAULT_PID_FILE):
    """
    Run the daemon until the process is terminated.

    Blocks in scheduler.start().
    """
    pid = write_pid_file(pid_file)
    logger.info(f"Daemon started with PID: {pid}")
    logger.info(f"Backup interval: {backup_interval} hours")
    logger.info(f"Upload interval: {upload_interval} hours")

    init_scheduler(executor, backup_interval, upload_interval)

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Daemon stopping")
        stop_scheduler()


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def _backup_job_wrapper():
    """Scheduled backup; failures are logged and the daemon keeps running."""
    logger.info("Scheduled backup triggered")
    try:
        path = backup_executor.create_backup(full=False)
        logger.info(f"Scheduled backup completed: {path}")
    except Exception as e:
        logger.warning(f"Backup failed: {e}")


def _upload_job_wrapper():
    """Scheduled upload; failures are logged and the daemon keeps running."""
    logger.info("Scheduled upload triggered")
    try:
        keys = backup_executor.upload()
        logger.info(f"Scheduled upload completed: {len(keys)} file(s)")
    except Exception as e:
        logger.warning(f"Upload failed: {e}")
