"""
APScheduler configuration for scheduled backups.

Manages:
- The single cron scheduled backup job
- Graceful shutdown with a bounded wait for a running backup
"""

import re
import logging
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor
from tzlocal import get_localzone

from housekeeper.backup.executor import BackupExecutor


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup'

# APScheduler counts day_of_week from monday, so use names
CRON_DESCRIPTORS = {
    '@yearly': '0 0 1 1 *',
    '@annually': '0 0 1 1 *',
    '@monthly': '0 0 1 * *',
    '@weekly': '0 0 * * sun',
    '@daily': '0 0 * * *',
    '@midnight': '0 0 * * *',
    '@hourly': '0 * * * *',
}

DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1,
    'm': 60,
    'h': 3600,
}

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)')


class SchedulerError(Exception):
    """Raised when the backup schedule can't be set up."""
    pass


def parse_duration(value: str) -> float:
    """
    Parse a duration like ``1h30m`` or ``90s`` into seconds.

    Raises:
        SchedulerError: If the duration is malformed or not positive
    """
    value = value.strip()
    position = 0
    seconds = 0.0

    while position < len(value):
        match = _DURATION_PART.match(value, position)
        if not match:
            raise SchedulerError(f"invalid duration: {value}")
        seconds += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        position = match.end()

    if seconds <= 0:
        raise SchedulerError(f"invalid duration: {value}")
    return seconds


def build_trigger(schedule: str, timezone=None):
    """
    Create the APScheduler trigger for a schedule expression.

    Supports 5 field crontab expressions, the descriptors @yearly, @annually,
    @monthly, @weekly, @daily, @midnight, @hourly and ``@every <duration>``.
    Expressions are evaluated in the local timezone unless one is given.

    Raises:
        SchedulerError: If the expression is invalid
    """
    schedule = schedule.strip()
    if timezone is None:
        timezone = get_localzone()

    if schedule.startswith('@every '):
        return IntervalTrigger(seconds=parse_duration(schedule[len('@every '):]), timezone=timezone)

    expression = CRON_DESCRIPTORS.get(schedule.lower(), schedule)
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    except ValueError as e:
        raise SchedulerError(f"failed to create backup schedule {schedule}: {e}")


class BackupScheduler:
    """
    Runs the backup executor on its schedule.

    There is at most one job. Backups never overlap: a fire that comes due
    during a run starts as soon as that run finishes. A failed backup does
    not stop the schedule.
    """

    def __init__(self, executor: BackupExecutor, schedule: str):
        """
        Args:
            executor: Executor of the backup runs
            schedule: Cron expression, empty to disable scheduled backups
        """
        self.executor = executor
        self.schedule = schedule
        self.scheduler: Optional[BackgroundScheduler] = None
        self._idle = threading.Event()
        self._idle.set()
        self._stopping = threading.Event()

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self):
        """
        Start the scheduler and add the backup job if backups are enabled.

        Raises:
            SchedulerError: If the schedule expression is invalid
        """
        if self.running:
            logger.info("Scheduler already running")
            return

        trigger = None
        if self.executor.is_backup_enabled() and self.schedule:
            trigger = build_trigger(self.schedule)

        self._stopping.clear()
        self.scheduler = BackgroundScheduler(
            executors={'default': ThreadPoolExecutor(max_workers=1)},
            job_defaults={
                'coalesce': True,  # Combine multiple pending runs into one
                # single worker, so at most one run waits behind the running backup
                'max_instances': 2,
                'misfire_grace_time': 300  # 5 minutes grace period for misfires
            },
            timezone=get_localzone()
        )
        self.scheduler.start()

        if trigger is None:
            logger.info("No backup scheduled (backups disabled or no schedule configured)")
            return

        self.scheduler.add_job(
            func=self._run_backup,
            trigger=trigger,
            id=BACKUP_JOB_ID,
            name='Backup',
            replace_existing=True
        )
        self._log_next_run()

    def stop(self, timeout: float) -> bool:
        """
        Stop the scheduler and wait for a running backup.

        Args:
            timeout: Maximum seconds to wait for a running backup

        Returns:
            True if no backup is running anymore, False if the wait timed out
            (the backup keeps running, it is not cancelled)
        """
        self._stopping.set()
        if self.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

        if self._idle.wait(timeout):
            return True

        logger.warning(f"Backup still running after {timeout}s, abandoning it")
        return False

    def _run_backup(self):
        """Scheduler job: run a backup, log failures."""
        self._idle.clear()
        if self._stopping.is_set():
            # queued behind a run that was still going when stop() was called
            self._idle.set()
            return

        try:
            self.executor.execute()
        except Exception as e:
            logger.error(f"Backup failed: {e}")
        finally:
            self._idle.set()

        self._log_next_run()

    def _log_next_run(self):
        job = self.scheduler.get_job(BACKUP_JOB_ID) if self.running else None
        if job is not None and job.next_run_time is not None:
            logger.info(f"[Next Backup: {job.next_run_time.isoformat()}]")

