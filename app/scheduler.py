"""
APScheduler configuration and job scheduling for the backup service.

Manages:
- Fixed backup triggers (daily, weekly, monthly)
- Daily retention sweep
- Manual run-now triggers
- Per-tier mutual exclusion (a tier never runs twice at the same time)
"""

import uuid
import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Callable, Dict, Iterable, Optional

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from app.models import BackupEntry, BackupTier, utcnow
from app.backup.executor import run_tiered_backup, format_fields
from app.backup.log import LogWriteError

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger('app.alerts')

CLEANUP = 'cleanup'


class InvalidScheduleError(ValueError):
    """Raised when a schedule's cron expression or timezone cannot be parsed."""
    pass


@dataclass(frozen=True)
class ScheduleSpec:
    """A named recurring trigger: standard 5-field crontab in a timezone."""
    name: str
    cron_expression: str
    timezone: str = 'UTC'

    def trigger(self) -> CronTrigger:
        """
        Build the APScheduler trigger.

        Raises:
            InvalidScheduleError: If the expression or timezone is malformed
        """
        try:
            return CronTrigger.from_crontab(self.cron_expression, timezone=self.timezone)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise InvalidScheduleError(
                f"Invalid schedule for {self.name}: {self.cron_expression!r} ({e})"
            ) from e


# APScheduler 3 numbers weekdays from Monday, so the weekly trigger names its day.
DEFAULT_SCHEDULES = (
    ScheduleSpec(BackupTier.DAILY, '0 2 * * *'),
    ScheduleSpec(BackupTier.WEEKLY, '0 3 * * sun'),
    ScheduleSpec(BackupTier.MONTHLY, '0 4 1 * *'),
    ScheduleSpec(CLEANUP, '0 5 * * *'),
)


def next_fire_time(spec: ScheduleSpec, after: datetime) -> Optional[datetime]:
    """
    First fire time of a schedule strictly after the given instant.

    Args:
        spec: Schedule to evaluate
        after: Reference instant (naive values are taken as UTC)

    Returns:
        Timezone-aware datetime in the schedule's timezone

    Raises:
        InvalidScheduleError: If the schedule is malformed
    """
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    return spec.trigger().get_next_fire_time(after, after)


def report_fatal(message: str, exc: BaseException):
    """Default process-level alert path."""
    alert_logger.critical(f"{message}: {exc}", exc_info=exc)


class BackupScheduler:
    """
    Drives the backup and retention triggers.

    Collaborators are passed in, so tests can substitute fakes for the
    exporter, log and retention engine.
    """

    def __init__(
        self,
        exporter,
        log,
        retention,
        app=None,
        scheduler=None,
        clock: Optional[Callable] = None,
        on_fatal: Optional[Callable] = None,
        timezone: str = 'UTC'
    ):
        """
        Initialize backup scheduler.

        Args:
            exporter: Object with create_backup(tier) -> ExportResult
            log: BackupLog
            retention: RetentionEngine
            app: Flask app; runs execute inside its app context when given
            scheduler: APScheduler scheduler (default: a new BackgroundScheduler)
            clock: Returns current naive UTC time (default: utcnow)
            on_fatal: Called as on_fatal(message, exc) when the audit trail fails
            timezone: Scheduler timezone
        """
        self.exporter = exporter
        self.log = log
        self.retention = retention
        self.app = app
        self.clock = clock or utcnow
        self.on_fatal = on_fatal or report_fatal
        self.specs: Dict[str, ScheduleSpec] = {}

        self._guard = threading.Lock()
        self._in_flight = set()

        self.scheduler = scheduler or BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(max_workers=4)},
            job_defaults={
                'coalesce': True,  # Combine multiple pending instances into one
                'max_instances': 1,  # Only one instance of a job at a time
                'misfire_grace_time': 300  # 5 minutes grace period for misfires
            },
            timezone=timezone
        )
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

    # Registration and lifecycle

    def schedule(self, spec: ScheduleSpec, task: Callable):
        """
        Register a recurring task.

        Raises:
            InvalidScheduleError: If the spec's cron expression is malformed
        """
        trigger = spec.trigger()

        self.scheduler.add_job(
            func=task,
            trigger=trigger,
            id=spec.name,
            name=f"Backup: {spec.name}",
            replace_existing=True
        )
        self.specs[spec.name] = spec

        logger.info(f"Scheduled {spec.name} ({spec.cron_expression} {spec.timezone})")

    def register_defaults(self, specs: Iterable[ScheduleSpec] = DEFAULT_SCHEDULES):
        """Register the tier backups and the cleanup sweep."""
        for spec in specs:
            self.schedule(spec, self._task_for(spec.name))

    def _task_for(self, name: str) -> Callable:
        if name == CLEANUP:
            return self.run_cleanup
        if name in BackupTier.ALL:
            return partial(self.run_tier, name)
        raise ValueError(f"Unknown backup tier: {name}")

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def start(self):
        """Start the APScheduler."""
        if self.scheduler.running:
            logger.info(f"Scheduler already running (state={self.scheduler.state})")
            return

        self.scheduler.start()
        logger.info(f"Backup scheduler started (state={self.scheduler.state})")

        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")

    def stop(self):
        """Stop the APScheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Backup scheduler stopped")

    # Guarded task bodies

    def _claim(self, name: str) -> bool:
        with self._guard:
            if name in self._in_flight:
                return False
            self._in_flight.add(name)
            return True

    def _release(self, name: str):
        with self._guard:
            self._in_flight.discard(name)

    def is_in_flight(self, name: str) -> bool:
        with self._guard:
            return name in self._in_flight

    def in_flight(self) -> list:
        with self._guard:
            return sorted(self._in_flight)

    def _app_context(self):
        return self.app.app_context() if self.app is not None else nullcontext()

    def run_tier(self, tier: str) -> Optional[BackupEntry]:
        """
        Run one backup for a tier unless that tier is already running.

        Returns:
            The recorded BackupEntry, or None if the run was skipped or could
            not be recorded
        """
        if tier not in BackupTier.ALL:
            raise ValueError(f"Unknown backup tier: {tier}")

        if not self._claim(tier):
            logger.warning(f"Backup run skipped {format_fields(tier=tier, reason='in_flight')}")
            return None

        try:
            with self._app_context():
                return run_tiered_backup(tier, self.exporter, self.log, clock=self.clock)
        except LogWriteError as e:
            self.on_fatal(f"Backup log write failed for {tier} backup", e)
            return None
        except Exception as e:
            logger.exception(f"Backup run for {tier} crashed: {e}")
            return None
        finally:
            self._release(tier)

    def run_cleanup(self):
        """
        Run one retention sweep unless a sweep is already running.

        Returns:
            SweepResult, or None if skipped or failed
        """
        if not self._claim(CLEANUP):
            logger.warning(f"Retention sweep skipped {format_fields(reason='in_flight')}")
            return None

        try:
            logger.info("Running retention policy cleanup")
            with self._app_context():
                result = self.retention.apply(now=self.clock())

            logger.info(
                f"Retention sweep finished {format_fields(removed=result.removed, failures=result.failures)}",
                extra={'backup': result.to_dict()}
            )
            return result

        except LogWriteError as e:
            self.on_fatal("Backup log write failed during retention sweep", e)
            return None
        except Exception as e:
            logger.exception(f"Retention sweep failed: {e}")
            return None
        finally:
            self._release(CLEANUP)

    def run_now(self, name: str) -> bool:
        """
        Manually trigger a tier backup or the cleanup sweep.

        The run goes through the same in-flight guard as a timer-fired run.

        Args:
            name: daily, weekly, monthly or cleanup

        Returns:
            True if the run was queued, False if that tier is already running

        Raises:
            ValueError: If name is unknown
            RuntimeError: If the scheduler is not running
        """
        task = self._task_for(name)

        if not self.scheduler.running:
            raise RuntimeError("Scheduler not running")

        if self.is_in_flight(name):
            logger.warning(f"Manual run skipped {format_fields(tier=name, reason='in_flight')}")
            return False

        self.scheduler.add_job(
            func=task,
            trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=1)),
            id=f"manual_{name}_{uuid.uuid4().hex[:12]}",
            name=f"Manual: {name}",
            replace_existing=False
        )

        logger.info(f"Manually triggered {name}")
        return True

    def _on_job_error(self, event):
        self.on_fatal(f"Scheduled job {event.job_id} crashed", event.exception)

    # Introspection

    def get_scheduled_jobs(self) -> list:
        """
        Get list of all scheduled jobs.

        Returns:
            List of dicts with job information
        """
        jobs = []

        for job in self.scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
                'trigger': str(job.trigger)
            })

        return jobs

    def diagnostics(self) -> dict:
        """
        Get scheduler state for troubleshooting.

        Returns:
            Dict with scheduler state, jobs and in-flight tiers
        """
        try:
            jobs = self.get_scheduled_jobs()
            return {
                'running': self.running,
                'state': str(self.scheduler.state),
                'job_count': len(jobs),
                'jobs': jobs,
                'in_flight': self.in_flight()
            }
        except Exception as e:
            return {
                'running': self.running,
                'state': 'ERROR',
                'in_flight': self.in_flight(),
                'error': str(e)
            }


def init_backup_service(app) -> BackupScheduler:
    """
    Wire storage, exporter, log, retention and scheduler from app config.

    The scheduler is stored on app.extensions['backup_scheduler'] but not started.

    Args:
        app: Flask app instance
    """
    from app import db
    from app.backup.exporter import DatabaseExporter
    from app.backup.log import BackupLog
    from app.backup.retention import RetentionEngine, build_policies
    from app.backup.storage import create_storage

    storage = create_storage(app.config)

    exporter = DatabaseExporter.from_url(
        app.config['FINANCE_DATABASE_URL'],
        storage,
        temp_dir=app.config.get('TEMP_DIR'),
        compression_format=app.config.get('BACKUP_COMPRESSION_FORMAT', 'tar.gz'),
        exclude_tables=app.config.get('BACKUP_EXCLUDE_TABLES', ())
    )

    log = BackupLog(db.session)

    retention = RetentionEngine(
        log,
        storage,
        build_policies(app.config['BACKUP_KEEP_DAILY'], app.config['BACKUP_KEEP_WEEKLY'])
    )

    backup_scheduler = BackupScheduler(
        exporter,
        log,
        retention,
        app=app,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )
    backup_scheduler.register_defaults()

    app.extensions['backup_scheduler'] = backup_scheduler
    return backup_scheduler
