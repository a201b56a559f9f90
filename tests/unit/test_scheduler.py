"""
Unit tests for backup scheduling (app/scheduler.py).

Tests trigger evaluation, job registration, the per-tier in-flight guard
and manual triggers.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from functools import partial
from unittest.mock import MagicMock

import pytest
from apscheduler.triggers.date import DateTrigger

from app.backup.exporter import ExportError, ExportResult
from app.backup.log import LogWriteError
from app.backup.retention import SweepResult, TierSweepResult
from app.models import BackupStatus, BackupTier
from app.scheduler import (
    BackupScheduler,
    CLEANUP,
    DEFAULT_SCHEDULES,
    InvalidScheduleError,
    ScheduleSpec,
    next_fire_time,
    report_fatal
)

from conftest import FakeExporter


NOW = datetime(2024, 1, 15, 2, 0)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def wait_for(predicate, timeout=5):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


def default_spec(name):
    return next(spec for spec in DEFAULT_SCHEDULES if spec.name == name)


@pytest.fixture
def mock_scheduler():
    scheduler = MagicMock()
    scheduler.running = False
    scheduler.get_jobs.return_value = []
    return scheduler


@pytest.fixture
def on_fatal():
    return MagicMock()


@pytest.fixture
def make_scheduler(memory_log, mock_scheduler, on_fatal):
    def _make(exporter=None, log=None, retention=None):
        return BackupScheduler(
            exporter or FakeExporter(),
            log or memory_log,
            retention or MagicMock(),
            scheduler=mock_scheduler,
            clock=lambda: NOW,
            on_fatal=on_fatal
        )
    return _make


class TestScheduleSpec:
    """Test cron parsing and fire time evaluation."""

    @pytest.mark.parametrize('expression', [
        'not a cron',
        '61 * * * *',
        '0 25 * * *',
        '0 2 * *',
    ])
    def test_invalid_expression(self, expression):
        with pytest.raises(InvalidScheduleError):
            ScheduleSpec(BackupTier.DAILY, expression).trigger()

    def test_invalid_timezone(self):
        with pytest.raises(InvalidScheduleError):
            ScheduleSpec(BackupTier.DAILY, '0 2 * * *', timezone='Mars/Olympus_Mons').trigger()

    def test_invalid_schedule_is_value_error(self):
        assert issubclass(InvalidScheduleError, ValueError)

    def test_daily_same_day(self):
        assert next_fire_time(default_spec('daily'), utc(2024, 1, 15, 1, 0)) == utc(2024, 1, 15, 2, 0)

    def test_strictly_after(self):
        """Test a reference time on a fire time yields the following one."""
        assert next_fire_time(default_spec('daily'), utc(2024, 1, 15, 2, 0)) == utc(2024, 1, 16, 2, 0)

    def test_weekly_fires_on_sunday(self):
        # 2024-01-15 is a Monday
        fire = next_fire_time(default_spec('weekly'), utc(2024, 1, 15, 0, 0))

        assert fire == utc(2024, 1, 21, 3, 0)
        assert fire.weekday() == 6

    def test_monthly_first_of_month(self):
        assert next_fire_time(default_spec('monthly'), utc(2024, 1, 15, 0, 0)) == utc(2024, 2, 1, 4, 0)

    def test_cleanup(self):
        assert next_fire_time(default_spec(CLEANUP), utc(2024, 1, 15, 5, 0)) == utc(2024, 1, 16, 5, 0)

    def test_naive_reference_taken_as_utc(self):
        assert next_fire_time(default_spec('daily'), datetime(2024, 1, 15, 1, 0)) == utc(2024, 1, 15, 2, 0)

    def test_schedule_timezone(self):
        spec = ScheduleSpec(BackupTier.DAILY, '0 2 * * *', timezone='Europe/Berlin')

        # 02:00 CET is 01:00 UTC in January
        assert next_fire_time(spec, utc(2024, 1, 15, 0, 0)) == utc(2024, 1, 15, 1, 0)


class TestRegistration:
    """Test job registration on the APScheduler instance."""

    def test_schedule_adds_job(self, make_scheduler, mock_scheduler):
        backup_scheduler = make_scheduler()
        task = MagicMock()

        backup_scheduler.schedule(ScheduleSpec(BackupTier.DAILY, '30 1 * * *'), task)

        kwargs = mock_scheduler.add_job.call_args.kwargs
        assert kwargs['func'] is task
        assert kwargs['id'] == 'daily'
        assert kwargs['replace_existing'] is True
        assert backup_scheduler.specs['daily'].cron_expression == '30 1 * * *'

    def test_schedule_rejects_invalid_spec(self, make_scheduler, mock_scheduler):
        backup_scheduler = make_scheduler()

        with pytest.raises(InvalidScheduleError):
            backup_scheduler.schedule(ScheduleSpec(BackupTier.DAILY, '0 2 31 2 * *'), MagicMock())

        mock_scheduler.add_job.assert_not_called()
        assert backup_scheduler.specs == {}

    def test_register_defaults(self, make_scheduler, mock_scheduler):
        backup_scheduler = make_scheduler()

        backup_scheduler.register_defaults()

        jobs = {c.kwargs['id']: c.kwargs['func'] for c in mock_scheduler.add_job.call_args_list}
        assert set(jobs) == {'daily', 'weekly', 'monthly', 'cleanup'}
        assert isinstance(jobs['weekly'], partial)
        assert jobs['weekly'].args == ('weekly',)
        assert jobs['cleanup'] == backup_scheduler.run_cleanup

    def test_error_listener_registered(self, make_scheduler, mock_scheduler):
        backup_scheduler = make_scheduler()

        mock_scheduler.add_listener.assert_called_once()
        assert mock_scheduler.add_listener.call_args.args[0] == backup_scheduler._on_job_error

    def test_real_scheduler_lists_jobs(self, memory_log):
        backup_scheduler = BackupScheduler(FakeExporter(), memory_log, MagicMock())
        backup_scheduler.register_defaults()

        backup_scheduler.start()
        try:
            jobs = {job['id']: job for job in backup_scheduler.get_scheduled_jobs()}
            assert backup_scheduler.running
            assert set(jobs) == {'daily', 'weekly', 'monthly', 'cleanup'}
            assert all(job['next_run'] for job in jobs.values())
        finally:
            backup_scheduler.stop()

        assert not backup_scheduler.running


class TestRunTier:
    """Test guarded tier runs."""

    def test_run_records_entry(self, make_scheduler, memory_log):
        backup_scheduler = make_scheduler()

        entry = backup_scheduler.run_tier(BackupTier.DAILY)

        assert entry.status == BackupStatus.SUCCESS
        assert entry.started_at == NOW
        assert memory_log.entries == [entry]
        assert backup_scheduler.in_flight() == []

    def test_export_failure_recorded(self, make_scheduler, memory_log):
        backup_scheduler = make_scheduler(exporter=FakeExporter(error=ExportError("disk full")))

        entry = backup_scheduler.run_tier(BackupTier.WEEKLY)

        assert entry.status == BackupStatus.FAILED
        assert entry.error_message == 'disk full'
        assert len(memory_log.entries) == 1

    def test_incomplete_export_result_still_recorded(self, make_scheduler, memory_log):
        exporter = MagicMock()
        exporter.create_backup.return_value = ExportResult(destination=None, size_bytes=None)
        backup_scheduler = make_scheduler(exporter=exporter)

        entry = backup_scheduler.run_tier(BackupTier.DAILY)

        assert entry.status == BackupStatus.FAILED
        assert memory_log.entries == [entry]

    def test_overlapping_run_skipped(self, make_scheduler, memory_log, caplog):
        """Test a tier fired while its previous run is still going is skipped, not queued."""
        caplog.set_level(logging.INFO)
        gate = threading.Event()
        exporter = FakeExporter(gate=gate)
        backup_scheduler = make_scheduler(exporter=exporter)

        first = threading.Thread(target=backup_scheduler.run_tier, args=(BackupTier.DAILY,))
        first.start()
        assert exporter.started.wait(timeout=5)

        second = backup_scheduler.run_tier(BackupTier.DAILY)
        gate.set()
        first.join(timeout=5)

        assert second is None
        assert exporter.calls == ['daily']
        assert exporter.max_concurrent['daily'] == 1
        assert len(memory_log.entries) == 1
        assert 'Backup run skipped tier=daily reason=in_flight' in caplog.text
        assert backup_scheduler.in_flight() == []

    def test_different_tiers_run_concurrently(self, make_scheduler, memory_log):
        gate = threading.Event()
        exporter = FakeExporter(gate=gate)
        backup_scheduler = make_scheduler(exporter=exporter)

        threads = [
            threading.Thread(target=backup_scheduler.run_tier, args=(tier,))
            for tier in (BackupTier.DAILY, BackupTier.WEEKLY)
        ]
        for thread in threads:
            thread.start()

        assert wait_for(lambda: len(exporter.calls) == 2)
        assert backup_scheduler.in_flight() == ['daily', 'weekly']

        gate.set()
        for thread in threads:
            thread.join(timeout=5)

        assert sorted(entry.tier for entry in memory_log.entries) == ['daily', 'weekly']

    def test_log_write_failure_raises_alert(self, make_scheduler, on_fatal):
        log = MagicMock()
        log.append.side_effect = LogWriteError("database is locked")
        backup_scheduler = make_scheduler(log=log)

        assert backup_scheduler.run_tier(BackupTier.MONTHLY) is None

        on_fatal.assert_called_once()
        message, exc = on_fatal.call_args.args
        assert 'monthly' in message
        assert isinstance(exc, LogWriteError)
        assert backup_scheduler.in_flight() == []

    def test_unknown_tier(self, make_scheduler):
        with pytest.raises(ValueError):
            make_scheduler().run_tier('hourly')

    def test_runs_inside_app_context(self, app, memory_log):
        from flask import current_app

        seen = []

        class ContextExporter(FakeExporter):
            def create_backup(self, tier):
                seen.append(current_app.name)
                return super().create_backup(tier)

        backup_scheduler = BackupScheduler(
            ContextExporter(), memory_log, MagicMock(), app=app, scheduler=MagicMock()
        )

        backup_scheduler.run_tier(BackupTier.DAILY)

        assert seen == [app.name]


class TestRunCleanup:
    """Test the retention sweep task."""

    def test_cleanup_summary(self, make_scheduler, caplog):
        caplog.set_level(logging.INFO)
        retention = MagicMock()
        retention.apply.return_value = SweepResult(tiers={
            'daily': TierSweepResult('daily', removed=2, failures=1, errors=['boom'])
        })
        backup_scheduler = make_scheduler(retention=retention)

        result = backup_scheduler.run_cleanup()

        retention.apply.assert_called_once_with(now=NOW)
        assert result.removed == 2
        assert 'Retention sweep finished removed=2 failures=1' in caplog.text

    def test_cleanup_failure_logged(self, make_scheduler, caplog):
        retention = MagicMock()
        retention.apply.side_effect = RuntimeError("storage offline")
        backup_scheduler = make_scheduler(retention=retention)

        assert backup_scheduler.run_cleanup() is None
        assert 'storage offline' in caplog.text
        assert backup_scheduler.in_flight() == []

    def test_cleanup_log_write_failure_raises_alert(self, make_scheduler, on_fatal):
        retention = MagicMock()
        retention.apply.side_effect = LogWriteError("database is locked")

        assert make_scheduler(retention=retention).run_cleanup() is None
        on_fatal.assert_called_once()

    def test_overlapping_cleanup_skipped(self, make_scheduler):
        retention = MagicMock()
        backup_scheduler = make_scheduler(retention=retention)
        backup_scheduler._claim(CLEANUP)

        assert backup_scheduler.run_cleanup() is None
        retention.apply.assert_not_called()


class TestRunNow:
    """Test manual triggers."""

    def test_not_running(self, make_scheduler):
        with pytest.raises(RuntimeError, match="not running"):
            make_scheduler().run_now(BackupTier.DAILY)

    def test_unknown_name(self, make_scheduler, mock_scheduler):
        mock_scheduler.running = True

        with pytest.raises(ValueError):
            make_scheduler().run_now('hourly')

    def test_queues_one_off_job(self, make_scheduler, mock_scheduler):
        mock_scheduler.running = True
        backup_scheduler = make_scheduler()

        assert backup_scheduler.run_now(BackupTier.WEEKLY) is True

        kwargs = mock_scheduler.add_job.call_args.kwargs
        assert isinstance(kwargs['trigger'], DateTrigger)
        assert kwargs['id'].startswith('manual_weekly_')
        assert kwargs['func'].args == ('weekly',)

    def test_busy_tier_not_queued(self, make_scheduler, mock_scheduler):
        mock_scheduler.running = True
        backup_scheduler = make_scheduler()
        backup_scheduler._claim(BackupTier.DAILY)

        assert backup_scheduler.run_now(BackupTier.DAILY) is False
        mock_scheduler.add_job.assert_not_called()

    def test_cleanup_can_be_triggered(self, make_scheduler, mock_scheduler):
        mock_scheduler.running = True
        backup_scheduler = make_scheduler()

        assert backup_scheduler.run_now(CLEANUP) is True
        assert mock_scheduler.add_job.call_args.kwargs['func'] == backup_scheduler.run_cleanup


class TestAlertsAndDiagnostics:

    def test_job_error_event_raises_alert(self, make_scheduler, on_fatal):
        backup_scheduler = make_scheduler()
        error = RuntimeError("executor died")

        backup_scheduler._on_job_error(MagicMock(job_id='daily', exception=error))

        on_fatal.assert_called_once()
        assert on_fatal.call_args.args[1] is error

    def test_report_fatal_logs_critical(self, caplog):
        report_fatal("Backup log write failed", LogWriteError("database is locked"))

        record = next(r for r in caplog.records if r.name == 'app.alerts')
        assert record.levelno == logging.CRITICAL
        assert 'database is locked' in record.getMessage()

    def test_diagnostics(self, make_scheduler, mock_scheduler):
        job = MagicMock()
        job.id = 'daily'
        job.name = 'Backup: daily'
        job.next_run_time = datetime(2024, 1, 16, 2, 0, tzinfo=timezone.utc)
        mock_scheduler.get_jobs.return_value = [job]
        mock_scheduler.running = True
        backup_scheduler = make_scheduler()
        backup_scheduler._claim(BackupTier.WEEKLY)

        status = backup_scheduler.diagnostics()

        assert status['running'] is True
        assert status['job_count'] == 1
        assert status['jobs'][0]['next_run'] == '2024-01-16T02:00:00+00:00'
        assert status['in_flight'] == ['weekly']
