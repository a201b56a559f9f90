"""
Shared pytest fixtures for backup service tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Fake exporter, storage and backup log for scheduler/retention tests
- Mock S3 bucket (moto)
- A small finance database to snapshot
"""

import itertools
import threading
from datetime import datetime, timedelta

import pytest
import boto3
from moto import mock_aws
from sqlalchemy import create_engine, text

from app import create_app, db as _db
from app.models import BackupEntry, BackupStatus, utcnow
from app.backup.exporter import ExportResult
from app.backup.storage import DeleteError


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite for the backup log and a temp dir for artifacts.
    """
    app = create_app('testing', test_config={
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
        'LOG_DIR': str(tmp_path / 'logs'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    """Authorization header carrying the operator token."""
    return {'Authorization': f"Bearer {app.config['BACKUP_ADMIN_TOKEN']}"}


class FakeExporter:
    """
    Exporter double. Returns numbered artifacts, or raises `error`.

    When `gate` is set, each call signals `started` and blocks until the gate
    opens, so tests can hold a run in flight.
    """

    def __init__(self, error=None, gate=None):
        self.error = error
        self.gate = gate
        self.started = threading.Event()
        self.calls = []
        self.max_concurrent = {}
        self._running = {}
        self._lock = threading.Lock()
        self._counter = itertools.count(1)

    def create_backup(self, tier):
        with self._lock:
            self.calls.append(tier)
            n = next(self._counter)
            self._running[tier] = self._running.get(tier, 0) + 1
            self.max_concurrent[tier] = max(self.max_concurrent.get(tier, 0), self._running[tier])

        try:
            self.started.set()
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if self.error is not None:
                raise self.error
            return ExportResult(destination=f"{tier}/artifact-{n}.tar.gz", size_bytes=1024 * n)
        finally:
            with self._lock:
                self._running[tier] -= 1


class FakeStorage:
    """Storage double recording deletions; destinations in fail_on raise DeleteError."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.deleted = []

    def delete(self, destination):
        if destination in self.fail_on:
            raise DeleteError(destination, 'simulated failure')
        self.deleted.append(destination)


class InMemoryBackupLog:
    """Thread-safe list-backed stand-in for BackupLog."""

    def __init__(self):
        self.entries = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def append(self, entry):
        entry.check_invariant()
        with self._lock:
            entry.id = next(self._ids)
            self.entries.append(entry)
        return entry

    def query(self, tier=None, since=None, status=None, include_reclaimed=True):
        with self._lock:
            entries = list(self.entries)
        entries.sort(key=lambda e: (e.started_at, e.id))
        for entry in entries:
            if tier is not None and entry.tier != tier:
                continue
            if since is not None and entry.started_at < since:
                continue
            if status is not None and entry.status != status:
                continue
            if not include_reclaimed and entry.reclaimed_at is not None:
                continue
            yield entry

    def mark_reclaimed(self, entry_id, when=None):
        with self._lock:
            entry = next(e for e in self.entries if e.id == entry_id)
        if entry.status != BackupStatus.SUCCESS:
            raise ValueError(f"Backup entry {entry_id} is not a successful backup")
        entry.reclaimed_at = when or utcnow()
        return entry


@pytest.fixture
def fake_exporter():
    return FakeExporter()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def memory_log():
    return InMemoryBackupLog()


def add_successes(log, tier, count, start=datetime(2024, 1, 1, 2, 0), step=timedelta(days=1)):
    """Append `count` successful entries, oldest first, one `step` apart."""
    entries = []
    for i in range(count):
        entry = BackupEntry.success(
            tier=tier,
            started_at=start + step * i,
            size_bytes=1000 + i,
            destination=f"{tier}/backup-{i:02d}.tar.gz",
            completed_at=start + step * i + timedelta(minutes=1)
        )
        entries.append(log.append(entry))
    return entries


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def finance_db_url(tmp_path):
    """
    A small SQLite finance store with expenses and budgets.
    """
    path = tmp_path / 'finance.db'
    url = f"sqlite:///{path}"
    engine = create_engine(url)

    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE expenses (id INTEGER PRIMARY KEY, description TEXT, "
            "amount NUMERIC, spent_on DATE)"
        ))
        conn.execute(text(
            "CREATE TABLE budgets (id INTEGER PRIMARY KEY, category TEXT, monthly_limit NUMERIC)"
        ))
        conn.execute(text(
            "CREATE TABLE backup_log (id INTEGER PRIMARY KEY, tier TEXT)"
        ))
        conn.execute(text(
            "INSERT INTO expenses (description, amount, spent_on) VALUES "
            "('Groceries', 54.20, '2024-01-03'), ('Rent', 1200, '2024-01-01')"
        ))
        conn.execute(text(
            "INSERT INTO budgets (category, monthly_limit) VALUES ('food', 400)"
        ))
        conn.execute(text("INSERT INTO backup_log (tier) VALUES ('daily')"))

    engine.dispose()
    return url
