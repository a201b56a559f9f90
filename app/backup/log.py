"""
Backup log - append-only record of backup attempts.

The log is the only durable state owned by the backup subsystem. Entries are
never updated or deleted; retention only flags an entry as reclaimed once its
artifact has been removed from storage.
"""

import logging
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.models import BackupEntry, BackupStatus, utcnow

logger = logging.getLogger(__name__)


class LogWriteError(Exception):
    """Raised when a backup attempt cannot be durably recorded."""
    pass


class BackupLog:
    """
    SQLAlchemy-backed store of BackupEntry records.

    Each thread works through its own scoped session, so independent appends
    from concurrently running tiers do not share state.
    """

    def __init__(self, session):
        """
        Initialize backup log.

        Args:
            session: SQLAlchemy session (normally db.session)
        """
        self.session = session

    def append(self, entry: BackupEntry) -> BackupEntry:
        """
        Durably record a backup attempt.

        Args:
            entry: New BackupEntry (not yet persisted)

        Returns:
            The persisted entry

        Raises:
            ValueError: If the entry breaks the status/field invariant
            LogWriteError: If the write cannot be committed
        """
        if entry.id is not None:
            raise ValueError(f"Backup entry {entry.id} is already recorded")

        entry.check_invariant()

        try:
            self.session.add(entry)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise LogWriteError(f"Failed to record {entry.tier} backup entry: {e}") from e

        return entry

    def query(
        self,
        tier: Optional[str] = None,
        since: Optional[datetime] = None,
        status: Optional[str] = None,
        include_reclaimed: bool = True
    ) -> Iterator[BackupEntry]:
        """
        Iterate entries ordered by start time, oldest first.

        Each call runs a fresh query, so the result can be re-read at any time.

        Args:
            tier: Only entries of this tier
            since: Only entries started at or after this time
            status: Only entries with this status
            include_reclaimed: If False, skip entries whose artifact was reclaimed
        """
        query = self.session.query(BackupEntry)

        if tier is not None:
            query = query.filter(BackupEntry.tier == tier)
        if since is not None:
            query = query.filter(BackupEntry.started_at >= since)
        if status is not None:
            query = query.filter(BackupEntry.status == status)
        if not include_reclaimed:
            query = query.filter(BackupEntry.reclaimed_at.is_(None))

        query = query.order_by(BackupEntry.started_at.asc(), BackupEntry.id.asc())

        yield from query.yield_per(100)

    def get(self, entry_id: int) -> Optional[BackupEntry]:
        return self.session.get(BackupEntry, entry_id)

    def latest(self, tier: str) -> Optional[BackupEntry]:
        """Most recent entry for a tier, regardless of status."""
        return (
            self.session.query(BackupEntry)
            .filter(BackupEntry.tier == tier)
            .order_by(BackupEntry.started_at.desc(), BackupEntry.id.desc())
            .first()
        )

    def mark_reclaimed(self, entry_id: int, when: Optional[datetime] = None) -> BackupEntry:
        """
        Flag a successful entry as reclaimed (artifact deleted).

        Args:
            entry_id: BackupEntry ID
            when: Reclaim time (default: now, UTC)

        Returns:
            The updated entry

        Raises:
            ValueError: If entry is missing or is not a successful backup
            LogWriteError: If the flag cannot be committed
        """
        entry = self.get(entry_id)

        if entry is None:
            raise ValueError(f"Backup entry not found: {entry_id}")
        if entry.status != BackupStatus.SUCCESS:
            raise ValueError(f"Backup entry {entry_id} is not a successful backup")
        if entry.reclaimed_at is not None:
            return entry

        try:
            entry.reclaimed_at = when or utcnow()
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise LogWriteError(f"Failed to mark backup entry {entry_id} reclaimed: {e}") from e

        logger.debug(f"Marked backup entry {entry_id} reclaimed ({entry.destination})")
        return entry
