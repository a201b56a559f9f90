from datetime import datetime, timezone

from sqlalchemy import event, inspect

from app import db


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the backup log."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class BackupTier:
    """Backup cadences, each with its own retention rule"""
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'

    ALL = (DAILY, WEEKLY, MONTHLY)


class BackupStatus:
    SUCCESS = 'success'
    FAILED = 'failed'

    ALL = (SUCCESS, FAILED)


class BackupEntry(db.Model):
    """One backup attempt. Append-only; only reclaimed_at may be set later."""
    __tablename__ = 'backup_log'
    __table_args__ = (
        db.Index('ix_backup_log_tier_status_started', 'tier', 'status', 'started_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tier = db.Column(db.String(20), nullable=False)  # daily, weekly, monthly
    started_at = db.Column(db.DateTime, nullable=False, index=True)
    completed_at = db.Column(db.DateTime)
    status = db.Column(db.String(20), nullable=False)  # success, failed
    size_bytes = db.Column(db.BigInteger)
    destination = db.Column(db.String(500))
    error_message = db.Column(db.Text)
    reclaimed_at = db.Column(db.DateTime)  # Artifact deleted by retention

    @classmethod
    def success(cls, tier, started_at, size_bytes, destination, completed_at=None):
        return cls(
            tier=tier,
            started_at=started_at,
            completed_at=completed_at or utcnow(),
            status=BackupStatus.SUCCESS,
            size_bytes=size_bytes,
            destination=destination
        )

    @classmethod
    def failed(cls, tier, started_at, error, completed_at=None):
        return cls(
            tier=tier,
            started_at=started_at,
            completed_at=completed_at or utcnow(),
            status=BackupStatus.FAILED,
            error_message=error
        )

    @property
    def is_success(self) -> bool:
        return self.status == BackupStatus.SUCCESS

    @property
    def is_reclaimed(self) -> bool:
        return self.reclaimed_at is not None

    def check_invariant(self):
        """
        Validate that the populated fields match the status.

        Raises:
            ValueError: If tier/status are unknown or fields disagree with status
        """
        if self.tier not in BackupTier.ALL:
            raise ValueError(f"Unknown backup tier: {self.tier}")
        if self.started_at is None:
            raise ValueError("Backup entry has no start time")

        if self.status == BackupStatus.SUCCESS:
            if self.size_bytes is None or not self.destination:
                raise ValueError("Successful backup entry needs size_bytes and destination")
            if self.error_message is not None:
                raise ValueError("Successful backup entry cannot carry an error")
        elif self.status == BackupStatus.FAILED:
            if self.error_message is None:
                raise ValueError("Failed backup entry needs an error message")
            if self.size_bytes is not None or self.destination is not None:
                raise ValueError("Failed backup entry cannot reference an artifact")
            if self.reclaimed_at is not None:
                raise ValueError("Failed backup entry cannot be reclaimed")
        else:
            raise ValueError(f"Unknown backup status: {self.status}")

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'tier': self.tier,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'size_bytes': self.size_bytes,
            'destination': self.destination,
            'error': self.error_message,
            'reclaimed': self.is_reclaimed,
            'reclaimed_at': self.reclaimed_at.isoformat() if self.reclaimed_at else None
        }

    def __repr__(self):
        return f'<BackupEntry {self.id} tier={self.tier} status={self.status}>'


_IMMUTABLE_COLUMNS = (
    'tier', 'started_at', 'completed_at', 'status',
    'size_bytes', 'destination', 'error_message'
)


@event.listens_for(BackupEntry, 'before_update')
def _reject_entry_rewrites(mapper, connection, target):
    state = inspect(target)

    for name in _IMMUTABLE_COLUMNS:
        if state.attrs[name].history.has_changes():
            raise ValueError(f"Backup entry {target.id} is immutable (attempted change to {name})")

    reclaimed = state.attrs['reclaimed_at'].history
    if reclaimed.has_changes():
        if reclaimed.deleted and reclaimed.deleted[0] is not None:
            raise ValueError(f"Backup entry {target.id} is already reclaimed")
        if not target.is_success:
            raise ValueError(f"Backup entry {target.id} is not a successful backup")
