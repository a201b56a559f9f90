"""
Backup executor - one backup attempt for one tier.

Workflow:
1. Record the start time
2. Ask the exporter for a full snapshot
3. Build a success or failed BackupEntry from the outcome
4. Append it to the backup log (exactly once per attempt)
5. Emit the structured run line
"""

import logging
from typing import Callable, Optional

from app.models import BackupEntry, BackupTier, utcnow
from .log import LogWriteError

logger = logging.getLogger(__name__)


def format_fields(**fields) -> str:
    """Render key=value pairs for log lines, skipping empty values."""
    return ' '.join(f"{key}={value}" for key, value in fields.items() if value is not None)


def run_tiered_backup(
    tier: str,
    exporter,
    log,
    clock: Optional[Callable] = None
) -> BackupEntry:
    """
    Run one backup attempt and record it.

    Any exporter failure, including a result without size or destination,
    becomes a failed entry; the caller never sees it.

    Args:
        tier: Backup tier (daily, weekly, monthly)
        exporter: Object with create_backup(tier) -> ExportResult
        log: BackupLog (or anything with append(entry))
        clock: Returns the current naive UTC time (default: utcnow)

    Returns:
        The appended BackupEntry

    Raises:
        ValueError: If tier is unknown
        LogWriteError: If the attempt cannot be recorded
    """
    if tier not in BackupTier.ALL:
        raise ValueError(f"Unknown backup tier: {tier}")

    clock = clock or utcnow
    started_at = clock()
    logger.info(f"Starting {tier} backup")

    try:
        result = exporter.create_backup(tier)
        entry = BackupEntry.success(
            tier=tier,
            started_at=started_at,
            size_bytes=result.size_bytes,
            destination=result.destination,
            completed_at=clock()
        )
        entry.check_invariant()
    except LogWriteError:
        raise
    except Exception as e:
        entry = BackupEntry.failed(
            tier=tier,
            started_at=started_at,
            error=str(e) or e.__class__.__name__,
            completed_at=clock()
        )

    log.append(entry)

    fields = {
        'tier': entry.tier,
        'status': entry.status,
        'size': entry.size_bytes,
        'destination': entry.destination,
        'error': entry.error_message
    }
    message = f"Backup run finished {format_fields(**fields)}"
    extra = {'backup': {key: value for key, value in fields.items() if value is not None}}

    if entry.is_success:
        logger.info(message, extra=extra)
    else:
        logger.error(message, extra=extra)

    return entry
