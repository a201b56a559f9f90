"""
Retention policy enforcement for backups.

Each tier is swept independently. Only successful, not yet reclaimed entries
count towards a tier's keep rule, so failed attempts never push a good
artifact out. An entry is marked reclaimed only after storage confirms its
artifact was deleted; failed deletions stay candidates for the next sweep.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from app.models import BackupEntry, BackupStatus, BackupTier, utcnow, as_utc_naive
from .log import LogWriteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Keep rule for one tier.

    keep_count keeps the N most recent successful artifacts, keep_duration keeps
    artifacts younger than the given age (the newest one is always kept). With
    neither set, artifacts are kept indefinitely.
    """
    tier: str
    keep_count: Optional[int] = None
    keep_duration: Optional[timedelta] = None

    def __post_init__(self):
        if self.tier not in BackupTier.ALL:
            raise ValueError(f"Unknown backup tier: {self.tier}")
        if self.keep_count is not None and self.keep_duration is not None:
            raise ValueError("Retention policy takes keep_count or keep_duration, not both")
        if self.keep_count is not None and self.keep_count < 1:
            raise ValueError(f"keep_count must be at least 1 (got {self.keep_count})")
        if self.keep_duration is not None and self.keep_duration <= timedelta(0):
            raise ValueError("keep_duration must be positive")

    @property
    def indefinite(self) -> bool:
        return self.keep_count is None and self.keep_duration is None

    def describe(self) -> str:
        if self.keep_count is not None:
            return f"keep last {self.keep_count}"
        if self.keep_duration is not None:
            return f"keep {self.keep_duration}"
        return "keep all"


def build_policies(keep_daily: int = 7, keep_weekly: int = 4) -> Dict[str, RetentionPolicy]:
    return {
        BackupTier.DAILY: RetentionPolicy(BackupTier.DAILY, keep_count=keep_daily),
        BackupTier.WEEKLY: RetentionPolicy(BackupTier.WEEKLY, keep_count=keep_weekly),
        BackupTier.MONTHLY: RetentionPolicy(BackupTier.MONTHLY),
    }


DEFAULT_POLICIES = build_policies()


@dataclass
class TierSweepResult:
    tier: str
    removed: int = 0
    failures: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            'removed': self.removed,
            'failures': self.failures,
            'errors': list(self.errors),
            'skipped': self.skipped
        }


@dataclass
class SweepResult:
    tiers: Dict[str, TierSweepResult] = field(default_factory=dict)

    @property
    def removed(self) -> int:
        return sum(result.removed for result in self.tiers.values())

    @property
    def failures(self) -> int:
        return sum(result.failures for result in self.tiers.values())

    def to_dict(self) -> dict:
        return {
            'removed': self.removed,
            'failures': self.failures,
            'tiers': {tier: result.to_dict() for tier, result in self.tiers.items()}
        }


class RetentionEngine:
    """
    Decides which artifacts are redundant under each tier's policy and deletes them.

    The engine never owns artifacts: it reads entries from the backup log and
    asks storage to delete destinations.
    """

    def __init__(self, log, storage, policies: Optional[Dict[str, RetentionPolicy]] = None):
        """
        Initialize retention engine.

        Args:
            log: BackupLog (query + mark_reclaimed)
            storage: Storage backend with delete(destination)
            policies: Tier -> RetentionPolicy (default: DEFAULT_POLICIES)
        """
        self.log = log
        self.storage = storage
        self.policies = dict(policies or DEFAULT_POLICIES)
        self._tier_locks = {tier: threading.Lock() for tier in self.policies}

    def plan(self, tier: str, now: Optional[datetime] = None) -> List[BackupEntry]:
        """
        Compute deletion candidates for a tier without touching storage.

        Args:
            tier: Backup tier
            now: Reference time for duration based policies (default: now, UTC)

        Returns:
            Candidate entries, newest first
        """
        policy = self.policies.get(tier)
        if policy is None or policy.indefinite:
            return []

        entries = list(self.log.query(
            tier=tier,
            status=BackupStatus.SUCCESS,
            include_reclaimed=False
        ))
        entries.sort(key=lambda e: (e.started_at, e.id), reverse=True)

        if policy.keep_count is not None:
            return entries[policy.keep_count:]

        cutoff = as_utc_naive(now or utcnow()) - policy.keep_duration
        return [entry for entry in entries[1:] if entry.started_at < cutoff]

    def sweep_tier(self, tier: str, now: Optional[datetime] = None) -> TierSweepResult:
        """
        Enforce the policy for one tier.

        Per-artifact errors (failed deletion or reclaim bookkeeping) are counted
        in the result, not raised, and the remaining candidates are still tried.
        A sweep already running for the same tier makes this call a no-op.

        Raises:
            LogWriteError: If a deleted artifact cannot be marked reclaimed
        """
        result = TierSweepResult(tier=tier)
        lock = self._tier_locks.get(tier)
        if lock is None:
            return result

        if not lock.acquire(blocking=False):
            logger.warning(f"Retention sweep skipped tier={tier} reason=in_flight")
            result.skipped = True
            return result

        try:
            now = as_utc_naive(now or utcnow())
            candidates = self.plan(tier, now)
            policy = self.policies[tier]

            if candidates:
                logger.info(
                    f"Retention for {tier} ({policy.describe()}): "
                    f"{len(candidates)} artifact(s) eligible for deletion"
                )

            for entry in candidates:
                try:
                    self.storage.delete(entry.destination)
                except Exception as e:
                    self._record_failure(result, entry, f"Failed to delete {tier} artifact", e)
                    continue

                try:
                    self.log.mark_reclaimed(entry.id, when=now)
                except LogWriteError:
                    raise
                except Exception as e:
                    self._record_failure(result, entry, f"Deleted {tier} artifact but could not mark it reclaimed", e)
                    continue

                result.removed += 1
                logger.info(f"Reclaimed {tier} artifact {entry.destination} (entry {entry.id})")

            return result

        finally:
            lock.release()

    @staticmethod
    def _record_failure(result: TierSweepResult, entry: BackupEntry, message: str, error: Exception):
        result.failures += 1
        result.errors.append(str(error) or error.__class__.__name__)
        logger.warning(f"{message} {entry.destination}: {error}")

    def apply(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Run one sweep across all tiers.

        An error that stops one tier before its candidates are processed (such as
        a failed log query) counts as one failure for that tier and does not
        stop the others. LogWriteError propagates.

        Returns:
            SweepResult with per-tier and total counts
        """
        now = as_utc_naive(now or utcnow())
        sweep = SweepResult()

        for tier in self.policies:
            try:
                sweep.tiers[tier] = self.sweep_tier(tier, now)
            except LogWriteError:
                raise
            except Exception as e:
                logger.error(f"Retention sweep for {tier} failed: {e}")
                sweep.tiers[tier] = TierSweepResult(tier=tier, failures=1, errors=[str(e)])

        return sweep
