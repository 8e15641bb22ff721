"""
Memory retention sweeps.

Three independent, idempotent sweeps:
- expire: deactivate insights whose expires_at has passed
- staleness: deactivate insights not relevant for N days, except protected
  importance tiers
- pattern retention: hard-delete addressed patterns past the retention window

Insights are never hard-deleted. CleanupScheduler runs all three on an
interval with APScheduler.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..core.database import Database, to_iso, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    expired: int = 0
    stale: int = 0
    patterns_deleted: int = 0

    def to_dict(self):
        return {
            "expired": self.expired,
            "stale": self.stale,
            "patternsDeleted": self.patterns_deleted,
        }


class MemoryCleanup:
    """Retention sweeps over insights and patterns."""

    def __init__(
        self,
        db: Database,
        staleness_days: int = 90,
        protected_importances: Sequence[str] = ("critical", "high"),
        pattern_retention_days: int = 30,
    ):
        self.db = db
        self.staleness_days = staleness_days
        self.protected_importances = tuple(protected_importances)
        self.pattern_retention_days = pattern_retention_days

    def expire_insights(self, now: Optional[datetime] = None) -> int:
        """Deactivate active insights whose expires_at is in the past."""
        count = self.db.execute(
            "UPDATE insights SET is_active = 0 "
            "WHERE is_active = 1 AND expires_at IS NOT NULL AND expires_at <= :now",
            {"now": to_iso(now or utcnow())},
        )
        if count:
            logger.info(f"[CLEANUP] Expired {count} insights")
        return count

    def deactivate_stale(self, now: Optional[datetime] = None) -> int:
        """Deactivate unprotected insights not relevant within the staleness window."""
        cutoff = (now or utcnow()) - timedelta(days=self.staleness_days)
        params = {"cutoff": to_iso(cutoff)}

        sql = (
            "UPDATE insights SET is_active = 0 "
            "WHERE is_active = 1 AND last_relevant_at < :cutoff"
        )
        if self.protected_importances:
            placeholders = ", ".join(f":imp{i}" for i in range(len(self.protected_importances)))
            sql += f" AND importance NOT IN ({placeholders})"
            params.update({f"imp{i}": imp for i, imp in enumerate(self.protected_importances)})

        count = self.db.execute(sql, params)
        if count:
            logger.info(f"[CLEANUP] Deactivated {count} stale insights (>{self.staleness_days} days)")
        return count

    def delete_addressed_patterns(self, now: Optional[datetime] = None) -> int:
        """Remove addressed patterns once the retention window has passed."""
        cutoff = (now or utcnow()) - timedelta(days=self.pattern_retention_days)
        count = self.db.delete(
            "patterns",
            "is_addressed = 1 AND COALESCE(addressed_at, created_at) < :cutoff",
            {"cutoff": to_iso(cutoff)},
        )
        if count:
            logger.info(f"[CLEANUP] Deleted {count} addressed patterns")
        return count

    def run_all(self, now: Optional[datetime] = None) -> CleanupReport:
        """Run every sweep; one failing sweep does not stop the others."""
        now = now or utcnow()
        report = CleanupReport()

        for attr, sweep in (
            ("expired", self.expire_insights),
            ("stale", self.deactivate_stale),
            ("patterns_deleted", self.delete_addressed_patterns),
        ):
            try:
                setattr(report, attr, sweep(now))
            except Exception as e:
                logger.error(f"[CLEANUP] {sweep.__name__} failed: {e}", exc_info=True)

        return report


class CleanupScheduler:
    """Runs MemoryCleanup.run_all on a fixed interval."""

    def __init__(self, cleanup: MemoryCleanup, interval_hours: int = 24):
        self.cleanup = cleanup
        self.interval_hours = interval_hours
        self.scheduler = BackgroundScheduler()

    def start(self):
        self.scheduler.add_job(
            self.cleanup.run_all,
            trigger=IntervalTrigger(hours=self.interval_hours),
            id="memory_cleanup",
            name="Memory retention sweeps",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"[CLEANUP] Scheduler started (every {self.interval_hours}h)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("[CLEANUP] Scheduler stopped")
