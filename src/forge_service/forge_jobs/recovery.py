"""
Recovery Sweep

Maintenance operations for the job table. Each one is idempotent, safe to
run concurrently with the workers, and makes no assumption about how often
it is called (background timer, external cron or a test driver).
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from .limits import EngineLimits
from .models import JobStatus, utcnow
from .schemas import JobResult
from .state_manager import StateManager

logger = logging.getLogger(__name__)

STALE_MESSAGE = "Job exceeded maximum runtime"
ORPHAN_MESSAGE = "Job interrupted by server restart"


class RecoverySweep:
    def __init__(self, state_manager: StateManager, limits: Optional[EngineLimits] = None):
        self.state_manager = state_manager
        self.limits = limits or EngineLimits()

    async def expire_jobs(self, now: Optional[datetime] = None) -> int:
        """Delete every job past its expires_at, whatever its status."""
        job_ids = await self.state_manager.delete_expired(now or utcnow())
        if job_ids:
            logger.info(f"Cleaned up {len(job_ids)} expired jobs")
        return len(job_ids)

    async def cancel_stale_jobs(self, now: Optional[datetime] = None) -> int:
        """
        Force running jobs past the maximum runtime into timeout.

        The ceiling is longer than any per-kind execution timeout, so this
        only catches jobs whose worker lost track of them.
        """
        cutoff = (now or utcnow()) - timedelta(minutes=self.limits.stale_job_minutes)
        job_ids = await self.state_manager.reclassify_running(
            cutoff, JobStatus.TIMEOUT, JobResult.single_error(STALE_MESSAGE)
        )
        if job_ids:
            logger.warning(f"Cancelled {len(job_ids)} stale jobs: {', '.join(job_ids)}")
        return len(job_ids)

    async def recover_orphaned_jobs(self, now: Optional[datetime] = None) -> int:
        """
        Fail jobs left running by a crashed or restarted process.

        Run once at startup. Jobs that started within the grace period are
        left alone so a quick restart does not kill work still in flight.
        """
        cutoff = (now or utcnow()) - timedelta(minutes=self.limits.orphan_grace_minutes)
        job_ids = await self.state_manager.reclassify_running(
            cutoff, JobStatus.FAILED, JobResult.single_error(ORPHAN_MESSAGE)
        )
        if job_ids:
            logger.warning(f"Recovered {len(job_ids)} orphaned jobs: {', '.join(job_ids)}")
        return len(job_ids)

    async def run_all(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Periodic pass: stale cancellation, then expiry."""
        return {
            "stale_cancelled": await self.cancel_stale_jobs(now),
            "expired": await self.expire_jobs(now),
        }
