"""
Result Cache

Short-circuits execution when an identical file set was already processed.
Keeps a Redis index of (owner, kind, input_hash) -> job_id for fast lookups; the
database stays authoritative and is used when the index misses or fails.
"""
import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as redis

from .models import ForgeJob, JobStatus, utcnow
from .state_manager import StateManager

logger = logging.getLogger(__name__)


class ResultCache:
    """
    Finds the owner's prior completed, unexpired job with the same content
    hash and kind. Results are never shared across owners.

    The cache is opportunistic: two identical submissions racing before
    either completes will both execute.
    """

    def __init__(self, redis_client: Optional[redis.Redis], state_manager: StateManager):
        """
        Initialize result cache.

        Args:
            redis_client: Redis async client (None disables the index)
            state_manager: Job store access
        """
        self.redis = redis_client
        self.state_manager = state_manager
        self.key_prefix = "forge:result:"

    def _key(self, owner: str, kind: str, input_hash: str) -> str:
        return f"{self.key_prefix}{owner}:{kind}:{input_hash}"

    async def lookup(
        self,
        owner: str,
        input_hash: str,
        kind: str,
        now: Optional[datetime] = None,
    ) -> Optional[ForgeJob]:
        """
        Return a reusable completed job, or None.

        Args:
            owner: Submitter the result must belong to
            input_hash: Content hash of the resolved file set
            kind: Job kind
            now: Reference time for expiry (defaults to utcnow)
        """
        now = now or utcnow()

        job_id = await self._index_get(owner, input_hash, kind)
        if job_id:
            job = await self.state_manager.load(job_id)
            if self._reusable(job, owner, input_hash, kind, now):
                logger.info(f"Cache hit for job {job_id} (index)")
                return job
            await self._index_delete(owner, input_hash, kind)

        job = await self.state_manager.find_latest_completed(owner, input_hash, kind, now)
        if job is not None:
            logger.info(f"Cache hit for job {job.id}")
            await self.remember(job)
        return job

    async def remember(self, job: ForgeJob) -> bool:
        """Index a completed job until it expires."""
        if self.redis is None or job.status != JobStatus.COMPLETED.value:
            return False

        ttl = int((job.expires_at - utcnow()).total_seconds())
        if ttl <= 0:
            return False

        try:
            await self.redis.setex(self._key(job.owner, job.kind, job.input_hash), ttl, job.id)
            logger.debug(f"Indexed result {job.kind}:{job.input_hash} -> {job.id} (TTL: {ttl}s)")
            return True
        except Exception as e:
            logger.error(f"Error indexing result for job {job.id}: {e}")
            return False

    @staticmethod
    def _reusable(job: Optional[ForgeJob], owner: str, input_hash: str, kind: str, now: datetime) -> bool:
        return (
            job is not None
            and job.status == JobStatus.COMPLETED.value
            and job.owner == owner
            and job.input_hash == input_hash
            and job.kind == kind
            and job.expires_at > now
        )

    async def _index_get(self, owner: str, input_hash: str, kind: str) -> Optional[str]:
        if self.redis is None:
            return None
        try:
            job_id = await self.redis.get(self._key(owner, kind, input_hash))
            if isinstance(job_id, bytes):
                job_id = job_id.decode("utf-8")
            return job_id
        except Exception as e:
            logger.error(f"Error checking result index for {kind}:{input_hash}: {e}")
            # Fall through to the database
            return None

    async def _index_delete(self, owner: str, input_hash: str, kind: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.delete(self._key(owner, kind, input_hash))
        except Exception as e:
            logger.error(f"Error deleting result index for {kind}:{input_hash}: {e}")
