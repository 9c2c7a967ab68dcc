"""
State Manager

Manages job state transitions and persistence.
Coordinates between Redis (for fast lookups of finished jobs) and the
database (source of truth).
"""
import json
import logging
from datetime import datetime
from typing import List, Optional

import redis.asyncio as redis
from sqlalchemy import delete, update
from sqlmodel import select

from .models import ForgeJob, JobStatus, utcnow
from .schemas import JobInput, JobResult, JobView

logger = logging.getLogger(__name__)


class StateManager:
    """
    Job store access for the engine.

    Status writes are conditional on the current status so that a job never
    regresses: running only from queued, terminal only from running.
    Only terminal job views are cached, since they no longer change.
    """

    def __init__(self, redis_client: Optional[redis.Redis], db, cache_ttl: int = 300):
        """
        Initialize state manager.

        Args:
            redis_client: Redis async client for caching (None disables caching)
            db: Database instance
            cache_ttl: Seconds a terminal job view stays cached
        """
        self.redis = redis_client
        self.db = db
        self.cache_prefix = "forge:job:"
        self.cache_ttl = cache_ttl

    async def load(self, job_id: str) -> Optional[ForgeJob]:
        """Fetch the raw row from the database."""
        async with self.db.session() as session:
            return await session.get(ForgeJob, job_id)

    async def get_job(self, job_id: str, owner: Optional[str] = None) -> Optional[JobView]:
        """
        Get a job view (cached from Redis, fallback to DB).

        Args:
            job_id: The job ID
            owner: If given, only return the job when it belongs to this owner

        Returns:
            JobView or None if not found
        """
        view = await self._read_cache(job_id)
        if view is None:
            job = await self.load(job_id)
            if job is None:
                return None
            view = self.to_view(job)
            if view.status.is_terminal:
                await self._cache_job_state(view)

        if owner is not None and view.owner != owner:
            return None
        return view

    async def get_output(self, job_id: str) -> Optional[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ForgeJob.output_log).where(ForgeJob.id == job_id)
            )
            return result.scalar_one_or_none()

    async def find_latest_completed(
        self,
        owner: str,
        input_hash: str,
        kind: str,
        now: Optional[datetime] = None,
    ) -> Optional[ForgeJob]:
        """Owner's most recent completed, unexpired job for a content hash and kind."""
        now = now or utcnow()
        async with self.db.session() as session:
            statement = (
                select(ForgeJob)
                .where(
                    ForgeJob.owner == owner,
                    ForgeJob.input_hash == input_hash,
                    ForgeJob.kind == kind,
                    ForgeJob.status == JobStatus.COMPLETED.value,
                    ForgeJob.expires_at > now,
                )
                .order_by(ForgeJob.created_at.desc())
                .limit(1)
            )
            result = await session.execute(statement)
            return result.scalars().first()

    async def get_jobs_by_status(self, status: JobStatus, limit: int = 100) -> List[ForgeJob]:
        async with self.db.session() as session:
            statement = select(ForgeJob).where(ForgeJob.status == status.value).limit(limit)
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def create_job(self, job: ForgeJob) -> ForgeJob:
        async with self.db.session() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        logger.info(f"Created {job.kind} job {job.id} for {job.owner}")
        return job

    async def mark_running(self, job_id: str) -> bool:
        """queued -> running. Returns False if the job was not queued."""
        statement = (
            update(ForgeJob)
            .where(ForgeJob.id == job_id, ForgeJob.status == JobStatus.QUEUED.value)
            .values(status=JobStatus.RUNNING.value, started_at=utcnow())
        )
        return await self._execute_update(statement) > 0

    async def append_output(self, job_id: str, text: str) -> None:
        """Append to the output log while the job is running."""
        if not text:
            return
        statement = (
            update(ForgeJob)
            .where(ForgeJob.id == job_id, ForgeJob.status == JobStatus.RUNNING.value)
            .values(output_log=ForgeJob.output_log + text)
        )
        await self._execute_update(statement)

    async def finish_job(
        self,
        job_id: str,
        status: JobStatus,
        result: JobResult,
        execution_mode: Optional[str] = None,
        container_name: Optional[str] = None,
    ) -> bool:
        """
        running -> completed | failed | timeout.

        Returns False when the job is no longer running (for example a sweep
        already reclassified it); the earlier terminal record wins.
        """
        if not status.is_terminal:
            raise ValueError(f"{status} is not a terminal status")

        values = {
            "status": status.value,
            "result": result.model_dump_json(),
            "completed_at": utcnow(),
        }
        if execution_mode is not None:
            values["execution_mode"] = execution_mode
        if container_name is not None:
            values["container_name"] = container_name

        statement = (
            update(ForgeJob)
            .where(ForgeJob.id == job_id, ForgeJob.status == JobStatus.RUNNING.value)
            .values(**values)
        )
        updated = await self._execute_update(statement) > 0
        if updated:
            logger.info(f"Updated job {job_id} status to {status.value}")
        else:
            logger.warning(f"Job {job_id} was not running; {status.value} transition skipped")
        return updated

    async def reclassify_running(self, started_before: datetime, status: JobStatus, result: JobResult) -> List[str]:
        """Move every job running since before a cutoff into a terminal status."""
        statement = (
            update(ForgeJob)
            .where(
                ForgeJob.status == JobStatus.RUNNING.value,
                ForgeJob.started_at < started_before,
            )
            .values(status=status.value, result=result.model_dump_json(), completed_at=utcnow())
            .returning(ForgeJob.id)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            rows = await session.execute(statement)
            job_ids = list(rows.scalars().all())
            await session.commit()
        for job_id in job_ids:
            await self.invalidate(job_id)
        return job_ids

    async def delete_expired(self, now: Optional[datetime] = None) -> List[str]:
        statement = (
            delete(ForgeJob)
            .where(ForgeJob.expires_at < (now or utcnow()))
            .returning(ForgeJob.id)
            .execution_options(synchronize_session=False)
        )
        async with self.db.session() as session:
            rows = await session.execute(statement)
            job_ids = list(rows.scalars().all())
            await session.commit()
        for job_id in job_ids:
            await self.invalidate(job_id)
        return job_ids

    async def mark_failed(self, job_id: str, result: JobResult) -> None:
        """Fail a job that never started (queued -> failed)."""
        statement = (
            update(ForgeJob)
            .where(ForgeJob.id == job_id, ForgeJob.status == JobStatus.QUEUED.value)
            .values(status=JobStatus.FAILED.value, result=result.model_dump_json(), completed_at=utcnow())
        )
        await self._execute_update(statement)

    async def _execute_update(self, statement) -> int:
        async with self.db.session() as session:
            result = await session.execute(statement.execution_options(synchronize_session=False))
            await session.commit()
            return result.rowcount

    @staticmethod
    def to_view(job: ForgeJob, cached: bool = False) -> JobView:
        return JobView(
            id=job.id,
            owner=job.owner,
            kind=job.kind,
            project_ref=job.project_ref,
            input_hash=job.input_hash,
            status=job.status,
            result=JobResult.model_validate_json(job.result) if job.result else None,
            execution_mode=job.execution_mode,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            expires_at=job.expires_at,
            cached=cached,
        )

    @staticmethod
    def job_input(job: ForgeJob) -> JobInput:
        return JobInput.model_validate(json.loads(job.input_payload))

    async def _read_cache(self, job_id: str) -> Optional[JobView]:
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(f"{self.cache_prefix}{job_id}")
            if cached:
                if isinstance(cached, bytes):
                    cached = cached.decode("utf-8")
                logger.debug(f"Job {job_id} state from cache")
                return JobView.model_validate_json(cached)
        except Exception as e:
            logger.warning(f"Error reading from cache for job {job_id}: {e}")
        return None

    async def _cache_job_state(self, view: JobView) -> None:
        """Cache a terminal job view in Redis."""
        if self.redis is None:
            return
        try:
            await self.redis.setex(
                f"{self.cache_prefix}{view.id}",
                self.cache_ttl,
                view.model_dump_json(),
            )
        except Exception as e:
            logger.warning(f"Error caching job state for {view.id}: {e}")

    async def invalidate(self, job_id: str) -> None:
        """Invalidate cached job state."""
        if self.redis is None:
            return
        try:
            await self.redis.delete(f"{self.cache_prefix}{job_id}")
        except Exception as e:
            logger.warning(f"Error invalidating cache for {job_id}: {e}")
