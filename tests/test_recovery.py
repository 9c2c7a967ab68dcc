"""Tests for orphan recovery, stale-job cancellation and expiry."""
from datetime import timedelta

import pytest

from forge_service.forge_jobs.models import JobStatus, utcnow
from forge_service.forge_jobs.recovery import ORPHAN_MESSAGE, STALE_MESSAGE, RecoverySweep
from forge_service.forge_jobs.state_manager import StateManager

from conftest import OWNER


@pytest.fixture
def state_manager(db, redis_client):
    return StateManager(redis_client, db)


@pytest.fixture
def sweep(state_manager, limits):
    return RecoverySweep(state_manager, limits)


@pytest.mark.asyncio
async def test_orphans_past_grace_period_fail(state_manager, sweep, job_factory):
    now = utcnow()
    old = await state_manager.create_job(job_factory(JobStatus.RUNNING, started_at=now - timedelta(minutes=3)))
    fresh = await state_manager.create_job(job_factory(JobStatus.RUNNING, started_at=now - timedelta(minutes=1)))
    at_cutoff = await state_manager.create_job(job_factory(JobStatus.RUNNING, started_at=now - timedelta(minutes=2)))

    assert await sweep.recover_orphaned_jobs(now) == 1

    recovered = await state_manager.get_job(old.id, OWNER)
    assert recovered.status == JobStatus.FAILED
    assert recovered.result.errors[0].message == ORPHAN_MESSAGE
    assert (await state_manager.get_job(fresh.id)).status == JobStatus.RUNNING
    assert (await state_manager.get_job(at_cutoff.id)).status == JobStatus.RUNNING


@pytest.mark.asyncio
async def test_orphan_recovery_ignores_queued_and_terminal_jobs(state_manager, sweep, job_factory):
    queued = await state_manager.create_job(job_factory(JobStatus.QUEUED))
    done = await state_manager.create_job(
        job_factory(JobStatus.COMPLETED, started_at=utcnow() - timedelta(hours=1))
    )

    assert await sweep.recover_orphaned_jobs() == 0
    assert (await state_manager.get_job(queued.id)).status == JobStatus.QUEUED
    assert (await state_manager.get_job(done.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_stale_running_jobs_time_out(state_manager, sweep, job_factory):
    now = utcnow()
    stale = await state_manager.create_job(job_factory(JobStatus.RUNNING, started_at=now - timedelta(minutes=11)))
    active = await state_manager.create_job(job_factory(JobStatus.RUNNING, started_at=now - timedelta(minutes=9)))

    assert await sweep.cancel_stale_jobs(now) == 1

    timed_out = await state_manager.get_job(stale.id)
    assert timed_out.status == JobStatus.TIMEOUT
    assert timed_out.result.errors[0].message == STALE_MESSAGE
    assert (await state_manager.get_job(active.id)).status == JobStatus.RUNNING


@pytest.mark.asyncio
async def test_expired_jobs_are_deleted_whatever_their_status(state_manager, sweep, job_factory):
    now = utcnow()
    past = now - timedelta(seconds=1)
    expired_done = await state_manager.create_job(
        job_factory(JobStatus.COMPLETED, started_at=now - timedelta(minutes=31), expires_at=past)
    )
    expired_queued = await state_manager.create_job(job_factory(JobStatus.QUEUED, expires_at=past))
    live = await state_manager.create_job(job_factory(JobStatus.COMPLETED))

    # Warm the terminal-view cache so expiry has to invalidate it
    assert await state_manager.get_job(expired_done.id) is not None

    assert await sweep.expire_jobs(now) == 2

    assert await state_manager.get_job(expired_done.id) is None
    assert await state_manager.get_job(expired_queued.id) is None
    assert await state_manager.get_job(live.id) is not None


@pytest.mark.asyncio
async def test_run_all_is_idempotent(state_manager, sweep, job_factory):
    now = utcnow()
    await state_manager.create_job(job_factory(JobStatus.RUNNING, started_at=now - timedelta(minutes=20)))
    await state_manager.create_job(job_factory(JobStatus.QUEUED, expires_at=now - timedelta(minutes=1)))

    assert await sweep.run_all(now) == {"stale_cancelled": 1, "expired": 1}
    assert await sweep.run_all(now) == {"stale_cancelled": 0, "expired": 0}
