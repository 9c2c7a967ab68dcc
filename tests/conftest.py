"""Shared fixtures: in-memory database, fake Redis and a scriptable sandbox."""
import asyncio
import uuid
from datetime import timedelta
from typing import List, Optional

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from forge_service.config import ForgeSettings
from forge_service.database import Database
from forge_service.forge_jobs.job_orchestrator import JobOrchestrator
from forge_service.forge_jobs.limits import EngineLimits
from forge_service.forge_jobs.models import ExecutionMode, ForgeJob, JobStatus, utcnow
from forge_service.forge_jobs.sandbox_adapter import SandboxOutput, SandboxRequest
from forge_service.forge_jobs.schemas import JobInput, SourceFile

OWNER = "0xabc"

COUNTER_SOURCE = """// SPDX-License-Identifier: MIT
pragma solidity ^0.8.28;

contract Counter {
    uint256 public number;

    function increment() public {
        number++;
    }
}
"""


class FakeSandbox:
    """Sandbox double: emits scripted chunks, then returns or raises."""

    mode = ExecutionMode.SANDBOX

    def __init__(
        self,
        output: str = "",
        success: bool = True,
        exit_code: int = 0,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        chunks: Optional[List[str]] = None,
    ):
        self.output = output
        self.success = success
        self.exit_code = exit_code
        self.delay = delay
        self.error = error
        self.chunks = chunks if chunks is not None else ([output] if output else [])
        self.requests: List[SandboxRequest] = []

    async def run(self, request, on_output=None):
        self.requests.append(request)
        for chunk in self.chunks:
            if on_output:
                await on_output(chunk)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SandboxOutput(
            output="".join(self.chunks),
            success=self.success,
            exit_code=self.exit_code,
            execution_mode=self.mode.value,
            container_name=request.container_name,
        )


def counter_files() -> List[SourceFile]:
    return [
        SourceFile(path="src/Counter.sol", content=COUNTER_SOURCE),
        SourceFile(path="foundry.toml", content='[profile.default]\nsrc = "src"\n'),
    ]


@pytest.fixture
def settings():
    return ForgeSettings(
        database_url="sqlite+aiosqlite:///:memory:",
        forge_docker_enabled=False,
    )


@pytest.fixture
async def db(settings):
    database = Database(settings)
    await database.init_models()
    yield database
    await database.dispose()


@pytest.fixture
async def redis_client():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def limits():
    return EngineLimits(stream_poll_interval=0.01)


@pytest.fixture
def make_orchestrator(db, redis_client, limits):
    def _make(sandbox=None, **kwargs):
        kwargs.setdefault("limits", limits)
        return JobOrchestrator(
            redis_client=redis_client,
            db=db,
            sandbox=sandbox or FakeSandbox(),
            **kwargs,
        )

    return _make


@pytest.fixture
def job_factory():
    """Build unsaved ForgeJob rows in a given state."""

    def _make(
        status: JobStatus = JobStatus.QUEUED,
        started_at=None,
        expires_at=None,
        owner: str = OWNER,
        kind: str = "compile",
    ) -> ForgeJob:
        now = utcnow()
        return ForgeJob(
            id=str(uuid.uuid4()),
            owner=owner,
            kind=kind,
            input_hash=uuid.uuid4().hex,
            input_payload=JobInput(files=counter_files()).model_dump_json(),
            status=status.value,
            created_at=now,
            started_at=started_at,
            expires_at=expires_at or now + timedelta(minutes=30),
        )

    return _make
