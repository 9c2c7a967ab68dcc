"""
Forge Job Data Models

Defines the canonical ForgeJob table.
This model is the source of truth for job state in the database.
"""
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, Column, Text
from typing import Optional
from datetime import datetime, timezone
from enum import Enum as PyEnum


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobKind(str, PyEnum):
    """Which forge invocation and output-parsing path a job uses."""
    COMPILE = "compile"
    TEST = "test"
    SCRIPT = "script"


class JobStatus(str, PyEnum):
    """Job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT})


class ExecutionMode(str, PyEnum):
    """Whether a job ran in the real sandbox or the development simulator."""
    SANDBOX = "sandbox"
    SIMULATED = "simulated"


class ForgeJob(SQLModel, table=True):
    """
    Canonical Forge job model.

    input_payload and result are JSON-encoded text, decoded by the state
    manager into the schemas in schemas.py.
    """
    __tablename__ = "forge_jobs"

    id: str = Field(primary_key=True, description="UUID job identifier")
    owner: str = Field(index=True, description="Submitter identity (opaque)")
    kind: str = Field(index=True, description="compile, test or script")
    project_ref: Optional[str] = Field(default=None, index=True, description="External project the files came from")
    input_hash: str = Field(index=True, description="SHA-256 of the resolved file set")
    input_payload: str = Field(sa_column=Column(Text, nullable=False), description="JSON-encoded job input")
    status: str = Field(default=JobStatus.QUEUED.value, index=True, description="Current job status")
    result: Optional[str] = Field(default=None, sa_column=Column(Text), description="JSON-encoded result, set once terminal")
    output_log: str = Field(default="", sa_column=Column(Text, nullable=False, default=""), description="Raw tool output, append-only")
    execution_mode: Optional[str] = Field(default=None, description="sandbox or simulated")
    container_name: Optional[str] = Field(default=None, description="Docker container used, for cleanup")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=False), index=True)
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=False))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=False))
    expires_at: datetime = Field(sa_type=DateTime(timezone=False), index=True, description="When this job record is cleaned up")
