"""
Forge Job Schemas

Pydantic models for job input, structured results and API views.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .models import JobKind, JobStatus


class SourceFile(BaseModel):
    path: str
    content: str


class ForkConfig(BaseModel):
    chain_id: int
    block_number: Optional[int] = None


class JobInput(BaseModel):
    """Resolved file set plus optional fork/test/script parameters."""

    files: List[SourceFile] = Field(default_factory=list)
    fork_config: Optional[ForkConfig] = None
    test_match: Optional[str] = None
    script_path: Optional[str] = None
    constructor_args: Optional[List[Any]] = None


class JobSubmission(BaseModel):
    """Request body for job submission."""

    kind: JobKind
    files: Optional[List[SourceFile]] = None
    fork_config: Optional[ForkConfig] = None
    test_match: Optional[str] = None
    script_path: Optional[str] = None
    constructor_args: Optional[List[Any]] = None
    project_ref: Optional[str] = None


class JobError(BaseModel):
    file: str = ""
    line: int = 0
    column: int = 0
    message: str
    severity: Literal["error", "warning"] = "error"


class Artifact(BaseModel):
    contract_name: str
    bytecode: str = ""
    abi: List[Any] = Field(default_factory=list)


class TestOutcome(BaseModel):
    __test__ = False

    name: str
    passed: bool
    gas_used: Optional[int] = None
    duration_ms: Optional[float] = None
    logs: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class JobResult(BaseModel):
    """Normalized outcome of a job. Present only once the job is terminal."""

    success: bool
    errors: List[JobError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    test_results: List[TestOutcome] = Field(default_factory=list)
    gas_report: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    logs: List[str] = Field(default_factory=list)

    @classmethod
    def single_error(cls, message: str) -> "JobResult":
        """Synthetic failure result carrying one error."""
        return cls(success=False, errors=[JobError(message=message)])


class JobView(BaseModel):
    """Job record as returned to callers."""

    id: str
    owner: str
    kind: JobKind
    project_ref: Optional[str] = None
    input_hash: str
    status: JobStatus
    result: Optional[JobResult] = None
    execution_mode: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: datetime
    cached: bool = False


class RpcRequest(BaseModel):
    """Proxy call body. Sandboxed forge sends full JSON-RPC envelopes (jsonrpc, id)."""
    jsonrpc: Optional[str] = None
    id: Any = None
    method: str
    params: List[Any] = Field(default_factory=list)
