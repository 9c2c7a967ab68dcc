"""
Forge Jobs Core

Sandboxed compile/test/script job engine: validation, hashing, caching,
scheduling, sandbox execution, output parsing, RPC proxy and recovery.
"""

from .models import ForgeJob, JobKind, JobStatus, ExecutionMode
from .limits import EngineLimits
from .state_manager import StateManager
from .result_cache import ResultCache
from .queue_manager import QueueManager
from .sandbox_adapter import DockerSandbox, SimulatedSandbox, SandboxConstraints
from .job_orchestrator import JobOrchestrator
from .recovery import RecoverySweep
from .rpc_proxy import RpcProxy

__all__ = [
    "ForgeJob",
    "JobKind",
    "JobStatus",
    "ExecutionMode",
    "EngineLimits",
    "StateManager",
    "ResultCache",
    "QueueManager",
    "DockerSandbox",
    "SimulatedSandbox",
    "SandboxConstraints",
    "JobOrchestrator",
    "RecoverySweep",
    "RpcProxy",
]
