"""
Forge Service API

FastAPI application for sandboxed compile/test/script jobs.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sse_starlette.sse import EventSourceResponse

from .config import ForgeSettings
from .database import Database
from .errors import ForgeServiceError, MethodNotAllowed
from .forge_jobs.job_orchestrator import JobOrchestrator, ProjectFileSource
from .forge_jobs.recovery import RecoverySweep
from .forge_jobs.rpc_proxy import RpcProxy
from .forge_jobs.sandbox_adapter import DockerSandbox, SandboxPort, SimulatedSandbox
from .forge_jobs.schemas import JobSubmission, RpcRequest


def setup_logging() -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )
    logging.basicConfig(level=logging.INFO)


setup_logging()
logger = structlog.get_logger(__name__)

JSONRPC_METHOD_NOT_FOUND = -32601
JSONRPC_SERVER_ERROR = -32000


def build_sandbox(settings: ForgeSettings) -> SandboxPort:
    """Docker sandbox, or the simulator when Docker is disabled."""
    if settings.forge_docker_enabled:
        return DockerSandbox(
            constraints=settings.sandbox_constraints(),
            docker_binary=settings.docker_binary,
            workspace_root=settings.sandbox_workspace_root,
            max_output_chars=settings.max_output_chars,
        )
    logger.warning("forge_docker_disabled", note="jobs run in simulated mode")
    return SimulatedSandbox()


async def _sweep_periodically(recovery: RecoverySweep, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            counts = await recovery.run_all()
            if any(counts.values()):
                logger.info("recovery_sweep", **counts)
        except Exception as e:
            logger.error("recovery_sweep_failed", error=str(e))


def _http_error(e: ForgeServiceError) -> HTTPException:
    return HTTPException(
        status_code=e.status_code,
        detail={"code": getattr(e, "code", type(e).__name__), "message": e.message},
    )


def _require_owner(x_user_address: Optional[str]) -> str:
    if not x_user_address:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User address required")
    return x_user_address.lower()


def get_orchestrator(request: Request) -> JobOrchestrator:
    """Dependency to get orchestrator instance."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized"
        )
    return orchestrator


def get_recovery(request: Request) -> RecoverySweep:
    return request.app.state.recovery


def get_rpc_proxy(request: Request) -> RpcProxy:
    return request.app.state.rpc_proxy


router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    settings: ForgeSettings = request.app.state.settings
    return {
        "status": "healthy",
        "service": "forge-jobs",
        "workers": settings.worker_count,
        "sandbox": "docker" if settings.forge_docker_enabled else "simulated",
    }


@router.post("/api/v1/forge/jobs", status_code=status.HTTP_201_CREATED)
async def submit_job(
    submission: JobSubmission,
    x_user_address: Optional[str] = Header(default=None),
    orch: JobOrchestrator = Depends(get_orchestrator),
):
    """
    Submit a compile, test or script job.

    Returns the job record immediately: either a cached completed job with
    the same content hash, or a new queued job.
    """
    owner = _require_owner(x_user_address)
    try:
        job = await orch.submit(owner, submission)
    except ForgeServiceError as e:
        logger.warning("job_submission_rejected", owner=owner, error=e.message)
        raise _http_error(e)

    logger.info("job_submitted", job_id=job.id, kind=job.kind.value, cached=job.cached)
    return job.model_dump(mode="json")


@router.get("/api/v1/forge/jobs/{job_id}")
async def get_job_status(
    job_id: str,
    x_user_address: Optional[str] = Header(default=None),
    orch: JobOrchestrator = Depends(get_orchestrator),
):
    """Get job status and result, scoped to the caller."""
    owner = _require_owner(x_user_address)
    job = await orch.get_job(job_id, owner)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return job.model_dump(mode="json")


@router.get("/api/v1/forge/jobs/{job_id}/output")
async def get_job_output(
    job_id: str,
    x_user_address: Optional[str] = Header(default=None),
    orch: JobOrchestrator = Depends(get_orchestrator),
):
    owner = _require_owner(x_user_address)
    output = await orch.get_job_output(job_id, owner)
    if output is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return {"job_id": job_id, "output": output}


@router.get("/api/v1/forge/jobs/{job_id}/stream")
async def stream_job_output(
    job_id: str,
    x_user_address: Optional[str] = Header(default=None),
    orch: JobOrchestrator = Depends(get_orchestrator),
):
    """Stream output growth and status snapshots as Server-Sent Events."""
    owner = _require_owner(x_user_address)
    if await orch.get_job(job_id, owner) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")

    async def _generate():
        async for event in orch.stream_job(job_id, owner):
            data = event["data"]
            yield {
                "event": event["event"],
                "data": data if isinstance(data, str) else json.dumps(data),
            }

    return EventSourceResponse(_generate())


@router.post("/api/v1/forge/rpc/{chain_id}")
async def proxy_rpc(
    chain_id: int,
    body: RpcRequest,
    proxy: RpcProxy = Depends(get_rpc_proxy),
):
    """
    Forward an allow-listed read-only JSON-RPC call.

    Requests carrying a jsonrpc version are answered as JSON-RPC 2.0
    (result or error object echoing the id), which is what forked test
    runs inside the sandbox expect. Plain calls get {"result": ...} or an
    HTTP error.
    """
    try:
        result = await proxy.proxy_request(chain_id, body.method, body.params)
    except ForgeServiceError as e:
        logger.warning("rpc_proxy_rejected", chain_id=chain_id, method=body.method, error=e.message)
        if body.jsonrpc is None:
            raise _http_error(e)
        code = JSONRPC_METHOD_NOT_FOUND if isinstance(e, MethodNotAllowed) else JSONRPC_SERVER_ERROR
        return JSONResponse(
            content={"jsonrpc": "2.0", "id": body.id, "error": {"code": code, "message": e.message}}
        )

    if body.jsonrpc is None:
        return {"result": result}
    return {"jsonrpc": "2.0", "id": body.id, "result": result}


@router.post("/api/v1/forge/maintenance/sweep")
async def run_sweep(recovery: RecoverySweep = Depends(get_recovery)):
    """Stale-job cancellation and expiry, for external cron callers."""
    counts = await recovery.run_all()
    logger.info("recovery_sweep", **counts)
    return counts


@router.get("/api/v1/forge/queue/stats")
async def get_queue_stats(orch: JobOrchestrator = Depends(get_orchestrator)):
    """Get queue statistics."""
    return await orch.get_queue_stats()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "forge-jobs",
        "version": "1.0.0",
        "status": "operational",
    }


def create_app(
    settings: Optional[ForgeSettings] = None,
    redis_client: Optional[Redis] = None,
    sandbox: Optional[SandboxPort] = None,
    project_files: Optional[ProjectFileSource] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    start_workers: bool = True,
) -> FastAPI:
    """
    Build the application. Collaborators left as None are created from settings
    when the app starts.
    """
    settings = settings or ForgeSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        FastAPI lifespan: startup and shutdown.

        - Initialize database tables
        - Recover jobs orphaned by a previous process and requeue its queued jobs
        - Start workers and the periodic sweep
        - Cleanup on shutdown
        """
        logger.info("forge_service_starting")
        db = Database(settings)
        await db.init_models()

        redis = redis_client if redis_client is not None else Redis.from_url(settings.redis_url, decode_responses=True)
        limits = settings.engine_limits()

        orchestrator = JobOrchestrator(
            redis_client=redis,
            db=db,
            sandbox=sandbox or build_sandbox(settings),
            limits=limits,
            project_files=project_files,
            worker_count=settings.worker_count,
            max_queued_jobs=settings.max_queued_jobs,
        )
        recovery = RecoverySweep(orchestrator.state_manager, limits)
        rpc_proxy = RpcProxy(limits, client=http_client)

        recovered = await recovery.recover_orphaned_jobs()
        logger.info("orphaned_jobs_recovered", count=recovered)
        requeued = await orchestrator.recover_queue()
        logger.info("queued_jobs_recovered", count=requeued)

        sweeper = None
        if start_workers:
            orchestrator.start_workers()
            sweeper = asyncio.create_task(_sweep_periodically(recovery, settings.sweep_interval_seconds))

        app.state.settings = settings
        app.state.orchestrator = orchestrator
        app.state.recovery = recovery
        app.state.rpc_proxy = rpc_proxy
        logger.info("forge_service_ready", workers=settings.worker_count if start_workers else 0)

        yield

        logger.info("forge_service_shutting_down")
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        await orchestrator.shutdown()
        await rpc_proxy.close()
        await db.dispose()
        if redis_client is None:
            await redis.aclose()
        app.state.orchestrator = None
        logger.info("forge_service_stopped")

    app = FastAPI(
        title="Forge Jobs API",
        description="""
        Sandboxed compilation and test jobs for Foundry projects.

        ## Features

        * **Jobs**: Submit compile, test and script jobs; poll or stream their output
        * **Caching**: Identical file sets reuse a prior completed result
        * **Sandbox**: Isolated, resource-limited Docker execution; fork jobs reach chains only through the RPC proxy
        * **RPC Proxy**: Read-only JSON-RPC forwarding to allow-listed chains
        """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.include_router(router)
    return app


app = create_app()


# For running directly with python -m
if __name__ == "__main__":
    import uvicorn
    settings = ForgeSettings()
    uvicorn.run(
        "forge_service.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
