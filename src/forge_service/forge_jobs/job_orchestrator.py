import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from sqlalchemy import func
from sqlmodel import select

from ..errors import BadRequestError, NotFoundError, QueueFullError, SandboxUnavailableError
from .content_hash import compute_files_hash
from .input_validator import validate_job_input
from .limits import EngineLimits
from .models import ForgeJob, JobKind, JobStatus, utcnow
from .output_parser import parse_tool_output
from .queue_manager import QueueManager
from .result_cache import ResultCache
from .sandbox_adapter import OUTPUT_TRUNCATED_MARKER, SandboxPort, SandboxRequest
from .schemas import JobError, JobInput, JobResult, JobSubmission, JobView, SourceFile
from .state_manager import StateManager

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Execution timed out"
FAULT_PREFIX = "Sandbox execution fault"
REQUEUE_FULL_MESSAGE = "Job could not be requeued after restart: queue full"


class ProjectFileSource(Protocol):
    """External, mutable project file store."""

    async def get_files(self, project_ref: str, owner: str) -> Optional[List[SourceFile]]:
        ...


class JobOrchestrator:
    def __init__(
        self,
        redis_client,
        db,
        sandbox: SandboxPort,
        limits: Optional[EngineLimits] = None,
        project_files: Optional[ProjectFileSource] = None,
        worker_count: int = 3,
        max_queued_jobs: int = 100,
    ):
        self.db = db
        self.limits = limits or EngineLimits()
        self.sandbox = sandbox
        self.project_files = project_files
        self.worker_count = worker_count

        self.state_manager = StateManager(redis_client, db)
        self.result_cache = ResultCache(redis_client, self.state_manager)
        self.queue_manager = QueueManager(redis_client, max_depth=max_queued_jobs)
        self.instance_id = uuid.uuid4().hex[:8]

        self._running_jobs: Dict[str, asyncio.Task] = {}
        self._workers: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

    async def resolve_input(self, owner: str, submission: JobSubmission) -> JobInput:
        """Build the job input, pulling files from the project store when referenced."""
        if submission.project_ref:
            if self.project_files is None:
                raise BadRequestError("Project files are not available; submit files inline")
            files = await self.project_files.get_files(submission.project_ref, owner)
            if files is None:
                raise NotFoundError(f"Project {submission.project_ref} not found")
        elif submission.files is not None:
            files = submission.files
        else:
            raise BadRequestError("Either project_ref or files required")

        return JobInput(
            files=files,
            fork_config=submission.fork_config,
            test_match=submission.test_match,
            script_path=submission.script_path,
            constructor_args=submission.constructor_args,
        )

    async def submit(self, owner: str, submission: JobSubmission) -> JobView:
        job_input = await self.resolve_input(owner, submission)
        return await self.submit_job(owner, submission.kind, job_input, submission.project_ref)

    async def submit_job(
        self,
        owner: str,
        kind: JobKind,
        job_input: JobInput,
        project_ref: Optional[str] = None,
    ) -> JobView:
        """
        Validate, hash and either return a cached completed job or queue a new one.

        Returns immediately; execution happens on the worker pool.

        Raises:
            JobValidationError subclasses for bad input
            QueueFullError when the queue is at capacity
        """
        kind = JobKind(kind)
        validate_job_input(job_input, self.limits)
        input_hash = compute_files_hash(job_input.files)

        cached = await self.result_cache.lookup(owner, input_hash, kind.value)
        if cached is not None:
            return self.state_manager.to_view(cached, cached=True)

        now = utcnow()
        job = ForgeJob(
            id=str(uuid.uuid4()),
            owner=owner,
            kind=kind.value,
            project_ref=project_ref,
            input_hash=input_hash,
            input_payload=job_input.model_dump_json(),
            status=JobStatus.QUEUED.value,
            created_at=now,
            expires_at=now + timedelta(minutes=self.limits.job_ttl_minutes),
        )
        await self.state_manager.create_job(job)

        try:
            await self.queue_manager.enqueue(job.id)
        except QueueFullError as e:
            await self.state_manager.mark_failed(job.id, JobResult.single_error(e.message))
            logger.warning(f"Rejected job {job.id}: queue full")
            raise

        return self.state_manager.to_view(job)

    async def process_job(self, job_id: str) -> None:
        """Drive one job from queued to a terminal status."""
        job = await self.state_manager.load(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found")
            return

        if not await self.state_manager.mark_running(job_id):
            logger.warning(f"Job {job_id} is {job.status}, not queued; skipping")
            return

        job_input = self.state_manager.job_input(job)
        request = self._build_request(job, job_input)
        timeout = self.limits.timeout_for(job.kind)

        logged = 0
        truncated = False

        async def on_output(text: str) -> None:
            nonlocal logged, truncated
            if truncated:
                return
            room = self.limits.max_output_chars - logged
            if len(text) > room:
                text = text[:room] + OUTPUT_TRUNCATED_MARKER
                truncated = True
                logger.warning(f"Job {job_id} output truncated at {self.limits.max_output_chars} chars")
            logged += len(text)
            await self.state_manager.append_output(job_id, text)

        start_time = utcnow()
        try:
            output = await asyncio.wait_for(self.sandbox.run(request, on_output), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Job {job_id} timed out after {timeout}s")
            await self.state_manager.finish_job(
                job_id,
                JobStatus.TIMEOUT,
                JobResult.single_error(TIMEOUT_MESSAGE),
                execution_mode=self.sandbox.mode.value,
                container_name=request.container_name,
            )
            return
        except SandboxUnavailableError as e:
            logger.error(f"Sandbox unavailable for job {job_id}: {e.message}")
            await self._fail_with_fault(job_id, e.message)
            return
        except Exception as e:
            logger.error(f"Job {job_id} execution fault: {e}", exc_info=True)
            await self._fail_with_fault(job_id, str(e) or type(e).__name__)
            return

        result = parse_tool_output(job.kind, output.output, output.success)
        status = self.classify_result(job.kind, result)
        if status == JobStatus.FAILED and not result.errors and not result.test_results:
            result.errors.append(JobError(message=f"forge exited with code {output.exit_code}"))

        finished = await self.state_manager.finish_job(
            job_id,
            status,
            result,
            execution_mode=output.execution_mode,
            container_name=output.container_name,
        )

        elapsed_ms = int((utcnow() - start_time).total_seconds() * 1000)
        if finished and status == JobStatus.COMPLETED:
            completed = await self.state_manager.load(job_id)
            if completed is not None:
                await self.result_cache.remember(completed)
            logger.info(f"Job {job_id} completed in {elapsed_ms}ms")
        elif finished:
            logger.warning(f"Job {job_id} failed in {elapsed_ms}ms with {len(result.errors)} error(s)")

    @staticmethod
    def classify_result(kind: str, result: JobResult) -> JobStatus:
        """
        Terminal status for a parsed result.

        A test run that produced results is a completed analysis even when
        some tests failed; the failures live in result.test_results.
        """
        if result.success:
            return JobStatus.COMPLETED
        if result.errors:
            return JobStatus.FAILED
        if kind == JobKind.TEST.value and result.test_results:
            return JobStatus.COMPLETED
        return JobStatus.FAILED

    def _build_request(self, job: ForgeJob, job_input: JobInput) -> SandboxRequest:
        chain_id = None
        block_number = None
        if job_input.fork_config is not None:
            chain_id = job_input.fork_config.chain_id
            block_number = job_input.fork_config.block_number
        return SandboxRequest(
            job_id=job.id,
            kind=job.kind,
            files=job_input.files,
            fork_chain_id=chain_id,
            fork_block_number=block_number,
            test_match=job_input.test_match,
            script_path=job_input.script_path,
        )

    async def _fail_with_fault(self, job_id: str, message: str) -> None:
        await self.state_manager.finish_job(
            job_id,
            JobStatus.FAILED,
            JobResult.single_error(f"{FAULT_PREFIX}: {message}"),
            execution_mode=self.sandbox.mode.value,
        )

    async def recover_queue(self) -> int:
        """
        Put queued jobs left behind by a previous process back on the stream.

        Entries a dead worker took but never acknowledged are dropped once
        they are older than the orphan grace period. Every job still queued
        in the database without a stream entry is then enqueued again, or
        failed when the queue has no room. Returns how many were requeued.
        """
        await self.queue_manager.initialize_consumer_group()
        grace_ms = int(self.limits.orphan_grace_minutes * 60 * 1000)
        await self.queue_manager.drop_stale_pending(grace_ms)

        in_stream = await self.queue_manager.queued_job_ids()
        requeued = 0
        for job in await self.state_manager.get_jobs_by_status(JobStatus.QUEUED, limit=1000):
            if job.id in in_stream:
                continue
            try:
                await self.queue_manager.enqueue(job.id)
                requeued += 1
            except QueueFullError:
                await self.state_manager.mark_failed(job.id, JobResult.single_error(REQUEUE_FULL_MESSAGE))
                logger.warning(f"Failed stranded job {job.id}: queue full")

        if requeued:
            logger.info(f"Requeued {requeued} stranded job(s)")
        return requeued

    def start_workers(self, count: Optional[int] = None) -> None:
        """Launch the worker pool. The worker count is the concurrency ceiling."""
        self._shutdown_event.clear()
        for _ in range(count or self.worker_count):
            worker_id = f"worker-{len(self._workers) + 1}"
            self._workers.append(asyncio.create_task(self.start_worker(worker_id)))

    async def start_worker(self, worker_id: str) -> None:
        """Process jobs from the queue until shutdown."""
        logger.info(f"Starting worker {worker_id}")
        consumer_name = f"{self.instance_id}-{worker_id}"

        while not self._shutdown_event.is_set():
            try:
                message = await self.queue_manager.dequeue(consumer_name, timeout=1.0)
                if not message:
                    continue
                message_id, job_id = message

                task = asyncio.create_task(self.process_job(job_id))
                self._running_jobs[job_id] = task
                try:
                    await task
                finally:
                    self._running_jobs.pop(job_id, None)
                    await self.queue_manager.ack(message_id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Worker {worker_id} error: {e}", exc_info=True)
                await asyncio.sleep(1)

        logger.info(f"Worker {worker_id} stopped")

    async def get_job(self, job_id: str, owner: Optional[str] = None) -> Optional[JobView]:
        return await self.state_manager.get_job(job_id, owner)

    async def get_job_output(self, job_id: str, owner: Optional[str] = None) -> Optional[str]:
        if await self.state_manager.get_job(job_id, owner) is None:
            return None
        return await self.state_manager.get_output(job_id) or ""

    async def stream_job(self, job_id: str, owner: Optional[str] = None) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield output growth and status snapshots until the job is terminal.

        Stops after limits.stream_max_polls polls even if the job never
        finishes, or as soon as the job disappears.
        """
        last_length = 0
        for _ in range(self.limits.stream_max_polls):
            view = await self.state_manager.get_job(job_id, owner)
            if view is None:
                return

            output = await self.state_manager.get_output(job_id) or ""
            if len(output) > last_length:
                yield {"event": "output", "data": output[last_length:]}
                last_length = len(output)

            yield {
                "event": "status",
                "data": {
                    "status": view.status.value,
                    "result": view.result.model_dump() if view.result else None,
                },
            }

            if view.status.is_terminal:
                yield {"event": "done", "data": view.model_dump(mode="json")}
                return

            await asyncio.sleep(self.limits.stream_poll_interval)

    async def get_queue_stats(self) -> Dict[str, Any]:
        """Get queue statistics."""
        async with self.db.session() as session:
            statement = select(ForgeJob.status, func.count()).group_by(ForgeJob.status)
            result = await session.execute(statement)
            status_counts = {row[0]: row[1] for row in result.all()}

        return {
            "queue": await self.queue_manager.get_stats(),
            "jobs": {
                "total": sum(status_counts.values()),
                "by_status": status_counts,
            },
            "running_jobs": len(self._running_jobs),
            "workers": len(self._workers),
            "execution_mode": self.sandbox.mode.value,
        }

    async def shutdown(self):
        """Shutdown orchestrator."""
        logger.info("Shutting down orchestrator...")

        self._shutdown_event.set()

        for job_id, task in list(self._running_jobs.items()):
            task.cancel()
        for worker in self._workers:
            worker.cancel()

        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        logger.info("Orchestrator shutdown complete")
