"""
Sandbox Adapter

Bridges the job orchestrator with the execution backend.
Handles file materialization, forge command construction and process
lifecycle inside an isolated Docker container.

Two implementations share the SandboxPort contract:
- DockerSandbox: real, resource- and network-constrained execution
- SimulatedSandbox: development fallback when Docker is disabled
"""
import asyncio
import codecs
import json
import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol

from ..errors import InvalidPath, SandboxUnavailableError
from .models import ExecutionMode, JobKind
from .schemas import SourceFile

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], Awaitable[None]]

DEFAULT_IMAGE = "ghcr.io/foundry-rs/foundry:latest"
DEFAULT_SCRIPT_PATH = "script/Deploy.s.sol"
BUILD_CONFIG_NAME = "foundry.toml"

DEFAULT_FORK_NETWORK = "forge-fork"
DEFAULT_RPC_PROXY_URL = "http://forge-service:8080/api/v1/forge/rpc"
MAX_OUTPUT_CHARS = 1_000_000
OUTPUT_TRUNCATED_MARKER = "\n[output truncated]\n"

# docker run exits 125 when the daemon itself fails (image pull, daemon down, bad flags)
DOCKER_DAEMON_ERROR = 125

DEFAULT_BUILD_CONFIG = """[profile.default]
src = "src"
out = "out"
libs = ["lib"]
solc = "0.8.28"

# Optimizations
optimizer = true
optimizer_runs = 200

# Remappings for common dependencies
remappings = [
  "@openzeppelin/=lib/openzeppelin-contracts/",
  "@jb/=lib/juice-contracts-v5/",
  "forge-std/=lib/forge-std/src/"
]

[fuzz]
runs = 256

[invariant]
runs = 256
"""


@dataclass(frozen=True)
class SandboxConstraints:
    """Limits applied to every sandbox invocation, whatever the job kind."""
    image: str = DEFAULT_IMAGE
    memory: str = "2g"
    cpus: str = "2"
    pids_limit: int = 256
    scratch_tmpfs: str = "/tmp:rw,noexec,nosuid,size=512m"
    workdir: str = "/app"
    # Internal (no external route) network fork jobs join; it only reaches the RPC proxy
    fork_network: str = DEFAULT_FORK_NETWORK
    rpc_proxy_url: str = DEFAULT_RPC_PROXY_URL

    def fork_url(self, chain_id: int) -> str:
        return f"{self.rpc_proxy_url.rstrip('/')}/{chain_id}"


@dataclass
class SandboxRequest:
    """Everything the backend needs to run one job."""
    job_id: str
    kind: str
    files: List[SourceFile]
    fork_chain_id: Optional[int] = None
    fork_block_number: Optional[int] = None
    test_match: Optional[str] = None
    script_path: Optional[str] = None

    @property
    def container_name(self) -> str:
        return f"forge-{self.job_id}"


@dataclass
class SandboxOutput:
    """Raw result of one invocation: combined output plus the exit signal."""
    output: str
    success: bool
    exit_code: Optional[int] = None
    execution_mode: str = ExecutionMode.SANDBOX.value
    container_name: Optional[str] = None


class SandboxPort(Protocol):
    """
    Execution port. run() returns the tool output or raises
    SandboxUnavailableError when the backend cannot execute at all.
    Cancellation of run() must tear down everything it started.
    """
    mode: ExecutionMode

    async def run(self, request: SandboxRequest, on_output: Optional[OutputCallback] = None) -> SandboxOutput:
        ...


def materialize_files(root: str, files: List[SourceFile]) -> None:
    """Write the job's files under root, adding a default build config if missing."""
    base = Path(root).resolve()
    for f in files:
        target = (base / f.path).resolve()
        if base != target and base not in target.parents:
            raise InvalidPath(f"Invalid file path: {f.path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f.content, encoding="utf-8")

    if not any(f.path == BUILD_CONFIG_NAME for f in files):
        (base / BUILD_CONFIG_NAME).write_text(DEFAULT_BUILD_CONFIG, encoding="utf-8")


def build_forge_args(request: SandboxRequest, fork_url: Optional[str] = None) -> List[str]:
    """Forge invocation for a job kind. Always asks for JSON output."""
    if request.kind == JobKind.COMPILE.value:
        return ["forge", "build", "--json"]

    if request.kind == JobKind.TEST.value:
        args = ["forge", "test", "-vvv", "--json"]
        if request.test_match:
            args += ["--match-test", request.test_match]
        if fork_url:
            args += ["--fork-url", fork_url]
            if request.fork_block_number:
                args += ["--fork-block-number", str(request.fork_block_number)]
        return args

    if request.kind == JobKind.SCRIPT.value:
        return ["forge", "script", request.script_path or DEFAULT_SCRIPT_PATH, "--json"]

    raise ValueError(f"Unknown job kind: {request.kind}")


class DockerSandbox:
    """
    Runs forge in a disposable container.

    The container gets a read-only root, a noexec scratch tmpfs, fixed memory,
    CPU and process ceilings, and no network. Fork jobs join an internal
    Docker network whose only reachable peer is this service's read-only
    RPC proxy, scoped to the requested chain; the container never holds keys
    and never gets general egress.
    """

    mode = ExecutionMode.SANDBOX

    def __init__(
        self,
        constraints: Optional[SandboxConstraints] = None,
        docker_binary: str = "docker",
        workspace_root: Optional[str] = None,
        max_output_chars: int = MAX_OUTPUT_CHARS,
    ):
        self.constraints = constraints or SandboxConstraints()
        self.docker_binary = docker_binary
        self.workspace_root = workspace_root
        self.max_output_chars = max_output_chars
        self._fork_network_ready = False

    def build_command(self, request: SandboxRequest, host_dir: str) -> List[str]:
        """Full docker command line for a request whose files live in host_dir."""
        c = self.constraints
        args = [
            self.docker_binary, "run",
            "--rm",
            "--name", request.container_name,
            "--network", "none",
            "--memory", c.memory,
            "--cpus", c.cpus,
            "--pids-limit", str(c.pids_limit),
            "--read-only",
            "--tmpfs", c.scratch_tmpfs,
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "-v", f"{host_dir}:{c.workdir}:ro",
            "-w", c.workdir,
            # Build output goes to scratch because the source mount is read-only
            "-e", "FOUNDRY_OUT=/tmp/out",
            "-e", "FOUNDRY_CACHE_PATH=/tmp/cache",
            "-e", "HOME=/tmp",
        ]

        fork_url = None
        if request.fork_chain_id is not None:
            fork_url = c.fork_url(request.fork_chain_id)
            idx = args.index("--network")
            args[idx + 1] = c.fork_network
            args += ["-e", f"ETH_RPC_URL={fork_url}"]

        args.append(c.image)
        args += build_forge_args(request, fork_url)
        return args

    async def ensure_fork_network(self) -> None:
        """
        Make sure the internal fork network exists, creating it with
        --internal so it has no route outside the Docker host.

        Raises:
            SandboxUnavailableError: the network cannot be inspected or created
        """
        if self._fork_network_ready:
            return
        name = self.constraints.fork_network
        if await self._docker("network", "inspect", name) != 0:
            if await self._docker("network", "create", "--internal", name) != 0:
                raise SandboxUnavailableError(f"Cannot create internal network {name}")
            logger.info(f"Created internal fork network {name}")
        self._fork_network_ready = True

    async def _docker(self, *args: str) -> int:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker_binary, *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise SandboxUnavailableError(f"Cannot start docker: {e}") from e
        return await proc.wait()

    async def run(self, request: SandboxRequest, on_output: Optional[OutputCallback] = None) -> SandboxOutput:
        if request.fork_chain_id is not None:
            await self.ensure_fork_network()

        tmp_dir = tempfile.mkdtemp(prefix="forge_", dir=self.workspace_root)
        try:
            materialize_files(tmp_dir, request.files)
            command = self.build_command(request, tmp_dir)

            try:
                proc = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except OSError as e:
                raise SandboxUnavailableError(f"Cannot start docker: {e}") from e

            logger.info(f"Started sandbox {request.container_name} for {request.kind} job")
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            chunks: List[str] = []
            kept = 0
            truncated = False

            async def collect(text: str) -> None:
                nonlocal kept, truncated
                # Past the cap the pipe is still drained, but nothing more is kept
                if truncated or not text:
                    return
                room = self.max_output_chars - kept
                if len(text) > room:
                    text = text[:room] + OUTPUT_TRUNCATED_MARKER
                    truncated = True
                kept += len(text)
                chunks.append(text)
                if on_output:
                    await on_output(text)

            try:
                while True:
                    data = await proc.stdout.read(4096)
                    if not data:
                        break
                    await collect(decoder.decode(data))
                await collect(decoder.decode(b"", final=True))
                exit_code = await proc.wait()
            except asyncio.CancelledError:
                await self._terminate(proc, request.container_name)
                raise

            output = "".join(chunks)
            if exit_code == DOCKER_DAEMON_ERROR:
                raise SandboxUnavailableError(
                    f"Docker could not run the container (exit {exit_code}): {output.strip()[-500:]}"
                )

            return SandboxOutput(
                output=output,
                success=exit_code == 0,
                exit_code=exit_code,
                execution_mode=self.mode.value,
                container_name=request.container_name,
            )
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    async def _terminate(self, proc: asyncio.subprocess.Process, container_name: str) -> None:
        """Kill and reap the docker client, then force-remove the container it started."""
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.error(f"Docker client for {container_name} did not exit after kill")

        try:
            remover = await asyncio.create_subprocess_exec(
                self.docker_binary, "rm", "-f", container_name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(remover.wait(), timeout=15)
            logger.warning(f"Force-removed sandbox container {container_name}")
        except (OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to remove sandbox container {container_name}: {e}")


class SimulatedSandbox:
    """
    Development fallback used when Docker is disabled.

    Produces forge-shaped output from a simple heuristic (at least one
    Solidity file under src/). Jobs run here are marked 'simulated'.
    """

    mode = ExecutionMode.SIMULATED

    def __init__(self, delay_seconds: float = 1.0):
        self.delay_seconds = delay_seconds

    async def run(self, request: SandboxRequest, on_output: Optional[OutputCallback] = None) -> SandboxOutput:
        logger.info(f"Simulating job {request.job_id} (Docker disabled)")
        chunks: List[str] = []

        async def emit(text: str) -> None:
            chunks.append(text)
            if on_output:
                await on_output(text)

        await emit("Compiling contracts...\n")
        await asyncio.sleep(self.delay_seconds)

        sources = [
            f for f in request.files
            if f.path.startswith("src/") and f.path.endswith(".sol")
        ]
        if not sources:
            await emit("Error: No Solidity files found in src/ directory\n")
            return self._output(chunks, success=False, exit_code=1)

        await emit("Compilation successful!\n")

        if request.kind == JobKind.TEST.value:
            await emit("\nRunning tests...\n")
            await asyncio.sleep(self.delay_seconds / 2)
            await emit("Tests passed!\n")
            document = {
                "tests": {
                    "simulated": {
                        "test_PayHook": {"status": "Success", "gasUsed": 45000, "duration": 100},
                    }
                }
            }
        elif request.kind == JobKind.SCRIPT.value:
            document = {"success": True, "logs": [f"Simulated {request.script_path or DEFAULT_SCRIPT_PATH}"]}
        else:
            document = {
                "errors": [],
                "contracts": {
                    f.path: {
                        Path(f.path).stem: {
                            "abi": [{"type": "constructor", "inputs": []}],
                            "evm": {"bytecode": {"object": "0x6080604052348015600f57600080fd5b50"}},
                        }
                    }
                    for f in sources
                },
            }
        await emit(json.dumps(document) + "\n")
        return self._output(chunks, success=True, exit_code=0)

    def _output(self, chunks: List[str], success: bool, exit_code: int) -> SandboxOutput:
        return SandboxOutput(
            output="".join(chunks),
            success=success,
            exit_code=exit_code,
            execution_mode=self.mode.value,
        )
