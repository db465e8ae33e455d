"""
Container Orchestrator for datafork

Engine-agnostic gateway over the container runtime CLI (docker or podman):
image pull, container lifecycle, status polling, exec, logs and stats.

Runtime failures raise ContainerRuntimeError. A container the runtime does
not know raises ContainerNotFoundError, and exec timeouts raise the
retryable ExecTimeoutError.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from ..config import Settings
from ..errors import (
    ConflictError,
    ContainerNotFoundError,
    ContainerRuntimeError,
    ExecTimeoutError,
)
from .adapters.base import ContainerSpec

logger = logging.getLogger("uvicorn.error")

MAX_LOG_LINES = 10_000

TERMINAL_STATES = frozenset({"exited", "dead"})

# docker: "No such container: x" / "No such object: x"; podman: "no container with name or ID"
NOT_FOUND_MARKERS = ("no such container", "no such object", "no container with name or id")
NOT_RUNNING_MARKERS = ("is not running", "container state improper")

# Reads cgroup v2 counters, falling back to v1. CPU usage is in microseconds.
STATS_SCRIPT = """\
if [ -f /sys/fs/cgroup/cpu.stat ]; then
  echo "cpu_usec $(awk '/^usage_usec/ {print $2}' /sys/fs/cgroup/cpu.stat)"
  echo "mem_used $(cat /sys/fs/cgroup/memory.current)"
  echo "mem_limit $(cat /sys/fs/cgroup/memory.max)"
else
  echo "cpu_nsec $(cat /sys/fs/cgroup/cpuacct/cpuacct.usage)"
  echo "mem_used $(cat /sys/fs/cgroup/memory/memory.usage_in_bytes)"
  echo "mem_limit $(cat /sys/fs/cgroup/memory/memory.limit_in_bytes)"
fi
"""


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int


@dataclass
class ContainerStats:
    cpu_percent: float = 0.0
    memory_used: int = 0
    memory_limit: int = 0


@dataclass
class LogEntry:
    message: str
    stream: str = "stdout"
    timestamp: Optional[str] = None


@dataclass
class LogsResult:
    entries: list[LogEntry] = field(default_factory=list)
    has_more: bool = False


def _parse_int(value: Optional[str]) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        # cgroup v2 reports an unlimited memory.max as "max"
        return 0


class ContainerOrchestrator:
    """Container runtime gateway for database containers."""

    def __init__(
        self,
        runtime: str = "docker",
        socket: Optional[str] = None,
        network_name: str = "datafork_network",
    ):
        self.runtime = runtime
        self.socket = socket
        self.network_name = network_name
        self._cpu_samples: dict[str, tuple[int, float]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContainerOrchestrator":
        return cls(
            runtime=settings.container_runtime,
            socket=settings.runtime_socket,
            network_name=settings.network_name,
        )

    # ---- Command Plumbing ----------------------------------------------------

    def _command_env(self) -> Optional[dict[str, str]]:
        if not self.socket:
            return None
        env = dict(os.environ)
        address = self.socket if "://" in self.socket else f"unix://{self.socket}"
        env["CONTAINER_HOST" if self.runtime == "podman" else "DOCKER_HOST"] = address
        return env

    async def _run_command(self, args: list[str], timeout: float = 30.0) -> ExecResult:
        """
        Run ``<runtime> *args`` with an asyncio subprocess.

        Raises asyncio.TimeoutError (after killing the CLI process) when the
        command outlives ``timeout``.
        """
        cmd = [self.runtime, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._command_env(),
            )
        except FileNotFoundError:
            raise ContainerRuntimeError(f"Container runtime '{self.runtime}' is not installed")

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise

        return ExecResult(
            stdout=stdout_bytes.decode(errors="replace"),
            stderr=stderr_bytes.decode(errors="replace").strip(),
            exit_code=proc.returncode,
        )

    @staticmethod
    def _raise_for_runtime(result: ExecResult, action: str, ref: Optional[str] = None) -> None:
        """Map a failed runtime answer onto the error taxonomy."""
        message = (result.stderr or result.stdout).strip()
        lowered = message.lower()
        if ref and any(marker in lowered for marker in NOT_FOUND_MARKERS):
            raise ContainerNotFoundError(f"Container {ref} not found")
        if ref and any(marker in lowered for marker in NOT_RUNNING_MARKERS):
            raise ConflictError(f"Container {ref} is not running")
        logger.error(f"{action} failed (exit {result.exit_code}): {message}")
        raise ContainerRuntimeError(f"{action} failed: {message}")

    async def _run_checked(
        self, args: list[str], action: str, ref: Optional[str] = None, timeout: float = 30.0
    ) -> ExecResult:
        try:
            result = await self._run_command(args, timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"{action} timed out after {timeout}s")
            raise ContainerRuntimeError(f"{action} timed out after {timeout}s")
        if result.exit_code != 0:
            self._raise_for_runtime(result, action, ref)
        return result

    # ---- Runtime & Network ---------------------------------------------------

    async def check_runtime(self) -> tuple[bool, Optional[str]]:
        """Check if the runtime CLI is installed and return its version."""
        try:
            result = await self._run_command(["--version"], timeout=10.0)
        except (ContainerRuntimeError, asyncio.TimeoutError):
            return (False, None)
        if result.exit_code == 0:
            return (True, result.stdout.strip())
        return (False, None)

    async def ensure_network(self) -> bool:
        """Create the shared bridge network if absent. Returns True when created."""
        try:
            result = await self._run_command(["network", "inspect", self.network_name])
        except asyncio.TimeoutError:
            raise ContainerRuntimeError(f"Inspect network {self.network_name} timed out")
        if result.exit_code == 0:
            return False

        await self._run_checked(
            ["network", "create", "--driver", "bridge", self.network_name],
            f"Create network {self.network_name}",
        )
        logger.info(f"Created container network {self.network_name}")
        return True

    # ---- Container Lifecycle -------------------------------------------------

    async def pull(self, image: str) -> None:
        logger.info(f"Pulling image {image}")
        await self._run_checked(["pull", image], f"Pull image {image}", timeout=600.0)

    async def create(self, spec: ContainerSpec) -> str:
        """Create (without starting) a container from ``spec``. Returns its id."""
        volume_opts = ":Z" if self.runtime == "podman" else ""
        args = [
            "create",
            "--name", spec.name,
            "--hostname", spec.name,
            "--network", self.network_name,
            "--restart", "unless-stopped",
            "--memory", f"{spec.memory_limit_mb}m",
            "--cpus", str(spec.cpu_limit),
            "-p", f"{spec.bind_address}:{spec.host_port}:{spec.internal_port}",
            "-v", f"{spec.data_dir}:{spec.mount_path}{volume_opts}",
        ]
        for key, value in spec.labels.items():
            args.extend(["--label", f"{key}={value}"])
        for key, value in spec.env_vars.items():
            args.extend(["-e", f"{key}={value}"])
        args.append(spec.image)
        args.extend(spec.command)

        result = await self._run_checked(args, f"Create container {spec.name}", timeout=120.0)
        container_id = result.stdout.strip()[:12]
        logger.info(f"Created container {spec.name} ({container_id})")
        return container_id

    async def start(self, container_ref: str) -> None:
        await self._run_checked(["start", container_ref], f"Start container {container_ref}", container_ref)
        logger.info(f"Started container {container_ref}")

    async def stop(self, container_ref: str) -> None:
        await self._run_checked(
            ["stop", container_ref], f"Stop container {container_ref}", container_ref, timeout=60.0
        )
        logger.info(f"Stopped container {container_ref}")

    async def remove(self, container_ref: str, force: bool = False) -> None:
        args = ["rm"]
        if force:
            args.append("-f")
        args.append(container_ref)
        await self._run_checked(args, f"Remove container {container_ref}", container_ref)
        self._cpu_samples.pop(container_ref, None)
        logger.info(f"Removed container {container_ref}")

    async def status(self, container_ref: str) -> str:
        """Get the runtime state string (running, exited, created, ...)."""
        result = await self._run_checked(
            ["inspect", "--format", "{{.State.Status}}", container_ref],
            f"Inspect container {container_ref}",
            container_ref,
        )
        return result.stdout.strip()

    async def wait_healthy(
        self, container_ref: str, timeout: float = 60.0, interval: float = 1.0
    ) -> bool:
        """
        Poll the container state until it is running.

        Returns True once ``running`` is observed, False when the container
        reaches a terminal state or ``timeout`` elapses.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            state = await self.status(container_ref)
            if state == "running":
                return True
            if state in TERMINAL_STATES:
                logger.warning(f"Container {container_ref} entered terminal state '{state}'")
                return False
            if loop.time() >= deadline:
                logger.warning(f"Container {container_ref} not running after {timeout}s (state '{state}')")
                return False
            await asyncio.sleep(interval)

    # ---- Exec ----------------------------------------------------------------

    async def exec(
        self,
        container_ref: str,
        argv: list[str],
        env: Optional[dict[str, str]] = None,
        timeout: float = 60.0,
    ) -> ExecResult:
        """
        Execute a command inside a running container.

        A non-zero exit code of the command itself is returned, not raised.

        Raises:
            ExecTimeoutError: The command did not finish within ``timeout``.
                The process inside the container is not guaranteed to stop.
            ContainerNotFoundError: The container does not exist.
            ConflictError: The container is not running.
        """
        args = ["exec"]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(container_ref)
        args.extend(argv)

        try:
            result = await self._run_command(args, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Exec in {container_ref} timed out after {timeout}s: {argv[0]}")
            raise ExecTimeoutError(f"Exec of '{argv[0]}' in {container_ref} timed out after {timeout}s")

        if result.exit_code != 0:
            lowered = result.stderr.lower()
            if any(marker in lowered for marker in NOT_FOUND_MARKERS + NOT_RUNNING_MARKERS):
                self._raise_for_runtime(result, f"Exec in {container_ref}", container_ref)
        return result

    # ---- Logs & Stats --------------------------------------------------------

    @staticmethod
    def _parse_log_line(line: str, stream: str, timestamps: bool) -> LogEntry:
        if timestamps:
            timestamp, _, message = line.partition(" ")
            return LogEntry(message=message, stream=stream, timestamp=timestamp)
        return LogEntry(message=line, stream=stream)

    async def logs(
        self,
        container_ref: str,
        tail: int = 100,
        since: Optional[str] = None,
        timestamps: bool = True,
    ) -> LogsResult:
        """Get the last ``tail`` log lines (capped at MAX_LOG_LINES) of both streams."""
        tail = max(1, min(tail, MAX_LOG_LINES))
        args = ["logs", "--tail", str(tail)]
        if timestamps:
            args.append("--timestamps")
        if since:
            args.extend(["--since", since])
        args.append(container_ref)

        result = await self._run_checked(args, f"Logs of {container_ref}", container_ref)

        entries = [
            self._parse_log_line(line, "stdout", timestamps)
            for line in result.stdout.splitlines() if line
        ]
        entries.extend(
            self._parse_log_line(line, "stderr", timestamps)
            for line in result.stderr.splitlines() if line
        )
        if timestamps:
            entries.sort(key=lambda entry: entry.timestamp or "")
        has_more = len(entries) > tail
        return LogsResult(entries=entries[-tail:], has_more=has_more)

    async def stream_logs(self, container_ref: str, tail: int = 100) -> AsyncIterator[LogEntry]:
        """Follow the container's combined output until it stops or the caller closes."""
        proc = await asyncio.create_subprocess_exec(
            self.runtime, "logs", "--follow", "--timestamps",
            "--tail", str(max(0, min(tail, MAX_LOG_LINES))), container_ref,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=self._command_env(),
        )
        last_line = ""
        try:
            async for raw in proc.stdout:
                last_line = raw.decode(errors="replace").rstrip("\n")
                yield self._parse_log_line(last_line, "output", True)
            returncode = await proc.wait()
            if returncode != 0:
                self._raise_for_runtime(
                    ExecResult(stdout="", stderr=last_line, exit_code=returncode),
                    f"Follow logs of {container_ref}",
                    container_ref,
                )
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

    async def stats(self, container_ref: str) -> ContainerStats:
        """
        Sample CPU and memory usage from the container's cgroup counters.

        CPU percent is the usage delta over the wall-clock delta since the
        previous sample of the same container; the first sample reports 0.0.
        """
        result = await self.exec(container_ref, ["sh", "-c", STATS_SCRIPT], timeout=10.0)
        if result.exit_code != 0:
            raise ContainerRuntimeError(f"Stats of {container_ref} failed: {result.stderr}")

        counters = {}
        for line in result.stdout.splitlines():
            key, _, value = line.partition(" ")
            counters[key] = value.strip()

        if "cpu_usec" in counters:
            usage_usec = _parse_int(counters["cpu_usec"])
        else:
            usage_usec = _parse_int(counters.get("cpu_nsec")) // 1000

        now = time.monotonic()
        previous = self._cpu_samples.get(container_ref)
        self._cpu_samples[container_ref] = (usage_usec, now)

        cpu_percent = 0.0
        if previous is not None:
            usage_delta = usage_usec - previous[0]
            wall_delta_usec = (now - previous[1]) * 1_000_000
            if wall_delta_usec > 0 and usage_delta > 0:
                cpu_percent = round(usage_delta / wall_delta_usec * 100, 2)

        return ContainerStats(
            cpu_percent=cpu_percent,
            memory_used=_parse_int(counters.get("mem_used")),
            memory_limit=_parse_int(counters.get("mem_limit")),
        )
