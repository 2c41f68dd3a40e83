"""Single-slot runner for journey test jobs.

At most one job runs at a time. A second submission while a job is in
flight is rejected straight away instead of being queued. Every accepted
submission spawns exactly one child process and resolves exactly once:
success, non-zero exit, timeout or start failure. The slot is released on
all four paths before the result is handed back.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from automation_server.environment import (
    ExecutionEnvironment,
    HostCapabilities,
    detect_host_capabilities,
    resolve_execution_environment,
)
from automation_server.errors import JobErrorKind, JobNotFoundError
from automation_server.jobs import JobRegistry, ResolvedJob
from automation_server.settings import AutomationSettings


logger = structlog.get_logger(__name__)

_READ_CHUNK_BYTES = 4096
_ERROR_TAIL_CHARS = 2000
_EXIT_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class JobRequest:
    job_name: str
    headed: bool = True
    spec: str | None = None


@dataclass
class RunState:
    job_name: str
    script: str
    started_at: float = field(default_factory=time.time)
    headed: bool | None = None
    process: asyncio.subprocess.Process | None = None
    stop_requested: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "script": self.script,
            "started_at": self.started_at,
            "headed": self.headed,
            "pid": self.process.pid if self.process is not None else None,
        }


@dataclass(frozen=True)
class JobResult:
    success: bool
    message: str
    stdout: str | None = None
    stderr: str | None = None
    timed_out: bool = False
    exit_code: int | None = None
    error_kind: JobErrorKind | None = None
    error: str | None = None
    job_name: str | None = None
    script: str | None = None
    headed: bool | None = None
    duration_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error_kind"] = self.error_kind.value if self.error_kind is not None else None
        return data


class RunSlot:
    """The one place a running job is recorded.

    `try_acquire` never blocks: it either claims the empty slot or reports
    that it is taken.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: RunState | None = None

    @property
    def current(self) -> RunState | None:
        with self._lock:
            return self._state

    def try_acquire(self, state: RunState) -> bool:
        with self._lock:
            if self._state is not None:
                return False
            self._state = state
            return True

    def release(self, state: RunState) -> None:
        with self._lock:
            if self._state is state:
                self._state = None


class _OutputBuffer:
    def __init__(self, max_chars: int) -> None:
        self.max_chars = max(1, int(max_chars))
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []
        self._size = 0

    def feed(self, data: bytes) -> str:
        text = self._decoder.decode(data)
        self._append(text)
        return text

    def close(self) -> str:
        text = self._decoder.decode(b"", final=True)
        self._append(text)
        return text

    def _append(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        self._size += len(text)
        if self._size > 2 * self.max_chars:
            joined = "".join(self._parts)[-self.max_chars :]
            self._parts = [joined]
            self._size = len(joined)

    def text(self) -> str | None:
        s = "".join(self._parts)
        if len(s) > self.max_chars:
            s = s[-self.max_chars :]
        s = s.strip()
        return s or None


def _tail(text: str | None, max_len: int) -> str | None:
    if not text:
        return None
    return text if len(text) <= max_len else text[-max_len:]


async def _exited(proc: asyncio.subprocess.Process) -> int:
    # Process.wait() also waits for the pipes to close, which a leftover
    # grandchild (a browser) can hold open long after the job itself exited.
    while proc.returncode is None:
        await asyncio.sleep(_EXIT_POLL_SECONDS)
    return proc.returncode


class ExclusiveJobRunner:
    def __init__(
        self,
        settings: AutomationSettings,
        registry: JobRegistry,
        *,
        host: HostCapabilities | None = None,
    ):
        self.settings = settings
        self.registry = registry
        self.slot = RunSlot()
        self._host = host

    @property
    def busy(self) -> bool:
        return self.slot.current is not None

    def status(self) -> dict[str, Any] | None:
        state = self.slot.current
        return state.to_dict() if state is not None else None

    def host_capabilities(self) -> HostCapabilities:
        if self._host is not None:
            return self._host
        return detect_host_capabilities(self.settings)

    async def submit(self, request: JobRequest) -> JobResult:
        try:
            resolved = self.registry.resolve(request.job_name, request.spec)
        except JobNotFoundError as exc:
            logger.warning("Unknown job requested", job_name=request.job_name)
            return JobResult(
                success=False,
                message="not_found",
                error_kind=JobErrorKind.NOT_FOUND,
                error=str(exc),
                job_name=request.job_name,
            )

        state = RunState(job_name=resolved.job.name, script=resolved.script)
        if not self.slot.try_acquire(state):
            running = self.slot.current
            logger.warning(
                "Rejected job while another run is in progress",
                job_name=resolved.job.name,
                running_job=running.job_name if running is not None else None,
            )
            return JobResult(
                success=False,
                message="busy",
                error_kind=JobErrorKind.BUSY,
                error="A test run is already in progress. Please wait for it to finish.",
                job_name=resolved.job.name,
                script=resolved.script,
            )

        try:
            return await self._execute(state, resolved, request)
        finally:
            self.slot.release(state)
            logger.info("Run slot released", job_name=state.job_name)

    async def _execute(self, state: RunState, resolved: ResolvedJob, request: JobRequest) -> JobResult:
        host = self.host_capabilities()
        exec_env: ExecutionEnvironment = resolve_execution_environment(
            request.headed,
            host,
            base_env=os.environ,
            browser=self.settings.browser,
        )
        state.headed = exec_env.headed
        if exec_env.downgraded:
            logger.info(
                "Headed run not possible on this host; running headless",
                job_name=state.job_name,
                platform=host.platform,
                has_display=host.has_display,
                force_mode=host.force_mode or None,
            )

        cmd = exec_env.command(self.settings.runner_command, resolved.script)
        logger.info(
            "Starting job",
            job_name=state.job_name,
            script=resolved.script,
            overridden=resolved.overridden,
            headed=exec_env.headed,
            requested_headed=exec_env.requested_headed,
            command=" ".join(cmd),
        )

        base = {"job_name": state.job_name, "script": resolved.script, "headed": exec_env.headed}
        started = time.perf_counter()

        def _elapsed_ms() -> float:
            return round((time.perf_counter() - started) * 1000.0, 3)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=exec_env.env,
                cwd=str(self.registry.project_root),
            )
        except OSError as exc:
            logger.error("Failed to start job", job_name=state.job_name, error=str(exc))
            return JobResult(
                success=False,
                message="Failed to start test run",
                error_kind=JobErrorKind.START_FAILURE,
                error=str(exc),
                duration_ms=_elapsed_ms(),
                **base,
            )

        state.process = proc
        if state.stop_requested:
            # Shutdown began while the process was being spawned.
            proc.terminate()
        stdout_buf = _OutputBuffer(self.settings.max_output_chars)
        stderr_buf = _OutputBuffer(self.settings.max_output_chars)
        pumps = asyncio.gather(
            self._pump(proc.stdout, stdout_buf, job_name=state.job_name, stream="stdout"),
            self._pump(proc.stderr, stderr_buf, job_name=state.job_name, stream="stderr"),
        )

        timed_out = False
        try:
            try:
                await asyncio.wait_for(_exited(proc), timeout=self.settings.timeout_seconds)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning(
                    "Job exceeded its time budget; stopping it",
                    job_name=state.job_name,
                    timeout_ms=self.settings.timeout_ms,
                    pid=proc.pid,
                )
                await self._stop(proc)
            await self._drain(pumps, job_name=state.job_name)
        except BaseException:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            pumps.cancel()
            raise

        exit_code = proc.returncode
        stdout = stdout_buf.text()
        stderr = stderr_buf.text()
        duration_ms = _elapsed_ms()

        if timed_out:
            result = JobResult(
                success=False,
                message="Test run timed out and was stopped",
                stdout=stdout,
                stderr=stderr,
                timed_out=True,
                exit_code=exit_code,
                error_kind=JobErrorKind.TIMED_OUT,
                error=f"exceeded {self.settings.timeout_ms} ms",
                duration_ms=duration_ms,
                **base,
            )
        elif exit_code == 0:
            result = JobResult(
                success=True,
                message="Test run completed successfully",
                stdout=stdout,
                stderr=stderr,
                exit_code=0,
                duration_ms=duration_ms,
                **base,
            )
        else:
            if state.stop_requested:
                message = "Test run was stopped because the server is shutting down"
            else:
                message = f"Test run failed with exit code {exit_code}"
            result = JobResult(
                success=False,
                message=message,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                error_kind=JobErrorKind.NON_ZERO_EXIT,
                error=_tail(stderr, _ERROR_TAIL_CHARS),
                duration_ms=duration_ms,
                **base,
            )

        log = logger.info if result.success else logger.warning
        log(
            "Job finished",
            job_name=state.job_name,
            success=result.success,
            exit_code=exit_code,
            timed_out=timed_out,
            duration_ms=duration_ms,
        )
        return result

    async def _pump(
        self,
        reader: asyncio.StreamReader | None,
        buf: _OutputBuffer,
        *,
        job_name: str,
        stream: str,
    ) -> None:
        if reader is None:
            return
        log = logger.info if stream == "stdout" else logger.warning
        while True:
            chunk = await reader.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            for line in buf.feed(chunk).splitlines():
                if line.strip():
                    log(line.rstrip(), job_name=job_name, stream=stream)
        buf.close()

    async def _stop(self, proc: asyncio.subprocess.Process) -> None:
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(_exited(proc), timeout=max(0.0, float(self.settings.kill_grace_seconds)))
        except asyncio.TimeoutError:
            logger.warning("Job ignored SIGTERM; killing it", pid=proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await _exited(proc)

    async def _drain(self, pumps: asyncio.Future, *, job_name: str) -> None:
        try:
            await asyncio.wait_for(pumps, timeout=max(0.0, float(self.settings.output_drain_seconds)))
        except asyncio.TimeoutError:
            logger.warning("Output pipes still open after the job exited; keeping what was read", job_name=job_name)

    def terminate_current(self) -> bool:
        """Send SIGTERM to the in-flight job, if any. Used on server shutdown."""
        state = self.slot.current
        if state is None:
            return False
        state.stop_requested = True
        if state.process is None or state.process.returncode is not None:
            return False
        logger.warning("Stopping in-flight job for shutdown", job_name=state.job_name, pid=state.process.pid)
        try:
            state.process.terminate()
        except ProcessLookupError:
            return False
        return True
