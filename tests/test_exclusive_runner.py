from __future__ import annotations

import asyncio
import os
import signal
import sys
import textwrap
import time
from pathlib import Path

import pytest

import automation_server.runner as runner_module
from automation_server.errors import JobErrorKind
from automation_server.jobs import JobDefinition, JobRegistry
from automation_server.runner import ExclusiveJobRunner, JobRequest, RunSlot, RunState
from automation_server.settings import AutomationSettings


def _settings(tmp_path: Path, **overrides) -> AutomationSettings:
    values = dict(
        project_root=str(tmp_path),
        runner_command=(sys.executable,),
        browser="chromium",
        timeout_ms=5000,
        kill_grace_seconds=2.0,
        output_drain_seconds=2.0,
        max_output_chars=10_000,
        jobs_file="",
        force_mode="",
        display_available=False,
    )
    values.update(overrides)
    return AutomationSettings(**values)


def _script(tmp_path: Path, name: str, body: str) -> str:
    (tmp_path / name).write_text(textwrap.dedent(body), encoding="utf-8")
    return name


def _runner(tmp_path: Path, jobs: dict[str, str], **overrides) -> ExclusiveJobRunner:
    registry = JobRegistry([JobDefinition(n, s) for n, s in jobs.items()], project_root=tmp_path)
    return ExclusiveJobRunner(_settings(tmp_path, **overrides), registry)


async def _wait_for_process(runner: ExclusiveJobRunner) -> RunState:
    for _ in range(500):
        state = runner.slot.current
        if state is not None and state.process is not None:
            return state
        await asyncio.sleep(0.01)
    raise AssertionError("job process never started")


def _spawn_spy(monkeypatch: pytest.MonkeyPatch) -> list[tuple]:
    calls: list[tuple] = []
    real = asyncio.create_subprocess_exec

    async def spy(*args, **kwargs):
        calls.append(args)
        return await real(*args, **kwargs)

    monkeypatch.setattr(runner_module.asyncio, "create_subprocess_exec", spy)
    return calls


QUICK_OK = """
    import time
    time.sleep(0.05)
    print("journey passed")
"""

SLOW = """
    import time
    time.sleep(10)
"""


def test_run_slot_is_exclusive_and_only_released_by_its_owner() -> None:
    slot = RunSlot()
    first = RunState(job_name="a", script="a.py")
    second = RunState(job_name="b", script="b.py")

    assert slot.try_acquire(first) is True
    assert slot.try_acquire(second) is False
    slot.release(second)
    assert slot.current is first
    slot.release(first)
    assert slot.current is None
    assert slot.try_acquire(second) is True


@pytest.mark.asyncio
async def test_successful_job_reports_exit_code_zero(tmp_path: Path) -> None:
    runner = _runner(tmp_path, {"demo": _script(tmp_path, "demo.py", QUICK_OK)})

    started = time.perf_counter()
    result = await runner.submit(JobRequest(job_name="demo"))
    elapsed = time.perf_counter() - started

    assert result.success is True
    assert result.exit_code == 0
    assert result.timed_out is False
    assert result.error_kind is None
    assert "journey passed" in (result.stdout or "")
    assert elapsed < 5.0
    assert runner.busy is False


@pytest.mark.asyncio
async def test_non_zero_exit_carries_exit_code_and_stderr(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        "fail.py",
        """
        import sys
        print("step 1 ok")
        sys.stderr.write("assertion failed: course not published\\n")
        sys.exit(3)
        """,
    )
    runner = _runner(tmp_path, {"demo": script})

    result = await runner.submit(JobRequest(job_name="demo"))

    assert result.success is False
    assert result.exit_code == 3
    assert result.timed_out is False
    assert result.error_kind is JobErrorKind.NON_ZERO_EXIT
    assert "course not published" in (result.stderr or "")
    assert "course not published" in (result.error or "")
    assert "exit code 3" in result.message
    assert runner.busy is False


@pytest.mark.asyncio
async def test_timeout_terminates_job_and_frees_the_slot(tmp_path: Path) -> None:
    runner = _runner(
        tmp_path,
        {"demo": _script(tmp_path, "slow.py", SLOW), "quick": _script(tmp_path, "quick.py", QUICK_OK)},
        timeout_ms=200,
    )

    started = time.perf_counter()
    result = await runner.submit(JobRequest(job_name="demo"))
    elapsed = time.perf_counter() - started

    assert result.success is False
    assert result.timed_out is True
    assert result.error_kind is JobErrorKind.TIMED_OUT
    # Terminated by signal, so the process is gone and did not exit cleanly.
    assert result.exit_code is not None
    assert result.exit_code != 0
    assert elapsed < 5.0
    assert runner.busy is False

    follow_up = await runner.submit(JobRequest(job_name="quick"))
    assert follow_up.error_kind is not JobErrorKind.BUSY
    assert follow_up.success is True


@pytest.mark.asyncio
async def test_start_failure_is_reported_and_slot_released(tmp_path: Path) -> None:
    runner = _runner(
        tmp_path,
        {"demo": _script(tmp_path, "demo.py", QUICK_OK)},
        runner_command=(str(tmp_path / "no-such-test-runner"),),
    )

    result = await runner.submit(JobRequest(job_name="demo"))

    assert result.success is False
    assert result.error_kind is JobErrorKind.START_FAILURE
    assert result.exit_code is None
    assert result.error
    assert runner.busy is False

    again = await runner.submit(JobRequest(job_name="demo"))
    assert again.error_kind is JobErrorKind.START_FAILURE


@pytest.mark.asyncio
async def test_unknown_job_is_not_found_without_spawning(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _spawn_spy(monkeypatch)
    runner = _runner(tmp_path, {"demo": _script(tmp_path, "demo.py", QUICK_OK)})

    result = await runner.submit(JobRequest(job_name="does-not-exist"))

    assert result.success is False
    assert result.error_kind is JobErrorKind.NOT_FOUND
    assert calls == []
    assert runner.busy is False


@pytest.mark.asyncio
async def test_second_submission_is_rejected_while_first_runs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _spawn_spy(monkeypatch)
    script = _script(
        tmp_path,
        "medium.py",
        """
        import time
        time.sleep(0.5)
        print("first run done")
        """,
    )
    runner = _runner(tmp_path, {"demo": script})

    first = asyncio.create_task(runner.submit(JobRequest(job_name="demo")))
    await asyncio.sleep(0)
    assert runner.busy is True

    started = time.perf_counter()
    second = await runner.submit(JobRequest(job_name="demo"))
    rejected_in = time.perf_counter() - started

    assert second.success is False
    assert second.error_kind is JobErrorKind.BUSY
    assert second.message == "busy"
    assert rejected_in < 0.1

    first_result = await first
    assert first_result.success is True
    assert "first run done" in (first_result.stdout or "")
    assert len(calls) == 1
    assert runner.busy is False


@pytest.mark.asyncio
async def test_headed_request_is_downgraded_without_display(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        "env.py",
        """
        import os, sys
        print("HEADLESS=" + os.environ.get("HEADLESS", ""))
        print("CI=" + os.environ.get("CI", "<unset>"))
        print("ARGV=" + " ".join(sys.argv[1:]))
        """,
    )

    headless_runner = _runner(tmp_path, {"demo": script}, display_available=False)
    result = await headless_runner.submit(JobRequest(job_name="demo", headed=True))
    assert result.success is True
    assert result.headed is False
    assert "HEADLESS=1" in (result.stdout or "")
    assert "CI=1" in (result.stdout or "")
    assert "--headed" not in (result.stdout or "")

    headed_runner = _runner(tmp_path, {"demo": script}, display_available=True)
    result = await headed_runner.submit(JobRequest(job_name="demo", headed=True))
    assert result.success is True
    assert result.headed is True
    assert "HEADLESS=0" in (result.stdout or "")
    assert "CI=<unset>" in (result.stdout or "")
    assert "ARGV=--browser chromium --headed" in (result.stdout or "")


@pytest.mark.asyncio
async def test_output_is_kept_as_a_bounded_tail(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        "noisy.py",
        """
        print("x" * 5000)
        print("END")
        """,
    )
    runner = _runner(tmp_path, {"demo": script}, max_output_chars=100)

    result = await runner.submit(JobRequest(job_name="demo"))

    assert result.success is True
    assert result.stdout is not None
    assert len(result.stdout) <= 100
    assert result.stdout.endswith("END")


@pytest.mark.asyncio
async def test_terminate_current_stops_in_flight_job(tmp_path: Path) -> None:
    runner = _runner(tmp_path, {"demo": _script(tmp_path, "slow.py", SLOW)}, timeout_ms=30_000)

    task = asyncio.create_task(runner.submit(JobRequest(job_name="demo")))
    state = await _wait_for_process(runner)
    assert runner.status()["pid"] == state.process.pid

    assert runner.terminate_current() is True
    result = await asyncio.wait_for(task, timeout=10)

    assert result.success is False
    assert result.timed_out is False
    assert result.error_kind is JobErrorKind.NON_ZERO_EXIT
    assert "shutting down" in result.message
    assert runner.busy is False
    assert runner.terminate_current() is False


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


async def _wait_until_gone(pid: int, within: float = 2.0) -> bool:
    deadline = time.perf_counter() + within
    while time.perf_counter() < deadline:
        if not _pid_alive(pid):
            return True
        await asyncio.sleep(0.02)
    return not _pid_alive(pid)


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
async def test_timed_out_job_process_is_gone(tmp_path: Path) -> None:
    runner = _runner(tmp_path, {"demo": _script(tmp_path, "slow.py", SLOW)}, timeout_ms=200)

    task = asyncio.create_task(runner.submit(JobRequest(job_name="demo")))
    state = await _wait_for_process(runner)
    pid = state.process.pid

    started = time.perf_counter()
    result = await task
    elapsed = time.perf_counter() - started

    assert result.timed_out is True
    assert result.exit_code == -signal.SIGTERM
    assert elapsed < 1.5
    assert await _wait_until_gone(pid)


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
async def test_job_ignoring_sigterm_is_killed_after_grace(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        "stubborn.py",
        """
        import signal, time
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        print("ready", flush=True)
        time.sleep(10)
        """,
    )
    runner = _runner(tmp_path, {"demo": script}, timeout_ms=500, kill_grace_seconds=0.3)

    task = asyncio.create_task(runner.submit(JobRequest(job_name="demo")))
    state = await _wait_for_process(runner)
    pid = state.process.pid

    started = time.perf_counter()
    result = await asyncio.wait_for(task, timeout=5)
    elapsed = time.perf_counter() - started

    assert result.timed_out is True
    assert result.error_kind is JobErrorKind.TIMED_OUT
    assert result.exit_code == -signal.SIGKILL
    assert elapsed < 3.0
    assert await _wait_until_gone(pid)
    assert runner.busy is False


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
async def test_job_that_leaves_a_child_holding_the_pipes_still_succeeds(tmp_path: Path) -> None:
    script = _script(
        tmp_path,
        "leaves_browser.py",
        """
        import subprocess, sys
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(6)"])
        print("child=" + str(child.pid))
        print("journey done", flush=True)
        """,
    )
    runner = _runner(tmp_path, {"demo": script}, timeout_ms=3000, output_drain_seconds=0.5)

    started = time.perf_counter()
    result = await runner.submit(JobRequest(job_name="demo"))
    elapsed = time.perf_counter() - started

    child_pid = None
    for line in (result.stdout or "").splitlines():
        if line.startswith("child="):
            child_pid = int(line.split("=", 1)[1])
    if child_pid is not None:
        try:
            os.kill(child_pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    assert result.success is True
    assert result.timed_out is False
    assert result.exit_code == 0
    assert "journey done" in (result.stdout or "")
    assert elapsed < 2.5
    assert runner.busy is False


@pytest.mark.asyncio
async def test_terminate_current_on_idle_runner_does_not_taint_later_runs(tmp_path: Path) -> None:
    script = _script(tmp_path, "fail.py", "import sys\nsys.exit(4)\n")
    runner = _runner(tmp_path, {"demo": script})

    assert runner.terminate_current() is False
    result = await runner.submit(JobRequest(job_name="demo"))

    assert result.exit_code == 4
    assert "exit code 4" in result.message
    assert "shutting down" not in result.message
