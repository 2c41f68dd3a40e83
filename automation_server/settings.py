from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_optional_bool(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return None
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_csv(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    out: list[str] = []
    for part in str(raw).split(","):
        item = part.strip()
        if item:
            out.append(item)
    return tuple(out) or default


def _default_port() -> int:
    # Hosting platforms hand the port over as PORT.
    if os.getenv("AUTOMATION_PORT") is not None:
        return _env_int("AUTOMATION_PORT", 3001)
    return _env_int("PORT", 3001)


def _default_runner_command() -> tuple[str, ...]:
    raw = os.getenv("AUTOMATION_RUNNER_COMMAND")
    if raw is not None and raw.strip():
        return tuple(shlex.split(raw))
    return (sys.executable, "-m", "pytest")


def _default_force_mode() -> str:
    s = _env_str("AUTOMATION_FORCE_MODE", "").lower()
    return s if s in {"headed", "headless"} else ""


def _default_log_level() -> str:
    return (os.getenv("AUTOMATION_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO").strip().upper()


@dataclass(frozen=True)
class AutomationSettings:
    host: str = field(default_factory=lambda: _env_str("AUTOMATION_HOST", "0.0.0.0"))
    port: int = field(default_factory=_default_port)

    # Wall clock budget for a single run (8 minutes unless overridden).
    timeout_ms: int = field(default_factory=lambda: _env_int("AUTOMATION_TIMEOUT_MS", 8 * 60 * 1000))
    # How long a timed out process gets between SIGTERM and SIGKILL.
    kill_grace_seconds: float = field(default_factory=lambda: _env_float("AUTOMATION_KILL_GRACE_SECONDS", 5.0))
    # Browsers spawned by the job can keep the pipes open after the job exits.
    output_drain_seconds: float = field(default_factory=lambda: _env_float("AUTOMATION_OUTPUT_DRAIN_SECONDS", 2.0))
    max_output_chars: int = field(default_factory=lambda: _env_int("AUTOMATION_MAX_OUTPUT_CHARS", 200_000))

    # Child processes run from here and job scripts resolve against it.
    project_root: str = field(default_factory=lambda: _env_str("AUTOMATION_PROJECT_ROOT", os.getcwd()))
    runner_command: tuple[str, ...] = field(default_factory=_default_runner_command)
    browser: str = field(default_factory=lambda: _env_str("AUTOMATION_BROWSER", "chromium"))
    jobs_file: str = field(default_factory=lambda: _env_str("AUTOMATION_JOBS_FILE", ""))

    # Headed/headless policy inputs.
    force_mode: str = field(default_factory=_default_force_mode)  # ""|headed|headless
    display_available: bool | None = field(default_factory=lambda: _env_optional_bool("AUTOMATION_DISPLAY_AVAILABLE"))

    cors_allow_origins: tuple[str, ...] = field(default_factory=lambda: _env_csv("AUTOMATION_CORS_ORIGINS", ("*",)))
    log_level: str = field(default_factory=_default_log_level)

    @property
    def timeout_seconds(self) -> float:
        return max(0.001, float(self.timeout_ms) / 1000.0)
