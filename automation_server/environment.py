"""Headed/headless resolution for journey runs.

The caller asks for a visible browser or not; the host decides whether a
visible browser is possible at all. Anything that cannot render a window is
quietly switched to headless so the browser does not fail on launch.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Mapping

from automation_server.settings import AutomationSettings


_ALWAYS_DISPLAY_PLATFORMS = ("win32", "cygwin", "darwin")


@dataclass(frozen=True)
class HostCapabilities:
    platform: str
    has_display: bool
    force_mode: str = ""  # ""|headed|headless


@dataclass(frozen=True)
class ExecutionEnvironment:
    requested_headed: bool
    headed: bool
    downgraded: bool
    env: dict[str, str] = field(default_factory=dict)
    flags: tuple[str, ...] = ()

    def command(self, runner_command: tuple[str, ...] | list[str], script: str) -> list[str]:
        return [*runner_command, script, *self.flags]


def detect_host_capabilities(
    settings: AutomationSettings,
    *,
    environ: Mapping[str, str] | None = None,
    platform: str | None = None,
) -> HostCapabilities:
    env = os.environ if environ is None else environ
    plat = platform or sys.platform

    if settings.display_available is not None:
        has_display = bool(settings.display_available)
    elif plat.startswith(_ALWAYS_DISPLAY_PLATFORMS):
        has_display = True
    else:
        has_display = bool(str(env.get("DISPLAY") or "").strip() or str(env.get("WAYLAND_DISPLAY") or "").strip())

    return HostCapabilities(platform=plat, has_display=has_display, force_mode=settings.force_mode)


def resolve_execution_environment(
    requested_headed: bool,
    host: HostCapabilities,
    *,
    base_env: Mapping[str, str],
    browser: str = "chromium",
) -> ExecutionEnvironment:
    requested = bool(requested_headed)
    if host.force_mode == "headless":
        headed = False
    elif host.force_mode == "headed":
        headed = requested
    else:
        headed = requested and host.has_display

    env = dict(base_env)
    if headed:
        # Many runners switch to headless on their own when CI is present.
        env.pop("CI", None)
        env["HEADLESS"] = "0"
        env["PWDEBUG"] = "0"
    else:
        env["CI"] = "1"
        env["HEADLESS"] = "1"

    flags: list[str] = []
    if browser:
        flags.extend(["--browser", browser])
    if headed:
        flags.append("--headed")

    return ExecutionEnvironment(
        requested_headed=requested,
        headed=headed,
        downgraded=requested and not headed,
        env=env,
        flags=tuple(flags),
    )
