from __future__ import annotations

from enum import Enum


class JobErrorKind(str, Enum):
    BUSY = "busy"
    NOT_FOUND = "not_found"
    START_FAILURE = "start_failure"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMED_OUT = "timed_out"


class AutomationError(Exception):
    """Base class for errors raised by the automation server."""


class JobRegistryError(AutomationError):
    """The job registry file could not be loaded."""


class JobNotFoundError(AutomationError):
    def __init__(self, job_name: str):
        super().__init__(f"unknown job: {job_name}")
        self.job_name = job_name


class InvalidScriptPathError(AutomationError):
    def __init__(self, script: str):
        super().__init__(f"script path resolves outside the project root: {script}")
        self.script = script
