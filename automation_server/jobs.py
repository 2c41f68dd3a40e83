"""Registry of runnable journeys.

A job is a named external test script. The built-in registry mirrors the
learning platform journeys; a YAML file can replace it:

    jobs:
      login: journeys/student/test_login.py
      purchase:
        script: journeys/student/test_purchase_premium_course.py
        description: Student buys a premium course
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml

from automation_server.errors import InvalidScriptPathError, JobNotFoundError, JobRegistryError


logger = structlog.get_logger(__name__)

_JOB_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,79}$")


@dataclass(frozen=True)
class JobDefinition:
    name: str
    script: str
    description: str = ""

    @property
    def route(self) -> str:
        return f"/api/automation/run-{self.name}"


DEFAULT_JOBS: tuple[JobDefinition, ...] = (
    JobDefinition("test-creation", "journeys/instructor/test_create_test.py", "Instructor creates a test with quiz questions"),
    JobDefinition("course-creation", "journeys/instructor/test_create_course.py", "Instructor creates and publishes a course"),
    JobDefinition("purchase", "journeys/student/test_purchase_premium_course.py", "Student purchases a premium course"),
    JobDefinition("login", "journeys/student/test_login.py", "Student logs in"),
    JobDefinition("social-signup", "journeys/student/test_social_signup.py", "Student signs up with a social account"),
    JobDefinition("student-full-flow", "journeys/student/test_student_full_flow.py", "Student signs up, buys and attempts a course"),
    JobDefinition("live-class", "journeys/live/test_live_class.py", "Instructor schedules and joins a live class"),
)


@dataclass(frozen=True)
class ResolvedJob:
    job: JobDefinition
    script: str
    overridden: bool


class JobRegistry:
    def __init__(self, jobs: list[JobDefinition] | tuple[JobDefinition, ...], *, project_root: str | Path):
        self.project_root = Path(project_root).resolve()
        self._jobs: dict[str, JobDefinition] = {}
        for job in jobs:
            if job.name in self._jobs:
                raise JobRegistryError(f"duplicate job name: {job.name}")
            self._jobs[job.name] = job

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def names(self) -> list[str]:
        return sorted(self._jobs)

    def definitions(self) -> list[JobDefinition]:
        return [self._jobs[n] for n in self.names()]

    def get(self, name: str) -> JobDefinition:
        job = self._jobs.get(str(name or "").strip().lower())
        if job is None:
            raise JobNotFoundError(str(name))
        return job

    def resolve(self, name: str, override: str | None = None) -> ResolvedJob:
        job = self.get(name)
        script = str(override or "").strip()
        if not script:
            return ResolvedJob(job=job, script=job.script, overridden=False)

        fp = (self.project_root / script).resolve()
        if fp != self.project_root and self.project_root not in fp.parents:
            raise InvalidScriptPathError(script)
        return ResolvedJob(job=job, script=script, overridden=True)


def _parse_entry(name: Any, value: Any) -> JobDefinition:
    job_name = str(name or "").strip().lower()
    if not _JOB_NAME_RE.match(job_name):
        raise JobRegistryError(f"invalid job name: {name!r}")

    if isinstance(value, str):
        script, description = value, ""
    elif isinstance(value, dict):
        script = value.get("script")
        description = value.get("description") or ""
    else:
        raise JobRegistryError(f"job {job_name}: expected a script path or a mapping")

    if not isinstance(script, str) or not script.strip():
        raise JobRegistryError(f"job {job_name}: missing script")
    return JobDefinition(name=job_name, script=script.strip(), description=str(description).strip())


def load_jobs_file(path: str | Path) -> list[JobDefinition]:
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise JobRegistryError(f"jobs file not found: {p}") from exc
    except yaml.YAMLError as exc:
        raise JobRegistryError(f"jobs file is not valid YAML: {exc}") from exc

    jobs = data.get("jobs") if isinstance(data, dict) else None
    if not isinstance(jobs, dict) or not jobs:
        raise JobRegistryError("jobs file must contain a non-empty 'jobs' mapping")
    return [_parse_entry(name, value) for name, value in jobs.items()]


def build_registry(*, project_root: str | Path, jobs_file: str | None = None) -> JobRegistry:
    if jobs_file:
        jobs = load_jobs_file(jobs_file)
        logger.info("Loaded job registry", jobs_file=str(jobs_file), count=len(jobs))
    else:
        jobs = list(DEFAULT_JOBS)
    return JobRegistry(jobs, project_root=project_root)
