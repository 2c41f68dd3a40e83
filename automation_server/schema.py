from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class RunJobRequest(BaseModel):
    headed: bool = True
    spec: str | None = Field(None, max_length=1000)

    # Only a literal false selects headless; anything else keeps the headed default.
    @field_validator("headed", mode="before")
    @classmethod
    def _coerce_headed(cls, v: Any) -> bool:
        return v if isinstance(v, bool) else True

    @field_validator("spec", mode="before")
    @classmethod
    def _coerce_spec(cls, v: Any) -> str | None:
        return v if isinstance(v, str) else None


class JobResultResponse(BaseModel):
    # Wire names are camelCase (timedOut, exitCode, ...) for the existing front-end.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    message: str
    stdout: str | None = None
    stderr: str | None = None
    timed_out: bool = False
    exit_code: int | None = None
    error_kind: str | None = None
    error: str | None = None
    job_name: str | None = None
    script: str | None = None
    headed: bool | None = None
    duration_ms: float | None = None


class HealthResponse(BaseModel):
    status: str
    message: str


class JobInfo(BaseModel):
    name: str
    script: str
    description: str
    route: str


class JobListResponse(BaseModel):
    jobs: list[JobInfo]


class RunStatusResponse(BaseModel):
    running: bool
    run: dict | None = None
