from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from automation_server.environment import detect_host_capabilities
from automation_server.errors import InvalidScriptPathError, JobErrorKind
from automation_server.jobs import JobRegistry, build_registry
from automation_server.runner import ExclusiveJobRunner, JobRequest, JobResult
from automation_server.schema import (
    HealthResponse,
    JobInfo,
    JobListResponse,
    JobResultResponse,
    RunJobRequest,
    RunStatusResponse,
)
from automation_server.settings import AutomationSettings


logger = structlog.get_logger(__name__)

_STATUS_BY_KIND = {
    JobErrorKind.BUSY: 409,
    JobErrorKind.NOT_FOUND: 404,
    JobErrorKind.START_FAILURE: 500,
    JobErrorKind.NON_ZERO_EXIT: 500,
    JobErrorKind.TIMED_OUT: 500,
}


def _status_code(result: JobResult) -> int:
    if result.success:
        return 200
    if result.error_kind is None:
        return 500
    return _STATUS_BY_KIND.get(result.error_kind, 500)


def _result_response(result: JobResult) -> JSONResponse:
    body = JobResultResponse.model_validate(result.to_dict())
    return JSONResponse(status_code=_status_code(result), content=body.model_dump(mode="json", by_alias=True))


def create_app(settings: AutomationSettings | None = None, *, registry: JobRegistry | None = None) -> FastAPI:
    app = FastAPI(title="Learning Platform Automation Server", version="0.1.0")
    app.state.settings = settings or AutomationSettings()
    app.state.registry = registry or build_registry(
        project_root=app.state.settings.project_root,
        jobs_file=app.state.settings.jobs_file or None,
    )
    app.state.runner = ExclusiveJobRunner(app.state.settings, app.state.registry)

    origins = list(app.state.settings.cors_allow_origins) or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        cfg: AutomationSettings = app.state.settings
        host = detect_host_capabilities(cfg)
        logger.info(
            "Automation server ready",
            project_root=str(app.state.registry.project_root),
            jobs=app.state.registry.names(),
            timeout_ms=cfg.timeout_ms,
            platform=host.platform,
            has_display=host.has_display,
            force_mode=host.force_mode or None,
        )

    @app.on_event("shutdown")
    def _shutdown() -> None:
        runner: ExclusiveJobRunner = app.state.runner
        if runner.terminate_current():
            logger.info("Stopped in-flight job during shutdown")

    @app.get("/health", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        return {"status": "ok", "message": "Automation server is running"}

    @app.get("/api/automation/jobs", response_model=JobListResponse)
    async def list_jobs() -> dict[str, Any]:
        reg: JobRegistry = app.state.registry
        return {
            "jobs": [
                JobInfo(name=j.name, script=j.script, description=j.description, route=j.route)
                for j in reg.definitions()
            ]
        }

    @app.get("/api/automation/status", response_model=RunStatusResponse)
    async def run_status() -> dict[str, Any]:
        run = app.state.runner.status()
        return {"running": run is not None, "run": run}

    @app.post("/api/automation/run-{job_name}")
    async def run_job(job_name: str, body: RunJobRequest | None = None) -> JSONResponse:
        req = body or RunJobRequest()
        logger.info("Run requested", job_name=job_name, headed=req.headed, spec=req.spec)
        try:
            result = await app.state.runner.submit(JobRequest(job_name=job_name, headed=req.headed, spec=req.spec))
        except InvalidScriptPathError as exc:
            raise HTTPException(status_code=400, detail="invalid_spec_path") from exc
        return _result_response(result)

    return app
