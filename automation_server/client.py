"""Trigger journey runs on a running automation server.

    automation-run login --server http://127.0.0.1:3001 --headless
    automation-run purchase --wait-if-busy --max-wait-seconds 900
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import structlog

from automation_server.logging_config import configure_logging


logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BUSY = 2
EXIT_UNREACHABLE = 3


@dataclass(frozen=True)
class RunResponse:
    status_code: int
    body: dict[str, Any]

    @property
    def busy(self) -> bool:
        return self.status_code == 409

    @property
    def success(self) -> bool:
        return self.status_code == 200 and bool(self.body.get("success"))


class AutomationClient:
    def __init__(self, base_url: str, *, client: httpx.Client | None = None, timeout_seconds: float = 15 * 60):
        self.base_url = str(base_url or "").rstrip("/")
        self._client = client or httpx.Client(headers={"User-Agent": "LMS Automation Client"})
        # A run request stays open until the job finishes.
        self.timeout_seconds = float(timeout_seconds)

    def __enter__(self) -> "AutomationClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def health(self) -> dict[str, Any]:
        resp = self._client.get(f"{self.base_url}/health", timeout=10.0)
        resp.raise_for_status()
        return resp.json()

    def list_jobs(self) -> list[dict[str, Any]]:
        resp = self._client.get(f"{self.base_url}/api/automation/jobs", timeout=10.0)
        resp.raise_for_status()
        data = resp.json()
        jobs = data.get("jobs") if isinstance(data, dict) else None
        return jobs if isinstance(jobs, list) else []

    def run(self, job_name: str, *, headed: bool = True, spec: str | None = None) -> RunResponse:
        payload: dict[str, Any] = {"headed": bool(headed)}
        if spec:
            payload["spec"] = spec
        resp = self._client.post(
            f"{self.base_url}/api/automation/run-{job_name}",
            json=payload,
            timeout=self.timeout_seconds,
        )
        try:
            body = resp.json()
        except ValueError:
            body = {"success": False, "message": resp.text[:2000]}
        if not isinstance(body, dict):
            body = {"success": False, "message": str(body)[:2000]}
        return RunResponse(status_code=resp.status_code, body=body)

    def run_when_free(
        self,
        job_name: str,
        *,
        headed: bool = True,
        spec: str | None = None,
        poll_seconds: float = 10.0,
        max_wait_seconds: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> RunResponse:
        """Like `run`, but keeps retrying while the server reports busy."""
        deadline = clock() + max(0.0, float(max_wait_seconds))
        attempt = 0
        while True:
            attempt += 1
            result = self.run(job_name, headed=headed, spec=spec)
            if not result.busy:
                return result
            remaining = deadline - clock()
            if remaining <= 0:
                logger.warning("Server still busy; giving up", job_name=job_name, attempts=attempt)
                return result
            wait = min(max(0.1, float(poll_seconds)), remaining)
            logger.info("Server busy; retrying", job_name=job_name, attempt=attempt, wait_seconds=round(wait, 1))
            sleep(wait)


def _exit_code(result: RunResponse) -> int:
    if result.success:
        return EXIT_OK
    if result.busy:
        return EXIT_BUSY
    return EXIT_FAILED


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Run a learning-platform journey on the automation server.")
    ap.add_argument("job", help="Job name, e.g. login or course-creation")
    ap.add_argument(
        "--server",
        default=os.getenv("AUTOMATION_SERVER_URL", "http://127.0.0.1:3001"),
        help="Automation server base URL",
    )
    ap.add_argument("--headless", action="store_true", help="Ask for a background (headless) browser")
    ap.add_argument("--spec", default=None, help="Alternate script path relative to the server project root")
    ap.add_argument("--wait-if-busy", action="store_true", help="Retry while another run is in progress")
    ap.add_argument("--busy-poll-seconds", type=float, default=10.0)
    ap.add_argument("--max-wait-seconds", type=float, default=600.0)
    ap.add_argument("--pretty", action="store_true", help="Pretty print the result JSON")
    args = ap.parse_args(argv)

    # stdout carries only the result JSON.
    configure_logging(
        os.getenv("AUTOMATION_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "WARNING",
        stream=sys.stderr,
        cache_loggers=False,
    )

    try:
        with AutomationClient(args.server) as client:
            if args.wait_if_busy:
                result = client.run_when_free(
                    args.job,
                    headed=not args.headless,
                    spec=args.spec,
                    poll_seconds=args.busy_poll_seconds,
                    max_wait_seconds=args.max_wait_seconds,
                )
            else:
                result = client.run(args.job, headed=not args.headless, spec=args.spec)
    except httpx.HTTPError as exc:
        logger.error("Automation server unreachable", server=args.server, error=str(exc))
        print(json.dumps({"success": False, "message": f"server unreachable: {exc}"}, ensure_ascii=False))
        return EXIT_UNREACHABLE

    print(json.dumps(result.body, ensure_ascii=False, indent=2 if args.pretty else None))
    return _exit_code(result)


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
