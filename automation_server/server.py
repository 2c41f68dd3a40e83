from __future__ import annotations

from types import FrameType

import uvicorn

from automation_server.app import create_app
from automation_server.logging_config import configure_logging
from automation_server.runner import ExclusiveJobRunner
from automation_server.settings import AutomationSettings


class AutomationServer(uvicorn.Server):
    """uvicorn server that stops the in-flight job as soon as a signal arrives.

    uvicorn waits for open requests before running shutdown hooks, and a run
    request stays open for as long as its job does.
    """

    def __init__(self, config: uvicorn.Config, runner: ExclusiveJobRunner):
        super().__init__(config)
        self.runner = runner

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        self.runner.terminate_current()
        super().handle_exit(sig, frame)


def main() -> None:
    settings = AutomationSettings()
    configure_logging(settings.log_level)
    app = create_app(settings)
    log_level = settings.log_level.lower()
    if log_level not in {"critical", "error", "warning", "info", "debug", "trace"}:
        log_level = "info"
    config = uvicorn.Config(app, host=settings.host, port=settings.port, log_level=log_level)
    AutomationServer(config, app.state.runner).run()


if __name__ == "__main__":
    main()
