from __future__ import annotations

import pytest
import structlog


@pytest.fixture(autouse=True)
def _restore_structlog_config():
    # configure_logging() rebinds structlog globally (e.g. to a captured stderr); keep tests isolated.
    saved = structlog.get_config()
    yield
    structlog.configure(**saved)
