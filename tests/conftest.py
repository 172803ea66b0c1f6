"""Shared pytest setup: local packages on the path, verbose library logs."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))


@pytest.fixture(autouse=True)
def _library_debug_logs(caplog: pytest.LogCaptureFixture) -> pytest.LogCaptureFixture:
    """Capture pagewright and harness debug output so failing tests show it."""

    caplog.set_level(logging.DEBUG, logger="pagewright")
    caplog.set_level(logging.DEBUG, logger="harness")
    return caplog
