from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _quiet_controller_logs(caplog: pytest.LogCaptureFixture) -> None:
    """Keep per-step INFO chatter out of failing test reports."""

    caplog.set_level(logging.WARNING, logger="adaptstep")
