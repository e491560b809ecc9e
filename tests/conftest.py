"""Shared pytest configuration and fixtures for the relay test suite."""

import asyncio
import stat
import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from streamrelay.models import Destination  # noqa: E402


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def fake_ffmpeg(tmp_path):
    """Write an executable shell script that stands in for ffmpeg."""
    def _make(body: str, name: str = "ffmpeg") -> str:
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)
    return _make


@pytest.fixture
def eventually():
    """Poll a predicate until it holds or the timeout expires."""
    async def _wait(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()
    return _wait


@pytest.fixture
def make_destination():
    """Build a Destination from dashboard-style keyword arguments."""
    def _make(**overrides) -> Destination:
        record = {
            "id": "twitch",
            "name": "Twitch",
            "rtmpUrl": "rtmp://live.twitch.tv/app",
            "streamKey": "live_abc123",
        }
        record.update(overrides)
        return Destination.model_validate(record)
    return _make
