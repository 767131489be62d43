"""Shared pytest fixtures for memlink tests."""

from __future__ import annotations

import pytest
from loguru import logger


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep every test away from the user's ~/.memlink and real credentials."""
    monkeypatch.setenv("MEMLINK_DATA_DIR", str(tmp_path / "memlink"))
    monkeypatch.setenv("MEMLINK_CONFIG_PATH", str(tmp_path / "memlink" / "mcp-config.json"))
    for var in ("MEMLINK_TOKEN", "MEMLINK_API_KEY", "MEMLINK_SERVER_PATH", "MEMLINK_TRANSPORT"):
        monkeypatch.delenv(var, raising=False)
    yield tmp_path


@pytest.fixture
def captured_logs():
    """Collect formatted log messages emitted while the test runs."""
    messages: list[str] = []
    handler_id = logger.add(messages.append, level="DEBUG", format="{level}|{message}")
    yield messages
    logger.remove(handler_id)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
