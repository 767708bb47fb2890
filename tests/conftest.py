"""Shared fixtures for identity resolution tests.

Provides:
- FakeClock: a manually advanced monotonic clock whose ``sleep`` advances
  time instead of blocking, so rate limits and TTLs are tested instantly
- Test settings with no credentials and no .env lookup
"""

from __future__ import annotations

import pytest

from src.identity.config import Settings


class FakeClock:
    """Deterministic clock. ``sleep`` records the call and advances time."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        SLACK_BOT_TOKEN="",
        NOTION_API_KEY="",
        CALENDAR_ENABLED=False,
        USER_MAPPING_ENABLED=True,
        PARALLEL_PROCESSING=True,
        MAPPING_TIMEOUT=5.0,
    )