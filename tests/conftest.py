"""
Shared test fixtures.
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from context_engine.config import Settings


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def word_count(text: str) -> int:
    """Exact encoder for tests: one token per word."""
    return len(text.split())


def words(n: int, word: str = "word") -> str:
    """Text that costs exactly ``n`` tokens under ``word_count``."""
    return " ".join([word] * n)


def make_settings(**overrides) -> Settings:
    """Settings isolated from the environment and any .env file."""
    with patch.dict(os.environ, {}, clear=True):
        return Settings(_env_file=None, **overrides)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings(
        max_tokens=100,
        reserve_tokens=20,
        default_system_prompt="You are a test assistant.",
    )
