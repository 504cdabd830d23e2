"""Shared fixtures for bridge tests."""

import pytest

from bridge.app.core.config import Settings


class FakeClock:
    """Manually advanced wall clock for time-dependent tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None, **overrides)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings(api_key="secret")
