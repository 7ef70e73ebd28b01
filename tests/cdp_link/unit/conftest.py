"""Shared fixtures for cdp_link unit tests."""

from collections.abc import Callable

import pytest

from cdp_link.transport.retry_policy import RetryPolicy
from tests.helpers.fakes import RecordingOpener, ScriptedProber


class FakeClock:
    """Settable wall clock for last_sync assertions."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def opener() -> RecordingOpener:
    return RecordingOpener()


@pytest.fixture
def prober_factory() -> Callable[..., ScriptedProber]:
    """Build ScriptedProbers: ``prober_factory([None, 9001], default=9000)``."""

    def _make(*args: object, **kwargs: object) -> ScriptedProber:
        return ScriptedProber(*args, **kwargs)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Backoff short enough for tests that really sleep."""
    return RetryPolicy(base_delay_seconds=0.01, max_delay_seconds=0.04)


@pytest.fixture(autouse=True)
def quiet_perf_tracking(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep timing lines out of test output."""
    monkeypatch.setattr("cdp_link.const.CDP_LINK_PERF_TRACKING", False)
