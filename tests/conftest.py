# tests/conftest.py
"""
Shared fixtures for the x402 test suite.
"""
import pytest

from app.core.config import settings
from app.x402.gate import reset_gate
from app.x402.replay import reset_replay_cache


@pytest.fixture(autouse=True)
def isolated_audit_log(tmp_path, monkeypatch):
    """Write audit events to a per-test file instead of ./logs."""
    log_path = tmp_path / "x402_audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(log_path))
    return log_path


@pytest.fixture(autouse=True)
def fresh_process_state():
    """Reset process-wide singletons around each test."""
    reset_replay_cache()
    reset_gate()
    yield
    reset_replay_cache()
    reset_gate()


class FakeClock:
    """Controllable time source for the replay cache."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
