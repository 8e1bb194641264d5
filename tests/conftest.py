"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_relay.messages import Message  # noqa: E402

# 2024-05-01T12:00:00Z
T0 = 1714564800.0


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLLM:
    """Records every prompt and answers with a canned reply (or raises ``error``)."""

    def __init__(self, reply: str = "ok", clock: Optional[FakeClock] = None, latency: float = 0.0) -> None:
        self.reply = reply
        self.prompts: List[List[Dict[str, str]]] = []
        self.error: Optional[Exception] = None
        self.clock = clock
        self.latency = latency

    def complete(self, messages: Sequence[Dict[str, str]]) -> str:
        self.prompts.append(list(messages))
        if self.clock is not None:
            self.clock.advance(self.latency)
        if self.error is not None:
            raise self.error
        return self.reply

    def info(self) -> Dict[str, str]:
        return {"model": "fake", "endpoint": "memory://"}

    def test_connection(self) -> Dict[str, object]:
        return {"success": True, "response": "OK", "working": True}


def msg(role: str, content: str, ts: float = T0) -> Message:
    return Message.create(role, content, ts=ts)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for memory / auth / backups during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "CHAT_RELAY_CONFIG" or var.startswith("CHAT_RELAY__"):
            monkeypatch.delenv(var, raising=False)
    yield
