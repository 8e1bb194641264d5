from __future__ import annotations

from pathlib import Path

import pytest

from chat_relay.errors import LLMError
from chat_relay.monitor import PerformanceMonitor
from chat_relay.orchestrator import FALLBACK_REPLY, ChatOrchestrator
from chat_relay.store import ConversationStore

from conftest import FakeClock, FakeLLM


class FailingLLM:
    def complete(self, messages):
        raise LLMError("backend down")


def make(tmp_path: Path, llm, **kw) -> ChatOrchestrator:
    clock = FakeClock()
    store = ConversationStore(tmp_path / "memory.json", clock=clock)
    return ChatOrchestrator(store, llm, system_prompt="You are a test bot.", clock=clock, **kw)


def test_handle_records_both_turns(tmp_path: Path):
    llm = FakeLLM(reply="Nice to meet you")
    orch = make(tmp_path, llm)

    assert orch.handle("alice", "  Hi, I am Alice  ") == "Nice to meet you"
    history = orch.store.thread("alice")
    assert [(m.role, m.content) for m in history] == [("user", "Hi, I am Alice"), ("assistant", "Nice to meet you")]


def test_prompt_starts_with_system_message_and_ends_with_user_turn(tmp_path: Path):
    llm = FakeLLM()
    orch = make(tmp_path, llm)
    orch.handle("alice", "first")
    orch.handle("alice", "second")

    prompt = llm.prompts[-1]
    assert prompt[0]["role"] == "system"
    assert prompt[0]["content"].startswith("You are a test bot.")
    assert "Current date: " in prompt[0]["content"]
    assert "May 2024" in prompt[0]["content"]
    assert [m["content"] for m in prompt[1:]] == ["first", "ok", "second"]


def test_prompt_history_is_trimmed_to_cap(tmp_path: Path):
    llm = FakeLLM()
    orch = make(tmp_path, llm, history_cap=6)
    for i in range(10):
        orch.handle("bob", f"message number {i} about hiking plans")

    prompt = llm.prompts[-1]
    assert len(prompt) <= 1 + 6
    assert prompt[-1]["content"] == "message number 9 about hiking plans"


def test_empty_reply_falls_back_without_storing(tmp_path: Path):
    orch = make(tmp_path, FakeLLM(reply="   "))
    assert orch.handle("c", "hello") == FALLBACK_REPLY
    assert [m.role for m in orch.store.thread("c")] == ["user"]


def test_backend_error_propagates_after_user_turn_is_stored(tmp_path: Path):
    orch = make(tmp_path, FailingLLM())
    with pytest.raises(LLMError):
        orch.handle("d", "hello")
    assert [m.content for m in orch.store.thread("d")] == ["hello"]


def test_empty_message_rejected(tmp_path: Path):
    orch = make(tmp_path, FakeLLM())
    with pytest.raises(ValueError):
        orch.handle("e", "   ")


def test_prompt_reflects_cleaning_of_a_confused_history(tmp_path: Path):
    llm = FakeLLM()
    orch = make(tmp_path, llm)
    for role, text in [
        ("user", "pizza recipes with basil"),
        ("assistant", "quantum physics lecture notes"),
        ("user", "football league standings"),
        ("assistant", "gardening roses during spring"),
        ("assistant", "gardening roses during spring"),
    ]:
        orch.store.append("f", role, text)

    orch.handle("f", "weather forecast tomorrow morning")

    sent = [m["content"] for m in llm.prompts[-1][1:]]
    assert sent == [
        "pizza recipes with basil",
        "quantum physics lecture notes",
        "football league standings",
        "gardening roses during spring",
        "weather forecast tomorrow morning",
    ]
    # the stored thread itself is left as it was
    assert len(orch.store.thread("f")) == 7


def test_monitor_times_backend_calls(tmp_path: Path):
    clock = FakeClock()
    store = ConversationStore(tmp_path / "memory.json", clock=clock)
    monitor = PerformanceMonitor(clock=clock)
    llm = FakeLLM(reply="fine", clock=clock, latency=2.5)
    orch = ChatOrchestrator(store, llm, system_prompt="sys", monitor=monitor, clock=clock)

    orch.handle("g", "hello")
    llm.error = LLMError("backend down")
    with pytest.raises(LLMError):
        orch.handle("g", "again")

    stats = monitor.stats()
    assert stats["total_requests"] == 2
    assert stats["avg_time"] == 2.5
    assert stats["success_rate"] == 50.0
    assert stats["by_type"]["llm"]["tokens"] == 1
