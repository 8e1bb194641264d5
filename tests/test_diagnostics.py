from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from chat_relay.diagnostics import ErrorLog, analyze, auto_fixes, is_critical
from chat_relay.errors import AuthError, LLMError

from conftest import FakeClock


@pytest.mark.parametrize(
    "exc, category",
    [
        (LLMError("LLM request failed: Connection error: [Errno 111] refused", retryable=True), "connection"),
        (LLMError("Timeout after 120s: model may be overloaded", retryable=True), "timeout"),
        (LLMError("HTTP 503: busy", status=503), "api_error"),
        (LLMError("HTTP 429: slow down", status=429), "rate_limit"),
        (LLMError("Malformed JSON from API: Expecting value"), "parsing"),
        (LLMError("Invalid response format: no choices"), "parsing"),
        (FileNotFoundError("[Errno 2] No such file or directory: 'x'"), "filesystem"),
        (MemoryError(), "memory"),
        (TimeoutError(), "timeout"),
        (AuthError("Wrong password."), "auth"),
        (RuntimeError("something odd"), "unknown"),
    ],
)
def test_analyze_categories(exc, category):
    report = analyze(exc)
    assert report.category == category
    assert report.possible_causes
    assert report.suggested_fixes


def test_report_carries_context_status_and_stack():
    try:
        raise LLMError("HTTP 500: boom", status=500)
    except LLMError as e:
        report = analyze(e, {"chat_key": "a"}, now=0.0)
    assert report.status == 500
    assert report.context == {"chat_key": "a"}
    assert report.timestamp.startswith("1970-01-01T00:00:00")
    assert "HTTP 500: boom" in report.stack
    assert report.to_dict()["error_type"] == "LLMError"


def test_only_unrecoverable_high_severity_is_critical():
    assert is_critical(analyze(MemoryError()))
    assert not is_critical(analyze(LLMError("Connection error: refused")))
    assert not is_critical(analyze(LLMError("Malformed JSON from API")))


def test_auto_fixes_for_known_categories():
    assert auto_fixes(analyze(LLMError("Connection error")))[0]["action"] == "test_connection"
    assert auto_fixes(analyze(TimeoutError()))[0]["action"] == "raise_timeout"
    assert auto_fixes(analyze(MemoryError()))[0]["action"] == "prune_memory"
    assert auto_fixes(analyze(RuntimeError("odd"))) == []


@pytest.fixture()
def log(tmp_path: Path) -> ErrorLog:
    return ErrorLog(tmp_path / "errors", max_recent=3, max_per_day=2, clock=FakeClock())


def test_record_counts_and_persists(log: ErrorLog):
    first = log.record(LLMError("Connection error: refused"), {"stage": "test"})
    second = log.record(LLMError("Connection error: refused"))
    assert first["occurrences"] == 1
    assert second["occurrences"] == 2
    assert first["id"] != second["id"]

    day_file = log.dir / "error_2024-05-01.json"
    saved = json.loads(day_file.read_text(encoding="utf-8"))
    assert [e["id"] for e in saved] == [first["id"], second["id"]]
    assert saved[0]["context"] == {"stage": "test"}


def test_day_file_is_capped(log: ErrorLog):
    for i in range(4):
        log.record(RuntimeError(f"odd {i}"))
    saved = json.loads((log.dir / "error_2024-05-01.json").read_text(encoding="utf-8"))
    assert [e["message"] for e in saved] == ["odd 2", "odd 3"]


def test_recent_is_newest_first_and_filtered(log: ErrorLog):
    log.record(LLMError("Connection error"))
    log.record(LLMError("HTTP 429: slow", status=429))
    log.record(MemoryError())
    log.record(LLMError("Malformed JSON from API"))

    assert [e["category"] for e in log.recent(10)] == ["parsing", "memory", "rate_limit"]
    assert [e["category"] for e in log.recent(10, severity="high")] == ["memory"]
    assert [e["category"] for e in log.recent(10, category="rate_limit")] == ["rate_limit"]
    assert len(log.recent(1)) == 1


def test_stats_and_most_common(log: ErrorLog):
    assert log.most_common() is None
    log.record(LLMError("Connection error"))
    log.record(LLMError("Connection error"))
    log.record(RuntimeError("odd"))

    stats = log.stats()
    assert stats["total_errors"] == 3
    assert stats["recent_count"] == 3
    assert stats["by_category"] == {"connection": 2, "unknown": 1}
    assert stats["by_type"] == {"LLMError": 2, "RuntimeError": 1}
    assert stats["most_common"] == {"error": "connection:LLMError", "count": 2}
    assert stats["critical_count"] == 2


def test_clear_keeps_files(log: ErrorLog):
    log.record(RuntimeError("odd"))
    assert log.clear() == 1
    assert log.stats()["total_errors"] == 0
    assert list(log.dir.glob("error_*.json"))


def test_corrupt_day_file_is_replaced(log: ErrorLog):
    log.dir.mkdir(parents=True)
    (log.dir / "error_2024-05-01.json").write_text("{oops", encoding="utf-8")
    log.record(RuntimeError("odd"))
    saved = json.loads((log.dir / "error_2024-05-01.json").read_text(encoding="utf-8"))
    assert len(saved) == 1


def test_cleanup_old_removes_stale_files(log: ErrorLog):
    log.record(RuntimeError("today"))
    old = log.dir / "error_2024-04-01.json"
    old.write_text("[]", encoding="utf-8")
    stale = log._clock() - 10 * 86400
    os.utime(old, (stale, stale))
    today = log.dir / "error_2024-05-01.json"
    os.utime(today, (log._clock(), log._clock()))

    assert log.cleanup_old(7) == 1
    assert not old.exists()
    assert today.exists()


def test_cleanup_without_directory(tmp_path: Path):
    assert ErrorLog(tmp_path / "missing").cleanup_old() == 0
