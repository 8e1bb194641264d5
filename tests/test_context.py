from __future__ import annotations

from chat_relay.context import (
    auto_clean,
    clean,
    collapse_duplicates,
    has_contradiction,
    is_confused,
    select_important,
    suppress_loops,
    topic_similarity,
    trim,
)

from conftest import msg


def filler(n: int, start: int = 0):
    return [msg("user" if i % 2 == 0 else "assistant", f"plain filler line {i}") for i in range(start, start + n)]


# -----------------------------
# trim
# -----------------------------
def test_trim_within_cap_returns_same_object():
    history = filler(10)
    assert trim(history, 10) is history
    assert trim(history, 100) is history


def test_trim_output_never_exceeds_cap():
    history = filler(57)
    for cap in range(0, 60):
        assert len(trim(history, cap)) <= cap


def test_trim_keeps_recent_tail_and_best_older():
    history = filler(20)
    history[3] = msg("user", "what is your name?")
    out = trim(history, 10)

    assert len(out) == 10
    assert out[-8:] == history[-8:]
    assert history[3] in out[:2]


def test_trim_keeps_system_message_for_any_positive_cap():
    for cap in (1, 2, 5, 10, 50):
        history = [msg("system", "You are helpful")] + filler(200)
        out = trim(history, cap)
        assert out[0].role == "system"
        assert len(out) <= cap


def test_trim_restores_chronological_order_of_selected():
    history = filler(30)
    history[2] = msg("user", "my birthday is 1 May?")
    history[9] = msg("system", "stay on topic")
    out = trim(history, 10)
    assert out[:2] == [history[2], history[9]]


def test_trim_ties_keep_earliest():
    history = filler(20)
    out = trim(history, 10)
    assert out[:2] == history[:2]


def test_select_important_zero():
    assert select_important(filler(5), 0) == []


# -----------------------------
# duplicates & loops
# -----------------------------
def test_collapse_consecutive_duplicates():
    history = [msg("user", "hi"), msg("user", "hi"), msg("assistant", "ok")]
    out = collapse_duplicates(history)
    assert [(m.role, m.content) for m in out] == [("user", "hi"), ("assistant", "ok")]


def test_collapse_keeps_non_adjacent_repeats():
    history = [msg("user", "hi"), msg("assistant", "ok"), msg("user", "hi")]
    assert collapse_duplicates(history) == history


def test_loop_suppression_removes_thrice_repeated_key():
    q = "same question"
    history = filler(5) + [msg("user", q), msg("assistant", "a"), msg("user", q), msg("assistant", "b"), msg("user", q)]
    out = suppress_loops(history)
    assert sum(1 for m in out if m.content == q) <= 2
    assert out[:5] == history[:5]


def test_loop_suppression_keeps_twice_repeated_key():
    history = [msg("user", "again?"), msg("assistant", "yes"), msg("user", "again?")]
    assert suppress_loops(history) == history


def test_loop_suppression_ignores_messages_outside_window():
    q = "recurring prompt fragment"
    history = [msg("user", q) for _ in range(3)] + filler(20)
    assert suppress_loops(history) == history


def test_loop_key_uses_first_fifty_chars():
    base = "x" * 50
    history = [msg("user", base + "a"), msg("user", base + "b"), msg("user", base + "c"), msg("assistant", "fine")]
    out = suppress_loops(history)
    assert [m.content for m in out] == ["fine"]


def test_clean_collapses_before_counting_loops():
    q = "are you there"
    history = [msg("user", q), msg("user", q), msg("user", q), msg("assistant", "yes I am here")]
    out = clean(history)
    assert [(m.role, m.content) for m in out] == [("user", q), ("assistant", "yes I am here")]


# -----------------------------
# confusion
# -----------------------------
def test_topic_similarity():
    assert topic_similarity("the weather today", "the weather tomorrow") == 1 / 3
    assert topic_similarity("a b c", "d e f") == 0.0
    assert topic_similarity("Python rocks", "python ROCKS") == 1.0


def test_contradiction_pairs():
    assert has_contradiction("Yes, that works.", "No, it does not.")
    assert has_contradiction("you can", "you can't")
    assert not has_contradiction("I know", "knowledge is power")
    assert not has_contradiction("yesterday", "nobody")


def coherent_window():
    text = "planning tomorrow's hiking trip through mountain trails"
    return [msg("user" if i % 2 == 0 else "assistant", f"{text} part {i}") for i in range(6)]


def test_coherent_window_is_not_confused():
    assert is_confused(coherent_window()) is False


def test_topic_shifts_flag_confusion():
    history = [
        msg("user", "pizza recipes with basil"),
        msg("assistant", "quantum physics lecture notes"),
        msg("user", "football league standings"),
        msg("assistant", "gardening roses during spring"),
        msg("user", "pizza recipes with basil"),
        msg("assistant", "pizza recipes with basil"),
    ]
    assert is_confused(history) is True


def test_repeated_contradictions_flag_confusion():
    text = "about dinner plans tonight"
    history = [
        msg("user", f"{text} question"),
        msg("assistant", f"yes {text}"),
        msg("user", f"{text} question"),
        msg("assistant", f"no {text}"),
        msg("user", f"{text} question"),
        msg("assistant", f"yes {text}"),
    ]
    assert is_confused(history) is True


def test_short_history_is_never_confused():
    assert is_confused([msg("user", "a"), msg("user", "b"), msg("user", "c")]) is False


def test_auto_clean_leaves_healthy_history_untouched():
    history = coherent_window()
    assert auto_clean(history, 100) is history


def test_auto_clean_trims_when_over_cap():
    history = coherent_window() * 5
    out = auto_clean(history, 10)
    assert len(out) <= 10


def test_auto_clean_collapses_confused_window_under_cap():
    history = [
        msg("user", "pizza recipes with basil"),
        msg("assistant", "quantum physics lecture notes"),
        msg("user", "football league standings"),
        msg("assistant", "gardening roses during spring"),
        msg("user", "weather forecast tomorrow morning"),
        msg("user", "weather forecast tomorrow morning"),
    ]
    assert len(history) < 100
    assert is_confused(history) is True

    out = auto_clean(history, 100)
    assert out is not history
    assert [m.content for m in out] == [
        "pizza recipes with basil",
        "quantum physics lecture notes",
        "football league standings",
        "gardening roses during spring",
        "weather forecast tomorrow morning",
    ]
