"""Context cleaning applied to a conversation before it is sent to the LLM.

Pipeline (see :func:`clean`):

1. collapse consecutive duplicates,
2. suppress short repetition loops in the recent window,
3. trim to the history cap, keeping the recent tail plus the highest-scoring
   older messages.

:func:`auto_clean` runs the pipeline only when the history is over the cap
or :func:`is_confused` flags it. All thresholds are tunable module constants.
"""
from __future__ import annotations

import logging
import re
from collections import Counter
from typing import List, Sequence, Set, Tuple

from .messages import Message, ScoredMessage
from .scoring import score

logger = logging.getLogger(__name__)

DEFAULT_CAP = 100
TAIL_SHARE = 0.8

LOOP_WINDOW = 20
LOOP_KEY_CHARS = 50
LOOP_MAX_REPEATS = 2

CONFUSION_WINDOW = 6
CONFUSION_MIN_MESSAGES = 4
SIMILARITY_THRESHOLD = 0.3
MAX_TOPIC_CHANGES = 3
MAX_CONTRADICTIONS = 1
MIN_WORD_CHARS = 4

CONTRADICTIONS: Tuple[Tuple[str, str], ...] = (
    ("yes", "no"),
    ("true", "false"),
    ("correct", "wrong"),
    ("can", "can't"),
)

_WORD = re.compile(r"[\w']+")


# -----------------------------
# Trimming
# -----------------------------
def _split(cap: int) -> Tuple[int, int]:
    tail = int(cap * TAIL_SHARE)
    return tail, cap - tail


def select_important(messages: Sequence[Message], count: int) -> List[Message]:
    """Top ``count`` messages by score, returned in their original order."""
    if count <= 0 or not messages:
        return []
    scored = [ScoredMessage(m, score(m), i) for i, m in enumerate(messages)]
    # sorted() is stable, so equal scores keep chronological order
    ranked = sorted(scored, key=lambda s: s.score, reverse=True)[:count]
    ranked.sort(key=lambda s: s.index)
    return [s.message for s in ranked]


def trim(messages: List[Message], cap: int = DEFAULT_CAP) -> List[Message]:
    """Bound ``messages`` to ``cap`` entries.

    A list already within the cap is returned as-is (the same object).
    Otherwise the most recent 80% of the cap is kept verbatim and the rest of
    the budget goes to the highest-scoring older messages.
    """
    if len(messages) <= cap:
        return messages
    if cap <= 0:
        return []

    tail_n, allowance = _split(cap)
    split_at = len(messages) - tail_n
    older, recent = messages[:split_at], messages[split_at:]
    if not older:
        return list(recent)
    return select_important(older, allowance) + list(recent)


# -----------------------------
# Duplicates & loops
# -----------------------------
def collapse_duplicates(messages: Sequence[Message]) -> List[Message]:
    """Drop messages identical (role and content) to the previous kept one."""
    out: List[Message] = []
    for m in messages:
        if out and out[-1].role == m.role and out[-1].content == m.content:
            continue
        out.append(m)
    return out


def _loop_key(m: Message) -> Tuple[str, str]:
    return m.role, m.content[:LOOP_KEY_CHARS]


def suppress_loops(messages: Sequence[Message], window: int = LOOP_WINDOW) -> List[Message]:
    """Remove recent messages whose key repeats more than twice in the window.

    Only the last ``window`` messages are inspected or touched.
    """
    if window <= 0:
        return list(messages)
    split_at = max(0, len(messages) - window)
    head, recent = list(messages[:split_at]), messages[split_at:]
    counts = Counter(_loop_key(m) for m in recent)
    kept = [m for m in recent if counts[_loop_key(m)] <= LOOP_MAX_REPEATS]
    if len(kept) != len(recent):
        logger.debug("Suppressed %d looping message(s)", len(recent) - len(kept))
    return head + kept


# -----------------------------
# Confusion heuristic
# -----------------------------
def _words(text: str) -> Set[str]:
    return set(_WORD.findall(text.lower()))


def topic_similarity(a: str, b: str) -> float:
    """Jaccard similarity over words of at least four characters."""
    wa = {w for w in _words(a) if len(w) >= MIN_WORD_CHARS}
    wb = {w for w in _words(b) if len(w) >= MIN_WORD_CHARS}
    union = wa | wb
    if not union:
        return 0.0
    return len(wa & wb) / len(union)


def has_contradiction(a: str, b: str) -> bool:
    wa, wb = _words(a), _words(b)
    for x, y in CONTRADICTIONS:
        if (x in wa and y in wb) or (y in wa and x in wb):
            return True
    return False


def is_confused(messages: Sequence[Message]) -> bool:
    if len(messages) < CONFUSION_MIN_MESSAGES:
        return False

    recent = list(messages[-CONFUSION_WINDOW:])
    topic_changes = sum(
        1
        for prev, curr in zip(recent, recent[1:])
        if topic_similarity(prev.content, curr.content) < SIMILARITY_THRESHOLD
    )

    replies = [m for m in recent if m.role == "assistant"]
    contradictions = sum(
        1 for prev, curr in zip(replies, replies[1:]) if has_contradiction(prev.content, curr.content)
    )

    return topic_changes > MAX_TOPIC_CHANGES or contradictions > MAX_CONTRADICTIONS


# -----------------------------
# Pipeline
# -----------------------------
def clean(messages: Sequence[Message], cap: int = DEFAULT_CAP) -> List[Message]:
    # collapse first so immediate repeats do not inflate the loop counts
    out = collapse_duplicates(messages)
    out = suppress_loops(out)
    return trim(out, cap)


def auto_clean(messages: List[Message], cap: int = DEFAULT_CAP) -> List[Message]:
    """Clean when the history is confused or over the cap, else return it untouched."""
    if is_confused(messages):
        logger.info("Confused context detected (%d messages); cleaning", len(messages))
        return clean(messages, cap)
    if len(messages) > cap:
        return clean(messages, cap)
    return messages
