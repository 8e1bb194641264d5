"""Cheap lexical importance heuristic used to rank messages for retention."""
from __future__ import annotations

import re

from .messages import Message

SYSTEM_WEIGHT = 100
QUESTION_WEIGHT = 20
DETAIL_WEIGHT = 15
LONG_WEIGHT = 10
SHORT_PENALTY = 10
FILLER_PENALTY = 5

LONG_CHARS = 100
SHORT_CHARS = 10

# Words that usually carry personal details worth keeping around.
_MARKERS = re.compile(r"\b(name|address|phone|email|e-mail|date|birthday)\b")
_DIGIT = re.compile(r"\d")
_LAUGHTER = re.compile(r"(haha|hehe|lol|kkk|rsrs)")
_HAS_WORD_CHAR = re.compile(r"[^\W_]")


def score(message: Message) -> int:
    """Return the additive importance score of ``message`` (never below 0)."""
    content = message.content.lower()
    total = 0

    if message.role == "system":
        total += SYSTEM_WEIGHT
    if "?" in content:
        total += QUESTION_WEIGHT
    if _DIGIT.search(content) or _MARKERS.search(content):
        total += DETAIL_WEIGHT
    if len(content) > LONG_CHARS:
        total += LONG_WEIGHT
    if len(content) < SHORT_CHARS:
        total -= SHORT_PENALTY
    if _LAUGHTER.search(content) or not _HAS_WORD_CHAR.search(content):
        total -= FILLER_PENALTY

    return max(0, total)
