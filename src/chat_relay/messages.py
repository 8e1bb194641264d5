"""Conversation message model."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

ROLES = frozenset({"system", "user", "assistant"})

Clock = Callable[[], float]


def utc_iso(ts: Optional[float] = None) -> str:
    if ts is None:
        ts = time.time()
    return datetime.fromtimestamp(ts, timezone.utc).isoformat(timespec="milliseconds")


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass a datetime through) as an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def estimate_tokens(content: str) -> int:
    # ~4 characters per token
    return math.ceil(len(content) / 4)


@dataclass(frozen=True)
class Message:
    """A single stored conversation message."""

    role: str          # "system" | "user" | "assistant"
    content: str
    timestamp: str     # ISO-8601, UTC
    tokens: int

    @classmethod
    def create(cls, role: str, content: str, *, ts: Optional[float] = None) -> "Message":
        return cls(role=role, content=content, timestamp=utc_iso(ts), tokens=estimate_tokens(content))

    @property
    def when(self) -> Optional[datetime]:
        return parse_ts(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "tokens": self.tokens,
        }

    def to_chat(self) -> Dict[str, str]:
        """OpenAI-style ``{role, content}`` pair."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Message":
        content = d["content"]
        tokens = d.get("tokens")
        return cls(
            role=d["role"],
            content=content,
            timestamp=d["timestamp"],
            tokens=estimate_tokens(content) if tokens is None else int(tokens),
        )


@dataclass(frozen=True)
class ScoredMessage:
    """Transient ranking view used while trimming; never persisted."""

    message: Message
    score: int
    index: int
