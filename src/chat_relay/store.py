"""Single-file JSON conversation store keyed by chat (thread-safe, atomic)."""
from __future__ import annotations

import json
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import StoreError
from .fileio import atomic_write_text, dumps
from .messages import ROLES, Clock, Message, parse_ts, utc_iso

logger = logging.getLogger(__name__)

READ_LIMIT_MIN = 1
READ_LIMIT_MAX = 100
DEFAULT_MAX_BYTES = 10 * 1024 * 1024


# -----------------------------
# Load result & schema
# -----------------------------
@dataclass(frozen=True)
class LoadResult:
    """Outcome of :meth:`ConversationStore.load`.

    ``error`` is ``None`` on success, otherwise one of ``"missing"``,
    ``"parse"`` or ``"schema"``. A missing file still counts as ``ok``.
    """
    ok: bool
    error: Optional[str] = None
    detail: str = ""
    conversations: int = 0


class _SchemaError(ValueError):
    pass


def _validate(data: Any) -> Dict[str, List[Message]]:
    """Turn the persisted form into typed conversations or raise _SchemaError."""
    if not isinstance(data, dict):
        raise _SchemaError(f"top level must be an object, got {type(data).__name__}")
    out: Dict[str, List[Message]] = {}
    for key, items in data.items():
        if not isinstance(items, list):
            raise _SchemaError(f"conversation {key!r} is not a list")
        msgs: List[Message] = []
        for i, item in enumerate(items):
            if not isinstance(item, dict):
                raise _SchemaError(f"{key!r}[{i}] is not an object")
            role = item.get("role")
            if role not in ROLES:
                raise _SchemaError(f"{key!r}[{i}] has invalid role {role!r}")
            if not isinstance(item.get("content"), str):
                raise _SchemaError(f"{key!r}[{i}] content must be a string")
            if not isinstance(item.get("timestamp"), str):
                raise _SchemaError(f"{key!r}[{i}] timestamp must be a string")
            tokens = item.get("tokens")
            if tokens is not None and (isinstance(tokens, bool) or not isinstance(tokens, int)):
                raise _SchemaError(f"{key!r}[{i}] tokens must be an integer")
            msgs.append(Message.from_dict(item))
        out[str(key)] = msgs
    return out


# -----------------------------
# ConversationStore
# -----------------------------
class ConversationStore:
    """In-memory map of chat key -> messages, flushed wholesale to one JSON file.

    Layout on disk::

        {"<chat key>": [{"role", "content", "timestamp", "tokens"}, ...], ...}

    Invalid appends return ``False`` instead of raising: this sits on a
    best-effort logging path and must never take the host down.
    """

    def __init__(
        self,
        path: Union[str, Path],
        *,
        max_messages: int = 50,
        max_bytes: int = DEFAULT_MAX_BYTES,
        autosave_every: int = 10,
        clock: Optional[Clock] = None,
    ) -> None:
        self.path = Path(path)
        self.max_messages = max(1, int(max_messages))
        self.max_bytes = int(max_bytes)
        self.autosave_every = int(autosave_every)
        self._clock = clock or time.time
        self._data: Dict[str, List[Message]] = {}
        self._unsaved: Counter = Counter()
        self._lock = threading.RLock()

    # --------- persistence ----------
    def load(self) -> LoadResult:
        """Replace the in-memory store with the file contents.

        Never raises: an unreadable file degrades to an empty store that is
        written straight back so the next start is clean.
        """
        with self._lock:
            self._unsaved.clear()
            if not self.path.exists():
                self._data = {}
                logger.info("No memory file at %s; starting empty.", self.path)
                self.save()
                return LoadResult(ok=True, error="missing")

            try:
                raw = self.path.read_text(encoding="utf-8")
                data = json.loads(raw)
            except (OSError, ValueError) as e:
                return self._heal("parse", str(e))

            try:
                self._data = _validate(data)
            except _SchemaError as e:
                return self._heal("schema", str(e))

            logger.info("Loaded %d conversation(s) from %s", len(self._data), self.path)
            return LoadResult(ok=True, conversations=len(self._data))

    def _heal(self, kind: str, detail: str) -> LoadResult:
        logger.error("Memory file %s is unusable (%s: %s); resetting to empty.", self.path, kind, detail)
        bad = self.path.with_suffix(".corrupt.json")
        try:
            self.path.replace(bad)
        except OSError as e:
            logger.warning("Could not keep corrupt copy at %s: %s", bad, e)
        self._data = {}
        self.save()
        return LoadResult(ok=False, error=kind, detail=detail)

    def save(self) -> bool:
        """Serialize the whole store and overwrite the backing file."""
        with self._lock:
            text = dumps(self._serializable())
            if len(text.encode("utf-8")) > self.max_bytes:
                text = self._compact()
            try:
                atomic_write_text(self.path, text)
            except OSError as e:
                logger.error("Failed to save memory to %s: %s", self.path, e)
                return False
            self._unsaved.clear()
            return True

    def _serializable(self) -> Dict[str, List[Dict[str, Any]]]:
        return {k: [m.to_dict() for m in msgs] for k, msgs in self._data.items()}

    def _compact(self) -> str:
        """Halve the longest conversations until the serialized form fits."""
        before = sum(len(v) for v in self._data.values())
        text = dumps(self._serializable())
        while len(text.encode("utf-8")) > self.max_bytes:
            key = max(self._data, key=lambda k: len(self._data[k]), default=None)
            if key is None or len(self._data[key]) <= 1:
                break
            msgs = self._data[key]
            self._data[key] = msgs[len(msgs) // 2:]
            text = dumps(self._serializable())
        after = sum(len(v) for v in self._data.values())
        logger.warning(
            "Memory exceeded %d bytes; compacted %d -> %d messages.", self.max_bytes, before, after
        )
        return text

    # --------- core API ----------
    def append(self, chat_key: str, role: str, content: str) -> bool:
        if not chat_key or role not in ROLES:
            return False
        if not isinstance(content, str) or not content.strip():
            return False

        with self._lock:
            msgs = self._data.setdefault(chat_key, [])
            msgs.append(Message.create(role, content, ts=self._clock()))
            if len(msgs) > self.max_messages:
                del msgs[: len(msgs) - self.max_messages]

            self._unsaved[chat_key] += 1
            if self.autosave_every > 0 and self._unsaved[chat_key] >= self.autosave_every:
                self.save()
        return True

    def read(
        self,
        chat_key: str,
        limit: int = 20,
        *,
        role: Optional[str] = None,
        since: Union[str, datetime, None] = None,
    ) -> List[Message]:
        """Return the last ``limit`` messages (clamped to 1..100) after filtering."""
        limit = min(READ_LIMIT_MAX, max(READ_LIMIT_MIN, int(limit)))
        cutoff = parse_ts(since)
        with self._lock:
            msgs = self._data.get(chat_key)
            if not msgs:
                return []
            out = [
                m for m in msgs
                if (role is None or m.role == role)
                and (cutoff is None or (m.when is not None and m.when >= cutoff))
            ]
        return out[-limit:]

    def thread(self, chat_key: str) -> List[Message]:
        with self._lock:
            return list(self._data.get(chat_key, ()))

    def chat_keys(self) -> List[str]:
        with self._lock:
            return list(self._data)

    def clear(self, chat_key: str) -> int:
        with self._lock:
            msgs = self._data.pop(chat_key, None)
            if msgs is None:
                return 0
            self._unsaved.pop(chat_key, None)
            self.save()
        logger.info("Cleared chat %s (%d messages)", chat_key, len(msgs))
        return len(msgs)

    def clear_all(self) -> Dict[str, int]:
        with self._lock:
            removed = {
                "conversations": len(self._data),
                "messages": sum(len(v) for v in self._data.values()),
            }
            self._data = {}
            self.save()
        logger.info("Cleared all memory: %(conversations)d chats, %(messages)d messages", removed)
        return removed

    def prune_inactive(self, days: float = 7) -> Dict[str, int]:
        """Drop conversations that are empty or whose last message is older than ``days``."""
        cutoff = datetime.fromtimestamp(self._clock(), timezone.utc) - timedelta(days=days)
        removed_chats = removed_messages = 0
        with self._lock:
            for key in list(self._data):
                msgs = self._data[key]
                last = msgs[-1].when if msgs else None
                if msgs and (last is None or last >= cutoff):
                    continue
                removed_chats += 1
                removed_messages += len(msgs)
                del self._data[key]
            if removed_chats:
                self.save()
        if removed_chats:
            logger.info("Pruned %d inactive chat(s) (%d messages)", removed_chats, removed_messages)
        return {"conversations": removed_chats, "messages": removed_messages}

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            roles: Counter = Counter()
            tokens = 0
            for msgs in self._data.values():
                for m in msgs:
                    roles[m.role] += 1
                    tokens += m.tokens
            largest = max(self._data, key=lambda k: len(self._data[k]), default=None)
            return {
                "conversations": len(self._data),
                "messages": sum(roles.values()),
                "tokens": tokens,
                "roles": {r: roles.get(r, 0) for r in sorted(ROLES)},
                "bytes": len(json.dumps(self._serializable(), ensure_ascii=False).encode("utf-8")),
                "largest": largest,
            }

    # --------- backup support ----------
    def export(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "version": "1.0",
                "timestamp": utc_iso(self._clock()),
                "data": self._serializable(),
                "stats": self.stats(),
            }

    def import_data(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the store with an :meth:`export` payload and persist it."""
        if not isinstance(payload, dict) or "data" not in payload:
            raise StoreError("Backup payload has no 'data' section")
        try:
            data = _validate(payload["data"])
        except _SchemaError as e:
            raise StoreError(f"Backup payload is invalid: {e}") from e

        with self._lock:
            before = self.stats()
            self._data = data
            self.save()
            after = self.stats()
        logger.info(
            "Imported memory: %d -> %d chats, %d -> %d messages",
            before["conversations"], after["conversations"], before["messages"], after["messages"],
        )
        return {"before": before, "after": after}
