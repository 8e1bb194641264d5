"""Bounded log of chat activity (messages, commands, mentions, replies)."""
from __future__ import annotations

import logging
import math
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .fileio import atomic_write_json, read_json
from .messages import Clock, parse_ts, utc_iso

logger = logging.getLogger(__name__)

KINDS = ("message", "command", "mention", "reply")


class ActivityLog:
    """
    Newest-last list of activity entries, capped at ``max_entries``.

    Entries are kept in memory; :meth:`flush` writes them to ``path`` and
    :meth:`load` reads them back on start-up.
    """

    def __init__(
        self,
        path: Union[str, Path],
        *,
        max_entries: int = 1000,
        clock: Optional[Clock] = None,
    ) -> None:
        self.path = Path(path)
        self.max_entries = int(max_entries)
        self._clock = clock or time.time
        self._entries: List[Dict[str, Any]] = []
        self._dirty = False
        self._lock = threading.Lock()

    def load(self) -> int:
        if not self.path.exists():
            return 0
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as e:
            logger.warning("Activity log %s is unreadable (%s); starting empty.", self.path, e)
            return 0
        entries = [e for e in data if isinstance(e, dict)] if isinstance(data, list) else []
        with self._lock:
            self._entries = entries[-self.max_entries:]
            self._dirty = False
            return len(self._entries)

    def flush(self) -> bool:
        with self._lock:
            if not self._dirty:
                return False
            snapshot = list(self._entries)
            self._dirty = False
        try:
            atomic_write_json(self.path, snapshot)
        except OSError as e:
            logger.error("Failed to write activity log: %s", e)
            with self._lock:
                self._dirty = True
            return False
        return True

    def record(self, kind: str, **details: Any) -> Dict[str, Any]:
        if kind not in KINDS:
            raise ValueError(f"Unknown activity type: {kind}")
        entry = {"type": kind, "timestamp": utc_iso(self._clock()), **details}
        with self._lock:
            self._entries.append(entry)
            del self._entries[:-self.max_entries]
            self._dirty = True
        return entry

    def __len__(self) -> int:
        return len(self._entries)

    def entries(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        kind: Optional[str] = None,
        since: Optional[str] = None,
    ) -> Dict[str, Any]:
        """One page of entries, newest first, optionally filtered."""
        with self._lock:
            items = list(reversed(self._entries))
        if kind:
            items = [e for e in items if e.get("type") == kind]
        cutoff = parse_ts(since) if since else None
        if cutoff is not None:
            items = [e for e in items if (parse_ts(e.get("timestamp")) or cutoff) > cutoff]

        page = max(1, int(page))
        limit = max(1, int(limit))
        start = (page - 1) * limit
        return {
            "items": items[start:start + limit],
            "page": page,
            "limit": limit,
            "total": len(items),
            "pages": math.ceil(len(items) / limit) if items else 0,
        }
