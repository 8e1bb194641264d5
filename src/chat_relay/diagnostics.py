"""Error analysis and the persistent error log.

:func:`analyze` turns an exception into an :class:`ErrorReport` with a
category, a severity, likely causes and suggested fixes. :class:`ErrorLog`
keeps counters and the most recent reports in memory and appends every
report to a per-day JSON file (``error_YYYY-MM-DD.json``).
"""
from __future__ import annotations

import logging
import re
import secrets
import threading
import time
import traceback
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

from .errors import AuthError, LLMError
from .fileio import atomic_write_json, read_json
from .messages import Clock, utc_iso

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high")


@dataclass(frozen=True)
class Category:
    name: str
    severity: str
    pattern: Pattern[str]
    causes: Tuple[str, ...]
    fixes: Tuple[str, ...]
    recoverable: bool = True


# Checked in order; the first pattern found in "<type>: <message>" wins.
CATEGORIES: Tuple[Category, ...] = (
    Category(
        "connection", "high",
        re.compile(r"connect|refused|unreachable|name or service|getaddrinfo|network"),
        causes=(
            "The LLM server is not running",
            "Wrong endpoint URL or port",
            "A firewall is blocking the connection",
        ),
        fixes=(
            "Start the LLM server and load a model",
            "Check llm.endpoint in the config",
            "Run POST /api/test-llm to check the connection",
        ),
    ),
    Category(
        "timeout", "medium",
        re.compile(r"timeout|timed out|aborted"),
        causes=(
            "The model is too slow for the hardware",
            "max_tokens is too high",
            "The server is overloaded",
        ),
        fixes=(
            "Raise llm.timeout",
            "Lower llm.max_tokens",
            "Use a smaller or quantized model",
        ),
    ),
    Category(
        "memory", "high",
        re.compile(r"memoryerror|out of memory|heap|enomem|cannot allocate"),
        causes=(
            "The process ran out of RAM",
            "Too many conversations are kept in memory",
        ),
        fixes=(
            "Lower memory.max_messages",
            "Run /cleanup to drop inactive chats",
            "Restart the relay",
        ),
        recoverable=False,
    ),
    Category(
        "auth", "medium",
        re.compile(r"autherror|login|password|session"),
        causes=("Wrong credentials", "Expired session"),
        fixes=("Send /login again", "Create the user with /adduser or POST /api/users"),
    ),
    Category(
        "rate_limit", "low",
        re.compile(r"\brate\b|rate limit|too many requests|\b429\b"),
        causes=("Too many requests in a short time",),
        fixes=("Wait a moment before retrying", "Raise rate_limit.per_minute"),
    ),
    Category(
        "api_error", "high",
        re.compile(r"\bhttp [45]\d\d\b|api error|\b(400|401|403|404|500|502|503)\b"),
        causes=(
            "Invalid request parameters",
            "The model name is not loaded on the server",
            "Internal error on the LLM server",
        ),
        fixes=(
            "Check llm.model and the sampling settings",
            "Check the LLM server's own logs",
        ),
    ),
    Category(
        "filesystem", "medium",
        re.compile(r"no such file|permission denied|filenotfound|file|directory|disk"),
        causes=("A data file or directory is missing", "No permission to write", "The disk is full"),
        fixes=("Check the data, backup and log paths", "Check free disk space"),
    ),
    Category(
        "parsing", "medium",
        re.compile(r"json|parse|decode|syntax|invalid response"),
        causes=("Malformed response from the LLM server", "Corrupt data file"),
        fixes=("Check the LLM server version", "Restore the latest backup"),
    ),
)

UNKNOWN = Category(
    "unknown", "medium", re.compile(r"$^"),
    causes=("Unexpected error",),
    fixes=("Check the logs for the full traceback", "Restart the relay if it persists"),
)


@dataclass
class ErrorReport:
    error_type: str
    message: str
    timestamp: str
    category: str
    severity: str
    recoverable: bool
    possible_causes: List[str]
    suggested_fixes: List[str]
    context: Dict[str, Any] = field(default_factory=dict)
    status: Optional[int] = None
    stack: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _classify(exc: BaseException) -> Category:
    if isinstance(exc, MemoryError):
        return _by_name("memory")
    if isinstance(exc, TimeoutError):
        return _by_name("timeout")
    if isinstance(exc, ConnectionError):
        return _by_name("connection")
    if isinstance(exc, AuthError):
        return _by_name("auth")
    if isinstance(exc, LLMError) and exc.status is not None:
        if exc.status == 429:
            return _by_name("rate_limit")
        if exc.status >= 400:
            return _by_name("api_error")
    text = f"{type(exc).__name__}: {exc}".lower()
    for category in CATEGORIES:
        if category.pattern.search(text):
            return category
    return UNKNOWN


def _by_name(name: str) -> Category:
    return next(c for c in CATEGORIES if c.name == name)


def analyze(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[float] = None,
) -> ErrorReport:
    """Categorize ``exc`` and attach causes and fixes for an operator."""
    category = _classify(exc)
    stack = None
    if exc.__traceback__ is not None:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return ErrorReport(
        error_type=type(exc).__name__,
        message=str(exc) or type(exc).__name__,
        timestamp=utc_iso(now),
        category=category.name,
        severity=category.severity,
        recoverable=category.recoverable,
        possible_causes=list(category.causes),
        suggested_fixes=list(category.fixes),
        context=dict(context or {}),
        status=getattr(exc, "status", None),
        stack=stack,
    )


def is_critical(report: ErrorReport) -> bool:
    return report.severity == "high" and not report.recoverable


def auto_fixes(report: ErrorReport) -> List[Dict[str, str]]:
    """Concrete follow-up actions for categories that have one."""
    if report.category == "connection":
        return [{
            "action": "test_connection",
            "description": "Check that the LLM endpoint answers",
            "how": "POST /api/test-llm",
        }]
    if report.category == "timeout":
        return [{
            "action": "raise_timeout",
            "description": "Give the model more time per request",
            "how": "POST /api/config {\"llm\": {\"timeout\": 180}}",
        }]
    if report.category == "memory":
        return [{
            "action": "prune_memory",
            "description": "Drop inactive conversations",
            "how": "/cleanup 3",
        }]
    if report.category == "auth":
        return [{
            "action": "relogin",
            "description": "Start a new admin session",
            "how": "/login",
        }]
    return []


class ErrorLog:
    """
    Records analyzed errors.

    Keeps per ``category:type`` counters and the ``max_recent`` newest
    reports in memory. Every report is also appended to the day's file,
    which keeps at most ``max_per_day`` entries. Writing the file is
    best effort: a failed write is logged and the report is still counted.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        *,
        max_recent: int = 50,
        max_per_day: int = 100,
        clock: Optional[Clock] = None,
    ) -> None:
        self.dir = Path(directory)
        self.max_recent = int(max_recent)
        self.max_per_day = int(max_per_day)
        self._clock = clock or time.time
        self._counts: Counter = Counter()
        self._recent: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def _day_file(self, ts: float) -> Path:
        day = datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%d")
        return self.dir / f"error_{day}.json"

    def record(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        now = self._clock()
        report = analyze(exc, context, now=now)
        key = f"{report.category}:{report.error_type}"
        entry = report.to_dict()
        entry["id"] = f"err-{int(now * 1000)}-{secrets.token_hex(3)}"
        entry["auto_fixes"] = auto_fixes(report)

        with self._lock:
            self._counts[key] += 1
            entry["occurrences"] = self._counts[key]
            self._recent.insert(0, entry)
            del self._recent[self.max_recent:]
            self._append(now, entry)

        log = logger.critical if is_critical(report) else logger.error
        log("[%s/%s] %s: %s", report.category, report.severity, report.error_type, report.message)
        logger.info("Possible causes: %s", "; ".join(report.possible_causes))
        logger.info("Suggested fixes: %s", "; ".join(report.suggested_fixes))
        return entry

    def _append(self, now: float, entry: Dict[str, Any]) -> None:
        path = self._day_file(now)
        entries: List[Any] = []
        if path.exists():
            try:
                loaded = read_json(path)
                entries = loaded if isinstance(loaded, list) else []
            except (OSError, ValueError) as e:
                logger.warning("Error log %s is unreadable (%s); starting a new one.", path.name, e)
        entries.append(entry)
        try:
            atomic_write_json(path, entries[-self.max_per_day:])
        except OSError as e:
            logger.error("Could not write error log %s: %s", path, e)

    # ----------------- queries -----------------
    def most_common(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            top = self._counts.most_common(1)
        if not top:
            return None
        return {"error": top[0][0], "count": top[0][1]}

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            recent = list(self._recent)
            total = sum(self._counts.values())
        return {
            "total_errors": total,
            "recent_count": len(recent),
            "by_category": dict(Counter(e["category"] for e in recent)),
            "by_type": dict(Counter(e["error_type"] for e in recent)),
            "most_common": self.most_common(),
            "critical_count": sum(1 for e in recent if e["severity"] == "high"),
        }

    def recent(
        self,
        limit: int = 10,
        *,
        severity: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._recent)
        if severity:
            items = [e for e in items if e["severity"] == severity]
        if category:
            items = [e for e in items if e["category"] == category]
        return items[:max(0, int(limit))]

    def clear(self) -> int:
        """Forget counters and recent reports; files on disk are kept."""
        with self._lock:
            n = len(self._recent)
            self._counts.clear()
            self._recent.clear()
        logger.info("Error log cleared (%d recent entries)", n)
        return n

    def cleanup_old(self, days: float = 30) -> int:
        """Delete daily files not modified for ``days`` days."""
        if not self.dir.exists():
            return 0
        cutoff = self._clock() - float(days) * 86400
        removed = 0
        for p in self.dir.glob("error_*.json"):
            try:
                if p.stat().st_mtime < cutoff:
                    p.unlink()
                    removed += 1
            except OSError as e:
                logger.warning("Could not remove old error log %s: %s", p.name, e)
        if removed:
            logger.info("Removed %d old error log file(s)", removed)
        return removed
