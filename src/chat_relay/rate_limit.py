"""Per-sender request limits over sliding minute and hour windows."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .messages import Clock

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 60.0 * 60.0
MAX_STORED_REQUESTS = 100


@dataclass
class _Window:
    minute: List[float] = field(default_factory=list)
    hour: List[float] = field(default_factory=list)

    def prune(self, now: float) -> None:
        self.minute = [t for t in self.minute if now - t < MINUTE]
        self.hour = [t for t in self.hour if now - t < HOUR]


class RateLimiter:
    """Timestamp lists per sender, filtered on every call."""

    def __init__(self, per_minute: int = 10, per_hour: int = 50, *, clock: Optional[Clock] = None) -> None:
        self.per_minute = int(per_minute)
        self.per_hour = int(per_hour)
        self._clock = clock or time.time
        self._requests: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def hit(self, user: str) -> None:
        now = self._clock()
        with self._lock:
            w = self._requests.setdefault(user, _Window())
            w.prune(now)
            w.minute.append(now)
            w.hour.append(now)
            # bounded memory per sender
            w.minute = w.minute[-MAX_STORED_REQUESTS:]
            w.hour = w.hour[-MAX_STORED_REQUESTS:]
        logger.debug("Rate limit %s: %d/min, %d/h", user[-4:], len(w.minute), len(w.hour))

    def _counts(self, user: str, now: float) -> tuple[int, int]:
        w = self._requests.get(user)
        if w is None:
            return 0, 0
        minute = sum(1 for t in w.minute if now - t < MINUTE)
        hour = sum(1 for t in w.hour if now - t < HOUR)
        return minute, hour

    def is_limited(self, user: str) -> bool:
        """Read-only check; does not record a hit."""
        with self._lock:
            minute, hour = self._counts(user, self._clock())
        return minute >= self.per_minute or hour >= self.per_hour

    def user_stats(self, user: str) -> Dict[str, Any]:
        with self._lock:
            minute, hour = self._counts(user, self._clock())
        return {
            "requests_this_minute": minute,
            "requests_this_hour": hour,
            "limit_per_minute": self.per_minute,
            "limit_per_hour": self.per_hour,
            "is_limited": minute >= self.per_minute or hour >= self.per_hour,
        }

    def cleanup(self) -> int:
        """Forget senders with no requests in the last hour."""
        now = self._clock()
        removed = 0
        with self._lock:
            for user in list(self._requests):
                w = self._requests[user]
                w.prune(now)
                if not w.minute and not w.hour:
                    del self._requests[user]
                    removed += 1
        if removed:
            logger.debug("Rate limit cleanup: %d sender(s) removed", removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        active_minute = active_hour = total_minute = total_hour = 0
        with self._lock:
            users = len(self._requests)
            for user in self._requests:
                minute, hour = self._counts(user, now)
                active_minute += minute > 0
                active_hour += hour > 0
                total_minute += minute
                total_hour += hour
        return {
            "total_users": users,
            "active_users_minute": active_minute,
            "active_users_hour": active_hour,
            "total_requests_minute": total_minute,
            "total_requests_hour": total_hour,
            "avg_requests_per_user_minute": round(total_minute / active_minute) if active_minute else 0,
            "avg_requests_per_user_hour": round(total_hour / active_hour) if active_hour else 0,
        }

    def reset(self, user: str) -> bool:
        with self._lock:
            if self._requests.pop(user, None) is None:
                return False
        logger.info("Rate limit reset for %s", user[-4:])
        return True

    def reset_all(self) -> int:
        with self._lock:
            count = len(self._requests)
            self._requests.clear()
        logger.info("Rate limit reset for all senders (%d)", count)
        return count
