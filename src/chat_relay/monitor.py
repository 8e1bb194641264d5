"""Request timing statistics for the LLM round-trip."""
from __future__ import annotations

import logging
import math
import statistics
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .messages import Clock

logger = logging.getLogger(__name__)

TIMEFRAMES = {"all": None, "1h": 3600.0, "24h": 86400.0}
RETENTION = 24 * 3600.0
CLEANUP_EVERY = 3600.0
TREND_WINDOW = 10

PRIORITY = {"high": 0, "medium": 1, "low": 2}


@dataclass(frozen=True)
class Sample:
    duration: float       # seconds
    timestamp: float
    kind: str
    success: bool
    tokens: int = 0


class PerformanceMonitor:
    """
    Keeps the last ``max_samples`` request durations.

    Durations are seconds. Samples older than a day are dropped on the
    hourly cleanup. Lifetime totals survive both the sample cap and the
    cleanup.
    """

    def __init__(
        self,
        *,
        max_samples: int = 50,
        slow_request: float = 60.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.max_samples = int(max_samples)
        self.slow_request = float(slow_request)
        self._clock = clock or time.time
        self._samples: List[Sample] = []
        self._lock = threading.Lock()
        self.started_at = self._clock()
        self.total_requests = 0
        self.total_errors = 0
        self._last_cleanup = self.started_at

    def record(self, duration: float, *, kind: str = "llm", success: bool = True, tokens: int = 0) -> None:
        try:
            duration = float(duration)
        except (TypeError, ValueError):
            duration = math.nan
        if not math.isfinite(duration) or duration < 0:
            logger.warning("Ignoring invalid request duration: %r", duration)
            return

        now = self._clock()
        with self._lock:
            self._samples.append(Sample(duration, now, kind, bool(success), int(tokens or 0)))
            del self._samples[:-self.max_samples]
            self.total_requests += 1
            if not success:
                self.total_errors += 1
            due = now - self._last_cleanup >= CLEANUP_EVERY

        if duration > 2 * self.slow_request:
            logger.error("Very slow %s request: %.1fs", kind, duration)
        elif duration > self.slow_request:
            logger.warning("Slow %s request: %.1fs", kind, duration)
        if due:
            self.cleanup()

    def cleanup(self) -> int:
        """Drop samples older than a day."""
        now = self._clock()
        with self._lock:
            before = len(self._samples)
            self._samples = [s for s in self._samples if now - s.timestamp <= RETENTION]
            self._last_cleanup = now
            removed = before - len(self._samples)
        if removed:
            logger.debug("Dropped %d old timing sample(s)", removed)
        return removed

    def samples(self, timeframe: str = "all") -> List[Sample]:
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unknown timeframe: {timeframe}")
        span = TIMEFRAMES[timeframe]
        with self._lock:
            items = list(self._samples)
        if span is None:
            return items
        now = self._clock()
        return [s for s in items if now - s.timestamp <= span]

    def average(self, kind: Optional[str] = None) -> float:
        items = [s.duration for s in self.samples() if kind is None or s.kind == kind]
        return sum(items) / len(items) if items else 0.0

    def is_slow(self, max_avg: float = 30.0, max_recent: float = 60.0) -> bool:
        """True when the average or any of the last three requests is over its limit."""
        items = self.samples()
        if not items:
            return False
        if self.average() > max_avg:
            return True
        return any(s.duration > max_recent for s in items[-3:])

    def trends(self) -> Optional[Dict[str, Any]]:
        """Compare the last ten requests with the ten before them."""
        items = self.samples()
        if len(items) < TREND_WINDOW:
            return None
        recent = items[-TREND_WINDOW:]
        older = items[-2 * TREND_WINDOW:-TREND_WINDOW]
        if not older:
            return None
        recent_avg = sum(s.duration for s in recent) / len(recent)
        older_avg = sum(s.duration for s in older) / len(older)
        if older_avg == 0:
            return None
        change = (recent_avg - older_avg) / older_avg * 100
        if change > 5:
            direction = "degrading"
        elif change < -5:
            direction = "improving"
        else:
            direction = "stable"
        return {"direction": direction, "change_percent": round(change, 1)}

    def stats(self, timeframe: str = "all") -> Dict[str, Any]:
        items = self.samples(timeframe)
        uptime = self._clock() - self.started_at
        base: Dict[str, Any] = {
            "timeframe": timeframe,
            "total_requests": len(items),
            "lifetime_requests": self.total_requests,
            "lifetime_errors": self.total_errors,
            "uptime": round(uptime, 1),
        }
        if not items:
            base.update(
                avg_time=0.0, min_time=0.0, max_time=0.0, median_time=0.0,
                success_rate=100.0, error_rate=0.0, throughput=0.0,
                is_slow=False, by_type={}, trends=None,
            )
            return base

        durations = [s.duration for s in items]
        ok = sum(1 for s in items if s.success)
        success_rate = ok / len(items) * 100
        throughput = 0.0
        if len(items) >= 2:
            span = max(items[-1].timestamp - items[0].timestamp, 60.0)
            throughput = len(items) / span * 60

        by_type: Dict[str, List[Sample]] = defaultdict(list)
        for s in items:
            by_type[s.kind].append(s)

        base.update(
            avg_time=round(sum(durations) / len(durations), 3),
            min_time=round(min(durations), 3),
            max_time=round(max(durations), 3),
            median_time=round(statistics.median(durations), 3),
            success_rate=round(success_rate, 1),
            error_rate=round(100 - success_rate, 1),
            throughput=round(throughput, 2),
            is_slow=self.is_slow(),
            by_type={
                kind: {
                    "count": len(group),
                    "avg_time": round(sum(s.duration for s in group) / len(group), 3),
                    "success_rate": round(sum(1 for s in group if s.success) / len(group) * 100, 1),
                    "tokens": sum(s.tokens for s in group),
                }
                for kind, group in by_type.items()
            },
            trends=self.trends(),
        )
        return base

    def suggestions(
        self,
        *,
        slow_avg: float = 60.0,
        moderate_avg: float = 30.0,
        very_slow_max: float = 180.0,
        min_success_rate: float = 95.0,
    ) -> List[Dict[str, str]]:
        """Tuning hints for the operator, most urgent first."""
        s = self.stats()
        if not s["total_requests"]:
            return []
        out: List[Dict[str, str]] = []
        if s["avg_time"] > slow_avg:
            out.append({
                "priority": "high",
                "issue": f"Average response time is {s['avg_time']:.0f}s",
                "suggestion": "Use a smaller model or lower llm.max_tokens",
            })
        elif s["avg_time"] > moderate_avg:
            out.append({
                "priority": "medium",
                "issue": f"Average response time is {s['avg_time']:.0f}s",
                "suggestion": "Lower llm.max_tokens or memory.history_cap",
            })
        if s["max_time"] > very_slow_max:
            out.append({
                "priority": "high",
                "issue": f"Slowest request took {s['max_time']:.0f}s",
                "suggestion": "Check the LLM server's load and raise llm.timeout if needed",
            })
        if s["success_rate"] < min_success_rate:
            out.append({
                "priority": "high",
                "issue": f"Success rate is {s['success_rate']:.0f}%",
                "suggestion": "Check /api/logs for the failing requests",
            })
        trend = s["trends"]
        if trend and trend["direction"] == "degrading":
            out.append({
                "priority": "medium",
                "issue": f"Responses got {trend['change_percent']:.0f}% slower",
                "suggestion": "Restart the LLM server or free up memory on its host",
            })
        out.sort(key=lambda item: PRIORITY[item["priority"]])
        return out

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
            self.total_requests = 0
            self.total_errors = 0


def health_score(perf: Dict[str, Any], errors: Dict[str, Any]) -> int:
    """0-100 blend of success rate, speed and recent critical errors."""
    speed = max(0.0, 100.0 - perf.get("avg_time", 0.0))
    system = max(0.0, 100.0 - 10.0 * errors.get("critical_count", 0))
    return round(perf.get("success_rate", 100.0) * 0.4 + speed * 0.3 + system * 0.3)
