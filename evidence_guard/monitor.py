"""Rate-limit activity metrics for operators."""
from __future__ import annotations

import logging
import time
from collections import Counter, OrderedDict, deque
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from evidence_guard.errors import ValidationError
from evidence_guard.models import Decision
from evidence_guard.rate_limit import RateLimitConfig, RateLimiter
from evidence_guard.store.base import RateLimitStore
from evidence_guard.utils.time import Clock, SystemClock, isoformat

LOGGER = logging.getLogger(__name__)

TIMEFRAMES = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}
DEFAULT_MAX_TRACKED_KEYS = 10000
_SAMPLES_PER_KEY = 100
_TOP_BLOCKED = 5


def _activity(
    key: str, action: str, timestamp: datetime, allowed: bool, user_agent: Optional[str]
) -> Dict[str, Any]:
    return {
        "timestamp": timestamp,
        "key": key,
        "action": action,
        "allowed": allowed,
        "user_agent": user_agent,
    }


class RateLimitMonitor:
    """Aggregates stored hits and violations plus in-process check latencies.

    Latency samples are kept for at most ``max_tracked_keys`` identities; the
    least recently sampled key is dropped first.
    """

    def __init__(
        self,
        store: RateLimitStore,
        clock: Optional[Clock] = None,
        max_tracked_keys: int = DEFAULT_MAX_TRACKED_KEYS,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._max_keys = max_tracked_keys
        self._samples: "OrderedDict[str, Deque[float]]" = OrderedDict()
        self._lock = Lock()

    def record_performance(self, key: str, duration_ms: float) -> None:
        with self._lock:
            samples = self._samples.get(key)
            if samples is None:
                samples = self._samples[key] = deque(maxlen=_SAMPLES_PER_KEY)
                while len(self._samples) > self._max_keys:
                    self._samples.popitem(last=False)
            else:
                self._samples.move_to_end(key)
            samples.append(duration_ms)

    def performance_stats(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            samples = list(self._samples.get(key, ()))
        if not samples:
            return None
        return {
            "average": round(sum(samples) / len(samples), 2),
            "minimum": min(samples),
            "maximum": max(samples),
            "sampleSize": len(samples),
        }

    def average_response_time(self) -> float:
        with self._lock:
            every_sample = [value for samples in self._samples.values() for value in samples]
        if not every_sample:
            return 0.0
        return round(sum(every_sample) / len(every_sample), 2)

    def metrics(self, timeframe: str = "hour") -> Dict[str, Any]:
        """Summarize activity over the last hour, day or week.

        The request that crosses a threshold is stored both as a hit and as a
        violation, so every hit is a request and violations are the denied
        share of them.
        """

        if timeframe not in TIMEFRAMES:
            raise ValidationError(f"Unknown timeframe: {timeframe!r}")
        cutoff = self._clock.now() - TIMEFRAMES[timeframe]

        total = self._store.count_all_hits_since(cutoff)
        violations = self._store.violations_since(cutoff)
        unique_keys = self._store.distinct_keys_since(cutoff)

        attempts: Counter[str] = Counter()
        last_seen: Dict[str, Tuple[datetime, str]] = {}
        for violation in violations:
            attempts[violation.key] += 1
            previous = last_seen.get(violation.key)
            if previous is None or violation.timestamp > previous[0]:
                last_seen[violation.key] = (violation.timestamp, violation.action)

        return {
            "timeframe": timeframe,
            "totalRequests": max(total, len(violations)),
            "allowedRequests": max(0, total - len(violations)),
            "blockedRequests": len(violations),
            "uniqueKeys": unique_keys,
            "averageResponseTime": self.average_response_time(),
            "topBlocked": [
                {
                    "key": key,
                    "action": last_seen[key][1],
                    "attempts": count,
                    "last_attempt": isoformat(last_seen[key][0]),
                }
                for key, count in attempts.most_common(_TOP_BLOCKED)
            ],
        }

    def recent_activity(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Merge recent hits and violations, newest first.

        A hit recorded by the same denied request as a violation is reported
        once, as blocked.
        """

        violations = self._store.recent_violations(limit)
        unmatched = Counter((v.key, v.action, v.timestamp) for v in violations)
        activity: List[Dict[str, Any]] = []
        for hit in self._store.recent_hits(limit):
            request = (hit.key, hit.action, hit.timestamp)
            denied = unmatched[request] > 0
            if denied:
                unmatched[request] -= 1
            activity.append(_activity(*request, allowed=not denied, user_agent=hit.user_agent))
        for violation in violations:
            request = (violation.key, violation.action, violation.timestamp)
            if unmatched[request] > 0:
                unmatched[request] -= 1
                activity.append(
                    _activity(*request, allowed=False, user_agent=violation.user_agent)
                )
        activity.sort(key=lambda item: item["timestamp"], reverse=True)
        return [{**item, "timestamp": isoformat(item["timestamp"])} for item in activity[:limit]]

    def is_blocked(self, key: str, action: str) -> bool:
        return self._store.get_active_block(key, action, self._clock.now()) is not None

    def statuses(self, pairs: Iterable[Tuple[str, str]]) -> List[Dict[str, Any]]:
        """Current block state and check latency for each ``(key, action)``."""

        return [
            {
                "key": key,
                "action": action,
                "blocked": self.is_blocked(key, action),
                "performance": self.performance_stats(key),
            }
            for key, action in pairs
        ]


def check_with_monitoring(
    limiter: RateLimiter,
    monitor: RateLimitMonitor,
    key: str,
    action: str,
    config: Optional[RateLimitConfig] = None,
    *,
    user_agent: Optional[str] = None,
) -> Decision:
    """Run ``limiter.guard`` and record how long it took."""

    started = time.perf_counter()
    try:
        return limiter.guard(key, action, config, user_agent=user_agent)
    finally:
        monitor.record_performance(key, (time.perf_counter() - started) * 1000)
