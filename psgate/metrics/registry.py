"""In-memory execution metrics."""

import threading
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class ExecutionRecord:
    """
    One completed or attempted invocation.

    attempt=True means no process was spawned (blocked or awaiting
    confirmation); such records never contribute to duration statistics.
    """
    level: str
    blocked: bool
    duration_ms: int
    truncated: bool = False
    attempt: bool = False
    timed_out: bool = False
    confirmation_required: bool = False


def _p95(values: list[int]) -> int:
    if not values:
        return 0
    ordered = sorted(values)
    idx = max(0, int(round(0.95 * len(ordered))) - 1)
    return ordered[idx]


class MetricsRegistry:
    """Thread-safe counters plus a bounded duration history."""

    def __init__(self, history_size: int = 1000):
        self._lock = threading.Lock()
        self._history_size = history_size
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._by_level: Counter[str] = Counter()
            self._total = 0
            self._executions = 0
            self._attempts = 0
            self._blocked = 0
            self._confirmation_required = 0
            self._timeouts = 0
            self._truncated = 0
            self._durations: deque[int] = deque(maxlen=self._history_size)
            self._started_at = datetime.now()

    def record(self, rec: ExecutionRecord) -> None:
        with self._lock:
            self._total += 1
            self._by_level[rec.level] += 1
            if rec.blocked:
                self._blocked += 1
            if rec.confirmation_required:
                self._confirmation_required += 1
            if rec.attempt:
                self._attempts += 1
                return
            self._executions += 1
            self._durations.append(rec.duration_ms)
            if rec.timed_out:
                self._timeouts += 1
            if rec.truncated:
                self._truncated += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            durations = list(self._durations)
            return {
                "totalCommands": self._total,
                "executions": self._executions,
                "attempts": self._attempts,
                "byLevel": dict(self._by_level),
                "blocked": self._blocked,
                "confirmationRequired": self._confirmation_required,
                "timeouts": self._timeouts,
                "truncated": self._truncated,
                "averageDurationMs": round(sum(durations) / len(durations), 1) if durations else 0,
                "p95DurationMs": _p95(durations),
                "since": self._started_at.isoformat(),
            }
