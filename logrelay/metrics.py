"""Thread-safe relay counters, read by the status dashboard."""

import threading
import time
from datetime import datetime, timezone

COUNTERS = (
    "cycles",
    "empty_polls",
    "records_parsed",
    "events_delivered",
    "delivery_failures",
    "bytes_consumed",
    "rotations",
    "fetch_errors",
    "auth_failures",
)


class Metrics:
    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {name: 0 for name in COUNTERS}
        self._start_time = time.monotonic()
        self._last_cycle: str | None = None

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def mark_cycle(self) -> None:
        with self._lock:
            self._counters["cycles"] += 1
            self._last_cycle = datetime.now(timezone.utc).isoformat()

    def snapshot(self) -> dict:
        """Return a point-in-time snapshot of all metrics."""
        with self._lock:
            counters = dict(self._counters)
            last_cycle = self._last_cycle
            elapsed = time.monotonic() - self._start_time
        return {
            "counters": counters,
            "uptime_seconds": round(elapsed, 1),
            "last_cycle": last_cycle,
        }
