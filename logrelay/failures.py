"""Recent delivery failures, kept in memory for the status endpoint."""

import threading
from collections import deque
from datetime import datetime, timezone

from logrelay.models import LogRecord

MESSAGE_PREVIEW = 200


class FailureTracker:
    """Bounded history of records the sink refused, newest last."""

    def __init__(self, max_size: int = 50):
        self._entries: deque[dict] = deque(maxlen=max_size)
        self._total = 0
        self._lock = threading.Lock()

    def record(self, record: LogRecord, error: Exception) -> dict:
        entry = {
            "logged_at": record.timestamp.isoformat(),
            "level": record.level,
            "category": record.context.get("category", ""),
            "message": record.message[:MESSAGE_PREVIEW],
            "frames": len(record.stack_lines),
            "error_type": type(error).__name__,
            "error": str(error),
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            self._entries.append(entry)
            self._total += 1
        return entry

    def get_recent(self, n: int = 10) -> list[dict]:
        with self._lock:
            return list(self._entries)[-n:] if n > 0 else []

    @property
    def count(self) -> int:
        """Failures currently retained (at most max_size)."""
        with self._lock:
            return len(self._entries)

    @property
    def total(self) -> int:
        """Failures seen since start, including evicted ones."""
        with self._lock:
            return self._total
