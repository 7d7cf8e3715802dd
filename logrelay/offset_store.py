"""Durable byte offset for the tailed source.

State is persisted as a small JSON document with atomic writes (tmp + fsync +
os.replace), so a reader never sees a half-written file. An unreadable file is
treated as "no prior state" so a corrupt offset never stalls the relay.
"""

import json
import logging
import os
import tempfile
import threading

from logrelay.errors import PersistenceError
from logrelay.models import OffsetRecord

logger = logging.getLogger(__name__)


class OffsetStore:
    def __init__(self, state_file: str):
        self._path = state_file
        self._dir = os.path.dirname(os.path.abspath(state_file))
        self._lock = threading.Lock()
        os.makedirs(self._dir, exist_ok=True)
        self._current = self._read()

    @property
    def path(self) -> str:
        return self._path

    @property
    def current(self) -> OffsetRecord:
        """Last record written or loaded by this process, without touching the file."""
        with self._lock:
            return self._current

    def load(self) -> OffsetRecord:
        """Re-read the persisted record. Missing or corrupt state yields a fresh record."""
        with self._lock:
            self._current = self._read()
            return self._current

    def update(self, source_id: str, byte_position: int) -> None:
        """Advance the offset for *source_id* and persist it before returning.

        Positions never move backwards for the same source; use reset() for
        rotation. On a write failure the in-memory record has already advanced
        and PersistenceError is raised for the caller to decide.
        """
        if byte_position < 0:
            raise ValueError(f"byte position must be >= 0, got {byte_position}")
        with self._lock:
            if (source_id == self._current.source_id
                    and byte_position < self._current.byte_position):
                raise ValueError(
                    f"offset for {source_id} cannot move backwards "
                    f"({self._current.byte_position} -> {byte_position})"
                )
            self._current = OffsetRecord(source_id, byte_position)
            self._write(self._current)

    def reset(self, source_id: str) -> None:
        """Rewind *source_id* to the start, e.g. after the source was rotated."""
        with self._lock:
            self._current = OffsetRecord(source_id, 0)
            self._write(self._current)

    def _read(self) -> OffsetRecord:
        if not os.path.exists(self._path):
            return OffsetRecord.fresh()
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
            position = data["last_position"]
            source_id = data.get("last_file", "")
            if (not isinstance(position, int) or isinstance(position, bool)
                    or position < 0 or not isinstance(source_id, str)):
                raise ValueError(f"bad offset document: {data!r}")
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable offset file %s: %s", self._path, e)
            return OffsetRecord.fresh()
        return OffsetRecord(source_id, position)

    def _write(self, record: OffsetRecord) -> None:
        data = {"last_position": record.byte_position, "last_file": record.source_id}
        tmp = None
        try:
            fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=".offset-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except OSError as e:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            raise PersistenceError(f"failed to persist offset to {self._path}: {e}") from e
