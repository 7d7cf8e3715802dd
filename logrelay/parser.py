"""Record parser: rebuilds multi-line log records from a stream of physical lines.

Expected format (version 1):
    2025-04-30 06:25:17 [172.19.0.2][-][1b9d9301][error][yii\\web\\HttpException:404] Page not found
    #0 /app/vendor/yiisoft/yii2/base/Module.php(561): yii\\base\\Module->runAction('x', Array)
    #1 {main}

A header line opens a record; "#N" lines that follow belong to its stack
trace; anything else is noise. A record is complete when the next header
arrives or the stream ends.
"""

import logging
import re
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone

from logrelay.models import LogRecord, StackFrame

logger = logging.getLogger(__name__)

HEADER_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) "
    r"\[(.*?)\]\[(.*?)\]\[(.*?)\]\[(.*?)\]\[(.*?)\] ?(.*)$"
)
TRACE_PATTERN = re.compile(r"^#\d+(?: |$)")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

MAX_LINE_BYTES = 1024 * 1024  # longer lines are dropped as noise


def parse_header(line: str) -> LogRecord | None:
    """Build a new record from a header line, or None if the line is not a valid header."""
    match = HEADER_PATTERN.match(line)
    if not match:
        return None
    stamp, ip, user_id, session, level, category, message = match.groups()
    try:
        timestamp = datetime.strptime(stamp, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return LogRecord(
        timestamp=timestamp,
        level=level,
        message=message,
        context={
            "ip": ip,
            "user_id": user_id,
            "session": session,
            "category": category,
        },
    )


def is_trace_line(line: str) -> bool:
    return TRACE_PATTERN.match(line) is not None


def parse_stack_frame(line: str) -> StackFrame | None:
    """Parse "#0 /path/File.php(561): Class->method()" into a StackFrame.

    Returns None when the line has no file/line-number part or the line
    number is not a positive integer; the caller drops just that frame.
    """
    _marker, sep, location = line.partition(" ")
    if not sep:
        return None
    file, sep, rest = location.partition("(")
    if not sep or not file:
        return None
    number, sep, tail = rest.partition(")")
    if not sep or not (number.isascii() and number.isdigit()):
        return None
    lineno = int(number)
    if lineno <= 0:
        return None
    _, sep, function = tail.partition(":")
    return StackFrame(file=file, line=lineno, function=function.strip() if sep else "")


class RecordParser:
    """Line-driven state machine: Idle until a header arrives, then Open(record).

    Use a fresh parser per fetched range; parse() and finish() leave it Idle.
    """

    def __init__(self):
        self._current: LogRecord | None = None
        self.skipped_lines = 0

    @property
    def current(self) -> LogRecord | None:
        """The record still waiting for its boundary, if any."""
        return self._current

    def feed(self, line: str) -> LogRecord | None:
        """Consume one physical line. Returns the previous record if this line closed it."""
        line = line.rstrip("\r\n")

        if HEADER_PATTERN.match(line):
            record = parse_header(line)
            if record is None:
                # Header-shaped but the timestamp is bogus: noise, leave the open record alone
                self.skipped_lines += 1
                logger.debug("Skipping header with invalid timestamp: %.120s", line)
                return None
            closed, self._current = self._current, record
            return closed

        if self._current is not None and is_trace_line(line):
            self._current.stack_lines.append(line)
            return None

        if line:
            self.skipped_lines += 1
        return None

    def finish(self) -> LogRecord | None:
        """End of stream: emit whatever record is still open."""
        closed, self._current = self._current, None
        return closed

    def parse(self, lines: Iterable[str]) -> Iterator[LogRecord]:
        for line in lines:
            record = self.feed(line)
            if record is not None:
                yield record
        last = self.finish()
        if last is not None:
            yield last

    def parse_stream(self, chunks: Iterable[bytes]) -> Iterator[LogRecord]:
        return self.parse(split_lines(chunks))


class LineSplitter:
    """Incremental byte-to-line splitter that tracks absolute byte positions.

    Only the newly fed chunk is scanned for newlines; the unterminated tail is
    kept as a list of pieces and joined once its newline arrives. A line longer
    than ``max_line_bytes`` is not buffered: its bytes are counted and it comes
    out as an empty line, so callers still see (and can advance past) its span.
    """

    def __init__(self, start: int = 0, max_line_bytes: int = MAX_LINE_BYTES):
        self._max_line_bytes = max(1, max_line_bytes)
        self._line_start = start
        self._parts: list[bytes] = []
        self._size = 0
        self._overflow = False
        self.dropped_lines = 0

    @property
    def position(self) -> int:
        """Byte offset just past the last complete line."""
        return self._line_start

    @property
    def pending_bytes(self) -> int:
        return self._size

    @property
    def overflowing(self) -> bool:
        """True while the unterminated tail is already past the length cap."""
        return self._overflow

    def feed(self, chunk: bytes) -> Iterator[tuple[str, int, int]]:
        """Yield (text, start, end) for each line completed by *chunk*."""
        begin = 0
        while True:
            newline = chunk.find(b"\n", begin)
            if newline < 0:
                break
            self._hold(chunk[begin:newline])
            self._size += 1
            yield self._complete()
            begin = newline + 1
        self._hold(chunk[begin:])

    def finish(self) -> tuple[str, int, int] | None:
        """Flush the unterminated tail as a final line, or None if nothing is pending."""
        if not self._size:
            return None
        return self._complete()

    def _hold(self, piece: bytes) -> None:
        if not piece:
            return
        self._size += len(piece)
        if self._overflow:
            return
        if self._size > self._max_line_bytes:
            self._overflow = True
            self._parts.clear()
        else:
            self._parts.append(piece)

    def _complete(self) -> tuple[str, int, int]:
        start = self._line_start
        end = start + self._size
        if self._overflow:
            self.dropped_lines += 1
            logger.warning("Dropping %d-byte line at offset %d (limit %d bytes)",
                           self._size, start, self._max_line_bytes)
            text = ""
        else:
            raw = b"".join(self._parts)
            text = raw.rstrip(b"\r").decode("utf-8", errors="replace")
        self._parts.clear()
        self._size = 0
        self._overflow = False
        self._line_start = end
        return text, start, end


def split_lines(chunks: Iterable[bytes], max_line_bytes: int = MAX_LINE_BYTES) -> Iterator[str]:
    """Split raw byte chunks into decoded lines; a trailing unterminated line is yielded last."""
    splitter = LineSplitter(max_line_bytes=max_line_bytes)
    for chunk in chunks:
        for text, _start, _end in splitter.feed(chunk):
            yield text
    tail = splitter.finish()
    if tail is not None:
        yield tail[0]
