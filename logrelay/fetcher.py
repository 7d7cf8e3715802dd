"""Incremental fetcher: range-aware HTTP retrieval of the remote log.

Resumes from the stored byte offset with a ``Range: bytes=<offset>-`` request,
streams the body line by line without buffering it, and advances the offset
store as the caller confirms consumption.
"""

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass

import requests
from requests.auth import HTTPBasicAuth

from logrelay.errors import (
    AuthenticationError,
    PersistenceError,
    TransportError,
    UnexpectedResponseError,
)
from logrelay.offset_store import OffsetStore
from logrelay.parser import MAX_LINE_BYTES, LineSplitter

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_PERSIST_EVERY = 1024 * 1024  # 1 MiB

_CONTENT_RANGE_RE = re.compile(r"^bytes\s+(\d+)-(\d+)/(\d+|\*)$")
_UNSATISFIED_RANGE_RE = re.compile(r"^bytes\s+\*/(\d+)$")


@dataclass(frozen=True)
class ContentRange:
    start: int
    end: int              # inclusive
    total: int | None     # None when the server answers "*"

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def parse_content_range(header: str | None) -> ContentRange:
    """Parse "bytes <start>-<end>/<total>" as sent with a 206 response."""
    match = _CONTENT_RANGE_RE.match((header or "").strip())
    if not match:
        raise UnexpectedResponseError(f"malformed Content-Range header: {header!r}", 206)
    start, end, total = match.groups()
    content_range = ContentRange(int(start), int(end), None if total == "*" else int(total))
    if content_range.end < content_range.start:
        raise UnexpectedResponseError(f"inverted Content-Range header: {header!r}", 206)
    return content_range


def parse_unsatisfied_range(header: str | None) -> int | None:
    """Total size from a 416 "bytes */<total>" header, or None if absent."""
    match = _UNSATISFIED_RANGE_RE.match((header or "").strip())
    return int(match.group(1)) if match else None


class FetchedStream:
    """Line iterator over one HTTP response that tracks byte positions.

    Bytes before ``resume_from`` are read but not yielded (servers that ignore
    Range). An unterminated final line is left unconsumed so the next cycle
    re-fetches it whole, unless it is already longer than ``max_line_bytes``.
    The offset store only ever sees confirmed positions.
    """

    def __init__(
        self,
        response: requests.Response,
        store: OffsetStore,
        source_id: str,
        body_start: int,
        resume_from: int,
        length: int | None = None,
        total: int | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        persist_every_bytes: int = DEFAULT_PERSIST_EVERY,
        max_line_bytes: int = MAX_LINE_BYTES,
        rotated: bool = False,
    ):
        self._response = response
        self._store = store
        self._source_id = source_id
        self._body_start = body_start
        self._resume_from = resume_from
        self._chunk_size = chunk_size
        self._persist_every = max(1, persist_every_bytes)
        self._max_line_bytes = max_line_bytes
        self.length = length
        self.total = total
        self.rotated = rotated

        self._read_pos = body_start
        self._consumed = resume_from
        self._confirmed = resume_from
        self._persisted = resume_from
        self._exhausted = False
        self._closed = False

    @property
    def resume_from(self) -> int:
        return self._resume_from

    @property
    def confirmed(self) -> int:
        return self._confirmed

    @property
    def consumed(self) -> int:
        """End of the last complete line handed out by lines()."""
        return self._consumed

    @property
    def bytes_consumed(self) -> int:
        return self._confirmed - self._resume_from

    def lines(self) -> Iterator[tuple[str, int, int]]:
        """Yield (text, start, end) for every complete line past resume_from.

        Lines over the length cap come out as empty text so their span can
        still be confirmed. That includes an unterminated tail already over
        the cap, which would otherwise be re-downloaded every cycle.
        """
        splitter = LineSplitter(self._body_start, self._max_line_bytes)
        try:
            for chunk in self._response.iter_content(chunk_size=self._chunk_size):
                self._read_pos += len(chunk)
                for text, start, end in splitter.feed(chunk):
                    if start < self._resume_from:
                        continue
                    self._consumed = end
                    yield text, start, end
        except requests.RequestException as e:
            raise TransportError(f"stream from {self._source_id} interrupted: {e}") from e
        self._exhausted = True
        self._check_length()
        if splitter.overflowing and splitter.position >= self._resume_from:
            text, start, end = splitter.finish()
            self._consumed = end
            yield text, start, end
        elif splitter.pending_bytes:
            logger.debug("Leaving %d bytes of unterminated line for the next cycle",
                         splitter.pending_bytes)

    def _check_length(self) -> None:
        received = self._read_pos - self._body_start
        if self.length is not None and received != self.length:
            logger.warning("Body from %s was %d bytes, Content-Range/Content-Length said %d",
                           self._source_id, received, self.length)

    def confirm(self, position: int) -> None:
        """Mark everything before *position* as processed; persists every N bytes."""
        if position <= self._confirmed:
            return
        if position > self._consumed:
            raise ValueError(f"cannot confirm {position}, only {self._consumed} bytes consumed")
        self._confirmed = position
        if self._confirmed - self._persisted >= self._persist_every:
            self._persist()

    def close(self) -> None:
        """Persist the confirmed position and release the connection."""
        if self._closed:
            return
        self._closed = True
        try:
            if self._exhausted and self._read_pos < self._resume_from:
                logger.warning(
                    "Source %s ended at byte %d, before stored offset %d; treating as rotation",
                    self._source_id, self._read_pos, self._resume_from,
                )
                self.rotated = True
                try:
                    self._store.reset(self._source_id)
                except PersistenceError as e:
                    logger.warning("Offset reset not persisted: %s", e)
            else:
                self._persist()
        finally:
            self._response.close()

    def _persist(self) -> None:
        self._persisted = self._confirmed
        try:
            self._store.update(self._source_id, self._confirmed)
        except PersistenceError as e:
            logger.warning("Offset %d not persisted, continuing in memory: %s", self._confirmed, e)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class IncrementalFetcher:
    def __init__(
        self,
        url: str,
        store: OffsetStore,
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        persist_every_bytes: int = DEFAULT_PERSIST_EVERY,
        max_line_bytes: int = MAX_LINE_BYTES,
        session: requests.Session | None = None,
    ):
        self._url = url
        self._store = store
        self._timeout = timeout
        self._chunk_size = chunk_size
        self._persist_every = persist_every_bytes
        self._max_line_bytes = max_line_bytes
        self._session = session or requests.Session()
        if username or password:
            self._session.auth = HTTPBasicAuth(username, password)
        # Byte offsets must match the file on the server, not a decoded body
        self._session.headers["Accept-Encoding"] = "identity"

    @property
    def url(self) -> str:
        return self._url

    def fetch(self) -> FetchedStream | None:
        """Open the source at the stored offset. Returns None when there is nothing new."""
        record = self._store.load()
        offset = record.byte_position
        if record.source_id != self._url:
            if record.source_id:
                logger.warning("Offset file tracked %s, now tailing %s; starting from 0",
                               record.source_id, self._url)
            offset = 0
        return self._fetch_from(offset)

    def close(self) -> None:
        self._session.close()

    def _fetch_from(self, offset: int, rotated: bool = False) -> FetchedStream | None:
        response = self._request(offset)
        status = response.status_code

        if status in (401, 403):
            response.close()
            raise AuthenticationError(status, self._url)

        if status == 416:
            total = parse_unsatisfied_range(response.headers.get("Content-Range"))
            response.close()
            if total is not None and total < offset:
                return self._restart(offset, total)
            logger.debug("No new data in %s at offset %d", self._url, offset)
            return None

        if status == 206:
            content_range = parse_content_range(response.headers.get("Content-Range"))
            if content_range.start != offset:
                response.close()
                raise UnexpectedResponseError(
                    f"asked for bytes from {offset}, got range starting at {content_range.start}",
                    status,
                )
            return self._stream(response, offset, offset, content_range.length,
                                content_range.total, rotated)

        if status == 200:
            total = _content_length(response)
            if offset > 0:
                if total is not None and total < offset:
                    response.close()
                    return self._restart(offset, total)
                if total == offset:
                    response.close()
                    logger.debug("No new data in %s at offset %d", self._url, offset)
                    return None
                logger.warning("Source %s ignored the Range request; reading from byte 0 "
                               "and discarding %d already-consumed bytes", self._url, offset)
            return self._stream(response, 0, offset, total, total, rotated)

        response.close()
        raise UnexpectedResponseError(f"unexpected status {status} from {self._url}", status)

    def _restart(self, offset: int, total: int) -> FetchedStream | None:
        logger.warning("Source %s shrank to %d bytes (stored offset %d); assuming rotation",
                       self._url, total, offset)
        try:
            self._store.reset(self._url)
        except PersistenceError as e:
            logger.warning("Offset reset not persisted: %s", e)
        return self._fetch_from(0, rotated=True)

    def _request(self, offset: int) -> requests.Response:
        headers = {}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"
        try:
            return self._session.get(self._url, headers=headers, stream=True,
                                     timeout=self._timeout)
        except requests.RequestException as e:
            raise TransportError(f"failed to fetch {self._url}: {e}") from e

    def _stream(self, response, body_start, resume_from, length, total, rotated) -> FetchedStream:
        return FetchedStream(
            response,
            self._store,
            self._url,
            body_start=body_start,
            resume_from=resume_from,
            length=length,
            total=total,
            chunk_size=self._chunk_size,
            persist_every_bytes=self._persist_every,
            max_line_bytes=self._max_line_bytes,
            rotated=rotated,
        )


def _content_length(response: requests.Response) -> int | None:
    value = response.headers.get("Content-Length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
