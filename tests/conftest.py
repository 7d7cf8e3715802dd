import base64
import re
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from logrelay.errors import DeliveryError
from logrelay.offset_store import OffsetStore

SAMPLE_LOG = (
    "2024-01-01 00:00:00 [ip][u][s][error][T] boom\n"
    "#0 /a/b.php(10): f()\n"
    "2024-01-01 00:00:01 [ip][u][s][info][T] ok\n"
)

_RANGE_RE = re.compile(r"^bytes=(\d+)-$")


class _LogHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        srv = self.server
        srv.requests.append(dict(self.headers))

        if srv.credentials is not None:
            expected = "Basic " + base64.b64encode(
                f"{srv.credentials[0]}:{srv.credentials[1]}".encode()
            ).decode()
            if self.headers.get("Authorization") != expected:
                self._reply(401, b"unauthorized")
                return

        if srv.force_status is not None:
            self._reply(srv.force_status, b"nope")
            return

        content = srv.content
        total = len(content)
        match = _RANGE_RE.match(self.headers.get("Range", ""))
        if match and srv.supports_ranges:
            start = int(match.group(1))
            if start >= total:
                self._reply(416, b"", {"Content-Range": f"bytes */{total}"})
                return
            end = total - 1
            if srv.max_range_bytes:
                end = min(end, start + srv.max_range_bytes - 1)
            self._reply(206, content[start:end + 1],
                        {"Content-Range": f"bytes {start}-{end}/{total}"})
            return

        self._reply(200, content)

    def _reply(self, status: int, body: bytes, headers: dict | None = None):
        self.send_response(status)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        if self.server.send_content_length:
            self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


class LogServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self):
        super().__init__(("127.0.0.1", 0), _LogHandler)
        self.content = b""
        self.supports_ranges = True
        self.max_range_bytes = 0
        self.credentials: tuple[str, str] | None = None
        self.force_status: int | None = None
        self.send_content_length = True
        self.requests: list[dict] = []

    @property
    def url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}/app.log"

    def append(self, text: str) -> None:
        self.content += text.encode("utf-8")


@pytest.fixture
def log_server():
    server = LogServer()
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()
        t.join(timeout=2)


@pytest.fixture
def state_file(tmp_path):
    return str(tmp_path / "state" / "log_state.json")


@pytest.fixture
def store(state_file):
    return OffsetStore(state_file)


class ScriptedResponse:
    """Stands in for a streamed requests.Response: yields chunks, then optionally fails."""

    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False

    def iter_content(self, chunk_size=1):
        yield from self.chunks
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed = True


class FakeSink:
    """Collects events; fails deliveries whose message is listed in fail_messages."""

    def __init__(self, fail_messages=(), on_capture=None):
        self.events = []
        self.fail_messages = set(fail_messages)
        self.on_capture = on_capture
        self.flushed = False

    def capture(self, event):
        if self.on_capture:
            self.on_capture(event)
        if event.message in self.fail_messages:
            raise DeliveryError(f"rejected {event.message}")
        self.events.append(event)
        return f"id-{len(self.events)}"

    def flush(self, timeout=2.0):
        self.flushed = True

    def close(self):
        pass


@pytest.fixture
def sink():
    return FakeSink()


def header(second: int, level: str, message: str, category: str = "T") -> str:
    stamp = datetime(2024, 1, 1, 0, 0, second, tzinfo=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    return f"{stamp} [10.0.0.1][42][sess-1][{level}][{category}] {message}\n"
