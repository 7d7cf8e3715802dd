"""Tests for the incremental fetcher against a local HTTP log server."""

import logging
import socket

import pytest
import requests

from logrelay.errors import AuthenticationError, TransportError, UnexpectedResponseError
from logrelay.fetcher import (
    ContentRange,
    FetchedStream,
    IncrementalFetcher,
    parse_content_range,
    parse_unsatisfied_range,
)
from logrelay.models import OffsetRecord
from logrelay.offset_store import OffsetStore

from conftest import ScriptedResponse


def _lines(n: int, start: int = 0) -> str:
    """n noise lines of exactly 10 bytes each."""
    return "".join(f"line-{i:04d}\n" for i in range(start, start + n))


def _drain(stream) -> list[str]:
    texts = []
    for text, _start, end in stream.lines():
        texts.append(text)
        stream.confirm(end)
    return texts


class RecordingStore(OffsetStore):
    def __init__(self, path):
        super().__init__(path)
        self.updates: list[int] = []

    def update(self, source_id, byte_position):
        self.updates.append(byte_position)
        super().update(source_id, byte_position)


class TestParseContentRange:
    def test_partial_range(self):
        content_range = parse_content_range("bytes 100-199/500")
        assert content_range == ContentRange(100, 199, 500)
        assert content_range.length == 100

    def test_unknown_total(self):
        assert parse_content_range("bytes 0-9/*").total is None

    @pytest.mark.parametrize("header", [None, "", "bytes */500", "items 1-2/3", "bytes 9-1/10"])
    def test_malformed(self, header):
        with pytest.raises(UnexpectedResponseError):
            parse_content_range(header)

    def test_unsatisfied(self):
        assert parse_unsatisfied_range("bytes */500") == 500
        assert parse_unsatisfied_range(None) is None


class TestFetchFromStart:
    def test_full_read_persists_end_offset(self, log_server, store):
        log_server.append(_lines(5))
        fetcher = IncrementalFetcher(log_server.url, store)
        with fetcher.fetch() as stream:
            texts = _drain(stream)
        assert texts == [f"line-{i:04d}" for i in range(5)]
        assert store.load().byte_position == 50
        assert store.load().source_id == log_server.url
        assert "Range" not in log_server.requests[0]

    def test_line_offsets(self, log_server, store):
        log_server.append("ab\ncdef\n")
        with IncrementalFetcher(log_server.url, store, chunk_size=3).fetch() as stream:
            assert list(stream.lines()) == [("ab", 0, 3), ("cdef", 3, 8)]

    def test_unterminated_tail_is_not_consumed(self, log_server, store):
        log_server.append(_lines(2) + "partial")
        with IncrementalFetcher(log_server.url, store).fetch() as stream:
            assert _drain(stream) == ["line-0000", "line-0001"]
        assert store.load().byte_position == 20

    def test_empty_source(self, log_server, store):
        stream = IncrementalFetcher(log_server.url, store).fetch()
        with stream:
            assert _drain(stream) == []
        assert store.load().byte_position == 0


class TestResume:
    def test_sends_range_header(self, log_server, store):
        log_server.append(_lines(10))
        store.update(log_server.url, 50)
        with IncrementalFetcher(log_server.url, store).fetch() as stream:
            assert _drain(stream) == [f"line-{i:04d}" for i in range(5, 10)]
        assert log_server.requests[0]["Range"] == "bytes=50-"
        assert store.load().byte_position == 100

    def test_partial_content_advances_to_end_of_range(self, log_server, store):
        log_server.append(_lines(50))
        log_server.max_range_bytes = 100
        store.update(log_server.url, 100)

        with IncrementalFetcher(log_server.url, store).fetch() as stream:
            assert stream.length == 100
            assert stream.total == 500
            _drain(stream)
        assert store.load().byte_position == 200

    def test_no_new_data(self, log_server, store):
        log_server.append(_lines(3))
        store.update(log_server.url, 30)
        assert IncrementalFetcher(log_server.url, store).fetch() is None
        assert store.load().byte_position == 30

    def test_other_source_in_state_file_starts_from_zero(self, log_server, store):
        log_server.append(_lines(2))
        store.update("http://elsewhere/old.log", 999)
        with IncrementalFetcher(log_server.url, store).fetch() as stream:
            assert len(_drain(stream)) == 2
        assert "Range" not in log_server.requests[0]
        assert store.load().byte_position == 20


class TestRotation:
    def test_shrunk_source_with_range_support(self, log_server, store):
        log_server.append(_lines(3))
        store.update(log_server.url, 1000)
        with IncrementalFetcher(log_server.url, store).fetch() as stream:
            assert stream.rotated
            assert _drain(stream) == ["line-0000", "line-0001", "line-0002"]
        assert store.load().byte_position == 30
        assert log_server.requests[0]["Range"] == "bytes=1000-"
        assert "Range" not in log_server.requests[1]

    def test_shrunk_source_without_range_support(self, log_server, store):
        log_server.supports_ranges = False
        log_server.append(_lines(3))
        store.update(log_server.url, 1000)
        with IncrementalFetcher(log_server.url, store).fetch() as stream:
            assert stream.rotated
            assert len(_drain(stream)) == 3
        assert store.load().byte_position == 30


class TestRangeIgnored:
    def test_already_consumed_prefix_is_discarded(self, log_server, store):
        log_server.supports_ranges = False
        log_server.append(_lines(8))
        store.update(log_server.url, 50)
        with IncrementalFetcher(log_server.url, store).fetch() as stream:
            assert stream.resume_from == 50
            assert _drain(stream) == ["line-0005", "line-0006", "line-0007"]
        assert store.load().byte_position == 80

    def test_same_size_means_no_new_data(self, log_server, store):
        log_server.supports_ranges = False
        log_server.append(_lines(5))
        store.update(log_server.url, 50)
        assert IncrementalFetcher(log_server.url, store).fetch() is None


class TestPersistCadence:
    def test_persists_every_n_bytes_and_on_close(self, log_server, state_file):
        log_server.append(_lines(10))
        store = RecordingStore(state_file)
        with IncrementalFetcher(log_server.url, store, persist_every_bytes=30).fetch() as stream:
            _drain(stream)
        assert store.updates == [30, 60, 90, 100]

    def test_unconfirmed_bytes_are_not_persisted(self, log_server, store):
        log_server.append(_lines(10))
        with IncrementalFetcher(log_server.url, store).fetch() as stream:
            for _text, _start, end in stream.lines():
                if end <= 40:
                    stream.confirm(end)
        assert store.load().byte_position == 40

    def test_cannot_confirm_past_consumed(self, log_server, store):
        log_server.append(_lines(2))
        with IncrementalFetcher(log_server.url, store).fetch() as stream:
            with pytest.raises(ValueError):
                stream.confirm(10)


class TestFetchErrors:
    def test_rejected_credentials(self, log_server, store):
        log_server.credentials = ("relay", "secret")
        fetcher = IncrementalFetcher(log_server.url, store, username="relay", password="wrong")
        with pytest.raises(AuthenticationError) as exc_info:
            fetcher.fetch()
        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 401

    def test_accepted_credentials(self, log_server, store):
        log_server.credentials = ("relay", "secret")
        log_server.append(_lines(1))
        fetcher = IncrementalFetcher(log_server.url, store, username="relay", password="secret")
        with fetcher.fetch() as stream:
            assert _drain(stream) == ["line-0000"]

    def test_unexpected_status_is_retryable(self, log_server, store):
        log_server.force_status = 503
        with pytest.raises(UnexpectedResponseError) as exc_info:
            IncrementalFetcher(log_server.url, store).fetch()
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

    def test_connection_refused_is_transport_error(self, store):
        sock = socket.socket()
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
        sock.close()
        fetcher = IncrementalFetcher(f"http://127.0.0.1:{port}/app.log", store, timeout=2)
        with pytest.raises(TransportError) as exc_info:
            fetcher.fetch()
        assert exc_info.value.retryable is True

    def test_transport_error_mid_body(self, store):
        response = ScriptedResponse([b"line-0000\nline-0001\nli"],
                                    error=requests.ConnectionError("connection reset"))
        stream = FetchedStream(response, store, "http://h/app.log", body_start=0, resume_from=0)
        seen = []
        with pytest.raises(TransportError, match="interrupted"):
            with stream:
                for text, _start, end in stream.lines():
                    seen.append(text)
                    stream.confirm(end)
        assert seen == ["line-0000", "line-0001"]
        assert response.closed
        assert store.load() == OffsetRecord("http://h/app.log", 20)


class TestRotationAtClose:
    def test_body_ending_before_offset_resets_store(self, log_server, store):
        log_server.supports_ranges = False
        log_server.send_content_length = False
        log_server.append(_lines(3))
        store.update(log_server.url, 1000)
        fetcher = IncrementalFetcher(log_server.url, store)

        with fetcher.fetch() as stream:
            assert stream.total is None
            assert _drain(stream) == []
        assert stream.rotated
        assert store.load() == OffsetRecord(log_server.url, 0)

        with fetcher.fetch() as stream:
            assert len(_drain(stream)) == 3
        assert store.load().byte_position == 30


class TestLongLines:
    def test_oversized_line_is_dropped_and_skipped(self, log_server, store):
        log_server.append("x" * 5000 + "\n" + _lines(1, start=1))
        fetcher = IncrementalFetcher(log_server.url, store, chunk_size=512, max_line_bytes=1000)
        with fetcher.fetch() as stream:
            assert list(stream.lines()) == [("", 0, 5001), ("line-0001", 5001, 5011)]
            stream.confirm(5011)
        assert store.load().byte_position == 5011

    def test_oversized_unterminated_tail_is_consumed(self, log_server, store):
        log_server.append(_lines(1) + "y" * 5000)
        fetcher = IncrementalFetcher(log_server.url, store, chunk_size=512, max_line_bytes=1000)
        with fetcher.fetch() as stream:
            assert _drain(stream) == ["line-0000", ""]
        assert store.load().byte_position == 5010
        assert fetcher.fetch() is None

    def test_short_unterminated_tail_is_left_for_next_cycle(self, log_server, store):
        log_server.append(_lines(1) + "y" * 500)
        fetcher = IncrementalFetcher(log_server.url, store, chunk_size=64, max_line_bytes=1000)
        with fetcher.fetch() as stream:
            assert _drain(stream) == ["line-0000"]
        assert store.load().byte_position == 10

    def test_large_body_without_newlines(self, log_server, store):
        size = 4 * 1024 * 1024
        log_server.content = b"z" * size
        fetcher = IncrementalFetcher(log_server.url, store, chunk_size=4096,
                                     max_line_bytes=64 * 1024)
        with fetcher.fetch() as stream:
            assert _drain(stream) == [""]
        assert store.load().byte_position == size


class TestBodyLength:
    def test_short_body_is_logged(self, store, caplog):
        response = ScriptedResponse([b"line-0000\n", b"line-0001\n"])
        stream = FetchedStream(response, store, "http://h/app.log",
                               body_start=100, resume_from=100, length=50, total=500)
        with caplog.at_level(logging.WARNING, logger="logrelay.fetcher"):
            with stream:
                _drain(stream)
        assert "was 20 bytes" in caplog.text
        assert store.load().byte_position == 120

    def test_matching_body_is_quiet(self, store, caplog):
        response = ScriptedResponse([b"line-0000\n"])
        stream = FetchedStream(response, store, "http://h/app.log",
                               body_start=0, resume_from=0, length=10, total=10)
        with caplog.at_level(logging.WARNING, logger="logrelay.fetcher"):
            with stream:
                _drain(stream)
        assert caplog.text == ""
