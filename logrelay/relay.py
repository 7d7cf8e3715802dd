"""Relay cycle: fetch new bytes, rebuild records, map them to events and deliver.

The persisted offset only advances past a record once it has been handed to
the sink, so a crash or shutdown re-reads at most the unconfirmed tail
(at-least-once, never skip-ahead).
"""

import logging
import threading
from dataclasses import dataclass

from logrelay.errors import RelayError
from logrelay.failures import FailureTracker
from logrelay.fetcher import IncrementalFetcher
from logrelay.mapper import to_event
from logrelay.metrics import Metrics
from logrelay.models import LogRecord
from logrelay.parser import RecordParser
from logrelay.sink import EventSink

logger = logging.getLogger(__name__)


@dataclass
class CycleStats:
    records: int = 0
    delivered: int = 0
    failed: int = 0
    bytes_consumed: int = 0
    no_new_data: bool = False
    interrupted: bool = False


class Relay:
    def __init__(
        self,
        fetcher: IncrementalFetcher,
        sink: EventSink,
        metrics: Metrics | None = None,
        failures: FailureTracker | None = None,
        shutdown_event: threading.Event | None = None,
    ):
        self._fetcher = fetcher
        self._sink = sink
        self._metrics = metrics or Metrics()
        self._failures = failures or FailureTracker()
        self._shutdown = shutdown_event or threading.Event()
        self._last_stats: CycleStats | None = None

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def failures(self) -> FailureTracker:
        return self._failures

    @property
    def source_url(self) -> str:
        return self._fetcher.url

    @property
    def last_stats(self) -> CycleStats | None:
        """Stats of the most recent cycle that got past fetch()."""
        return self._last_stats

    def run_cycle(self) -> CycleStats:
        """One fetch-parse-map-send pass. Fetch errors propagate to the caller."""
        self._metrics.mark_cycle()
        stats = CycleStats()

        stream = self._fetcher.fetch()
        if stream is None:
            stats.no_new_data = True
            self._metrics.increment("empty_polls")
            self._last_stats = stats
            return stats

        parser = RecordParser()
        open_start = stream.resume_from
        with stream:
            for text, start, end in stream.lines():
                before = parser.current
                closed = parser.feed(text)
                if parser.current is not before:
                    open_start = start
                if closed is not None:
                    self._deliver(closed, stats)
                stream.confirm(open_start if parser.current is not None else end)

                if self._shutdown.is_set():
                    stats.interrupted = True
                    logger.info("Shutdown requested; stopping at byte %d", stream.confirmed)
                    break
            else:
                last = parser.finish()
                if last is not None:
                    self._deliver(last, stats)
                stream.confirm(stream.consumed)

            stats.bytes_consumed = stream.bytes_consumed

        if stream.rotated:
            self._metrics.increment("rotations")
        self._metrics.increment("bytes_consumed", stats.bytes_consumed)
        self._last_stats = stats
        logger.info("Cycle done: %d records, %d delivered, %d failed, %d bytes",
                    stats.records, stats.delivered, stats.failed, stats.bytes_consumed)
        return stats

    def _deliver(self, record: LogRecord, stats: CycleStats) -> None:
        stats.records += 1
        self._metrics.increment("records_parsed")
        event = to_event(record)
        try:
            event_id = self._sink.capture(event)
        except RelayError as e:
            stats.failed += 1
            self._metrics.increment("delivery_failures")
            self._failures.record(record, e)
            logger.warning("Failed to deliver event %r: %s", record.message[:120], e)
            return
        stats.delivered += 1
        self._metrics.increment("events_delivered")
        logger.debug("Delivered event %s", event_id)
