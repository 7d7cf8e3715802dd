"""Entry point for the error-log relay: tails the remote log and forwards errors to Sentry."""

import argparse
import logging
import signal
import sys
import threading

from logrelay.config import Config, load_config
from logrelay.dashboard import create_dashboard_app, run_dashboard
from logrelay.errors import AuthenticationError, ConfigError, FetchError
from logrelay.fetcher import IncrementalFetcher
from logrelay.offset_store import OffsetStore
from logrelay.relay import Relay
from logrelay.sink import EventSink, LogSink, SentrySink

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s — %(message)s"

logger = logging.getLogger(__name__)


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remote error-log relay")
    parser.add_argument(
        "--config", default=None,
        help="Path to the YAML config (default: $CONFIG_PATH or config/config.yaml)",
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Run a single fetch cycle and exit",
    )
    return parser


def setup_logging(config: Config) -> None:
    logging.basicConfig(
        level=config.logging.level.upper(),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    if config.logging.file:
        handler = logging.FileHandler(config.logging.file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def build_sink(config: Config) -> EventSink:
    if not config.sentry.dsn:
        logger.warning("No Sentry DSN configured; events will only be logged")
        return LogSink()
    return SentrySink(config.sentry.dsn, config.sentry.environment, config.sentry.release)


def run_once(relay: Relay) -> bool:
    """Run one cycle, logging fetch errors by category. Returns False on auth failure."""
    try:
        relay.run_cycle()
    except AuthenticationError as e:
        relay.metrics.increment("auth_failures")
        logger.error("Authentication failed, fix credentials before the next cycle: %s", e)
        return False
    except FetchError as e:
        relay.metrics.increment("fetch_errors")
        logger.warning("Fetch failed (retryable), will retry next cycle: %s", e)
    return True


def main(argv: list[str] | None = None) -> int:
    args = build_cli_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.critical("Failed to load config: %s", e)
        return 1
    setup_logging(config)

    try:
        store = OffsetStore(config.server.state_file)
        sink = build_sink(config)
    except Exception as e:
        logger.critical("Failed to initialise relay: %s", e)
        return 1

    shutdown_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    fetcher = IncrementalFetcher(
        config.server.log_url,
        store,
        username=config.server.username,
        password=config.server.password,
        timeout=config.server.timeout,
        chunk_size=config.server.chunk_size,
        persist_every_bytes=config.server.persist_every_bytes,
        max_line_bytes=config.server.max_line_bytes,
    )
    relay = Relay(fetcher, sink, shutdown_event=shutdown_event)

    if config.dashboard.enabled:
        app = create_dashboard_app(relay, store)
        threading.Thread(target=run_dashboard, args=(app, config.dashboard.port),
                         daemon=True).start()
        logger.info("Dashboard running on port %d", config.dashboard.port)

    logger.info("Tailing %s every %.1fs, offsets in %s",
                config.server.log_url, config.server.check_interval, store.path)
    try:
        if args.once:
            return 0 if run_once(relay) else 2
        while not shutdown_event.is_set():
            run_once(relay)
            shutdown_event.wait(config.server.check_interval)
    finally:
        sink.flush()
        sink.close()
        fetcher.close()
        logger.info("Relay stopped: %s", relay.metrics.snapshot()["counters"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
