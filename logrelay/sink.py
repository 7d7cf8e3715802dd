"""Downstream event sinks: Sentry for real delivery, a logging sink for dry runs."""

import logging
import uuid

import sentry_sdk

from logrelay.errors import DeliveryError
from logrelay.mapper import to_sentry_payload
from logrelay.models import Event

logger = logging.getLogger(__name__)

FLUSH_TIMEOUT = 2.0


class EventSink:
    """Capture contract: return a delivery id, or raise DeliveryError."""

    def capture(self, event: Event) -> str:
        raise NotImplementedError

    def flush(self, timeout: float = FLUSH_TIMEOUT) -> None:
        pass

    def close(self) -> None:
        pass


class SentrySink(EventSink):
    """Sends events through an explicit sentry_sdk.Client; no process-global hub."""

    def __init__(self, dsn: str, environment: str = "production", release: str | None = None,
                 client=None):
        if client is None:
            options = {"environment": environment, "default_integrations": False}
            if release:
                options["release"] = release
            client = sentry_sdk.Client(dsn=dsn, **options)
        self._client = client

    def capture(self, event: Event) -> str:
        payload = to_sentry_payload(event)
        try:
            event_id = self._client.capture_event(payload)
        except Exception as e:
            raise DeliveryError(f"Sentry client raised while capturing event: {e}") from e
        if event_id is None:
            raise DeliveryError("Sentry client dropped the event")
        return event_id

    def flush(self, timeout: float = FLUSH_TIMEOUT) -> None:
        self._client.flush(timeout=timeout)

    def close(self) -> None:
        self._client.close(timeout=FLUSH_TIMEOUT)


class LogSink(EventSink):
    """Dry-run sink used when no DSN is configured: events go to the log only."""

    def __init__(self):
        self.captured: int = 0

    def capture(self, event: Event) -> str:
        self.captured += 1
        event_id = uuid.uuid4().hex
        logger.info("[%s] %s %s (%d frames, tags=%s)",
                    event.severity.value.upper(), event.timestamp.isoformat(),
                    event.message, len(event.frames), event.tags)
        return event_id
