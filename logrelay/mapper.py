"""Maps parsed log records onto backend-agnostic events and the Sentry wire format."""

import uuid

from logrelay.models import Event, LogRecord, Severity
from logrelay.parser import parse_stack_frame

_SEVERITIES = {
    "error": Severity.ERROR,
    "warning": Severity.WARNING,
    "debug": Severity.DEBUG,
}


def to_severity(level: str) -> Severity:
    """Anything we do not recognise is reported as info."""
    return _SEVERITIES.get(level.strip().lower(), Severity.INFO)


def to_event(record: LogRecord) -> Event:
    frames = []
    for line in record.stack_lines:
        frame = parse_stack_frame(line)
        if frame is not None:
            frames.append(frame)
    return Event(
        timestamp=record.timestamp,
        severity=to_severity(record.level),
        message=record.message,
        tags=dict(record.context),
        frames=frames,
    )


def to_sentry_payload(event: Event) -> dict:
    """Render an Event as a Sentry event document.

    Sentry lists frames oldest call first, the reverse of a PHP trace where
    #0 is the innermost call.
    """
    payload = {
        "event_id": uuid.uuid4().hex,
        "timestamp": event.timestamp.isoformat(),
        "level": event.severity.value,
        "message": event.message,
        "logger": "logrelay",
        "platform": "other",
        "tags": dict(event.tags),
    }
    if event.frames:
        payload["exception"] = {
            "values": [{
                "type": event.tags.get("category") or "Error",
                "value": event.message,
                "stacktrace": {
                    "frames": [
                        {"filename": f.file, "lineno": f.line, "function": f.function}
                        for f in reversed(event.frames)
                    ],
                },
            }],
        }
    return payload
