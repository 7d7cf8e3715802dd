"""Data model shared across the relay: offsets, parsed records and outgoing events."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(frozen=True)
class OffsetRecord:
    source_id: str
    byte_position: int

    @classmethod
    def fresh(cls) -> "OffsetRecord":
        return cls(source_id="", byte_position=0)


@dataclass
class LogRecord:
    timestamp: datetime
    level: str                                               # as written in the log, e.g. "error"
    message: str
    context: dict[str, str] = field(default_factory=dict)    # ip, user_id, session, category
    stack_lines: list[str] = field(default_factory=list)     # raw "#N ..." lines, in source order


@dataclass(frozen=True)
class StackFrame:
    file: str
    line: int
    function: str


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class Event:
    timestamp: datetime
    severity: Severity
    message: str
    tags: dict[str, str] = field(default_factory=dict)
    frames: list[StackFrame] = field(default_factory=list)
