"""events.py — typed audit events and the sinks that record them

Orchestrators (runner, patch applier) report through a plain callback that
receives a freeform dict with a ``type`` key. ``AuditTrail`` turns those into
full records:

    {"timestamp": "...Z", "type": "exec/preview", "session_id": "...", "payload": {...}}

and hands them to a sink. The set of event types is closed; a record with an
unknown type is rejected before it reaches any sink.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, TextIO

from jsonschema import Draft202012Validator

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "exec/preview",
    "exec/started",
    "exec/finished",
    "patch/preview",
    "patch/applied",
    "patch/rollback",
    "approval/requested",
    "approval/granted",
    "approval/denied",
    "sandbox/set",
    "approvals/set",
)

AUDIT_EVENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "agent_guard audit event",
    "type": "object",
    "required": ["timestamp", "type", "session_id", "payload"],
    "properties": {
        "timestamp": {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$"},
        "type": {"enum": list(EVENT_TYPES)},
        "session_id": {"type": "string", "minLength": 1},
        "payload": {"type": "object"},
    },
    "additionalProperties": False,
}

_validator = Draft202012Validator(AUDIT_EVENT_SCHEMA)

EventCallback = Callable[[Dict[str, Any]], None]


def utc_now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def emit(on_event: Optional[EventCallback], event_type: str, payload: Dict[str, Any]) -> None:
    """Send one freeform event to the callback (if any).

    A failing callback is logged and dropped: recording an event never blocks
    or replaces the outcome of the operation that produced it.
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    if on_event is None:
        return
    try:
        on_event({"type": event_type, **payload})
    except Exception as e:
        logger.warning("audit sink failed for %s: %s", event_type, e)


def validation_errors(record: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for err in _validator.iter_errors(record):
        where = ".".join(str(x) for x in err.absolute_path)
        out.append(f"{where}: {err.message}" if where else err.message)
    return out


# -----------------------------
# Sinks
# -----------------------------


class EventSink:
    """Interface: ``write(record)``; ``close()`` is optional."""

    def write(self, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class JsonlStdoutSink(EventSink):
    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream

    def write(self, record: Dict[str, Any]) -> None:
        out = self.stream or sys.stdout
        out.write(json.dumps(record, ensure_ascii=False) + "\n")
        out.flush()


class FileEventSink(EventSink):
    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)

    def write(self, record: Dict[str, Any]) -> None:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")


class MultiEventSink(EventSink):
    """Fan-out: every sink receives every record, in registration order."""

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self.sinks = list(sinks)

    def write(self, record: Dict[str, Any]) -> None:
        for sink in self.sinks:
            sink.write(record)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()


class MemoryEventSink(EventSink):
    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    def write(self, record: Dict[str, Any]) -> None:
        self.records.append(record)

    @property
    def types(self) -> List[str]:
        return [r["type"] for r in self.records]


class AuditTrail:
    """Callable ``on_event`` adapter that stamps, validates and records events."""

    def __init__(self, sink: EventSink, session_id: str) -> None:
        self.sink = sink
        self.session_id = session_id

    def record(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        rec = {
            "timestamp": utc_now_iso(),
            "type": event_type,
            "session_id": self.session_id,
            "payload": dict(payload or {}),
        }
        errors = validation_errors(rec)
        if errors:
            raise ValueError(f"Invalid audit event: {'; '.join(errors)}")
        self.sink.write(rec)
        return rec

    def __call__(self, event: Dict[str, Any]) -> None:
        data = dict(event)
        event_type = data.pop("type", None)
        if not isinstance(event_type, str):
            raise ValueError("Audit event is missing a string 'type'")
        self.record(event_type, data)

    def close(self) -> None:
        self.sink.close()
