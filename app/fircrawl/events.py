"""Progress events for one job invocation and their server-sent-event framing.

A :class:`ProgressChannel` has exactly one reader (the HTTP stream) and one
writer (the orchestrator thread). Events are validated against a fixed set of
required fields when published. ``paused``, ``complete`` and ``error`` close
the channel; anything published afterwards is dropped.
"""
from __future__ import annotations

import json
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from .logging_utils import _crawler_event
from .utils import log_line


class EventName(str, Enum):
    LOG = "log"
    FIR_FOUND = "fir_found"
    FIR_STATUS = "fir_status"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventName.PAUSED, EventName.COMPLETE, EventName.ERROR})

REQUIRED_FIELDS: dict[EventName, tuple[str, ...]] = {
    EventName.LOG: ("msg", "type"),
    EventName.FIR_FOUND: ("recordNumber", "districtId", "stationLabel"),
    EventName.FIR_STATUS: ("recordNumber", "status"),
    EventName.PAUSED: ("jobId",),
    EventName.COMPLETE: ("total", "downloaded"),
    EventName.ERROR: ("msg",),
}

LOG_TYPES = frozenset({"info", "success", "warning", "error"})
FIR_STATUS_VALUES = frozenset({"downloading", "downloaded", "failed", "no_token"})


def validate_payload(name: EventName, data: dict[str, Any]) -> None:
    """Raise ``ValueError`` if ``data`` does not fit the schema for ``name``."""

    missing = [key for key in REQUIRED_FIELDS[name] if key not in data]
    if missing:
        raise ValueError(f"{name.value} event missing fields: {', '.join(missing)}")

    if name is EventName.LOG and data["type"] not in LOG_TYPES:
        raise ValueError(f"unknown log type {data['type']!r}")

    if name is EventName.FIR_STATUS:
        status = data["status"]
        if status not in FIR_STATUS_VALUES:
            raise ValueError(f"unknown fir_status {status!r}")
        if status == "downloaded" and "path" not in data:
            raise ValueError("fir_status downloaded requires path")
        if status == "failed" and "error" not in data:
            raise ValueError("fir_status failed requires error")


@dataclass(frozen=True)
class ProgressEvent:
    name: EventName
    data: dict[str, Any]
    seq: int
    emitted_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.name in TERMINAL_EVENTS

    def to_sse(self) -> str:
        body = json.dumps(self.data, ensure_ascii=False, separators=(",", ":"), default=str)
        return f"event: {self.name.value}\ndata: {body}\n\n"


_CLOSE = object()


class ProgressChannel:
    def __init__(self, job_id: Optional[int] = None, *, heartbeat_seconds: float = 15.0) -> None:
        self.job_id = job_id
        self.heartbeat_seconds = heartbeat_seconds
        self.events: list[ProgressEvent] = []
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._lock = threading.Lock()
        self._seq = 0
        self._terminated = False
        self._closed = False
        self._detached = False
        self._found: set[str] = set()

    @property
    def terminated(self) -> bool:
        """True once a terminal event has been published."""

        return self._terminated

    @property
    def detached(self) -> bool:
        return self._detached

    def publish(self, name: EventName | str, **data: Any) -> Optional[ProgressEvent]:
        event_name = EventName(name)
        validate_payload(event_name, data)

        with self._lock:
            if self._terminated or self._closed:
                _crawler_event(
                    "state",
                    phase="progress",
                    kind="dropped_after_close",
                    job_id=self.job_id,
                    event=event_name.value,
                )
                return None

            record_number = data.get("recordNumber")
            if event_name is EventName.FIR_FOUND:
                self._found.add(str(record_number))
            elif event_name is EventName.FIR_STATUS and str(record_number) not in self._found:
                raise ValueError(f"fir_status for {record_number!r} before fir_found")

            self._seq += 1
            event = ProgressEvent(name=event_name, data=dict(data), seq=self._seq)
            self.events.append(event)
            if event.is_terminal:
                self._terminated = True
            if not self._detached:
                self._queue.put(event)
                if event.is_terminal:
                    self._queue.put(_CLOSE)
        return event

    def log(self, msg: str, type: str = "info") -> Optional[ProgressEvent]:
        """Publish a ``log`` event and mirror it into the server log."""

        prefix = f"[JOB {self.job_id}] " if self.job_id is not None else ""
        log_line(f"{prefix}{msg}")
        return self.publish(EventName.LOG, msg=msg, type=type)

    def close(self) -> None:
        """End the stream without a terminal event (writer finished or died)."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            if not self._detached and not self._terminated:
                self._queue.put(_CLOSE)

    def detach(self) -> None:
        """The reader went away: stop queueing events and discard pending ones."""

        with self._lock:
            if self._detached:
                return
            self._detached = True
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
        _crawler_event("state", phase="progress", kind="subscriber_detached", job_id=self.job_id)

    def stream(self) -> Iterator[str]:
        """Yield SSE frames until the channel closes; heartbeats keep proxies open."""

        try:
            while True:
                try:
                    item = self._queue.get(timeout=self.heartbeat_seconds)
                except queue.Empty:
                    yield ": heartbeat\n\n"
                    continue
                if item is _CLOSE:
                    return
                yield item.to_sse()
        finally:
            if not (self._terminated or self._closed):
                self.detach()


__all__ = [
    "EventName",
    "ProgressEvent",
    "ProgressChannel",
    "TERMINAL_EVENTS",
    "REQUIRED_FIELDS",
    "validate_payload",
]
