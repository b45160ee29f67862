"""Server-Sent Events framing and the per-job event channel."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict

from .errors import BrokerError

logger = logging.getLogger(__name__)

EVENT_TYPES = ("info", "progress", "file", "log", "done", "error")
TERMINAL_TYPES = frozenset({"done", "error"})
KEEPALIVE = ": keep-alive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


@dataclass(frozen=True)
class Event:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"unknown event type {self.type!r}")

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES


def format_sse(event: Event) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event.data, ensure_ascii=False)}\n\n"


def error_event(exc: BaseException) -> Event:
    if isinstance(exc, BrokerError):
        return Event("error", {"code": exc.code, "error": exc.message})
    return Event("error", {"code": "internal_error", "error": str(exc) or exc.__class__.__name__})


class EventChannel:
    """Ordered hand-off of one job's events to at most one HTTP response.

    The job task publishes; ``stream`` drains. Once a terminal event has been
    published the channel is closed and later events are dropped.
    """

    def __init__(self, job_id: str = "-"):
        self.job_id = job_id
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: Event) -> bool:
        if self._closed:
            logger.warning("Job %s: dropping %s event after terminal event", self.job_id, event.type)
            return False
        if event.terminal:
            self._closed = True
        self._queue.put_nowait(event)
        return True

    async def stream(self, keepalive_interval: float = 15) -> AsyncIterator[str]:
        """Yield SSE frames, with a keep-alive comment after each idle interval."""
        while True:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=keepalive_interval)
            except asyncio.TimeoutError:
                yield KEEPALIVE
                continue
            yield format_sse(event)
            if event.terminal:
                return
