"""Event channel between the background loop and the polling host."""

from __future__ import annotations

import logging
import threading
from collections import deque

from telekinesis.core.model import Event, EventKind

LOGGER = logging.getLogger(__name__)


class EventChannel:
    """Unbounded many-producer, single-consumer FIFO.

    Producers never block on the consumer. ``poll`` drains whatever was
    queued at the time of the call and returns immediately.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queue: deque[Event] = deque()
        self._seq = 0
        self._closed = False

    def push(self, kind: EventKind, device: str | None = None, detail: str | None = None) -> Event | None:
        with self._lock:
            if self._closed:
                LOGGER.debug("Dropping %s for %s, channel closed", kind.value, device)
                return None
            self._seq += 1
            event = Event(kind=kind, seq=self._seq, device=device, detail=detail)
            self._queue.append(event)
        LOGGER.debug("Event %s", event.as_string())
        return event

    def poll(self) -> list[Event]:
        with self._lock:
            events = list(self._queue)
            self._queue.clear()
        return events

    def close(self) -> int:
        """Drop pending events and refuse new ones. Returns how many were dropped."""
        with self._lock:
            dropped = len(self._queue)
            self._queue.clear()
            self._closed = True
        if dropped:
            LOGGER.info("Discarded %d undelivered events on close", dropped)
        return dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
