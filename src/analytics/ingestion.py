"""
Event Ingestion Queue.

Unbounded in-process buffer with many producers and one consumer at a time.
The drain is an atomic copy-and-clear so events arriving mid-flush land in
the next batch.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from src.analytics.events import AnalyticsEvent


class EventQueue:
    """Thread-safe append-only event buffer."""

    def __init__(self, high_watermark: int = 50):
        self.high_watermark = high_watermark
        self._lock = threading.Lock()
        self._events: list[AnalyticsEvent] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def put(self, event: AnalyticsEvent) -> bool:
        """
        Append an event.

        Returns:
            True if the buffer is now above the high watermark
        """
        with self._lock:
            self._events.append(event)
            return len(self._events) > self.high_watermark

    def drain(self) -> list[AnalyticsEvent]:
        """Swap out and return everything buffered."""
        with self._lock:
            events, self._events = self._events, []
        return events

    def requeue(self, events: Iterable[AnalyticsEvent]) -> None:
        """Return events to the buffer ahead of newer arrivals."""
        events = list(events)
        if not events:
            return
        with self._lock:
            self._events[:0] = events
