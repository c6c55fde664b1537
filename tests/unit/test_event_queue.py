"""Tests for the ingestion EventQueue."""

import threading

from src.analytics.ingestion import EventQueue
from tests.helpers import make_event


def test_put_reports_high_watermark():
    queue = EventQueue(high_watermark=2)

    assert queue.put(make_event()) is False
    assert queue.put(make_event()) is False
    assert queue.put(make_event()) is True


def test_drain_empties_the_queue():
    queue = EventQueue()
    events = [make_event() for _ in range(3)]
    for event in events:
        queue.put(event)

    assert queue.drain() == events
    assert len(queue) == 0
    assert queue.drain() == []


def test_requeue_puts_events_ahead_of_new_arrivals():
    queue = EventQueue()
    newer = make_event(user_id="newer")
    older = make_event(user_id="older")
    queue.put(newer)

    queue.requeue([older])

    assert [e.user_id for e in queue.drain()] == ["older", "newer"]


def test_concurrent_producers_lose_nothing():
    queue = EventQueue(high_watermark=10_000)

    def produce():
        for _ in range(200):
            queue.put(make_event())

    threads = [threading.Thread(target=produce) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(queue.drain()) == 1000
