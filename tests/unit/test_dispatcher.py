"""Tests for BatchDispatcher scheduling and isolation."""

import threading
import time

import pytest
from loguru import logger

from src.analytics.dispatcher import BatchDispatcher, group_events_by_user
from src.analytics.ingestion import EventQueue
from src.analytics.models import UserProcessingResult
from tests.helpers import make_event

WAIT = 5.0


class RecordingPipeline:
    """Records every call; optionally blocks chosen users until released."""

    def __init__(self, block_users=(), fail_users=()):
        self.block_users = set(block_users)
        self.fail_users = set(fail_users)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def __call__(self, user_id, events):
        with self._lock:
            self.calls.append((user_id, len(events)))
        if user_id in self.block_users:
            self.entered.set()
            self.release.wait(WAIT)
        if user_id in self.fail_users:
            raise RuntimeError("pipeline exploded")
        return UserProcessingResult(user_id=user_id, event_count=len(events))

    def events_for(self, user_id):
        with self._lock:
            return sum(count for uid, count in self.calls if uid == user_id)


def wait_until(predicate, timeout=WAIT):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def queue():
    return EventQueue(high_watermark=50)


@pytest.fixture
def make_dispatcher(queue):
    created = []

    def factory(pipeline, **kwargs):
        kwargs.setdefault("user_timeout_seconds", 2.0)
        dispatcher = BatchDispatcher(queue=queue, pipeline=pipeline, **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in created:
        dispatcher.stop(flush=False)


def test_group_events_by_user_keeps_first_seen_order():
    events = [make_event(user_id=u) for u in ["b", "a", "b", "c"]]
    grouped = group_events_by_user(events)
    assert list(grouped) == ["b", "a", "c"]
    assert len(grouped["b"]) == 2


class TestTick:
    def test_empty_queue_is_a_no_op(self, make_dispatcher):
        pipeline = RecordingPipeline()
        report = make_dispatcher(pipeline).tick()

        assert report.skipped is False
        assert report.batch_size == 0
        assert pipeline.calls == []

    def test_each_user_gets_one_sub_batch(self, queue, make_dispatcher):
        pipeline = RecordingPipeline()
        dispatcher = make_dispatcher(pipeline)
        for user_id in ["a", "b", "a", "a"]:
            queue.put(make_event(user_id=user_id))

        report = dispatcher.tick()

        assert report.batch_size == 4
        assert report.users_processed == 2
        assert sorted(pipeline.calls) == [("a", 3), ("b", 1)]
        assert len(queue) == 0
        assert dispatcher.status.total_flushes == 1
        assert dispatcher.status.events_processed == 4

    def test_failing_user_does_not_abort_others(self, queue, make_dispatcher):
        pipeline = RecordingPipeline(fail_users={"bad"})
        dispatcher = make_dispatcher(pipeline)
        queue.put(make_event(user_id="bad"))
        queue.put(make_event(user_id="good"))

        report = dispatcher.tick()

        assert report.users_failed == ["bad"]
        assert "good" in report.results
        assert dispatcher.status.users_failed == 1

    def test_result_with_errors_counts_as_failed(self, queue, make_dispatcher):
        def pipeline(user_id, events):
            return UserProcessingResult(user_id=user_id, event_count=len(events), errors=["stage failed"])

        dispatcher = make_dispatcher(pipeline)
        queue.put(make_event(user_id="partial"))

        report = dispatcher.tick()

        assert report.users_processed == 1
        assert report.users_failed == ["partial"]

    def test_flush_callback_receives_report(self, queue, make_dispatcher):
        reports = []
        dispatcher = make_dispatcher(RecordingPipeline(), on_flush_complete=reports.append)
        queue.put(make_event())

        dispatcher.tick()
        dispatcher.tick()

        assert len(reports) == 1
        assert reports[0].batch_size == 1


class TestSingleFlush:
    def test_tick_during_flush_is_skipped_and_nothing_is_lost(self, queue, make_dispatcher):
        pipeline = RecordingPipeline(block_users={"slow"})
        dispatcher = make_dispatcher(pipeline)
        queue.put(make_event(user_id="slow"))

        worker = threading.Thread(target=dispatcher.tick)
        worker.start()
        assert pipeline.entered.wait(WAIT)

        queue.put(make_event(user_id="late"))
        skipped = dispatcher.tick()

        assert skipped.skipped is True
        assert dispatcher.status.skipped_ticks == 1
        assert len(queue) == 1

        pipeline.release.set()
        worker.join(WAIT)

        report = dispatcher.tick()
        assert report.skipped is False
        assert pipeline.events_for("late") == 1
        assert pipeline.events_for("slow") == 1


class TestTimeouts:
    def test_slow_user_times_out_without_blocking_others(self, queue, make_dispatcher):
        pipeline = RecordingPipeline(block_users={"slow"})
        dispatcher = make_dispatcher(pipeline, user_timeout_seconds=0.1)
        queue.put(make_event(user_id="slow"))
        queue.put(make_event(user_id="fast"))

        report = dispatcher.tick()

        assert report.users_timed_out == ["slow"]
        assert "fast" in report.results
        assert dispatcher.status.users_timed_out == 1
        pipeline.release.set()

    def test_user_still_in_flight_is_deferred(self, queue, make_dispatcher):
        pipeline = RecordingPipeline(block_users={"slow"})
        dispatcher = make_dispatcher(pipeline, user_timeout_seconds=0.1)
        queue.put(make_event(user_id="slow"))
        dispatcher.tick()

        queue.put(make_event(user_id="slow"))
        queue.put(make_event(user_id="other"))
        report = dispatcher.tick()

        assert report.users_deferred == ["slow"]
        assert "other" in report.results
        assert len(queue) == 1
        assert pipeline.events_for("slow") == 1

        pipeline.release.set()
        pipeline.block_users.clear()
        assert wait_until(lambda: "slow" in dispatcher.tick().results)
        assert pipeline.events_for("slow") == 2

    def test_users_waiting_for_a_worker_are_requeued_not_timed_out(self, queue, make_dispatcher):
        pipeline = RecordingPipeline(block_users={"slow"})
        dispatcher = make_dispatcher(pipeline, max_workers=1, user_timeout_seconds=0.2)
        queue.put(make_event(user_id="slow"))
        for user_id in ["a", "b", "c", "d"]:
            queue.put(make_event(user_id=user_id))

        started = time.monotonic()
        report = dispatcher.tick()
        elapsed = time.monotonic() - started

        assert report.users_timed_out == ["slow"]
        assert report.users_deferred == ["a", "b", "c", "d"]
        assert elapsed < 1.0
        assert len(queue) == 4
        assert dispatcher.status.users_timed_out == 1

        pipeline.release.set()

        def all_processed():
            dispatcher.tick()
            return all(pipeline.events_for(u) == 1 for u in ["a", "b", "c", "d"])

        assert wait_until(all_processed)
        assert len(queue) == 0


class TestBackgroundThread:
    def test_thread_flushes_on_interval(self, queue, make_dispatcher):
        pipeline = RecordingPipeline()
        dispatcher = make_dispatcher(pipeline, interval_seconds=0.05)
        dispatcher.start()
        assert dispatcher.status.is_running

        queue.put(make_event())
        assert wait_until(lambda: pipeline.events_for("learner-1") == 1)

        dispatcher.stop()
        assert dispatcher.status.is_running is False
        assert dispatcher.status.total_flushes >= 1

    def test_stop_flushes_remaining_events(self, queue, make_dispatcher):
        pipeline = RecordingPipeline()
        dispatcher = make_dispatcher(pipeline, interval_seconds=60)
        dispatcher.start()
        queue.put(make_event())

        dispatcher.stop()

        assert pipeline.events_for("learner-1") == 1
        assert len(queue) == 0

    def test_request_flush_wakes_the_thread(self, queue, make_dispatcher):
        pipeline = RecordingPipeline()
        dispatcher = make_dispatcher(pipeline, interval_seconds=60)
        dispatcher.start()
        queue.put(make_event())

        dispatcher.request_flush()

        assert wait_until(lambda: pipeline.events_for("learner-1") == 1)

    def test_request_flush_without_thread_runs_inline(self, queue, make_dispatcher):
        pipeline = RecordingPipeline()
        dispatcher = make_dispatcher(pipeline)
        queue.put(make_event())

        dispatcher.request_flush()

        assert pipeline.events_for("learner-1") == 1


class TestConcurrency:
    def test_concurrent_skipped_ticks_are_all_counted(self, queue, make_dispatcher):
        pipeline = RecordingPipeline(block_users={"slow"})
        dispatcher = make_dispatcher(pipeline)
        queue.put(make_event(user_id="slow"))

        worker = threading.Thread(target=dispatcher.tick)
        worker.start()
        assert pipeline.entered.wait(WAIT)

        def hammer():
            for _ in range(50):
                dispatcher.tick()

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        pipeline.release.set()
        worker.join(WAIT)

        assert dispatcher.status.skipped_ticks == 400

    def test_every_event_is_processed_exactly_once(self, queue, make_dispatcher):
        seen: list[str] = []
        seen_lock = threading.Lock()

        def pipeline(user_id, events):
            with seen_lock:
                seen.extend(e.event_id for e in events)
            return UserProcessingResult(user_id=user_id, event_count=len(events))

        dispatcher = make_dispatcher(pipeline, interval_seconds=0.005)
        dispatcher.start()

        produced: list[list[str]] = [[] for _ in range(6)]

        def produce(index):
            for n in range(200):
                event = make_event(user_id=f"learner-{n % 7}")
                produced[index].append(event.event_id)
                queue.put(event)

        producers = [threading.Thread(target=produce, args=(i,)) for i in range(6)]
        for thread in producers:
            thread.start()
        for thread in producers:
            thread.join()

        dispatcher.stop()

        expected = sorted(event_id for batch in produced for event_id in batch)
        assert len(expected) == 1200
        assert sorted(seen) == expected
        assert dispatcher.status.events_processed == 1200


class TestShutdown:
    def test_stop_warns_about_stranded_events(self, queue, make_dispatcher):
        messages = []
        handler_id = logger.add(messages.append, level="WARNING", format="{message}")
        pipeline = RecordingPipeline(block_users={"slow"})
        dispatcher = make_dispatcher(pipeline, user_timeout_seconds=0.1)
        try:
            queue.put(make_event(user_id="slow"))
            dispatcher.tick()
            queue.put(make_event(user_id="slow"))

            dispatcher.stop()

            assert len(queue) == 1
            assert any("1 events left queued" in message for message in messages)
        finally:
            pipeline.release.set()
            logger.remove(handler_id)
