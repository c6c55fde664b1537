"""
Batch Dispatcher.

Drains the ingestion queue on a fixed period and routes each user's
sub-batch through the processing pipeline.

Invariants:
- At most one flush runs at a time. A tick that arrives during a flush is
  skipped; its events stay queued for the next tick.
- A failure or timeout in one user's pipeline never aborts the others.
- A flush waits at most ``user_timeout_seconds`` for its users. Users still
  running then are reported as timed out; users whose work never started
  (all workers busy) are cancelled and their events requeued.
- A user whose previous pipeline is still running (it outlived its timeout)
  is not processed concurrently; that user's new events are requeued.

Can be driven by the caller (``tick()``) or by a background thread
(``start()`` / ``stop()``).
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from src.analytics.errors import PipelineTimeoutError
from src.analytics.events import AnalyticsEvent
from src.analytics.ingestion import EventQueue
from src.analytics.models import FlushReport, UserProcessingResult

UserPipeline = Callable[[str, list[AnalyticsEvent]], UserProcessingResult]


def group_events_by_user(events: Iterable[AnalyticsEvent]) -> dict[str, list[AnalyticsEvent]]:
    """Partition events by user, keeping first-seen user order."""
    grouped: dict[str, list[AnalyticsEvent]] = {}
    for event in events:
        grouped.setdefault(event.user_id, []).append(event)
    return grouped


@dataclass
class DispatcherStatus:
    """Current dispatcher status."""

    is_running: bool = False
    is_flushing: bool = False
    last_flush_at: datetime | None = None
    total_flushes: int = 0
    skipped_ticks: int = 0
    events_processed: int = 0
    users_failed: int = 0
    users_timed_out: int = 0


@dataclass
class BatchDispatcher:
    """
    Periodic drain-and-dispatch scheduler.

    Usage:
        dispatcher = BatchDispatcher(queue, pipeline, interval_seconds=2.0)
        dispatcher.start()
        # ... producers enqueue ...
        dispatcher.stop()

    Or, without a thread:
        report = dispatcher.tick()
    """

    queue: EventQueue
    pipeline: UserPipeline
    interval_seconds: float = 2.0
    user_timeout_seconds: float = 10.0
    max_workers: int = 4
    on_flush_complete: Callable[[FlushReport], None] | None = None

    # Internal state
    _status: DispatcherStatus = field(default_factory=DispatcherStatus)
    _status_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _flush_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _inflight_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _inflight: set[str] = field(default_factory=set, repr=False)
    _executor: ThreadPoolExecutor | None = field(default=None, repr=False)
    _thread: threading.Thread | None = field(default=None, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _wake_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def status(self) -> DispatcherStatus:
        """Get current dispatcher status."""
        return self._status

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def start(self) -> None:
        """Start the background flush thread."""
        if self._status.is_running:
            logger.warning("Batch dispatcher already running")
            return

        self._stop_event.clear()
        self._wake_event.clear()
        self._status.is_running = True
        self._thread = threading.Thread(
            target=self._flush_loop,
            name="analytics-batch-dispatcher",
            daemon=True,
        )
        self._thread.start()
        logger.info("Batch dispatcher started (interval: {}s)", self.interval_seconds)

    def stop(self, flush: bool = True) -> None:
        """
        Stop the background thread.

        Args:
            flush: Run one last flush so queued events are not stranded
        """
        if self._status.is_running:
            logger.info("Stopping batch dispatcher...")
            self._stop_event.set()
            self._wake_event.set()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=self.interval_seconds + self.user_timeout_seconds)
                if self._thread.is_alive():
                    logger.warning("Batch dispatcher thread still flushing after stop timeout")
            self._status.is_running = False

        if flush:
            report = self.tick()
            if report.skipped:
                logger.warning("Final flush skipped - another flush is still running")
            stranded = len(self.queue)
            if stranded:
                logger.warning("{} events left queued after final flush", stranded)

        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.info("Batch dispatcher stopped")

    def request_flush(self) -> None:
        """Flush ahead of the timer (queue above its high watermark)."""
        if self._status.is_running:
            self._wake_event.set()
        else:
            self.tick()

    def _flush_loop(self) -> None:
        """Background loop: wait for the interval or an early wake, then tick."""
        while not self._stop_event.is_set():
            self._wake_event.wait(timeout=self.interval_seconds)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            try:
                self.tick()
            except Exception as exc:
                logger.error("Batch dispatcher tick failed: {}", exc)

    # =========================================================================
    # FLUSH
    # =========================================================================

    def tick(self) -> FlushReport:
        """
        Attempt one flush.

        Returns:
            The flush report; ``skipped`` is True if another flush was running
        """
        if not self._flush_lock.acquire(blocking=False):
            with self._status_lock:
                self._status.skipped_ticks += 1
            logger.debug("Flush already in progress - skipping tick")
            return FlushReport(skipped=True)

        self._status.is_flushing = True
        try:
            report = self._flush()
        finally:
            self._status.is_flushing = False
            self._flush_lock.release()

        if self.on_flush_complete and report.batch_size:
            try:
                self.on_flush_complete(report)
            except Exception as exc:
                logger.warning("Flush callback failed: {}", exc)
        return report

    def _flush(self) -> FlushReport:
        started = time.perf_counter()
        events = self.queue.drain()
        report = FlushReport(batch_size=len(events))
        if not events:
            return report

        grouped = group_events_by_user(events)
        deferred: list[AnalyticsEvent] = []
        with self._inflight_lock:
            for user_id in list(grouped):
                if user_id in self._inflight:
                    deferred.extend(grouped.pop(user_id))
                    report.users_deferred.append(user_id)
            self._inflight.update(grouped)

        if deferred:
            self.queue.requeue(deferred)
            logger.debug(
                "Deferred {} events for users still in flight: {}",
                len(deferred),
                ", ".join(report.users_deferred),
            )

        executor = self._get_executor()
        futures: dict[str, Future[UserProcessingResult]] = {
            user_id: executor.submit(self._run_user, user_id, user_events)
            for user_id, user_events in grouped.items()
        }
        if futures:
            wait(futures.values(), timeout=self.user_timeout_seconds)

        not_started: list[str] = []
        for user_id, future in futures.items():
            if future.cancel():
                not_started.append(user_id)
            elif future.done():
                self._collect(user_id, future, report)
            else:
                error = PipelineTimeoutError(user_id, self.user_timeout_seconds)
                logger.error("{}", error)
                report.users_timed_out.append(user_id)

        if not_started:
            # Cancelled before _run_user ran, so the in-flight mark is still ours
            with self._inflight_lock:
                self._inflight.difference_update(not_started)
            requeued = [e for user_id in not_started for e in grouped[user_id]]
            deferred.extend(requeued)
            report.users_deferred.extend(not_started)
            self.queue.requeue(requeued)
            logger.warning(
                "No free worker within {}s - requeued {} users: {}",
                self.user_timeout_seconds,
                len(not_started),
                ", ".join(not_started),
            )

        report.duration_ms = (time.perf_counter() - started) * 1000
        self._record(report)
        logger.debug(
            "Processed {} events for {} users in {:.2f}ms",
            report.batch_size - len(deferred),
            report.users_processed,
            report.duration_ms,
        )
        return report

    def _collect(self, user_id: str, future: Future[UserProcessingResult], report: FlushReport) -> None:
        try:
            result = future.result()
        except Exception as exc:
            logger.error("Failed to process events for user {}: {}", user_id, exc)
            report.users_failed.append(user_id)
            return

        report.results[user_id] = result
        report.users_processed += 1
        if not result.succeeded:
            report.users_failed.append(user_id)

    def _run_user(self, user_id: str, events: list[AnalyticsEvent]) -> UserProcessingResult:
        try:
            return self.pipeline(user_id, events)
        finally:
            with self._inflight_lock:
                self._inflight.discard(user_id)

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="analytics-user",
            )
        return self._executor

    def _record(self, report: FlushReport) -> None:
        with self._status_lock:
            self._status.last_flush_at = datetime.now()
            self._status.total_flushes += 1
            self._status.events_processed += sum(r.event_count for r in report.results.values())
            self._status.users_failed += len(report.users_failed)
            self._status.users_timed_out += len(report.users_timed_out)
