"""
Real-Time Analytics Engine.

Owns every piece of engine state (queue, dispatcher, analysers, registry,
read model, result sink) so independent instances can coexist.

Pipeline per user sub-batch:
    PatternRecognizer ─┐
    PredictionRegistry ├─ independent stages
    AnomalyDetector   ─┘
    InsightGenerator     (uses the patterns)
    ResultsStore         (commit of every stage that succeeded)
    ResultSink           (durable copy; failures are logged only)

A stage that raises is recorded on the result and the remaining stages still
run, so a user gets whatever could be computed for that cycle.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from config import Settings, get_settings
from src.analytics.anomalies import AnomalyDetector
from src.analytics.dispatcher import BatchDispatcher, DispatcherStatus
from src.analytics.errors import DataShapeError, PersistenceError, TransientProcessingError
from src.analytics.events import AnalyticsEvent, parse_event
from src.analytics.ingestion import EventQueue
from src.analytics.insights import InsightGenerator
from src.analytics.models import Anomaly, FlushReport, Insight, Pattern, UserProcessingResult
from src.analytics.patterns import PatternConfig, PatternRecognizer
from src.analytics.predictions import PredictionRegistry
from src.analytics.sinks import NullResultSink, ResultSink, build_result_sink
from src.analytics.store import ResultsStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineConfig:
    """Scheduling and surfacing parameters for one engine."""

    flush_interval_seconds: float = 2.0
    high_watermark: int = 50
    user_timeout_seconds: float = 10.0
    max_workers: int = 4
    min_pattern_confidence: float = 0.6

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        return cls(**settings.get_analytics_config())


class AnalyticsEngine:
    """
    Event stream in, insights / patterns / predictions out.

    Usage:
        engine = AnalyticsEngine()
        engine.start()                       # background flushes every 2s
        engine.enqueue(event)
        engine.get_user_insights("user-1")
        engine.stop()

    Tests and simple callers can skip the thread and call ``tick()``.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        sink: ResultSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
        recognizer: PatternRecognizer | None = None,
        insight_generator: InsightGenerator | None = None,
        registry: PredictionRegistry | None = None,
        detector: AnomalyDetector | None = None,
    ):
        self.config = config or EngineConfig()
        self.sink: ResultSink = sink or NullResultSink()
        self.clock = clock

        self.recognizer = recognizer or PatternRecognizer(
            PatternConfig(min_confidence=self.config.min_pattern_confidence)
        )
        self.insight_generator = insight_generator or InsightGenerator()
        self.registry = registry or PredictionRegistry()
        self.detector = detector or AnomalyDetector()
        self.store = ResultsStore(registry=self.registry, clock=clock)

        self.queue = EventQueue(high_watermark=self.config.high_watermark)
        self.dispatcher = BatchDispatcher(
            queue=self.queue,
            pipeline=self.process_user_events,
            interval_seconds=self.config.flush_interval_seconds,
            user_timeout_seconds=self.config.user_timeout_seconds,
            max_workers=self.config.max_workers,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> AnalyticsEngine:
        """Build an engine (and its result sink) from application settings."""
        settings = settings or get_settings()
        kwargs.setdefault("sink", build_result_sink(settings))
        return cls(config=EngineConfig.from_settings(settings), **kwargs)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start background flushing."""
        self.dispatcher.start()

    def stop(self) -> None:
        """Stop background flushing after a final flush."""
        self.dispatcher.stop(flush=True)

    def __enter__(self) -> AnalyticsEngine:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    @property
    def status(self) -> DispatcherStatus:
        return self.dispatcher.status

    # =========================================================================
    # INGESTION
    # =========================================================================

    def enqueue(self, event: AnalyticsEvent) -> None:
        """Queue an event; flushes early when the queue passes its high watermark."""
        if self.queue.put(event):
            logger.debug("Queue above high watermark ({}) - requesting flush", self.queue.high_watermark)
            self.dispatcher.request_flush()

    def enqueue_raw(self, raw: dict[str, Any]) -> AnalyticsEvent | None:
        """
        Parse a producer dictionary and queue it.

        Returns:
            The queued event, or None if a required field was unusable
        """
        try:
            event = parse_event(raw)
        except DataShapeError as exc:
            logger.warning("Dropping malformed event: {}", exc)
            return None
        self.enqueue(event)
        return event

    def tick(self) -> FlushReport:
        """Run one flush now (skipped if one is already running)."""
        return self.dispatcher.tick()

    # =========================================================================
    # PIPELINE
    # =========================================================================

    def process_user_events(self, user_id: str, events: list[AnalyticsEvent]) -> UserProcessingResult:
        """Run the full pipeline for one user's sub-batch and commit the results."""
        started = time.perf_counter()
        now = self.clock()
        result = UserProcessingResult(user_id=user_id, event_count=len(events), processed_at=now)

        patterns: list[Pattern] | None = self._run_stage(
            result, "pattern recognition", lambda: self.recognizer.recognize(user_id, events)
        )
        insights: list[Insight] | None = self._run_stage(
            result,
            "insight generation",
            lambda: self.insight_generator.generate(user_id, events, patterns or [], now),
        )
        updated: int | None = self._run_stage(
            result, "prediction update", lambda: self.registry.update(user_id, events, now)
        )
        anomalies: list[Anomaly] | None = self._run_stage(
            result, "anomaly detection", lambda: self.detector.detect(events, now)
        )

        if patterns is not None:
            result.patterns = patterns
            self.store.replace_patterns(user_id, patterns)
        if insights is not None:
            result.insights = insights
            self.store.add_insights(user_id, insights)
        if updated is not None:
            result.predictions_updated = updated
        if anomalies is not None:
            result.anomalies = anomalies
            self.store.replace_anomalies(user_id, anomalies)

        self._persist(user_id, result)

        result.duration_ms = (time.perf_counter() - started) * 1000
        logger.debug("Processed {} events for user {}", len(events), user_id)
        return result

    def _run_stage(self, result: UserProcessingResult, stage: str, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except TransientProcessingError as exc:
            logger.error("{}", exc)
            result.errors.append(str(exc))
        except Exception as exc:
            error = TransientProcessingError(result.user_id, stage, exc)
            logger.error("{}", error)
            result.errors.append(str(error))
        return None

    def _persist(self, user_id: str, result: UserProcessingResult) -> None:
        try:
            self.sink.store(user_id, result)
            result.persisted = True
        except PersistenceError as exc:
            logger.error("Failed to store processed results: {}", exc)
        except Exception as exc:
            logger.error("Failed to store processed results for user {}: {}", user_id, exc)

    # =========================================================================
    # QUERY API
    # =========================================================================

    def get_user_insights(self, user_id: str) -> list[Insight]:
        """Unexpired insights, highest impact first."""
        return self.store.get_user_insights(user_id)

    def get_user_patterns(self, user_id: str) -> list[Pattern]:
        """Latest patterns, highest confidence first."""
        return self.store.get_user_patterns(user_id)

    def get_user_predictions(self, user_id: str) -> dict[str, float]:
        """All prediction entries for a user."""
        return self.store.get_user_predictions(user_id)

    def get_user_anomalies(self, user_id: str) -> list[Anomaly]:
        """Anomalies from the user's latest pass."""
        return self.store.get_user_anomalies(user_id)
