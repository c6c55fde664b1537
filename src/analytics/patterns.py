"""
Pattern Recognition.

Classifies each category of a user's batch into trend patterns:

    exam         mock test scores          improvement / decline / plateau
    course_tech  assignment completion     improvement / decline / breakthrough
    cross_track  transfer effectiveness    improvement / decline / breakthrough

Trend classification (normalized least-squares slope):
    trend >  0.10  -> improvement, confidence = min(0.95, 0.6 + trend)
    trend < -0.05  -> decline,     confidence = min(0.90, 0.6 + |trend|)

Improvement and decline take precedence over the plateau and breakthrough
labels for the same metric. Patterns below the minimum confidence are
dropped before they are returned.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from uuid import uuid4

from loguru import logger

from src.analytics.events import (
    AnalyticsEvent,
    AssignmentCompletion,
    EventCategory,
    LearningTransfer,
    TestCompletion,
)
from src.analytics.models import Pattern, PatternType
from src.analytics.trend import calculate_trend, clamp, mean

RECOMMENDED_ACTIONS: dict[tuple[EventCategory, PatternType], list[str]] = {
    (EventCategory.EXAM, PatternType.IMPROVEMENT): [
        "Continue current preparation strategy",
        "Consider increasing difficulty",
    ],
    (EventCategory.EXAM, PatternType.DECLINE): [
        "Review study strategy",
        "Focus on weak areas",
        "Consider taking a break",
    ],
    (EventCategory.EXAM, PatternType.PLATEAU): [
        "Try different study methods",
        "Focus on weak areas",
        "Take practice breaks",
    ],
    (EventCategory.COURSE_TECH, PatternType.IMPROVEMENT): [
        "Keep the current assignment rhythm",
        "Take on a stretch project",
    ],
    (EventCategory.COURSE_TECH, PatternType.DECLINE): [
        "Break assignments into smaller milestones",
        "Revisit prerequisite material",
    ],
    (EventCategory.COURSE_TECH, PatternType.BREAKTHROUGH): [
        "Continue excellent progress",
        "Consider advanced topics",
    ],
    (EventCategory.CROSS_TRACK, PatternType.IMPROVEMENT): [
        "Keep connecting concepts across tracks",
    ],
    (EventCategory.CROSS_TRACK, PatternType.DECLINE): [
        "Review which transferred skills still apply",
    ],
    (EventCategory.CROSS_TRACK, PatternType.BREAKTHROUGH): [
        "Leverage cross-track learning",
        "Apply successful strategies across tracks",
    ],
}

CATEGORY_LABELS: dict[EventCategory, str] = {
    EventCategory.EXAM: "Exam scores",
    EventCategory.COURSE_TECH: "Course completion",
    EventCategory.CROSS_TRACK: "Cross-track transfer",
}


@dataclass
class PatternConfig:
    """Thresholds for pattern recognition."""

    min_confidence: float = 0.6

    improvement_threshold: float = 0.10
    decline_threshold: float = -0.05
    improvement_confidence_cap: float = 0.95
    decline_confidence_cap: float = 0.90
    base_confidence: float = 0.6

    min_exam_samples: int = 3
    min_plateau_samples: int = 5
    plateau_confidence: float = 0.75

    min_course_samples: int = 2
    course_excellence_bar: float = 0.85
    course_excellence_confidence: float = 0.80

    min_transfer_samples: int = 1
    transfer_effectiveness_bar: float = 0.70
    transfer_confidence: float = 0.85


def segment_by_category(events: Iterable[AnalyticsEvent]) -> dict[EventCategory, list[AnalyticsEvent]]:
    """Group events by category, each group ordered by timestamp."""
    segments: dict[EventCategory, list[AnalyticsEvent]] = defaultdict(list)
    for event in events:
        segments[event.category].append(event)
    for group in segments.values():
        group.sort(key=lambda e: e.timestamp_utc)
    return segments


class PatternRecognizer:
    """
    Detects learning patterns in one user's batch.

    Usage:
        recognizer = PatternRecognizer()
        patterns = recognizer.recognize("user-1", events)
    """

    def __init__(self, config: PatternConfig | None = None):
        self.config = config or PatternConfig()

    def recognize(self, user_id: str, events: Sequence[AnalyticsEvent]) -> list[Pattern]:
        """
        Detect patterns across all categories.

        Returns:
            Patterns with confidence at or above the configured minimum
        """
        segments = segment_by_category(events)
        detected: list[Pattern] = []

        for category in EventCategory:
            group = segments.get(category, [])
            if not group:
                continue
            if category is EventCategory.EXAM:
                detected.extend(self._exam_patterns(user_id, group))
            elif category is EventCategory.COURSE_TECH:
                detected.extend(self._course_patterns(user_id, group))
            elif category is EventCategory.CROSS_TRACK:
                detected.extend(self._cross_track_patterns(user_id, group))

        surfaced = [p for p in detected if p.confidence >= self.config.min_confidence]
        if len(surfaced) < len(detected):
            logger.debug(
                "Dropped {} low-confidence patterns for user {}",
                len(detected) - len(surfaced),
                user_id,
            )
        return surfaced

    # =========================================================================
    # CLASSIFICATION
    # =========================================================================

    def classify_trend(self, trend: float) -> tuple[PatternType, float] | None:
        """
        Classify a normalized trend as improvement or decline.

        Returns:
            (pattern_type, confidence), or None when the trend is flat
        """
        cfg = self.config
        if trend > cfg.improvement_threshold:
            confidence = min(cfg.improvement_confidence_cap, cfg.base_confidence + trend)
            return PatternType.IMPROVEMENT, clamp(confidence, 0.0, 1.0)
        if trend < cfg.decline_threshold:
            confidence = min(cfg.decline_confidence_cap, cfg.base_confidence + abs(trend))
            return PatternType.DECLINE, clamp(confidence, 0.0, 1.0)
        return None

    def _exam_patterns(self, user_id: str, events: list[AnalyticsEvent]) -> list[Pattern]:
        scores = [
            e.payload.score
            for e in events
            if isinstance(e.payload, TestCompletion) and e.payload.score is not None
        ]
        if len(scores) < self.config.min_exam_samples:
            return []

        trend = calculate_trend(scores)
        classified = self.classify_trend(trend)
        if classified is not None:
            pattern_type, confidence = classified
            verb = "improving" if pattern_type is PatternType.IMPROVEMENT else "declining"
            return [
                self._build(
                    user_id,
                    EventCategory.EXAM,
                    pattern_type,
                    confidence,
                    f"Exam scores {verb} by {abs(trend) * 100:.1f}% on average",
                )
            ]

        if len(scores) >= self.config.min_plateau_samples:
            return [
                self._build(
                    user_id,
                    EventCategory.EXAM,
                    PatternType.PLATEAU,
                    self.config.plateau_confidence,
                    f"Exam scores have plateaued around {mean(scores):.1f}",
                )
            ]
        return []

    def _course_patterns(self, user_id: str, events: list[AnalyticsEvent]) -> list[Pattern]:
        rates = [
            e.payload.completion_rate
            for e in events
            if isinstance(e.payload, AssignmentCompletion) and e.payload.completion_rate is not None
        ]
        if len(rates) < self.config.min_course_samples:
            return []
        return self._quality_metric_patterns(
            user_id,
            EventCategory.COURSE_TECH,
            rates,
            bar=self.config.course_excellence_bar,
            confidence=self.config.course_excellence_confidence,
            excellence_text="High course completion rate: {:.1f}%",
        )

    def _cross_track_patterns(self, user_id: str, events: list[AnalyticsEvent]) -> list[Pattern]:
        ratings = [
            e.payload.effectiveness_rating
            for e in events
            if isinstance(e.payload, LearningTransfer) and e.payload.effectiveness_rating is not None
        ]
        if len(ratings) < self.config.min_transfer_samples:
            return []
        return self._quality_metric_patterns(
            user_id,
            EventCategory.CROSS_TRACK,
            ratings,
            bar=self.config.transfer_effectiveness_bar,
            confidence=self.config.transfer_confidence,
            excellence_text="Strong cross-track skill transfer detected ({:.1f}% effective)",
        )

    def _quality_metric_patterns(
        self,
        user_id: str,
        category: EventCategory,
        values: list[float],
        bar: float,
        confidence: float,
        excellence_text: str,
    ) -> list[Pattern]:
        """Trend first; the excellence label applies only when the trend is flat."""
        label = CATEGORY_LABELS[category]
        trend = calculate_trend(values)
        classified = self.classify_trend(trend)
        if classified is not None:
            pattern_type, trend_confidence = classified
            verb = "improving" if pattern_type is PatternType.IMPROVEMENT else "declining"
            return [
                self._build(
                    user_id,
                    category,
                    pattern_type,
                    trend_confidence,
                    f"{label} {verb} by {abs(trend) * 100:.1f}% on average",
                )
            ]

        average = mean(values)
        if average > bar:
            return [
                self._build(
                    user_id,
                    category,
                    PatternType.BREAKTHROUGH,
                    confidence,
                    excellence_text.format(average * 100),
                )
            ]
        return []

    def _build(
        self,
        user_id: str,
        category: EventCategory,
        pattern_type: PatternType,
        confidence: float,
        description: str,
    ) -> Pattern:
        if category is EventCategory.CROSS_TRACK:
            tracks = [EventCategory.EXAM, EventCategory.COURSE_TECH]
        else:
            tracks = [category]
        return Pattern(
            pattern_id=f"{uuid4().hex[:12]}_{category.value}_{pattern_type.value}",
            pattern_type=pattern_type,
            confidence=clamp(confidence, 0.0, 1.0),
            description=description,
            recommended_actions=list(RECOMMENDED_ACTIONS.get((category, pattern_type), [])),
            applicable_tracks=tracks,
            user_id=user_id,
            category=category,
        )
