"""
Analytics Result Models.

Patterns, insights, anomalies and prediction models produced by a processing
pass, plus the per-user and per-flush reports returned by the dispatcher.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from src.analytics.events import EventCategory

# =============================================================================
# Enums
# =============================================================================


class PatternType(str, Enum):
    """Trend classification of a metric."""

    IMPROVEMENT = "improvement"
    DECLINE = "decline"
    PLATEAU = "plateau"
    BREAKTHROUGH = "breakthrough"


class InsightType(str, Enum):
    """Area an insight speaks to."""

    PERFORMANCE = "performance"
    BEHAVIOR = "behavior"
    EFFICIENCY = "efficiency"
    CROSS_TRACK = "cross_track"


class Impact(str, Enum):
    """How much an insight matters."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        """Sort weight (higher first)."""
        return IMPACT_WEIGHTS[self]


IMPACT_WEIGHTS: dict[Impact, int] = {Impact.HIGH: 3, Impact.MEDIUM: 2, Impact.LOW: 1}


class AnomalyType(str, Enum):
    """Kind of deviation from the user's baseline."""

    PERFORMANCE_DROP = "performance_drop"
    ACTIVITY_DROP = "activity_drop"


class Severity(str, Enum):
    """Severity of an anomaly."""

    HIGH = "high"
    MEDIUM = "medium"


class ModelType(str, Enum):
    """Prediction model families."""

    SUCCESS_PROBABILITY = "success_probability"
    SKILL_MASTERY = "skill_mastery"
    COMPLETION_TIME = "completion_time"


# =============================================================================
# Results
# =============================================================================


@dataclass
class Pattern:
    """A detected trend classification with a confidence score."""

    pattern_id: str
    pattern_type: PatternType
    confidence: float
    description: str
    recommended_actions: list[str] = field(default_factory=list)
    applicable_tracks: list[EventCategory] = field(default_factory=list)
    user_id: str | None = None
    category: EventCategory | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pattern_id": self.pattern_id,
            "pattern_type": self.pattern_type.value,
            "confidence": round(self.confidence, 4),
            "description": self.description,
            "recommended_actions": list(self.recommended_actions),
            "applicable_tracks": [t.value for t in self.applicable_tracks],
            "category": self.category.value if self.category else None,
        }


@dataclass
class Insight:
    """A human-facing, time-bounded observation."""

    insight_id: str
    insight_type: InsightType
    title: str
    description: str
    impact: Impact
    actionable: bool
    expires_at: datetime
    user_id: str | None = None
    created_at: datetime | None = None
    kind: str = "pattern"  # Producing rule: pattern, balance, timing, efficiency

    def is_expired(self, now: datetime) -> bool:
        """Whether the insight is stale at ``now``."""
        return self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "insight_id": self.insight_id,
            "insight_type": self.insight_type.value,
            "title": self.title,
            "description": self.description,
            "impact": self.impact.value,
            "actionable": self.actionable,
            "expires_at": self.expires_at.isoformat(),
            "kind": self.kind,
        }


@dataclass
class Anomaly:
    """A deviation of recent activity from the trailing baseline."""

    anomaly_type: AnomalyType
    severity: Severity
    description: str
    recommended_actions: list[str] = field(default_factory=list)
    detected_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "anomaly_type": self.anomaly_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "recommended_actions": list(self.recommended_actions),
        }


@dataclass
class PredictionModel:
    """
    A named model holding per-key predictions in [0, 100].

    Keys are ``(user_id, sub_key)`` tuples; ``sub_key`` is None for
    user-level predictions.
    """

    model_id: str
    model_type: ModelType
    accuracy: float
    last_trained: datetime | None = None
    predictions: dict[tuple[str, str | None], float] = field(default_factory=dict)


# =============================================================================
# Reports
# =============================================================================


@dataclass
class UserProcessingResult:
    """Outcome of one user's pipeline within a flush."""

    user_id: str
    event_count: int
    patterns: list[Pattern] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)
    predictions_updated: int = 0
    errors: list[str] = field(default_factory=list)
    persisted: bool = False
    processed_at: datetime | None = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        """True if no stage failed."""
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "user_id": self.user_id,
            "event_count": self.event_count,
            "patterns": [p.to_dict() for p in self.patterns],
            "insights": [i.to_dict() for i in self.insights],
            "anomalies": [a.to_dict() for a in self.anomalies],
            "predictions_updated": self.predictions_updated,
            "errors": list(self.errors),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


@dataclass
class FlushReport:
    """Outcome of one drain-and-process cycle."""

    skipped: bool = False
    batch_size: int = 0
    users_processed: int = 0
    users_failed: list[str] = field(default_factory=list)
    users_timed_out: list[str] = field(default_factory=list)
    users_deferred: list[str] = field(default_factory=list)
    results: dict[str, UserProcessingResult] = field(default_factory=dict)
    duration_ms: float = 0.0
