"""
Anomaly Detection.

Two independent checks per user batch:
- Performance drop: latest mock test score below 70% of the mean of the
  earlier scores (strictly below; at least three scores).
- Activity drop: fewer events in the last 24 hours than 30% of the events in
  the 24 hours before that.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.analytics.events import AnalyticsEvent, TestCompletion, as_utc
from src.analytics.models import Anomaly, AnomalyType, Severity
from src.analytics.trend import mean


@dataclass
class AnomalyConfig:
    """Thresholds for anomaly detection."""

    min_score_samples: int = 3
    performance_drop_ratio: float = 0.70

    activity_window_hours: int = 24
    activity_drop_ratio: float = 0.30


class AnomalyDetector:
    """
    Flags sudden drops against the user's trailing baseline.

    Usage:
        detector = AnomalyDetector()
        anomalies = detector.detect(events, now)
    """

    def __init__(self, config: AnomalyConfig | None = None):
        self.config = config or AnomalyConfig()

    def detect(self, events: Sequence[AnalyticsEvent], now: datetime) -> list[Anomaly]:
        """Run both checks; either, both or neither may fire."""
        now = as_utc(now)
        anomalies = []
        performance = self.check_performance_drop(events, now)
        if performance is not None:
            anomalies.append(performance)
        activity = self.check_activity_drop(events, now)
        if activity is not None:
            anomalies.append(activity)
        return anomalies

    def check_performance_drop(self, events: Sequence[AnalyticsEvent], now: datetime) -> Anomaly | None:
        """Latest score against the mean of all earlier scores."""
        ordered = sorted(
            (e for e in events if isinstance(e.payload, TestCompletion) and e.payload.score is not None),
            key=lambda e: e.timestamp_utc,
        )
        scores = [e.payload.score for e in ordered]
        if len(scores) < self.config.min_score_samples:
            return None

        recent_score = scores[-1]
        baseline = mean(scores[:-1])
        threshold = baseline * self.config.performance_drop_ratio
        if not recent_score < threshold:
            return None

        return Anomaly(
            anomaly_type=AnomalyType.PERFORMANCE_DROP,
            severity=Severity.HIGH,
            description=(
                f"Significant performance drop detected: {recent_score:g}% vs "
                f"{baseline:.1f}% average"
            ),
            recommended_actions=[
                "Review recent study changes",
                "Check for external factors",
                "Consider rest or strategy adjustment",
            ],
            detected_at=now,
        )

    def check_activity_drop(self, events: Sequence[AnalyticsEvent], now: datetime) -> Anomaly | None:
        """Trailing-window event count against the window before it."""
        window = timedelta(hours=self.config.activity_window_hours)
        recent_start = now - window
        previous_start = now - 2 * window

        recent = sum(1 for e in events if e.timestamp_utc > recent_start)
        previous = sum(1 for e in events if previous_start < e.timestamp_utc <= recent_start)

        if not recent < previous * self.config.activity_drop_ratio:
            return None

        return Anomaly(
            anomaly_type=AnomalyType.ACTIVITY_DROP,
            severity=Severity.MEDIUM,
            description=(
                f"Significant decrease in study activity detected: {recent} events in the "
                f"last day vs {previous} the day before"
            ),
            recommended_actions=[
                "Check study schedule",
                "Review motivation factors",
                "Consider re-engagement strategies",
            ],
            detected_at=now,
        )
