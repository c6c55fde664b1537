"""
Insight Generation.

Turns surfaced patterns and raw aggregates into time-bounded insights.

Rules (heuristics look at the trailing 7-day window):
    balance     one track has more than 2x the events of the other   medium, 7 days
    timing      mean hour of day outside 9-11 and 15-17              medium, 14 days
    efficiency  mean score/time below 0.1 over >= 3 samples          high, 7 days
    pattern     one per surfaced pattern                             high if confidence > 0.8, 30 days

Insights are not deduplicated across flushes: a rule that fires on two
consecutive batches produces two records.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from src.analytics.events import AnalyticsEvent, EventCategory, as_utc
from src.analytics.models import Impact, Insight, InsightType, Pattern
from src.analytics.trend import mean


@dataclass
class InsightConfig:
    """Thresholds and lifetimes for insight rules."""

    window_days: int = 7

    balance_ratio: float = 2.0
    balance_ttl_days: int = 7

    peak_hour_bands: tuple[tuple[int, int], ...] = ((9, 11), (15, 17))
    timing_ttl_days: int = 14

    min_efficiency_samples: int = 3
    efficiency_threshold: float = 0.1
    efficiency_ttl_days: int = 7

    high_impact_confidence: float = 0.8
    pattern_ttl_days: int = 30


class InsightGenerator:
    """
    Derives insights for one user's batch.

    Usage:
        generator = InsightGenerator()
        insights = generator.generate("user-1", events, patterns, now)
    """

    def __init__(self, config: InsightConfig | None = None):
        self.config = config or InsightConfig()

    def generate(
        self,
        user_id: str,
        events: Sequence[AnalyticsEvent],
        patterns: Sequence[Pattern],
        now: datetime,
    ) -> list[Insight]:
        """Run every rule and return the insights that fired, in rule order."""
        now = as_utc(now)
        window_start = now - timedelta(days=self.config.window_days)
        recent = [e for e in events if e.timestamp_utc > window_start]

        insights: list[Insight] = []
        for rule in (self.balance_insight, self.timing_insight, self.efficiency_insight):
            insight = rule(user_id, recent, now)
            if insight is not None:
                insights.append(insight)
        insights.extend(self.pattern_insights(user_id, patterns, now))
        return insights

    # =========================================================================
    # HEURISTICS
    # =========================================================================

    def balance_insight(self, user_id: str, events: Sequence[AnalyticsEvent], now: datetime) -> Insight | None:
        """Flag a learner who works one track far more than the other."""
        exam_count = sum(1 for e in events if e.category is EventCategory.EXAM)
        course_count = sum(1 for e in events if e.category is EventCategory.COURSE_TECH)
        ratio = self.config.balance_ratio

        if exam_count > course_count * ratio:
            description = (
                "You've been focusing heavily on exam preparation. Consider balancing "
                "with some course work for cross-track benefits."
            )
        elif course_count > exam_count * ratio:
            description = (
                "You've been focusing heavily on course work. Consider a mock test to "
                "check how that practice carries over to your exam."
            )
        else:
            return None

        return self._build(
            user_id,
            kind="balance",
            insight_type=InsightType.BEHAVIOR,
            title="Learning Balance Opportunity",
            description=description,
            impact=Impact.MEDIUM,
            actionable=True,
            now=now,
            ttl_days=self.config.balance_ttl_days,
        )

    def timing_insight(self, user_id: str, events: Sequence[AnalyticsEvent], now: datetime) -> Insight | None:
        """Flag study times that sit outside the peak cognitive bands."""
        if not events:
            return None

        # Hour in the producer's own offset, not UTC.
        mean_hour = mean([e.timestamp.hour for e in events])
        if any(low <= mean_hour <= high for low, high in self.config.peak_hour_bands):
            return None

        return self._build(
            user_id,
            kind="timing",
            insight_type=InsightType.BEHAVIOR,
            title="Optimal Study Timing",
            description=(
                f"Your current study time ({mean_hour:.0f}:00) might not be optimal. Consider "
                "studying during peak cognitive hours (9 AM - 11 AM or 3 PM - 5 PM)."
            ),
            impact=Impact.MEDIUM,
            actionable=True,
            now=now,
            ttl_days=self.config.timing_ttl_days,
        )

    def efficiency_insight(self, user_id: str, events: Sequence[AnalyticsEvent], now: datetime) -> Insight | None:
        """Flag a low score-to-time ratio."""
        ratios = [
            e.score / e.time_spent
            for e in events
            if e.score is not None and e.time_spent is not None and e.time_spent > 0
        ]
        if len(ratios) < self.config.min_efficiency_samples:
            return None
        if mean(ratios) >= self.config.efficiency_threshold:
            return None

        return self._build(
            user_id,
            kind="efficiency",
            insight_type=InsightType.EFFICIENCY,
            title="Efficiency Improvement Opportunity",
            description=(
                "Your score-to-time ratio suggests room for efficiency improvement. "
                "Consider focused study sessions and better time management."
            ),
            impact=Impact.HIGH,
            actionable=True,
            now=now,
            ttl_days=self.config.efficiency_ttl_days,
        )

    def pattern_insights(self, user_id: str, patterns: Sequence[Pattern], now: datetime) -> list[Insight]:
        """One insight per surfaced pattern."""
        insights = []
        for pattern in patterns:
            if pattern.category is EventCategory.CROSS_TRACK:
                insight_type = InsightType.CROSS_TRACK
            else:
                insight_type = InsightType.PERFORMANCE
            impact = Impact.HIGH if pattern.confidence > self.config.high_impact_confidence else Impact.MEDIUM
            insights.append(
                self._build(
                    user_id,
                    kind="pattern",
                    insight_type=insight_type,
                    title=f"Learning Pattern Detected: {pattern.pattern_type.value}",
                    description=pattern.description,
                    impact=impact,
                    actionable=bool(pattern.recommended_actions),
                    now=now,
                    ttl_days=self.config.pattern_ttl_days,
                )
            )
        return insights

    def _build(
        self,
        user_id: str,
        *,
        kind: str,
        insight_type: InsightType,
        title: str,
        description: str,
        impact: Impact,
        actionable: bool,
        now: datetime,
        ttl_days: int,
    ) -> Insight:
        return Insight(
            insight_id=f"{uuid4().hex[:12]}_{kind}",
            insight_type=insight_type,
            title=title,
            description=description,
            impact=impact,
            actionable=actionable,
            expires_at=now + timedelta(days=ttl_days),
            user_id=user_id,
            created_at=now,
            kind=kind,
        )
