"""Event builders shared across test modules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.analytics.events import AnalyticsEvent, EventCategory, build_payload

# 10:00 UTC sits inside the 9-11 study band, so timing insights stay quiet by default.
NOW = datetime(2025, 3, 10, 10, 0, tzinfo=timezone.utc)


def make_event(
    user_id: str = "learner-1",
    category: EventCategory = EventCategory.EXAM,
    event_type: str = "mock_test_completed",
    at: datetime | None = None,
    **data,
) -> AnalyticsEvent:
    """Build an event with a typed payload from keyword data."""
    return AnalyticsEvent(
        user_id=user_id,
        category=category,
        event_type=event_type,
        timestamp=at or NOW - timedelta(minutes=5),
        payload=build_payload(event_type, data),
    )


def score_events(scores, user_id: str = "learner-1") -> list[AnalyticsEvent]:
    """Mock test completions, one minute apart, oldest first."""
    count = len(scores)
    return [
        make_event(user_id=user_id, at=NOW - timedelta(minutes=count - i), score=score)
        for i, score in enumerate(scores)
    ]
