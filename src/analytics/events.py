"""
Analytics Event Model.

Events are immutable, timestamped learner-activity records. Each event belongs
to exactly one user and one category, and carries a typed payload selected by
its event type:

    mock_test_completed           -> TestCompletion
    assignment_completed          -> AssignmentCompletion
    skill_practice_session        -> SkillPractice
    learning_transfer_identified  -> LearningTransfer
    anything else                 -> Activity

Producers send loose dictionaries (camelCase or snake_case keys). Parsing is
tolerant of optional metric fields: a value of the wrong type becomes None and
is later treated as a missing sample.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from src.analytics.errors import DataShapeError

# =============================================================================
# Enums
# =============================================================================


class EventCategory(str, Enum):
    """Learning track an event belongs to."""

    EXAM = "exam"
    COURSE_TECH = "course_tech"
    CROSS_TRACK = "cross_track"


class EventType(str, Enum):
    """Event types with a dedicated payload."""

    MOCK_TEST_COMPLETED = "mock_test_completed"
    ASSIGNMENT_COMPLETED = "assignment_completed"
    SKILL_PRACTICE_SESSION = "skill_practice_session"
    LEARNING_TRANSFER_IDENTIFIED = "learning_transfer_identified"


# =============================================================================
# Payload variants
# =============================================================================


@dataclass(frozen=True)
class TestCompletion:
    """A finished mock test."""

    __test__ = False  # not a pytest test class

    score: float | None = None
    time_spent: float | None = None
    accuracy: float | None = None
    difficulty: str | None = None
    topic_id: str | None = None


@dataclass(frozen=True)
class AssignmentCompletion:
    """A finished course assignment."""

    completion_rate: float | None = None
    score: float | None = None
    time_spent: float | None = None
    assignment_id: str | None = None


@dataclass(frozen=True)
class SkillPractice:
    """A practice session targeting one skill."""

    skill_id: str | None = None
    completion_rate: float | None = None
    score: float | None = None
    time_spent: float | None = None


@dataclass(frozen=True)
class LearningTransfer:
    """A skill learned in one track applied in another."""

    effectiveness_rating: float | None = None
    transferred_from: EventCategory | None = None
    skills_applied: tuple[str, ...] = ()


@dataclass(frozen=True)
class Activity:
    """Any other activity; only the generic metrics are kept."""

    score: float | None = None
    time_spent: float | None = None


EventPayload = Union[TestCompletion, AssignmentCompletion, SkillPractice, LearningTransfer, Activity]


# =============================================================================
# Event
# =============================================================================


@dataclass(frozen=True)
class AnalyticsEvent:
    """A single learner-activity record."""

    user_id: str
    category: EventCategory
    event_type: str
    timestamp: datetime
    payload: EventPayload = field(default_factory=Activity)
    event_id: str = field(default_factory=lambda: uuid4().hex)
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def score(self) -> float | None:
        """Score carried by the payload, if its variant has one."""
        return getattr(self.payload, "score", None)

    @property
    def time_spent(self) -> float | None:
        """Time spent carried by the payload, if its variant has one."""
        return getattr(self.payload, "time_spent", None)

    @property
    def timestamp_utc(self) -> datetime:
        """Timestamp as an aware UTC datetime (naive values are taken as UTC)."""
        return as_utc(self.timestamp)


# =============================================================================
# Parsing helpers
# =============================================================================


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def coerce_number(value: Any) -> float | None:
    """Return value as a finite float, or None if it is not a usable number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def coerce_text(value: Any) -> str | None:
    """Return a non-empty string, or None."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a producer timestamp.

    Accepts datetimes, ISO-8601 strings and epoch numbers (seconds, or
    milliseconds when the magnitude says so). An explicit UTC offset is kept
    so hour-of-day stays local to the producer; naive values are taken as UTC.

    Raises:
        DataShapeError: If the value cannot be interpreted as a point in time
    """
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise DataShapeError("timestamp", value) from exc
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    number = coerce_number(value)
    if number is None:
        raise DataShapeError("timestamp", value)
    if abs(number) > 1e11:
        number /= 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise DataShapeError("timestamp", value) from exc


def _pick(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _parse_category(value: Any) -> EventCategory | None:
    try:
        return EventCategory(value)
    except ValueError:
        return None


def build_payload(event_type: str, data: dict[str, Any]) -> EventPayload:
    """Build the payload variant for an event type from a sparse data dict."""
    score = coerce_number(_pick(data, "score"))
    time_spent = coerce_number(_pick(data, "timeSpent", "time_spent"))

    if event_type == EventType.MOCK_TEST_COMPLETED.value:
        return TestCompletion(
            score=score,
            time_spent=time_spent,
            accuracy=coerce_number(_pick(data, "accuracy")),
            difficulty=coerce_text(_pick(data, "difficulty")),
            topic_id=coerce_text(_pick(data, "topicId", "topic_id")),
        )
    if event_type == EventType.ASSIGNMENT_COMPLETED.value:
        return AssignmentCompletion(
            completion_rate=coerce_number(_pick(data, "completionRate", "completion_rate")),
            score=score,
            time_spent=time_spent,
            assignment_id=coerce_text(_pick(data, "assignmentId", "assignment_id")),
        )
    if event_type == EventType.SKILL_PRACTICE_SESSION.value:
        return SkillPractice(
            skill_id=coerce_text(_pick(data, "skillId", "skill_id")),
            completion_rate=coerce_number(_pick(data, "completionRate", "completion_rate")),
            score=score,
            time_spent=time_spent,
        )
    if event_type == EventType.LEARNING_TRANSFER_IDENTIFIED.value:
        skills = _pick(data, "skillsApplied", "skills_applied")
        return LearningTransfer(
            effectiveness_rating=coerce_number(_pick(data, "effectivenessRating", "effectiveness_rating")),
            transferred_from=_parse_category(_pick(data, "transferredFrom", "transferred_from")),
            skills_applied=tuple(s for s in skills if isinstance(s, str)) if isinstance(skills, list) else (),
        )
    return Activity(score=score, time_spent=time_spent)


def parse_event(raw: dict[str, Any]) -> AnalyticsEvent:
    """
    Build an AnalyticsEvent from a producer dictionary.

    Required: userId, category, eventType, timestamp. Everything under
    ``data`` is optional and tolerated when malformed.

    Raises:
        DataShapeError: If a required field is missing or invalid
    """
    user_id = coerce_text(_pick(raw, "userId", "user_id"))
    if user_id is None:
        raise DataShapeError("userId", _pick(raw, "userId", "user_id"))

    category = _parse_category(_pick(raw, "category"))
    if category is None:
        raise DataShapeError("category", _pick(raw, "category"))

    event_type = coerce_text(_pick(raw, "eventType", "event_type"))
    if event_type is None:
        raise DataShapeError("eventType", _pick(raw, "eventType", "event_type"))

    timestamp = parse_timestamp(_pick(raw, "timestamp"))

    data = raw.get("data")
    if not isinstance(data, dict):
        data = {}
    metadata = raw.get("metadata")

    return AnalyticsEvent(
        user_id=user_id,
        category=category,
        event_type=event_type,
        timestamp=timestamp,
        payload=build_payload(event_type, data),
        event_id=coerce_text(_pick(raw, "id", "eventId", "event_id")) or uuid4().hex,
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )
