"""
Analytics: real-time learning analytics engine.

This package turns a stream of learner activity events into:
- patterns: trend classifications per category (improvement, decline, ...)
- predictions: exam success and per-skill mastery forecasts
- anomalies: sudden performance or activity drops
- insights: time-bounded, actionable observations
"""

from src.analytics.engine import AnalyticsEngine, EngineConfig
from src.analytics.errors import (
    AnalyticsError,
    DataShapeError,
    PersistenceError,
    PipelineTimeoutError,
    TransientProcessingError,
)
from src.analytics.events import AnalyticsEvent, EventCategory, parse_event
from src.analytics.models import (
    Anomaly,
    FlushReport,
    Impact,
    Insight,
    InsightType,
    Pattern,
    PatternType,
    UserProcessingResult,
)

__all__ = [
    # Engine
    "AnalyticsEngine",
    "EngineConfig",
    # Events
    "AnalyticsEvent",
    "EventCategory",
    "parse_event",
    # Results
    "Anomaly",
    "FlushReport",
    "Impact",
    "Insight",
    "InsightType",
    "Pattern",
    "PatternType",
    "UserProcessingResult",
    # Errors
    "AnalyticsError",
    "DataShapeError",
    "PersistenceError",
    "PipelineTimeoutError",
    "TransientProcessingError",
]
