"""
Prediction Model Registry.

A small fixed set of named models whose per-user (or per-user-per-skill)
predictions are recomputed from each batch:

    exam_success_predictor     clamp(0, 100, min(95, mean(scores)) + trend * 10)
    skill_mastery_predictor    clamp(0, 100, mean(completion) + trend * 20), per skill
    completion_time_predictor  extension point, computes nothing

Updates are last-write-wins per key. There is no rollback or history.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime

from loguru import logger

from src.analytics.errors import TransientProcessingError
from src.analytics.events import AnalyticsEvent, EventCategory, SkillPractice, TestCompletion
from src.analytics.models import ModelType, PredictionModel
from src.analytics.trend import calculate_trend, clamp, mean

EXAM_SUCCESS_MODEL = "exam_success_predictor"
SKILL_MASTERY_MODEL = "skill_mastery_predictor"
COMPLETION_TIME_MODEL = "completion_time_predictor"

PredictionKey = tuple[str, "str | None"]


def format_prediction_key(key: PredictionKey) -> str:
    """Render a key as ``user`` or ``user_subkey``."""
    user_id, sub_key = key
    return user_id if sub_key is None else f"{user_id}_{sub_key}"


# =============================================================================
# Model strategies
# =============================================================================


class Predictor(ABC):
    """Computes fresh predictions for one user from a batch."""

    model_id: str = ""
    model_type: ModelType = ModelType.SUCCESS_PROBABILITY
    accuracy: float = 0.0

    @abstractmethod
    def compute(self, user_id: str, events: Sequence[AnalyticsEvent]) -> dict[str | None, float]:
        """Return predictions keyed by sub-key (None for the user-level value)."""


class ExamSuccessPredictor(Predictor):
    """Probability of exam success from recent mock test scores."""

    model_id = EXAM_SUCCESS_MODEL
    model_type = ModelType.SUCCESS_PROBABILITY
    accuracy = 0.78

    min_samples = 2
    base_cap = 95.0
    trend_weight = 10.0

    def compute(self, user_id: str, events: Sequence[AnalyticsEvent]) -> dict[str | None, float]:
        ordered = sorted(
            (e for e in events if e.category is EventCategory.EXAM and isinstance(e.payload, TestCompletion)),
            key=lambda e: e.timestamp_utc,
        )
        scores = [e.payload.score for e in ordered if e.payload.score is not None]
        if len(scores) < self.min_samples:
            return {}

        base_probability = min(self.base_cap, mean(scores))
        adjustment = calculate_trend(scores) * self.trend_weight
        return {None: clamp(base_probability + adjustment, 0.0, 100.0)}


class SkillMasteryPredictor(Predictor):
    """Mastery level per skill from practice-session completion rates."""

    model_id = SKILL_MASTERY_MODEL
    model_type = ModelType.SKILL_MASTERY
    accuracy = 0.82

    min_samples = 2
    trend_weight = 20.0

    def compute(self, user_id: str, events: Sequence[AnalyticsEvent]) -> dict[str | None, float]:
        progress: dict[str, list[float]] = defaultdict(list)
        ordered = sorted(
            (e for e in events if isinstance(e.payload, SkillPractice)),
            key=lambda e: e.timestamp_utc,
        )
        for event in ordered:
            payload = event.payload
            if payload.skill_id is None or payload.completion_rate is None:
                continue
            progress[payload.skill_id].append(payload.completion_rate)

        predictions: dict[str | None, float] = {}
        for skill_id, rates in progress.items():
            if len(rates) < self.min_samples:
                continue
            mastery = mean(rates) + calculate_trend(rates) * self.trend_weight
            predictions[skill_id] = clamp(mastery, 0.0, 100.0)
        return predictions


class CompletionTimePredictor(Predictor):
    """Placeholder for completion-time forecasts; always returns nothing."""

    model_id = COMPLETION_TIME_MODEL
    model_type = ModelType.COMPLETION_TIME
    accuracy = 0.0

    def compute(self, user_id: str, events: Sequence[AnalyticsEvent]) -> dict[str | None, float]:
        return {}


def default_predictors() -> list[Predictor]:
    """The models every registry starts with."""
    return [ExamSuccessPredictor(), SkillMasteryPredictor(), CompletionTimePredictor()]


# =============================================================================
# Registry
# =============================================================================


class PredictionRegistry:
    """
    Owns the prediction models and their per-key values.

    All reads and writes go through a lock so concurrent user pipelines can
    share one registry.

    Usage:
        registry = PredictionRegistry()
        registry.update("user-1", events, now)
        registry.predictions_for("user-1")  # {"user-1": 87.5, "user-1_sql": 72.0}
    """

    def __init__(self, predictors: Sequence[Predictor] | None = None):
        self._lock = threading.Lock()
        self._predictors: dict[str, Predictor] = {}
        self._models: dict[str, PredictionModel] = {}
        for predictor in predictors if predictors is not None else default_predictors():
            self.register(predictor)

    def register(self, predictor: Predictor) -> None:
        """Add a model (replacing any model with the same id)."""
        with self._lock:
            self._predictors[predictor.model_id] = predictor
            self._models[predictor.model_id] = PredictionModel(
                model_id=predictor.model_id,
                model_type=predictor.model_type,
                accuracy=predictor.accuracy,
            )

    @property
    def model_ids(self) -> list[str]:
        """Registered model ids in registration order."""
        return list(self._models)

    def get_model(self, model_id: str) -> PredictionModel | None:
        """Snapshot of a model, or None if unknown."""
        with self._lock:
            model = self._models.get(model_id)
            if model is None:
                return None
            return PredictionModel(
                model_id=model.model_id,
                model_type=model.model_type,
                accuracy=model.accuracy,
                last_trained=model.last_trained,
                predictions=dict(model.predictions),
            )

    def update(self, user_id: str, events: Sequence[AnalyticsEvent], now: datetime) -> int:
        """
        Recompute every model for one user.

        Every model runs even if an earlier one fails; values computed before a
        failure are kept.

        Returns:
            Number of prediction entries written

        Raises:
            TransientProcessingError: If any model failed
        """
        written = 0
        failures: list[str] = []

        for model_id, predictor in list(self._predictors.items()):
            try:
                values = predictor.compute(user_id, events)
            except Exception as exc:
                logger.warning("Prediction model {} failed for user {}: {}", model_id, user_id, exc)
                failures.append(model_id)
                continue

            if not values:
                continue

            with self._lock:
                model = self._models[model_id]
                for sub_key, value in values.items():
                    model.predictions[(user_id, sub_key)] = value
                model.last_trained = now
            written += len(values)

        if failures:
            raise TransientProcessingError(user_id, f"predictions ({', '.join(failures)})")
        return written

    def predictions_for(self, user_id: str) -> dict[str, float]:
        """Union of every model's entries belonging to a user."""
        result: dict[str, float] = {}
        with self._lock:
            for model in self._models.values():
                for key, value in model.predictions.items():
                    if key[0] == user_id:
                        result[format_prediction_key(key)] = value
        return result
