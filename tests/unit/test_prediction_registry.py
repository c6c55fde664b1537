"""Tests for the prediction models and their registry."""

from datetime import timedelta

import pytest

from src.analytics.errors import TransientProcessingError
from src.analytics.events import EventCategory
from src.analytics.models import ModelType
from src.analytics.predictions import (
    COMPLETION_TIME_MODEL,
    EXAM_SUCCESS_MODEL,
    SKILL_MASTERY_MODEL,
    ExamSuccessPredictor,
    PredictionRegistry,
    Predictor,
    format_prediction_key,
)
from tests.helpers import NOW, make_event, score_events


def practice_events(skill_id, rates, user_id="learner-1"):
    count = len(rates)
    return [
        make_event(
            user_id=user_id,
            category=EventCategory.COURSE_TECH,
            event_type="skill_practice_session",
            at=NOW - timedelta(minutes=count - i),
            skillId=skill_id,
            completionRate=rate,
        )
        for i, rate in enumerate(rates)
    ]


class ExplodingPredictor(Predictor):
    model_id = "exploding"
    model_type = ModelType.COMPLETION_TIME

    def compute(self, user_id, events):
        raise RuntimeError("boom")


@pytest.fixture
def registry():
    return PredictionRegistry()


def test_default_models_are_registered(registry):
    assert registry.model_ids == [EXAM_SUCCESS_MODEL, SKILL_MASTERY_MODEL, COMPLETION_TIME_MODEL]
    exam = registry.get_model(EXAM_SUCCESS_MODEL)
    assert exam.model_type is ModelType.SUCCESS_PROBABILITY
    assert exam.accuracy == pytest.approx(0.78)
    assert registry.get_model(SKILL_MASTERY_MODEL).accuracy == pytest.approx(0.82)
    assert registry.get_model("unknown") is None


class TestExamSuccess:
    def test_high_scores_are_capped_before_trend(self, registry):
        registry.update("learner-1", score_events([96, 97, 98]), NOW)
        assert registry.predictions_for("learner-1") == {"learner-1": pytest.approx(95 + 10 / 97)}

    def test_prediction_is_clamped_to_100(self, registry):
        registry.update("learner-1", score_events([0, 200]), NOW)
        assert registry.predictions_for("learner-1")["learner-1"] == 100.0

    def test_prediction_is_clamped_to_0(self, registry):
        registry.update("learner-1", score_events([10, 0]), NOW)
        assert registry.predictions_for("learner-1")["learner-1"] == 0.0

    def test_single_score_predicts_nothing(self, registry):
        assert registry.update("learner-1", score_events([80]), NOW) == 0
        assert registry.predictions_for("learner-1") == {}

    def test_only_exam_category_counts(self):
        events = score_events([50, 60])
        events.append(make_event(category=EventCategory.COURSE_TECH, score=0))
        assert ExamSuccessPredictor().compute("learner-1", events) == {None: pytest.approx(55 + 10 * 10 / 55)}


class TestSkillMastery:
    def test_prediction_per_skill(self, registry):
        written = registry.update("learner-1", practice_events("sql", [40, 60]), NOW)

        assert written == 1
        assert registry.predictions_for("learner-1") == {"learner-1_sql": pytest.approx(58.0)}

    def test_skill_needs_two_sessions(self, registry):
        registry.update("learner-1", practice_events("sql", [40]), NOW)
        assert registry.predictions_for("learner-1") == {}

    def test_sessions_without_skill_are_ignored(self, registry):
        events = practice_events("sql", [40, 60]) + practice_events(None, [10, 10])
        registry.update("learner-1", events, NOW)
        assert list(registry.predictions_for("learner-1")) == ["learner-1_sql"]


class TestRegistry:
    def test_update_is_last_write_wins(self, registry):
        registry.update("learner-1", score_events([50, 50]), NOW)
        registry.update("learner-1", score_events([80, 80]), NOW)
        assert registry.predictions_for("learner-1")["learner-1"] == pytest.approx(80.0)

    def test_update_stamps_last_trained(self, registry):
        registry.update("learner-1", score_events([50, 60]), NOW)
        assert registry.get_model(EXAM_SUCCESS_MODEL).last_trained == NOW
        assert registry.get_model(SKILL_MASTERY_MODEL).last_trained is None

    def test_users_are_matched_exactly(self, registry):
        registry.update("ann", score_events([50, 50], user_id="ann"), NOW)
        registry.update("ann_b", score_events([70, 70], user_id="ann_b"), NOW)

        assert registry.predictions_for("ann") == {"ann": pytest.approx(50.0)}
        assert registry.predictions_for("ann_b") == {"ann_b": pytest.approx(70.0)}

    def test_get_model_returns_snapshot(self, registry):
        registry.update("learner-1", score_events([50, 50]), NOW)
        snapshot = registry.get_model(EXAM_SUCCESS_MODEL)
        snapshot.predictions.clear()
        assert registry.predictions_for("learner-1") != {}

    def test_failing_model_does_not_block_others(self):
        registry = PredictionRegistry([ExplodingPredictor(), ExamSuccessPredictor()])

        with pytest.raises(TransientProcessingError) as excinfo:
            registry.update("learner-1", score_events([50, 50]), NOW)

        assert "exploding" in str(excinfo.value)
        assert registry.predictions_for("learner-1") == {"learner-1": pytest.approx(50.0)}


@pytest.mark.parametrize(
    "key,expected",
    [(("learner-1", None), "learner-1"), (("learner-1", "sql"), "learner-1_sql")],
)
def test_format_prediction_key(key, expected):
    assert format_prediction_key(key) == expected


def test_predictor_base_cannot_be_instantiated():
    with pytest.raises(TypeError):
        Predictor()


def test_predictor_without_compute_cannot_be_instantiated():
    class Incomplete(Predictor):
        model_id = "incomplete"

    with pytest.raises(TypeError):
        Incomplete()
