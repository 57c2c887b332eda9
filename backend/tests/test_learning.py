"""
Unit tests for decision history, the learning model and the adjuster.
"""

import pytest

from provider_orchestrator.history import DecisionHistory
from provider_orchestrator.learning import (
    THRESHOLDS,
    LearningAdjuster,
    LearningModel,
    evaluate_decision,
)
from provider_orchestrator.models import Decision, DecisionAction


def decision(action=DecisionAction.HEAL, outcome="success", effectiveness=None, confidence=0.6):
    d = Decision(action=action, confidence=confidence, outcome=outcome)
    d.effectiveness = effectiveness
    return d


class TestDecisionHistory:
    def test_bounded(self):
        history = DecisionHistory(max_size=3)
        for _ in range(5):
            history.append(decision())
        assert len(history) == 3
        assert history.total_recorded == 5

    def test_recent_is_oldest_first(self):
        history = DecisionHistory()
        first, second = decision(DecisionAction.HEAL), decision(DecisionAction.PREVENT)
        history.append(first)
        history.append(second)
        assert history.recent(2) == [first, second]
        assert history.recent(1) == [second]

    def test_attach_outcome_clamps_effectiveness(self):
        history = DecisionHistory()
        d = decision(outcome=None)
        history.append(d)
        history.attach_outcome(d, outcome="success", effectiveness=1.7)
        assert d.outcome == "success"
        assert d.effectiveness == 1.0

    def test_counts_and_trim(self):
        history = DecisionHistory()
        for action in (DecisionAction.HEAL, DecisionAction.HEAL, DecisionAction.IGNORE):
            history.append(decision(action))
        assert history.counts() == {"heal": 2, "ignore": 1}
        history.trim(1)
        assert history.count(DecisionAction.HEAL) == 0


class TestEvaluateDecision:
    def test_attached_effectiveness_wins(self):
        assert evaluate_decision(decision(effectiveness=0.3)) == 0.3

    def test_success_estimate(self):
        assert evaluate_decision(decision(confidence=0.5)) == pytest.approx(0.6)

    def test_failed(self):
        assert evaluate_decision(decision(outcome="failed")) == 0.2

    def test_not_executed(self):
        assert evaluate_decision(decision(outcome=None)) is None


class TestLearningModel:
    def test_defaults(self):
        model = LearningModel()
        assert model.get("memory_threshold") == 0.8
        assert model.get("error_threshold") == 0.1

    def test_nudge_step_is_bounded(self):
        model = LearningModel()
        assert model.nudge("memory_threshold", -1.0, max_step=0.05) == pytest.approx(0.75)

    def test_nudge_latency_is_scaled(self):
        model = LearningModel()
        assert model.nudge("latency_threshold_ms", 0.01, max_step=0.05) == pytest.approx(5100.0)

    def test_nudge_clamped_to_range(self):
        model = LearningModel()
        for _ in range(20):
            model.nudge("memory_threshold", 1.0, max_step=0.05)
        assert model.get("memory_threshold") == THRESHOLDS["memory_threshold"].maximum

    def test_snapshot_is_stable(self):
        model = LearningModel()
        snapshot = model.snapshot()
        model.nudge("memory_threshold", -0.05, max_step=0.05)
        assert snapshot["memory_threshold"] == 0.8
        assert model.get("memory_threshold") == pytest.approx(0.75)
        with pytest.raises(TypeError):
            snapshot["memory_threshold"] = 0.1


class TestLearningAdjuster:
    def make(self, *decisions):
        history = DecisionHistory()
        for d in decisions:
            history.append(d)
        model = LearningModel()
        return model, LearningAdjuster(model, history, step=0.05, sample_size=50)

    def test_effective_heals_lower_memory_threshold(self):
        model, adjuster = self.make(*[decision(effectiveness=1.0) for _ in range(5)])
        changed = adjuster.adjust()
        assert changed["memory_threshold"] < 0.8
        assert model.effectiveness()["heal"] == 1.0

    def test_ineffective_heals_raise_memory_threshold(self):
        model, adjuster = self.make(*[decision(effectiveness=0.0) for _ in range(5)])
        adjuster.adjust()
        assert model.get("memory_threshold") > 0.8

    def test_single_cycle_moves_at_most_one_step(self):
        model, adjuster = self.make(*[decision(effectiveness=1.0) for _ in range(50)])
        adjuster.adjust()
        assert 0.8 - model.get("memory_threshold") <= 0.05 + 1e-9

    def test_too_few_samples_do_not_move(self):
        model, adjuster = self.make(decision(effectiveness=1.0))
        assert adjuster.adjust() == {}
        assert model.get("memory_threshold") == 0.8

    def test_prevent_tunes_error_threshold(self):
        model, adjuster = self.make(
            *[decision(DecisionAction.PREVENT, effectiveness=1.0) for _ in range(4)]
        )
        adjuster.adjust()
        assert model.get("error_threshold") < 0.1
        assert model.get("memory_threshold") == 0.8

    def test_ignore_decisions_are_not_samples(self):
        _, adjuster = self.make(*[decision(DecisionAction.IGNORE) for _ in range(10)])
        assert adjuster.review() == {}

    def test_maturity(self):
        _, adjuster = self.make(*[decision() for _ in range(7)])
        assert adjuster.maturity() == 7.0
