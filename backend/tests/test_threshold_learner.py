"""
Unit Tests for Threshold Learning

The learner is a pure function, so these run without a database.

Run with: pytest backend/tests/test_threshold_learner.py -v
"""

import pytest

from reconciliation.matching_rules.scoring import SignalWeights
from reconciliation.matching_rules.signals import MatchSignals
from reconciliation.thresholds.learner import apply_feedback
from reconciliation.thresholds.models import MatchingThresholds, FeedbackItem, DEFAULT_THRESHOLDS

STRONG_AMOUNT = MatchSignals(amount=1.0, date=0.5, vendor=0.0, ocr_confidence=0.5, description=0.0)


def feedback(accepted, confidence, signals=STRONG_AMOUNT, match_id="m"):
    return FeedbackItem(match_id=match_id, accepted=accepted, confidence_score=confidence, signals=signals)


def assert_invariants(thresholds):
    assert 0.5 <= thresholds.auto_match <= 0.95
    assert 0.3 <= thresholds.suggest_match <= 0.8
    assert thresholds.suggest_match <= thresholds.auto_match
    assert thresholds.signal_weights.total == pytest.approx(1.0, abs=1e-6)


class TestAutoMatchAdjustment:

    def test_rejections_above_cutoff_lower_auto_match(self):
        batch = [feedback(False, 0.90, match_id=f"m{i}") for i in range(5)]

        updated = apply_feedback(DEFAULT_THRESHOLDS, batch)

        assert updated.auto_match == pytest.approx(0.80)
        assert updated.learned_from_samples == 5
        assert_invariants(updated)

    def test_acceptances_below_cutoff_raise_auto_match(self):
        updated = apply_feedback(DEFAULT_THRESHOLDS, [feedback(True, 0.72)])

        assert updated.auto_match == pytest.approx(0.90)

    def test_acceptance_wins_over_rejection(self):
        updated = apply_feedback(DEFAULT_THRESHOLDS, [feedback(False, 0.95), feedback(True, 0.70)])

        assert updated.auto_match == pytest.approx(0.90)

    def test_decisions_agreeing_with_cutoff_leave_it(self):
        updated = apply_feedback(DEFAULT_THRESHOLDS, [feedback(True, 0.92), feedback(False, 0.40)])

        assert updated.auto_match == pytest.approx(0.85)

    def test_empty_feedback_is_noop(self):
        assert apply_feedback(DEFAULT_THRESHOLDS, []) is DEFAULT_THRESHOLDS


class TestBounds:

    def test_upper_clamp(self):
        current = MatchingThresholds(auto_match=0.95, suggest_match=0.6)

        updated = apply_feedback(current, [feedback(True, 0.5)])

        assert updated.auto_match == 0.95
        assert_invariants(updated)

    def test_lower_clamp(self):
        current = MatchingThresholds(auto_match=0.5, suggest_match=0.4)

        updated = apply_feedback(current, [feedback(False, 0.6)])

        assert updated.auto_match == 0.5
        assert_invariants(updated)

    def test_suggest_never_above_auto(self):
        current = MatchingThresholds(auto_match=0.6, suggest_match=0.6)

        updated = apply_feedback(current, [feedback(False, 0.7)])

        assert updated.auto_match == pytest.approx(0.55)
        assert updated.suggest_match == pytest.approx(0.55)

    def test_suggest_clamped_into_range(self):
        current = MatchingThresholds(auto_match=0.9, suggest_match=0.9)

        updated = apply_feedback(current, [feedback(True, 0.95)])

        assert updated.suggest_match == 0.8
        assert_invariants(updated)


class TestWeightBlending:

    def test_weights_move_towards_accepted_signals(self):
        updated = apply_feedback(DEFAULT_THRESHOLDS, [feedback(True, 0.9)])

        assert updated.signal_weights.amount > DEFAULT_THRESHOLDS.signal_weights.amount
        assert updated.signal_weights.vendor < DEFAULT_THRESHOLDS.signal_weights.vendor
        assert_invariants(updated)

    def test_rejections_only_keep_normalized_weights(self):
        current = MatchingThresholds(
            signal_weights=SignalWeights(amount=2.0, date=1.0, vendor=1.0, ocr_confidence=0.0, description=0.0)
        )

        updated = apply_feedback(current, [feedback(False, 0.2)])

        assert updated.signal_weights.amount == pytest.approx(0.5)
        assert_invariants(updated)

    def test_input_not_mutated(self):
        current = MatchingThresholds()

        apply_feedback(current, [feedback(True, 0.7)])

        assert current == MatchingThresholds()
