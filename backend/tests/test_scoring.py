"""
Unit Tests for Confidence Scoring and Classification

Run with: pytest backend/tests/test_scoring.py -v
"""

import pytest

from reconciliation.domain import MatchTier, MatchType
from reconciliation.errors import ThresholdConfigurationError
from reconciliation.matching_rules.signals import MatchSignals
from reconciliation.matching_rules.scoring import (
    SignalWeights,
    confidence_score,
    classify,
    grade_match_type,
    MANUAL_MATCH_FLOOR,
)
from reconciliation.thresholds.models import MatchingThresholds


class TestConfidenceScore:

    def test_scenario_same_day_document_is_auto(self):
        signals = MatchSignals(amount=1.0, date=1.0, vendor=2 / 3, ocr_confidence=0.95, description=2 / 3)
        score = confidence_score(signals, SignalWeights())

        assert score == pytest.approx(0.895, abs=1e-3)
        assert classify(score, 0.85, 0.60) == MatchTier.AUTO

    def test_scenario_ten_days_later_is_not_auto(self):
        signals = MatchSignals(amount=1.0, date=0.35, vendor=2 / 3, ocr_confidence=0.95, description=2 / 3)
        score = confidence_score(signals, SignalWeights())

        assert score < 0.85
        assert classify(score, 0.85, 0.60) != MatchTier.AUTO

    def test_weights_need_not_sum_to_one(self):
        signals = MatchSignals(amount=1.0, date=0.0, vendor=0.0, ocr_confidence=0.0, description=0.0)
        weights = SignalWeights(amount=2.0, date=2.0, vendor=0.0, ocr_confidence=0.0, description=0.0)

        assert confidence_score(signals, weights) == pytest.approx(0.5)

    def test_zero_weights_raise(self):
        signals = MatchSignals(amount=1.0, date=1.0, vendor=1.0, ocr_confidence=1.0, description=1.0)
        weights = SignalWeights(amount=0.0, date=0.0, vendor=0.0, ocr_confidence=0.0, description=0.0)

        with pytest.raises(ThresholdConfigurationError):
            confidence_score(signals, weights)

    def test_negative_weight_raises(self):
        signals = MatchSignals(amount=1.0, date=1.0, vendor=1.0, ocr_confidence=1.0, description=1.0)

        with pytest.raises(ThresholdConfigurationError):
            confidence_score(signals, SignalWeights(amount=-0.1))


class TestClassify:
    """Each tier includes its lower boundary."""

    def test_exactly_auto(self):
        assert classify(0.85, 0.85, 0.60) == MatchTier.AUTO

    def test_exactly_suggest(self):
        assert classify(0.60, 0.85, 0.60) == MatchTier.SUGGEST

    def test_exactly_manual_floor(self):
        assert classify(MANUAL_MATCH_FLOOR, 0.85, 0.60) == MatchTier.MANUAL

    def test_just_below_manual_floor(self):
        assert classify(0.2999, 0.85, 0.60) == MatchTier.NONE


class TestMatchType:

    @pytest.mark.parametrize("score,expected", [
        (0.95, MatchType.EXACT),
        (0.90, MatchType.EXACT),
        (0.80, MatchType.PARTIAL),
        (0.61, MatchType.FUZZY),
    ])
    def test_grades(self, score, expected):
        assert grade_match_type(score) == expected


class TestSignalWeights:

    def test_from_dict_rejects_unknown_signal(self):
        with pytest.raises(ThresholdConfigurationError) as exc_info:
            SignalWeights.from_dict({
                "amount": 0.3, "date": 0.3, "vendor": 0.1,
                "ocr_confidence": 0.1, "description": 0.1, "category": 0.1,
            })
        assert "category" in str(exc_info.value)

    def test_from_dict_rejects_missing_signal(self):
        with pytest.raises(ThresholdConfigurationError):
            SignalWeights.from_dict({"amount": 1.0})

    def test_normalized_sums_to_one(self):
        weights = SignalWeights(amount=2.0, date=1.0, vendor=1.0, ocr_confidence=0.0, description=0.0).normalized()

        assert weights.total == pytest.approx(1.0)
        assert weights.amount == pytest.approx(0.5)


class TestMatchingThresholds:

    def test_defaults_are_valid(self):
        thresholds = MatchingThresholds().validate()

        assert thresholds.auto_match == 0.85
        assert thresholds.suggest_match == 0.60

    def test_auto_below_suggest_raises(self):
        with pytest.raises(ThresholdConfigurationError):
            MatchingThresholds(auto_match=0.5, suggest_match=0.7).validate()

    @pytest.mark.parametrize("auto_match,suggest_match", [(0.99, 0.6), (0.85, 0.1)])
    def test_out_of_range_raises(self, auto_match, suggest_match):
        with pytest.raises(ThresholdConfigurationError):
            MatchingThresholds(auto_match=auto_match, suggest_match=suggest_match).validate()
