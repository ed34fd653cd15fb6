"""Tests for the dimensional aggregator."""
import pytest
from datetime import datetime, timedelta, timezone

from reliefgrid.shared.models import (
    CoverageKind,
    DimensionScores,
    Signal,
    SignalClassification,
    SourceReliability,
)
from reliefgrid.services.need_engine.aggregator import (
    aggregate,
    compute_window_id,
    dimension_for,
    evaluate_flags,
    window_bounds,
    window_bucket,
)
from reliefgrid.services.need_engine.config import GuardrailThresholds, NeedEngineConfig

NOW = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)


def make_signal(classification, confidence, minutes_ago=0, **kwargs):
    return Signal(
        classification=classification,
        confidence=confidence,
        timestamp=NOW - timedelta(minutes=minutes_ago),
        **kwargs,
    )


@pytest.fixture
def config():
    return NeedEngineConfig()


class TestAggregate:
    """Tests for windowed score computation."""

    def test_empty_signals(self, config):
        result = aggregate([], config, NOW)

        assert result.scores == DimensionScores()
        assert result.signal_count == 0
        assert result.top_evidence == []
        assert result.window_id == compute_window_id(NOW, 60)

    def test_scores_sum_by_dimension(self, config):
        result = aggregate([
            make_signal(SignalClassification.DEMAND, 0.6),
            make_signal(SignalClassification.DEMAND, 0.3),
            make_signal(SignalClassification.INSUFFICIENCY, 0.8),
            make_signal(SignalClassification.COVERAGE_ACTIVITY, 0.5),
            make_signal(SignalClassification.FRAGILITY_ALERT, 0.2),
        ], config, NOW)

        assert result.scores.demand == pytest.approx(0.9)
        assert result.scores.insufficiency == pytest.approx(0.8)
        assert result.scores.coverage == pytest.approx(0.5)
        assert result.scores.fragility == pytest.approx(0.2)
        assert result.scores.stabilization == 0.0
        assert result.signal_count == 5

    def test_bottleneck_counts_as_demand(self, config):
        result = aggregate([
            make_signal(SignalClassification.BOTTLENECK, 0.7, note="bridge out on route 5"),
        ], config, NOW)

        assert result.scores.demand == pytest.approx(0.7)
        assert result.operational_requirements == ["bridge out on route 5"]

    def test_social_media_is_down_weighted(self, config):
        result = aggregate([
            make_signal(
                SignalClassification.DEMAND, 1.0,
                source_reliability=SourceReliability.SOCIAL_MEDIA,
            ),
        ], config, NOW)

        assert result.scores.demand == pytest.approx(0.4)

    def test_custom_source_weights(self):
        weights = {r: 1.0 for r in SourceReliability}
        weights[SourceReliability.SOCIAL_MEDIA] = 0.0
        config = NeedEngineConfig(source_weights=weights)

        result = aggregate([
            make_signal(
                SignalClassification.DEMAND, 1.0,
                source_reliability=SourceReliability.SOCIAL_MEDIA,
            ),
        ], config, NOW)

        assert result.scores.demand == 0.0

    def test_signals_outside_window_are_ignored(self, config):
        result = aggregate([
            make_signal(SignalClassification.DEMAND, 0.5, minutes_ago=25 * 60),
            make_signal(SignalClassification.DEMAND, 0.5, minutes_ago=-1),
            make_signal(SignalClassification.DEMAND, 0.25, minutes_ago=10),
        ], config, NOW)

        assert result.scores.demand == pytest.approx(0.25)
        assert result.signal_count == 1

    def test_window_start_is_inclusive(self, config):
        result = aggregate([
            make_signal(SignalClassification.DEMAND, 0.5, minutes_ago=24 * 60),
        ], config, NOW)

        assert result.scores.demand == pytest.approx(0.5)

    def test_fragility_notes_are_deduplicated(self, config):
        result = aggregate([
            make_signal(SignalClassification.FRAGILITY_ALERT, 0.3, note="aftershocks"),
            make_signal(SignalClassification.FRAGILITY_ALERT, 0.3, note="aftershocks"),
            make_signal(SignalClassification.FRAGILITY_ALERT, 0.3, note="levee weak"),
            make_signal(SignalClassification.FRAGILITY_ALERT, 0.3),
        ], config, NOW)

        assert result.fragility_notes == ["aftershocks", "levee weak"]

    def test_augmentation_detected_from_coverage_kind(self, config):
        baseline = aggregate([
            make_signal(
                SignalClassification.COVERAGE_ACTIVITY, 0.5,
                coverage_kind=CoverageKind.BASELINE,
            ),
        ], config, NOW)
        augmented = aggregate([
            make_signal(
                SignalClassification.COVERAGE_ACTIVITY, 0.5,
                coverage_kind=CoverageKind.AUGMENTATION,
            ),
        ], config, NOW)

        assert baseline.augmentation_detected is False
        assert augmented.augmentation_detected is True

    def test_is_deterministic(self, config):
        signals = [
            make_signal(SignalClassification.DEMAND, 0.4, minutes_ago=5, signal_id="a"),
            make_signal(SignalClassification.STABILIZATION, 0.9, minutes_ago=70, signal_id="b"),
            make_signal(SignalClassification.COVERAGE_ACTIVITY, 0.4, minutes_ago=1, signal_id="c"),
        ]

        assert aggregate(signals, config, NOW) == aggregate(list(reversed(signals)), config, NOW)


class TestTopEvidence:
    """Tests for evidence ranking."""

    def test_sorted_by_contribution_then_recency(self, config):
        result = aggregate([
            make_signal(SignalClassification.DEMAND, 0.5, minutes_ago=30, signal_id="old"),
            make_signal(SignalClassification.DEMAND, 0.9, minutes_ago=60, signal_id="big"),
            make_signal(SignalClassification.DEMAND, 0.5, minutes_ago=5, signal_id="new"),
        ], config, NOW)

        assert [e.signal.signal_id for e in result.top_evidence] == ["big", "new", "old"]

    def test_limited_to_configured_count(self, config):
        signals = [
            make_signal(SignalClassification.DEMAND, i / 20, signal_id=f"s{i}")
            for i in range(1, 13)
        ]

        result = aggregate(signals, config, NOW)

        assert len(result.top_evidence) == 10
        assert result.top_evidence[0].signal.signal_id == "s12"
        assert result.signal_count == 12

    def test_evidence_quotes_skip_empty(self, config):
        result = aggregate([
            make_signal(SignalClassification.DEMAND, 0.9, short_quote="queues at the pump"),
            make_signal(SignalClassification.DEMAND, 0.5),
        ], config, NOW)

        assert result.evidence_quotes() == ["queues at the pump"]


class TestConsecutiveWindows:
    """Tests for the stabilization streak."""

    def test_counts_back_from_current_bucket(self, config):
        # NOW is 12:30; the 10:00 bucket is empty
        result = aggregate([
            make_signal(SignalClassification.STABILIZATION, 0.8, minutes_ago=0),
            make_signal(SignalClassification.STABILIZATION, 0.8, minutes_ago=60),
            make_signal(SignalClassification.STABILIZATION, 0.8, minutes_ago=180),
        ], config, NOW)

        assert result.scores.consecutive_stabilization_windows == 2

    def test_zero_when_current_bucket_is_weak(self, config):
        result = aggregate([
            make_signal(SignalClassification.STABILIZATION, 0.3, minutes_ago=0),
            make_signal(SignalClassification.STABILIZATION, 0.9, minutes_ago=60),
        ], config, NOW)

        assert result.scores.consecutive_stabilization_windows == 0

    def test_bucket_sums_multiple_signals(self, config):
        result = aggregate([
            make_signal(SignalClassification.STABILIZATION, 0.4, minutes_ago=1),
            make_signal(SignalClassification.STABILIZATION, 0.4, minutes_ago=2),
        ], config, NOW)

        assert result.scores.consecutive_stabilization_windows == 1

    def test_window_bucket(self):
        assert window_bucket(NOW, 60) == window_bucket(NOW - timedelta(minutes=30), 60)
        assert window_bucket(NOW, 60) - 1 == window_bucket(NOW - timedelta(minutes=31), 60)


class TestFlags:
    """Tests for threshold comparisons."""

    def test_thresholds_are_inclusive(self, config):
        flags = evaluate_flags(DimensionScores(
            demand=1.0, insufficiency=0.75, stabilization=0.7,
            fragility=0.9, coverage=0.9,
        ), config)

        assert flags.demand_strong
        assert flags.insuff_strong
        assert flags.stabilization_strong
        assert flags.fragility_alert
        assert flags.coverage_active
        assert flags.coverage_intent

    def test_intent_without_activation(self, config):
        flags = evaluate_flags(DimensionScores(coverage=0.5), config)

        assert flags.coverage_intent
        assert not flags.coverage_active

    def test_below_thresholds(self, config):
        flags = evaluate_flags(DimensionScores(
            demand=0.99, insufficiency=0.7, stabilization=0.6, fragility=0.5, coverage=0.3,
        ), config)

        assert flags.to_dict() == {
            "demand_strong": False,
            "insuff_strong": False,
            "stabilization_strong": False,
            "fragility_alert": False,
            "coverage_active": False,
            "coverage_intent": False,
        }

    def test_custom_thresholds(self):
        config = NeedEngineConfig(thresholds=GuardrailThresholds(demand_escalation=2.0))

        flags = evaluate_flags(DimensionScores(demand=1.5), config)

        assert not flags.demand_strong


class TestHelpers:

    def test_dimension_for(self):
        assert dimension_for(SignalClassification.DEMAND) == "demand"
        assert dimension_for(SignalClassification.BOTTLENECK) == "demand"
        assert dimension_for(SignalClassification.STABILIZATION) == "stabilization"

    def test_window_bounds(self, config):
        start, end = window_bounds(NOW, config)

        assert end == NOW
        assert NOW - start == timedelta(hours=24)
