"""Tests for the evidence normalizer."""
import pytest
from datetime import datetime, timezone

from reliefgrid.shared.models import (
    CoverageKind,
    SignalClassification,
    SourceReliability,
)
from reliefgrid.services.need_engine.normalizer import (
    CONFIDENCE_TABLE,
    MAX_QUOTE_LENGTH,
    STATE_CLASSIFICATION,
    EvidenceError,
    classify_observation_text,
    classify_state,
    confidence_for,
    normalize_batch,
    normalize_evidence,
)

NOW = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)


class TestStateVocabulary:
    """Tests for the state -> classification table."""

    @pytest.mark.parametrize("state,expected", [
        ("demand", SignalClassification.DEMAND),
        ("needed", SignalClassification.INSUFFICIENCY),
        ("depleted", SignalClassification.INSUFFICIENCY),
        ("available", SignalClassification.STABILIZATION),
        ("in_transit", SignalClassification.COVERAGE_ACTIVITY),
        ("fragility", SignalClassification.FRAGILITY_ALERT),
        ("bottleneck", SignalClassification.BOTTLENECK),
    ])
    def test_known_states(self, state, expected):
        assert classify_state(state) == expected

    def test_state_matching_ignores_case_and_whitespace(self):
        assert classify_state("  Available ") == SignalClassification.STABILIZATION

    @pytest.mark.parametrize("state", ["flooded", "", None, "unknown"])
    def test_unknown_state_escalates_to_insufficiency(self, state):
        assert classify_state(state) == SignalClassification.INSUFFICIENCY

    def test_every_classification_is_reachable(self):
        assert set(STATE_CLASSIFICATION.values()) == set(SignalClassification)


class TestConfidenceTable:
    """Tests for the (state, urgency) -> confidence table."""

    @pytest.mark.parametrize("urgency,expected", [
        ("low", 1.0), ("medium", 0.8), ("high", 0.5), ("critical", 0.3),
    ])
    def test_available_is_strongest_when_calm(self, urgency, expected):
        assert confidence_for("available", urgency) == expected

    @pytest.mark.parametrize("urgency,expected", [
        ("low", 0.3), ("medium", 0.6), ("high", 0.8), ("critical", 1.0),
    ])
    def test_escalating_states_rise_with_urgency(self, urgency, expected):
        assert confidence_for("needed", urgency) == expected

    def test_unknown_urgency_defaults(self):
        assert confidence_for("available", "whenever") == 0.6
        assert confidence_for("needed", None) == 0.5

    def test_unknown_state_with_known_urgency(self):
        assert confidence_for("flooded", "high") == 0.8

    def test_table_values_in_range(self):
        assert all(0.0 <= v <= 1.0 for v in CONFIDENCE_TABLE.values())


class TestNormalizeEvidence:
    """Tests for payload -> Signal conversion."""

    def test_state_and_urgency(self):
        signal = normalize_evidence({"state": "needed", "urgency": "high"}, NOW)

        assert signal.classification == SignalClassification.INSUFFICIENCY
        assert signal.confidence == 0.8
        assert signal.timestamp == NOW
        assert signal.source_reliability == SourceReliability.NGO

    def test_confidence_inputs_block(self):
        signal = normalize_evidence(
            {"confidence_inputs": {"state": "available", "urgency": "low"}}, NOW
        )

        assert signal.classification == SignalClassification.STABILIZATION
        assert signal.confidence == 1.0

    def test_explicit_confidence_wins(self):
        signal = normalize_evidence({"state": "demand", "confidence": 0.45}, NOW)

        assert signal.classification == SignalClassification.DEMAND
        assert signal.confidence == 0.45

    def test_classification_tag(self):
        signal = normalize_evidence({"classification": "COVERAGE_ACTIVITY", "confidence": 1}, NOW)

        assert signal.classification == SignalClassification.COVERAGE_ACTIVITY
        assert signal.confidence == 1.0

    def test_long_form_classification_tag(self):
        signal = normalize_evidence(
            {"classification": "SIGNAL_DEMAND_INCREASE", "confidence": 0.6}, NOW
        )

        assert signal.classification == SignalClassification.DEMAND

    def test_unknown_classification_tag_escalates(self):
        signal = normalize_evidence({"classification": "RUMOUR", "confidence": 0.6}, NOW)

        assert signal.classification == SignalClassification.INSUFFICIENCY

    def test_optional_fields(self):
        signal = normalize_evidence({
            "classification": "COVERAGE_ACTIVITY",
            "confidence": 0.9,
            "timestamp": "2026-03-01T10:00:00Z",
            "source_reliability": "social_media",
            "short_quote": "two water trucks dispatched",
            "coverage_kind": "augmentation",
            "signal_id": "sig_fixed",
        }, NOW)

        assert signal.timestamp == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert signal.source_reliability == SourceReliability.SOCIAL_MEDIA
        assert signal.short_quote == "two water trucks dispatched"
        assert signal.coverage_kind == CoverageKind.AUGMENTATION
        assert signal.signal_id == "sig_fixed"

    def test_naive_timestamp_is_treated_as_utc(self):
        signal = normalize_evidence(
            {"state": "needed", "confidence": 0.5, "timestamp": "2026-03-01T09:00:00"}, NOW
        )

        assert signal.timestamp.tzinfo is not None

    def test_default_reliability_is_configurable(self):
        signal = normalize_evidence(
            {"state": "needed", "confidence": 0.5}, NOW,
            default_reliability=SourceReliability.INSTITUTIONAL,
        )

        assert signal.source_reliability == SourceReliability.INSTITUTIONAL

    @pytest.mark.parametrize("payload", [
        {"state": "needed", "confidence": 1.5},
        {"state": "needed", "confidence": -0.1},
        {"state": "needed", "confidence": "very"},
        {"state": "needed"},
        {"state": "needed", "confidence": 0.5, "timestamp": "yesterday"},
        {"state": "needed", "confidence": 0.5, "source_reliability": "gossip"},
        {"state": "needed", "confidence": 0.5, "coverage_kind": "maybe"},
        "needed",
    ])
    def test_malformed_payloads_raise(self, payload):
        with pytest.raises(EvidenceError):
            normalize_evidence(payload, NOW)


class TestNormalizeBatch:
    """Tests for batch normalization."""

    def test_batch(self):
        signals = normalize_batch([
            {"state": "needed", "urgency": "high"},
            {"state": "in_transit", "urgency": "medium"},
        ], NOW)

        assert [s.classification for s in signals] == [
            SignalClassification.INSUFFICIENCY,
            SignalClassification.COVERAGE_ACTIVITY,
        ]

    def test_error_reports_index(self):
        with pytest.raises(EvidenceError, match=r"signals\[1\]"):
            normalize_batch([
                {"state": "needed", "urgency": "high"},
                {"state": "needed", "confidence": 2},
            ], NOW)


class TestObservationText:
    """Tests for the free-text quick classifier."""

    def test_stabilization_words(self):
        assert classify_observation_text("No injuries reported, situation stable") == (
            "available", 0.85
        )

    def test_insufficiency_words(self):
        assert classify_observation_text("Shelter overwhelmed, blankets depleted") == (
            "needed", 0.7
        )

    def test_no_match(self):
        assert classify_observation_text("Team arrived at 14:00") is None

    def test_empty(self):
        assert classify_observation_text("") is None
        assert classify_observation_text(None) is None

    def test_observation_payload_is_classified(self):
        signal = normalize_evidence(
            {"observation": "Shelter overwhelmed, blankets depleted", "source_reliability": "social_media"},
            NOW,
        )

        assert signal.classification == SignalClassification.INSUFFICIENCY
        assert signal.confidence == 0.7
        assert signal.short_quote == "Shelter overwhelmed, blankets depleted"
        assert signal.source_reliability == SourceReliability.SOCIAL_MEDIA

    def test_observation_with_urgency(self):
        signal = normalize_evidence(
            {"observation": "Water points restored and functioning", "urgency": "low"}, NOW
        )

        assert signal.classification == SignalClassification.STABILIZATION
        assert signal.confidence == 1.0

    def test_observation_quote_is_truncated(self):
        signal = normalize_evidence({"observation": "shortage " * 100}, NOW)

        assert len(signal.short_quote) == MAX_QUOTE_LENGTH

    def test_state_takes_precedence_over_observation(self):
        signal = normalize_evidence(
            {"state": "in_transit", "confidence": 0.5, "observation": "situation stable"}, NOW
        )

        assert signal.classification == SignalClassification.COVERAGE_ACTIVITY
        assert signal.short_quote == "situation stable"

    def test_unmatched_observation_raises(self):
        with pytest.raises(EvidenceError, match="no known condition"):
            normalize_evidence({"observation": "Team arrived at 14:00"}, NOW)
