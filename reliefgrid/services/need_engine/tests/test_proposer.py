"""Tests for the proposal strategies."""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from reliefgrid.shared.models import NeedFlags, NeedStatus, Signal, SignalClassification
from reliefgrid.services.need_engine.advisory import (
    AdvisoryClient,
    AdvisoryResponse,
    AdvisoryResponseError,
    AdvisoryTimeoutError,
)
from reliefgrid.services.need_engine.aggregator import aggregate, evaluate_flags
from reliefgrid.services.need_engine.config import NeedEngineConfig
from reliefgrid.services.need_engine.proposer import (
    STRATEGY_ADVISORY,
    STRATEGY_RULE_BASED,
    AdvisoryProposer,
    RuleBasedProposer,
    rule_based_status,
)

NOW = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def aggregation():
    return aggregate([
        Signal(
            classification=SignalClassification.INSUFFICIENCY,
            confidence=0.8,
            timestamp=NOW - timedelta(minutes=10),
            short_quote="clinic out of insulin",
        ),
        Signal(
            classification=SignalClassification.COVERAGE_ACTIVITY,
            confidence=1.0,
            timestamp=NOW - timedelta(minutes=5),
            short_quote="pharmacy truck en route",
        ),
    ], NeedEngineConfig(), NOW)


class TestRuleBasedStatus:
    """Tests for the five-branch baseline rule."""

    @pytest.mark.parametrize("flags,expected", [
        (dict(demand_strong=True), NeedStatus.RED),
        (dict(demand_strong=True, coverage_active=True), NeedStatus.ORANGE),
        (dict(insuff_strong=True, coverage_active=True), NeedStatus.ORANGE),
        (dict(stabilization_strong=True), NeedStatus.GREEN),
        (dict(stabilization_strong=True, fragility_alert=True), NeedStatus.WHITE),
        (dict(coverage_active=True, coverage_intent=True), NeedStatus.YELLOW),
        (dict(coverage_intent=True), NeedStatus.YELLOW),
        (dict(coverage_intent=True, insuff_strong=True), NeedStatus.WHITE),
        (dict(), NeedStatus.WHITE),
    ])
    def test_branches(self, flags, expected):
        assert rule_based_status(NeedFlags(**flags)) == expected

    def test_first_match_wins(self):
        flags = NeedFlags(demand_strong=True, stabilization_strong=True)

        assert rule_based_status(flags) == NeedStatus.RED


class TestRuleBasedProposer:

    def test_proposal(self, aggregation):
        flags = evaluate_flags(aggregation.scores, NeedEngineConfig())

        proposal = RuleBasedProposer().propose(NeedStatus.WHITE, aggregation, flags)

        assert proposal.strategy == STRATEGY_RULE_BASED
        assert proposal.proposed_status == NeedStatus.ORANGE
        assert proposal.confidence == 1.0
        assert proposal.is_advisory is False
        assert proposal.fallback_reason is None
        assert proposal.key_evidence == ["pharmacy truck en route", "clinic out of insulin"]


class TestAdvisoryProposer:
    """Tests for the advisory strategy and its fallback."""

    def test_uses_advisory_response(self, aggregation):
        client = MagicMock(spec=AdvisoryClient)
        client.propose.return_value = AdvisoryResponse(
            proposed_status=NeedStatus.ORANGE,
            confidence=0.82,
            reasoning_summary="Insulin shortage persists",
            contradiction_detected=True,
            key_evidence=["clinic out of insulin"],
            augmentation_commitment_detected=True,
        )
        flags = evaluate_flags(aggregation.scores, NeedEngineConfig())

        proposal = AdvisoryProposer(client, model="gateway-model").propose(
            NeedStatus.YELLOW, aggregation, flags
        )

        assert proposal.strategy == STRATEGY_ADVISORY
        assert proposal.is_advisory
        assert proposal.proposed_status == NeedStatus.ORANGE
        assert proposal.confidence == 0.82
        assert proposal.model == "gateway-model"
        assert proposal.contradiction_detected is True
        assert proposal.augmentation_commitment_detected is True
        assert proposal.fallback_reason is None

    def test_request_carries_context(self, aggregation):
        flags = evaluate_flags(aggregation.scores, NeedEngineConfig())

        request = AdvisoryProposer(MagicMock(spec=AdvisoryClient)).build_request(
            NeedStatus.RED, aggregation, flags
        )

        assert request.previous_status == NeedStatus.RED
        assert request.allowed_transitions == [
            NeedStatus.YELLOW, NeedStatus.ORANGE, NeedStatus.RED,
        ]
        assert request.top_evidence == ["pharmacy truck en route", "clinic out of insulin"]
        assert request.window_id == aggregation.window_id
        assert request.booleans["insuff_strong"] is True
        assert "ORANGE->YELLOW" in request.system_prompt()

    @pytest.mark.parametrize("error", [
        AdvisoryTimeoutError("timed out after 10s"),
        AdvisoryResponseError("Invalid proposed_status: 'PURPLE'"),
        ValueError("unexpected payload shape"),
        AttributeError("'NoneType' object has no attribute 'choices'"),
    ])
    def test_falls_back_on_client_error(self, aggregation, error):
        client = MagicMock(spec=AdvisoryClient)
        client.propose.side_effect = error
        flags = evaluate_flags(aggregation.scores, NeedEngineConfig())

        proposal = AdvisoryProposer(client).propose(NeedStatus.WHITE, aggregation, flags)

        assert proposal.strategy == STRATEGY_RULE_BASED
        assert proposal.proposed_status == NeedStatus.ORANGE
        assert proposal.fallback_reason.startswith(type(error).__name__)
