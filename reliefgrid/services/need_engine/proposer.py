"""Status proposers - candidate status from scores and flags.

Two interchangeable strategies share one interface:
- RuleBasedProposer: deterministic five-branch rule, no dependencies
- AdvisoryProposer: asks the advisory service, falls back to the rule
  baseline on any failure and records why

Every proposal is subject to guardrail review afterwards.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from reliefgrid.shared.models import NeedFlags, NeedStatus

from .advisory import AdvisoryClient, AdvisoryError, AdvisoryRequest
from .aggregator import AggregationResult
from .transitions import allowed_transitions

logger = logging.getLogger(__name__)

STRATEGY_RULE_BASED = "rule_based"
STRATEGY_ADVISORY = "advisory"


@dataclass(frozen=True)
class Proposal:
    """A candidate status before guardrails."""
    proposed_status: NeedStatus
    confidence: float
    rationale: str
    strategy: str
    model: str = "rule-based-engine"
    contradiction_detected: bool = False
    key_evidence: List[str] = field(default_factory=list)
    augmentation_commitment_detected: bool = False
    fallback_reason: Optional[str] = None

    @property
    def is_advisory(self) -> bool:
        return self.strategy == STRATEGY_ADVISORY


class StatusProposer(ABC):
    """Interface for proposal strategies."""

    @abstractmethod
    def propose(
        self,
        previous_status: NeedStatus,
        aggregation: AggregationResult,
        flags: NeedFlags,
    ) -> Proposal:
        pass


def rule_based_status(flags: NeedFlags) -> NeedStatus:
    """The deterministic baseline rule, first match wins."""
    if flags.demand_strong and not flags.coverage_active:
        return NeedStatus.RED
    if (flags.insuff_strong or flags.demand_strong) and flags.coverage_active:
        return NeedStatus.ORANGE
    if (
        flags.stabilization_strong
        and not flags.fragility_alert
        and not flags.demand_strong
        and not flags.insuff_strong
    ):
        return NeedStatus.GREEN
    if flags.coverage_active or (
        flags.coverage_intent and not flags.demand_strong and not flags.insuff_strong
    ):
        return NeedStatus.YELLOW
    return NeedStatus.WHITE


_RULE_RATIONALE = {
    NeedStatus.RED: "demand strong without active coverage",
    NeedStatus.ORANGE: "demand or insufficiency strong while coverage is active",
    NeedStatus.GREEN: "stabilization strong with no fragility, demand or insufficiency",
    NeedStatus.YELLOW: "coverage active or committed, outcomes not yet validated",
    NeedStatus.WHITE: "no strong signals in the window",
}


class RuleBasedProposer(StatusProposer):
    """Deterministic baseline, always available."""

    def __init__(self, model: str = "rule-based-engine"):
        self.model = model

    def propose(
        self,
        previous_status: NeedStatus,
        aggregation: AggregationResult,
        flags: NeedFlags,
        fallback_reason: Optional[str] = None,
    ) -> Proposal:
        status = rule_based_status(flags)
        return Proposal(
            proposed_status=status,
            confidence=1.0,
            rationale=_RULE_RATIONALE[status],
            strategy=STRATEGY_RULE_BASED,
            model=self.model,
            key_evidence=aggregation.evidence_quotes()[:3],
            fallback_reason=fallback_reason,
        )


class AdvisoryProposer(StatusProposer):
    """Advisory strategy with rule-baseline fallback.

    Failures are never raised: timeouts, transport errors and malformed or
    out-of-vocabulary replies all yield the rule baseline proposal with
    `fallback_reason` set, which the engine records in the audit.
    """

    def __init__(
        self,
        client: AdvisoryClient,
        fallback: Optional[RuleBasedProposer] = None,
        model: str = "advisory",
    ):
        self.client = client
        self.fallback = fallback or RuleBasedProposer()
        self.model = model

    def build_request(
        self,
        previous_status: NeedStatus,
        aggregation: AggregationResult,
        flags: NeedFlags,
    ) -> AdvisoryRequest:
        return AdvisoryRequest(
            previous_status=previous_status,
            scores=aggregation.scores.to_dict(),
            booleans=flags.to_dict(),
            window_id=aggregation.window_id,
            top_evidence=aggregation.evidence_quotes(),
            allowed_transitions=allowed_transitions(previous_status),
        )

    def propose(
        self,
        previous_status: NeedStatus,
        aggregation: AggregationResult,
        flags: NeedFlags,
    ) -> Proposal:
        request = self.build_request(previous_status, aggregation, flags)

        try:
            response = self.client.propose(request)
        except AdvisoryError as e:
            return self._fall_back(e, previous_status, aggregation, flags)
        except Exception as e:
            logger.error(
                "ADVISORY_CLIENT_FAILED",
                extra={"error": str(e), "error_type": type(e).__name__}
            )
            return self._fall_back(e, previous_status, aggregation, flags)

        return Proposal(
            proposed_status=response.proposed_status,
            confidence=response.confidence,
            rationale=response.reasoning_summary,
            strategy=STRATEGY_ADVISORY,
            model=self.model,
            contradiction_detected=response.contradiction_detected,
            key_evidence=list(response.key_evidence),
            augmentation_commitment_detected=response.augmentation_commitment_detected,
        )

    def _fall_back(
        self,
        error: Exception,
        previous_status: NeedStatus,
        aggregation: AggregationResult,
        flags: NeedFlags,
    ) -> Proposal:
        reason = f"{type(error).__name__}: {error}"
        logger.warning(
            "ADVISORY_FALLBACK_TO_RULES",
            extra={
                "reason": reason,
                "previous_status": previous_status.value,
                "window_id": aggregation.window_id,
            }
        )
        return self.fallback.propose(
            previous_status, aggregation, flags, fallback_reason=reason
        )
