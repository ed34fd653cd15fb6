"""Guardrail validator - ordered safety rules over a proposed status.

Applied to every proposal regardless of strategy, in this order:
    legality, A, B, C, D, E, F, G

Floor guardrails (A, B) set a hard-forced latch; once latched, the rules
that could only soften the status are skipped. Every rule that fires is
recorded, in order, for the audit.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from reliefgrid.shared.models import DimensionScores, NeedFlags, NeedStatus

from .config import NeedEngineConfig
from .proposer import Proposal
from .transitions import clamp_to_nearest_legal, is_legal_transition

logger = logging.getLogger(__name__)

LEGALITY_BLOCK = "transition_legality_block"
LEGALITY_CLAMP_PREFIX = "transition_clamped_to_"
A_RED_FLOOR = "A_red_floor"
B_INSUFFICIENCY_RED_FLOOR = "B_insufficiency_red_floor"
B_BLOCK_GREEN_WITH_COVERAGE = "B_block_green_with_coverage"
C_GREEN_GATE = "C_green_gate"
D_FRAGILITY_BLOCK_GREEN = "D_fragility_block_green"
D_FORCE_GREEN_TO_YELLOW = "D_force_green_to_yellow"
E_LOW_ADVISORY_CONFIDENCE = "E_low_advisory_confidence"
F_BLOCK_ORANGE_TO_YELLOW = "F_block_orange_to_yellow"
G_ESCALATE_ON_DEMAND = "G_escalate_on_demand"


@dataclass(frozen=True)
class GuardrailContext:
    """Everything the guardrails read for one evaluation."""
    previous_status: NeedStatus
    proposal: Proposal
    flags: NeedFlags
    scores: DimensionScores
    config: NeedEngineConfig
    augmentation_detected: bool = False
    initial_evaluation: bool = False


@dataclass(frozen=True)
class GuardrailOutcome:
    """Final status and the trail of rules that produced it."""
    final_status: NeedStatus
    applied: List[str] = field(default_factory=list)
    legal_transition: bool = True
    illegal_transition_reason: Optional[str] = None
    hard_forced: bool = False


class _GuardrailRun:
    """Mutable state of one pass through the pipeline."""

    def __init__(self, context: GuardrailContext):
        self.ctx = context
        self.flags = context.flags
        self.status = context.proposal.proposed_status
        self.applied: List[str] = []
        self.hard_forced = False
        self.legal_transition = True
        self.illegal_transition_reason: Optional[str] = None

    def _set(self, status: NeedStatus, guardrail: str) -> None:
        logger.debug(
            "GUARDRAIL_APPLIED",
            extra={"guardrail": guardrail, "from": self.status.value, "to": status.value}
        )
        self.status = status
        self.applied.append(guardrail)

    def legality(self) -> None:
        if self.ctx.initial_evaluation:
            return
        previous = self.ctx.previous_status
        proposed = self.status
        if is_legal_transition(previous, proposed):
            return

        self.legal_transition = False
        if self.ctx.proposal.is_advisory:
            self.illegal_transition_reason = (
                f"{previous.value}->{proposed.value} is not allowed; kept {previous.value}"
            )
            self._set(previous, LEGALITY_BLOCK)
        else:
            clamped = clamp_to_nearest_legal(previous, proposed)
            self.illegal_transition_reason = (
                f"{previous.value}->{proposed.value} is not allowed; "
                f"clamped to {clamped.value}"
            )
            self._set(clamped, f"{LEGALITY_CLAMP_PREFIX}{clamped.value}")

        logger.warning(
            "NEED_TRANSITION_ILLEGAL",
            extra={
                "previous_status": previous.value,
                "proposed_status": proposed.value,
                "corrected_status": self.status.value,
                "strategy": self.ctx.proposal.strategy,
            }
        )

    def red_floor(self) -> None:
        if self.flags.demand_strong and not self.flags.coverage_active:
            self.hard_forced = True
            self._set(NeedStatus.RED, A_RED_FLOOR)
            logger.critical(
                "NEED_RED_FLOOR_APPLIED",
                extra={"guardrail": A_RED_FLOOR, "demand": self.ctx.scores.demand}
            )

    def insufficiency_floor(self) -> None:
        if self.hard_forced or not self.flags.insuff_strong:
            return
        if not self.flags.coverage_active:
            self.hard_forced = True
            self._set(NeedStatus.RED, B_INSUFFICIENCY_RED_FLOOR)
            logger.critical(
                "NEED_RED_FLOOR_APPLIED",
                extra={
                    "guardrail": B_INSUFFICIENCY_RED_FLOOR,
                    "insufficiency": self.ctx.scores.insufficiency,
                }
            )
        else:
            self.block_green_with_coverage()

    def block_green_with_coverage(self) -> None:
        if (
            self.flags.insuff_strong
            and self.flags.coverage_active
            and self.status == NeedStatus.GREEN
        ):
            self._set(NeedStatus.ORANGE, B_BLOCK_GREEN_WITH_COVERAGE)

    def green_gate(self) -> None:
        if self.hard_forced or self.status != NeedStatus.GREEN:
            return
        eligible = (
            self.flags.stabilization_strong
            and self.ctx.scores.consecutive_stabilization_windows
            >= self.ctx.config.thresholds.stabilization_min_consecutive_windows
            and not self.flags.fragility_alert
            and not self.flags.demand_strong
            and not self.flags.insuff_strong
        )
        if not eligible:
            self._set(NeedStatus.YELLOW, C_GREEN_GATE)

    def fragility_block(self) -> None:
        if self.hard_forced or not self.flags.fragility_alert:
            return
        blocked = {NeedStatus.GREEN}
        if self.ctx.proposal.is_advisory:
            blocked.add(NeedStatus.WHITE)
        if self.status in blocked:
            self._set(NeedStatus.YELLOW, D_FRAGILITY_BLOCK_GREEN)
        if (
            self.ctx.previous_status == NeedStatus.GREEN
            and self.status != NeedStatus.YELLOW
        ):
            self._set(NeedStatus.YELLOW, D_FORCE_GREEN_TO_YELLOW)

    def confidence_gate(self) -> None:
        proposal = self.ctx.proposal
        if self.hard_forced or not proposal.is_advisory:
            return
        if proposal.confidence >= self.ctx.config.min_advisory_confidence:
            return
        self._set(self.ctx.previous_status, E_LOW_ADVISORY_CONFIDENCE)
        # The kept status must still satisfy the GREEN and fragility rules
        self.block_green_with_coverage()
        self.green_gate()
        self.fragility_block()

    def orange_to_yellow_evidence(self) -> None:
        proposal = self.ctx.proposal
        if self.hard_forced or not proposal.is_advisory:
            return
        if not (
            self.ctx.previous_status == NeedStatus.ORANGE
            and self.status == NeedStatus.YELLOW
        ):
            return
        has_evidence = (
            self.ctx.augmentation_detected
            or proposal.augmentation_commitment_detected
            or self.ctx.scores.stabilization > 0
        )
        if not has_evidence:
            self._set(NeedStatus.ORANGE, F_BLOCK_ORANGE_TO_YELLOW)

    def worsening_floor(self) -> None:
        if self.hard_forced or not self.flags.demand_strong:
            return
        if self.status not in (NeedStatus.RED, NeedStatus.ORANGE):
            self._set(NeedStatus.ORANGE, G_ESCALATE_ON_DEMAND)

    def outcome(self) -> GuardrailOutcome:
        return GuardrailOutcome(
            final_status=self.status,
            applied=list(self.applied),
            legal_transition=self.legal_transition,
            illegal_transition_reason=self.illegal_transition_reason,
            hard_forced=self.hard_forced,
        )


def apply_guardrails(context: GuardrailContext) -> GuardrailOutcome:
    """Run the full guardrail pipeline over a proposal.

    Args:
        context: Previous status, proposal, flags, scores and config

    Returns:
        GuardrailOutcome whose final status is always legal from the
        previous status (unless this is the key's first evaluation)
    """
    run = _GuardrailRun(context)
    run.legality()
    run.red_floor()
    run.insufficiency_floor()
    run.green_gate()
    run.fragility_block()
    run.confidence_gate()
    run.orange_to_yellow_evidence()
    run.worsening_floor()
    return run.outcome()
