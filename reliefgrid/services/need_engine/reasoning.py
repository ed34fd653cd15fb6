"""Human-readable explanations for evaluation results."""
from typing import Optional, Sequence

from reliefgrid.shared.models import NeedStatus

from . import guardrails as g

STATUS_SENTENCES = {
    NeedStatus.RED: "High insufficiency detected with no active coverage.",
    NeedStatus.ORANGE: "Demand or insufficiency signals present but coverage is active.",
    NeedStatus.YELLOW: "Coverage activity detected, pending validation.",
    NeedStatus.GREEN: "Stabilization signals strong with no alerts.",
    NeedStatus.WHITE: "No significant signals detected.",
}

GUARDRAIL_EXPLANATIONS = {
    g.LEGALITY_BLOCK: "transition not allowed by state machine rules",
    g.A_RED_FLOOR: "demand is strong with no coverage, floor set to Critical",
    g.B_INSUFFICIENCY_RED_FLOOR: "insufficiency is strong with no coverage, escalated to Critical",
    g.B_BLOCK_GREEN_WITH_COVERAGE: (
        "insufficiency is strong while coverage is active, GREEN blocked"
    ),
    g.C_GREEN_GATE: "GREEN eligibility conditions not fully met, demoted to Validating",
    g.D_FRAGILITY_BLOCK_GREEN: "fragility alert detected, GREEN transition blocked",
    g.D_FORCE_GREEN_TO_YELLOW: "fragility alert detected, forced down to Validating",
    g.E_LOW_ADVISORY_CONFIDENCE: "advisory confidence too low, status kept unchanged",
    g.F_BLOCK_ORANGE_TO_YELLOW: (
        "ORANGE->YELLOW requires stabilization or augmentation evidence, "
        "reverted to Insufficient coverage"
    ),
    g.G_ESCALATE_ON_DEMAND: "demand signals require at least Insufficient coverage status",
}


def explain_guardrail(guardrail: str) -> str:
    if guardrail.startswith(g.LEGALITY_CLAMP_PREFIX):
        target = guardrail[len(g.LEGALITY_CLAMP_PREFIX):]
        return f"transition not legal; stepped to nearest legal status: {target}"
    return GUARDRAIL_EXPLANATIONS.get(guardrail, guardrail)


def rule_reasoning(status: NeedStatus, applied: Sequence[str]) -> str:
    sentence = f"{STATUS_SENTENCES[status]} Status set to {status.label}."
    for guardrail in applied:
        sentence += f" Safety rule: {explain_guardrail(guardrail)}."
    return sentence


def advisory_reasoning(
    summary: str,
    previous_status: NeedStatus,
    proposed_status: NeedStatus,
    final_status: NeedStatus,
    applied: Sequence[str],
) -> str:
    summary = summary.rstrip(". ") or "Advisory proposal received"
    if not applied:
        return f"{summary}."
    explanations = "; ".join(explain_guardrail(x) for x in applied)
    if final_status == previous_status and proposed_status != final_status:
        return (
            f"{summary}. However, safety rules prevented this change "
            f"({explanations}). Status remains {final_status.label}."
        )
    return f"{summary}. Safety rules applied: {explanations}. Status set to {final_status.label}."


def build_reasoning(
    strategy_is_advisory: bool,
    final_status: NeedStatus,
    applied: Sequence[str],
    previous_status: NeedStatus,
    proposed_status: NeedStatus,
    advisory_summary: str = "",
    fallback_reason: Optional[str] = None,
) -> str:
    """Explanation returned to callers and stored with the audit."""
    if strategy_is_advisory:
        text = advisory_reasoning(
            advisory_summary, previous_status, proposed_status, final_status, applied
        )
    else:
        text = rule_reasoning(final_status, applied)
    if fallback_reason:
        text += " Advisory service unavailable, rule baseline used."
    return text
