"""Transition legality state machine for need statuses.

A sector cannot jump straight from WHITE or RED to GREEN: it must pass
through an intermediate validating status first. Staying put is always
legal.
"""
from typing import Dict, FrozenSet, List

from reliefgrid.shared.models import NeedStatus

NEED_STATUS_TRANSITIONS: Dict[NeedStatus, FrozenSet[NeedStatus]] = {
    NeedStatus.WHITE: frozenset({NeedStatus.RED, NeedStatus.YELLOW, NeedStatus.ORANGE}),
    NeedStatus.RED: frozenset({NeedStatus.YELLOW, NeedStatus.ORANGE}),
    NeedStatus.YELLOW: frozenset({
        NeedStatus.ORANGE, NeedStatus.GREEN, NeedStatus.RED, NeedStatus.WHITE,
    }),
    NeedStatus.ORANGE: frozenset({NeedStatus.GREEN, NeedStatus.RED, NeedStatus.YELLOW}),
    NeedStatus.GREEN: frozenset({NeedStatus.YELLOW, NeedStatus.ORANGE, NeedStatus.RED}),
}

SEVERITY_LADDER: List[NeedStatus] = sorted(NeedStatus, key=lambda s: s.severity)


def is_legal_transition(from_status: NeedStatus, to_status: NeedStatus) -> bool:
    """Check whether moving from one status to another is allowed."""
    if from_status == to_status:
        return True
    return to_status in NEED_STATUS_TRANSITIONS[from_status]


def allowed_transitions(from_status: NeedStatus) -> List[NeedStatus]:
    """Statuses reachable from `from_status`, itself included, by severity."""
    return [s for s in SEVERITY_LADDER if is_legal_transition(from_status, s)]


def clamp_to_nearest_legal(from_status: NeedStatus, proposed: NeedStatus) -> NeedStatus:
    """Replace an illegal proposal with the closest legal step toward it.

    Walks the severity ladder one status at a time from the proposal back
    toward `from_status` and returns the first legal stop. When the ladder
    holds none (WHITE -> GREEN has nothing in between), falls back to the
    legal one-hop status from which the proposal is reachable, nearest in
    severity to the proposal. Returns `from_status` if neither exists.
    """
    if is_legal_transition(from_status, proposed):
        return proposed

    step = 1 if proposed.severity < from_status.severity else -1
    for severity in range(proposed.severity + step, from_status.severity, step):
        candidate = SEVERITY_LADDER[severity]
        if is_legal_transition(from_status, candidate):
            return candidate

    via = [
        s for s in NEED_STATUS_TRANSITIONS[from_status]
        if is_legal_transition(s, proposed)
    ]
    if via:
        return min(via, key=lambda s: (abs(s.severity - proposed.severity), s.severity))

    return from_status
