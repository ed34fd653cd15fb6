"""Evidence normalizer - uniform Signals from collaborator payloads.

Ingestion adapters report items with a state word ("needed", "in_transit")
and an urgency word ("high"), or an explicit classification with a
confidence. Both vocabularies are table-driven and total: unknown states
classify as INSUFFICIENCY rather than being dropped, because ignoring
unknown evidence is worse than over-weighting it.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from reliefgrid.shared.models import (
    CoverageKind,
    Signal,
    SignalClassification,
    SourceReliability,
    as_utc,
)

logger = logging.getLogger(__name__)


class EvidenceError(ValueError):
    """Evidence payload cannot be turned into a Signal."""
    pass


SAFE_ESCALATION_DEFAULT = SignalClassification.INSUFFICIENCY
MAX_QUOTE_LENGTH = 280

STATE_CLASSIFICATION: Dict[str, SignalClassification] = {
    "demand": SignalClassification.DEMAND,
    "needed": SignalClassification.INSUFFICIENCY,
    "depleted": SignalClassification.INSUFFICIENCY,
    "available": SignalClassification.STABILIZATION,
    "in_transit": SignalClassification.COVERAGE_ACTIVITY,
    "fragility": SignalClassification.FRAGILITY_ALERT,
    "bottleneck": SignalClassification.BOTTLENECK,
}

# Tags emitted by upstream classifiers, in both long and short form
CLASSIFICATION_ALIASES: Dict[str, SignalClassification] = {
    **{c.value: c for c in SignalClassification},
    "SIGNAL_DEMAND_INCREASE": SignalClassification.DEMAND,
    "SIGNAL_INSUFFICIENCY": SignalClassification.INSUFFICIENCY,
    "SIGNAL_STABILIZATION": SignalClassification.STABILIZATION,
    "SIGNAL_FRAGILITY_ALERT": SignalClassification.FRAGILITY_ALERT,
    "SIGNAL_COVERAGE_ACTIVITY": SignalClassification.COVERAGE_ACTIVITY,
    "SIGNAL_BOTTLENECK": SignalClassification.BOTTLENECK,
}

URGENCIES: Tuple[str, ...] = ("low", "medium", "high", "critical")

# (state, urgency) -> confidence. For "available" a calm report is the
# strongest stabilization evidence; for every other state urgency raises it.
_STABILIZATION_URGENCY = {"low": 1.0, "medium": 0.8, "high": 0.5, "critical": 0.3}
_ESCALATION_URGENCY = {"low": 0.3, "medium": 0.6, "high": 0.8, "critical": 1.0}
_UNKNOWN_URGENCY = {"available": 0.6}
_UNKNOWN_URGENCY_DEFAULT = 0.5

CONFIDENCE_TABLE: Dict[Tuple[str, str], float] = {
    (state, urgency): (
        _STABILIZATION_URGENCY if state == "available" else _ESCALATION_URGENCY
    )[urgency]
    for state in STATE_CLASSIFICATION
    for urgency in URGENCIES
}


def _validate_tables() -> None:
    """Fail at import if the vocabulary tables are not total and in range."""
    reachable = set(STATE_CLASSIFICATION.values())
    missing = set(SignalClassification) - reachable
    if missing:
        raise RuntimeError(f"Unreachable classifications: {sorted(m.value for m in missing)}")
    for state in STATE_CLASSIFICATION:
        for urgency in URGENCIES:
            value = CONFIDENCE_TABLE.get((state, urgency))
            if value is None or not 0.0 <= value <= 1.0:
                raise RuntimeError(f"Bad confidence entry for ({state}, {urgency}): {value}")


_validate_tables()


def classify_state(state: Optional[str]) -> SignalClassification:
    """Map a state word to a classification; unknown words escalate."""
    normalized = (state or "").strip().lower()
    classification = STATE_CLASSIFICATION.get(normalized)
    if classification is None:
        logger.warning(
            "EVIDENCE_STATE_UNRECOGNIZED",
            extra={"state": state, "classified_as": SAFE_ESCALATION_DEFAULT.value}
        )
        return SAFE_ESCALATION_DEFAULT
    return classification


def confidence_for(state: Optional[str], urgency: Optional[str]) -> float:
    """Confidence of an item report from its state and urgency words."""
    normalized_state = (state or "").strip().lower()
    normalized_urgency = (urgency or "").strip().lower()
    value = CONFIDENCE_TABLE.get((normalized_state, normalized_urgency))
    if value is not None:
        return value
    if normalized_urgency in URGENCIES:
        # Unknown state is scored like any escalating state
        return _ESCALATION_URGENCY[normalized_urgency]
    return _UNKNOWN_URGENCY.get(normalized_state, _UNKNOWN_URGENCY_DEFAULT)


_STABILIZATION_TEXT = re.compile(
    r"\b(stable|sufficient|resolved|available|okay|ok|covered|healthy|"
    r"no\s*(injury|injuries|emergency|need|shortage|damage)|recovering|good|"
    r"operational|functioning|normal|restored|safe)\b",
    re.IGNORECASE,
)
_INSUFFICIENCY_TEXT = re.compile(
    r"\b(needed|insufficient|depleted|shortage|lacking|overwhelmed|critical|"
    r"scarce|exhausted|saturated|collapsed|unavailable|emergency)\b",
    re.IGNORECASE,
)


def classify_observation_text(text: Optional[str]) -> Optional[Tuple[str, float]]:
    """Quick keyword classification of a free-text field observation.

    Returns:
        (state, confidence) for obvious cases, None when nothing matches
    """
    if not text:
        return None
    if _STABILIZATION_TEXT.search(text):
        return "available", 0.85
    if _INSUFFICIENCY_TEXT.search(text):
        return "needed", 0.7
    return None


def _parse_timestamp(value: Any, default: datetime) -> datetime:
    if value is None:
        return default
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise EvidenceError(f"Invalid timestamp: {value!r}") from e
    return as_utc(parsed)


def _parse_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError) as e:
        raise EvidenceError(f"Confidence must be numeric, got {value!r}") from e
    if not 0.0 <= confidence <= 1.0:
        raise EvidenceError(f"Confidence must be 0.0-1.0, got {confidence}")
    return confidence


def _parse_enum(enum_cls, value: Any, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError as e:
        raise EvidenceError(f"Unknown {field_name}: {value!r}") from e


def normalize_evidence(
    payload: Mapping[str, Any],
    now: datetime,
    default_reliability: SourceReliability = SourceReliability.NGO,
) -> Signal:
    """Convert one collaborator evidence payload into a Signal.

    Accepted shapes:
        {"state": "needed", "urgency": "high"}
        {"state": "needed", "confidence": 0.8}
        {"state": "needed", "confidence_inputs": {"state": ..., "urgency": ...}}
        {"classification": "DEMAND", "confidence": 0.6}
        {"observation": "Shelter at the school is overwhelmed"}
    plus optional timestamp, source_reliability, short_quote, note and
    coverage_kind.

    An observation is classified by keyword and quoted as the short_quote;
    text that matches no keyword is rejected.

    Raises:
        EvidenceError: If the payload carries no usable confidence or a
            malformed field
    """
    if not isinstance(payload, Mapping):
        raise EvidenceError("Evidence item must be an object")

    tag = payload.get("classification")
    state = payload.get("state")
    inputs = payload.get("confidence_inputs") or {}
    observed_confidence = None

    observation = payload.get("observation")
    if tag is None and state is None and not inputs.get("state") and observation:
        matched = classify_observation_text(str(observation))
        if matched is None:
            raise EvidenceError("Observation text matched no known condition")
        state, observed_confidence = matched

    if tag is not None:
        classification = CLASSIFICATION_ALIASES.get(str(tag).strip().upper())
        if classification is None:
            logger.warning(
                "EVIDENCE_CLASSIFICATION_UNRECOGNIZED",
                extra={"classification": tag, "classified_as": SAFE_ESCALATION_DEFAULT.value}
            )
            classification = SAFE_ESCALATION_DEFAULT
    else:
        classification = classify_state(state if state is not None else inputs.get("state"))

    if "confidence" in payload:
        confidence = _parse_confidence(payload["confidence"])
    elif "confidence" in inputs:
        confidence = _parse_confidence(inputs["confidence"])
    elif "urgency" in payload or "urgency" in inputs:
        confidence = confidence_for(
            inputs.get("state", state),
            payload.get("urgency", inputs.get("urgency")),
        )
    elif observed_confidence is not None:
        confidence = observed_confidence
    else:
        raise EvidenceError("Evidence item needs a confidence or an urgency")

    reliability = _parse_enum(
        SourceReliability, payload.get("source_reliability"), "source_reliability"
    ) or default_reliability

    kwargs: Dict[str, Any] = {}
    if payload.get("signal_id"):
        kwargs["signal_id"] = str(payload["signal_id"])

    return Signal(
        classification=classification,
        confidence=confidence,
        timestamp=_parse_timestamp(payload.get("timestamp"), now),
        source_reliability=reliability,
        short_quote=str(payload.get("short_quote") or str(observation or "")[:MAX_QUOTE_LENGTH]),
        note=payload.get("note"),
        coverage_kind=_parse_enum(CoverageKind, payload.get("coverage_kind"), "coverage_kind"),
        **kwargs,
    )


def normalize_batch(
    payloads: Iterable[Mapping[str, Any]],
    now: datetime,
    default_reliability: SourceReliability = SourceReliability.NGO,
) -> List[Signal]:
    """Normalize a list of payloads, reporting the index of a bad item."""
    signals = []
    for index, payload in enumerate(payloads):
        try:
            signals.append(normalize_evidence(payload, now, default_reliability))
        except EvidenceError as e:
            raise EvidenceError(f"signals[{index}]: {e}") from e
    return signals
