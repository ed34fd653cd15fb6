"""Dimensional aggregator - windowed scores from a signal set.

Pure functions only: the same signals, config and `now` always give the
same scores. Scores are recomputed from the trailing window on every
call so stale evidence ages out on its own.
"""
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Tuple

from reliefgrid.shared.models import (
    CoverageKind,
    DimensionScores,
    NeedFlags,
    Signal,
    SignalClassification,
)

from .config import NeedEngineConfig

logger = logging.getLogger(__name__)

# Anything not listed scores as demand
_DIMENSION_BY_CLASSIFICATION = {
    SignalClassification.INSUFFICIENCY: "insufficiency",
    SignalClassification.STABILIZATION: "stabilization",
    SignalClassification.FRAGILITY_ALERT: "fragility",
    SignalClassification.COVERAGE_ACTIVITY: "coverage",
}
_DEFAULT_DIMENSION = "demand"


@dataclass(frozen=True)
class WeightedEvidence:
    """A signal with its weighted contribution."""
    signal: Signal
    delta: float

    def to_dict(self) -> Dict:
        return {
            "signal_id": self.signal.signal_id,
            "classification": self.signal.classification.value,
            "delta": round(self.delta, 6),
            "short_quote": self.signal.short_quote,
            "timestamp": self.signal.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class AggregationResult:
    """Output of one aggregation pass."""
    scores: DimensionScores
    window_id: str
    window_start: datetime
    window_end: datetime
    signal_count: int = 0
    top_evidence: List[WeightedEvidence] = field(default_factory=list)
    operational_requirements: List[str] = field(default_factory=list)
    fragility_notes: List[str] = field(default_factory=list)
    augmentation_detected: bool = False

    def evidence_quotes(self) -> List[str]:
        return [e.signal.short_quote for e in self.top_evidence if e.signal.short_quote]


def window_bucket(timestamp: datetime, window_minutes: int) -> int:
    """Index of the fixed-size bucket holding `timestamp`."""
    return math.floor(timestamp.timestamp() / (window_minutes * 60))


def compute_window_id(now: datetime, window_minutes: int) -> str:
    return str(window_bucket(now, window_minutes))


def dimension_for(classification: SignalClassification) -> str:
    return _DIMENSION_BY_CLASSIFICATION.get(classification, _DEFAULT_DIMENSION)


def in_window(signal: Signal, start: datetime, end: datetime) -> bool:
    return start <= signal.timestamp <= end


def _consecutive_windows(
    buckets: Dict[int, float],
    current_bucket: int,
    threshold: float,
) -> int:
    count = 0
    bucket = current_bucket
    while buckets.get(bucket, 0.0) >= threshold:
        count += 1
        bucket -= 1
    return count


def _dedupe(notes: Iterable[str]) -> List[str]:
    seen = []
    for note in notes:
        if note and note not in seen:
            seen.append(note)
    return seen


def merge_notes(existing: Iterable[str], new: Iterable[str]) -> List[str]:
    """Accumulated notes: stored ones first, then unseen new ones."""
    return _dedupe([*existing, *new])


def aggregate(
    signals: Iterable[Signal],
    config: NeedEngineConfig,
    now: datetime,
) -> AggregationResult:
    """Reduce signals in the trailing window to dimension scores.

    Args:
        signals: Candidate signals; those outside the window are ignored
        config: Engine configuration (weights, window sizes, thresholds)
        now: Evaluation time, the inclusive end of the window

    Returns:
        AggregationResult with scores, stabilization streak and the
        evidence surfaced for the audit
    """
    window_start, _ = window_bounds(now, config)
    window_minutes = config.consecutive_window_minutes
    current_bucket = window_bucket(now, window_minutes)

    totals: Dict[str, float] = defaultdict(float)
    stabilization_buckets: Dict[int, float] = defaultdict(float)
    weighted: List[WeightedEvidence] = []
    requirements: List[str] = []
    fragility_notes: List[str] = []
    augmentation = False

    for signal in signals:
        if not in_window(signal, window_start, now):
            continue

        delta = signal.confidence * config.source_weight(signal.source_reliability)
        totals[dimension_for(signal.classification)] += delta
        weighted.append(WeightedEvidence(signal=signal, delta=delta))

        if signal.classification == SignalClassification.STABILIZATION:
            stabilization_buckets[window_bucket(signal.timestamp, window_minutes)] += delta
        elif signal.classification == SignalClassification.BOTTLENECK:
            requirements.append(signal.note)
        elif signal.classification == SignalClassification.FRAGILITY_ALERT:
            fragility_notes.append(signal.note)
        elif (
            signal.classification == SignalClassification.COVERAGE_ACTIVITY
            and signal.coverage_kind == CoverageKind.AUGMENTATION
        ):
            augmentation = True

    # Highest contribution first; ties go to the newest signal
    weighted.sort(key=lambda e: (-e.delta, -e.signal.timestamp.timestamp(), e.signal.signal_id))

    scores = DimensionScores(
        demand=totals["demand"],
        insufficiency=totals["insufficiency"],
        stabilization=totals["stabilization"],
        fragility=totals["fragility"],
        coverage=totals["coverage"],
        consecutive_stabilization_windows=_consecutive_windows(
            stabilization_buckets,
            current_bucket,
            config.thresholds.stabilization_downgrade,
        ),
    )

    logger.debug(
        "NEED_SCORES_AGGREGATED",
        extra={"signal_count": len(weighted), **scores.to_dict()}
    )

    return AggregationResult(
        scores=scores,
        window_id=compute_window_id(now, window_minutes),
        window_start=window_start,
        window_end=now,
        signal_count=len(weighted),
        top_evidence=weighted[:config.top_evidence_limit],
        operational_requirements=_dedupe(requirements),
        fragility_notes=_dedupe(fragility_notes),
        augmentation_detected=augmentation,
    )


def evaluate_flags(scores: DimensionScores, config: NeedEngineConfig) -> NeedFlags:
    """Read the scores against the configured thresholds."""
    t = config.thresholds
    return NeedFlags(
        demand_strong=scores.demand >= t.demand_escalation,
        insuff_strong=scores.insufficiency >= t.insufficiency_escalation,
        stabilization_strong=scores.stabilization >= t.stabilization_downgrade,
        fragility_alert=scores.fragility >= t.fragility_reactivation,
        coverage_active=scores.coverage >= t.coverage_activation,
        coverage_intent=scores.coverage >= t.coverage_intent,
    )


def window_bounds(now: datetime, config: NeedEngineConfig) -> Tuple[datetime, datetime]:
    """Inclusive [start, end] of the trailing evidence window."""
    return now - timedelta(hours=config.rolling_window_hours), now
