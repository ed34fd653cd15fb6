"""Need-level domain models.

This file defines the core enums and data structures shared by the
need engine, its store and its HTTP surface. A need is tracked per
(event, sector, capability) key and carries exactly one canonical status.
"""
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NeedStatus(Enum):
    """Canonical severity status of a (sector, capability) need.

    Severity order: WHITE < GREEN < YELLOW < ORANGE < RED.
    """
    WHITE = "WHITE"     # Monitoring: weak evidence, nothing identified
    GREEN = "GREEN"     # Stabilization validated strongly and consistently
    YELLOW = "YELLOW"   # Coverage active, outcomes not yet validated
    ORANGE = "ORANGE"   # Coverage active but still insufficient
    RED = "RED"         # Unmet demand with no active coverage

    @property
    def severity(self) -> int:
        return _STATUS_SEVERITY[self]

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def need_level(self) -> "NeedLevel":
        return NeedLevel.from_status(self)


_STATUS_SEVERITY = {
    NeedStatus.WHITE: 0,
    NeedStatus.GREEN: 1,
    NeedStatus.YELLOW: 2,
    NeedStatus.ORANGE: 3,
    NeedStatus.RED: 4,
}

_STATUS_LABELS = {
    NeedStatus.WHITE: "Monitoring",
    NeedStatus.GREEN: "Stabilized",
    NeedStatus.YELLOW: "Validating",
    NeedStatus.ORANGE: "Insufficient coverage",
    NeedStatus.RED: "Critical",
}


class NeedLevel(Enum):
    """Coarse 4-value level persisted for maps and coordination queues."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_status(cls, status: NeedStatus) -> "NeedLevel":
        return {
            NeedStatus.RED: cls.CRITICAL,
            NeedStatus.ORANGE: cls.HIGH,
            NeedStatus.YELLOW: cls.MEDIUM,
            NeedStatus.GREEN: cls.LOW,
            NeedStatus.WHITE: cls.LOW,
        }[status]

    @staticmethod
    def to_status(level: Optional[str]) -> NeedStatus:
        """Map a stored level back to a status for rows written without one.

        "low" is ambiguous (GREEN or WHITE); it maps to GREEN, anything
        unrecognized maps to WHITE.
        """
        return {
            "critical": NeedStatus.RED,
            "high": NeedStatus.ORANGE,
            "medium": NeedStatus.YELLOW,
            "low": NeedStatus.GREEN,
        }.get(level or "", NeedStatus.WHITE)


class SignalClassification(Enum):
    """Closed vocabulary of evidence classifications."""
    DEMAND = "DEMAND"
    INSUFFICIENCY = "INSUFFICIENCY"
    STABILIZATION = "STABILIZATION"
    FRAGILITY_ALERT = "FRAGILITY_ALERT"
    COVERAGE_ACTIVITY = "COVERAGE_ACTIVITY"
    BOTTLENECK = "BOTTLENECK"   # Operational blocker; note feeds requirements


class SourceReliability(Enum):
    """Trust tier of the observer that produced a signal."""
    INSTITUTIONAL = "institutional"
    NGO = "ngo"
    SOCIAL_MEDIA = "social_media"
    ORIGINAL_CONTEXT = "original_context"


class CoverageKind(Enum):
    """Whether coverage evidence is a new commitment or ongoing presence."""
    AUGMENTATION = "augmentation"
    BASELINE = "baseline"


@dataclass(frozen=True)
class NeedKey:
    """Identity of a tracked need."""
    event_id: str
    sector_id: str
    capability_id: str

    def __str__(self) -> str:
        return f"{self.event_id}/{self.sector_id}/{self.capability_id}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "event_id": self.event_id,
            "sector_id": self.sector_id,
            "capacity_type_id": self.capability_id,
        }


@dataclass(frozen=True)
class Signal:
    """One piece of classified, weighted evidence.

    Immutable by design - signals cannot be modified after normalization.
    """
    classification: SignalClassification
    confidence: float
    timestamp: datetime
    source_reliability: SourceReliability = SourceReliability.NGO
    short_quote: str = ""
    note: Optional[str] = None
    coverage_kind: Optional[CoverageKind] = None
    signal_id: str = field(default_factory=lambda: f"sig_{uuid.uuid4().hex[:12]}")

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")
        if self.timestamp.tzinfo is None:
            raise ValueError("Signal timestamp must be timezone-aware")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "classification": self.classification.value,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
            "source_reliability": self.source_reliability.value,
            "short_quote": self.short_quote,
            "note": self.note,
            "coverage_kind": self.coverage_kind.value if self.coverage_kind else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            signal_id=data["signal_id"],
            classification=SignalClassification(data["classification"]),
            confidence=float(data["confidence"]),
            timestamp=timestamp,
            source_reliability=SourceReliability(data["source_reliability"]),
            short_quote=data.get("short_quote") or "",
            note=data.get("note"),
            coverage_kind=(
                CoverageKind(data["coverage_kind"]) if data.get("coverage_kind") else None
            ),
        )


@dataclass(frozen=True)
class DimensionScores:
    """Windowed dimension sums plus the stabilization streak."""
    demand: float = 0.0
    insufficiency: float = 0.0
    stabilization: float = 0.0
    fragility: float = 0.0
    coverage: float = 0.0
    consecutive_stabilization_windows: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "demand": round(self.demand, 6),
            "insufficiency": round(self.insufficiency, 6),
            "stabilization": round(self.stabilization, 6),
            "fragility": round(self.fragility, 6),
            "coverage": round(self.coverage, 6),
            "consecutive_stabilization_windows": self.consecutive_stabilization_windows,
        }


@dataclass(frozen=True)
class NeedFlags:
    """Boolean readings of the scores against the configured thresholds."""
    demand_strong: bool = False
    insuff_strong: bool = False
    stabilization_strong: bool = False
    fragility_alert: bool = False
    coverage_active: bool = False
    coverage_intent: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "demand_strong": self.demand_strong,
            "insuff_strong": self.insuff_strong,
            "stabilization_strong": self.stabilization_strong,
            "fragility_alert": self.fragility_alert,
            "coverage_active": self.coverage_active,
            "coverage_intent": self.coverage_intent,
        }


@dataclass
class NeedState:
    """Mutable record holding the live status of one need.

    Exactly one per key. Scores are recomputed from the trailing window on
    every evaluation, never accumulated.
    """
    key: NeedKey
    scores: DimensionScores
    current_status: NeedStatus
    last_updated_at: datetime
    last_window_id: Optional[str] = None
    operational_requirements: List[str] = field(default_factory=list)
    fragility_notes: List[str] = field(default_factory=list)
    last_status_change_at: Optional[datetime] = None

    @classmethod
    def initial(cls, key: NeedKey, now: datetime) -> "NeedState":
        return cls(
            key=key,
            scores=DimensionScores(),
            current_status=NeedStatus.WHITE,
            last_updated_at=now,
        )

    @property
    def need_level(self) -> NeedLevel:
        return self.current_status.need_level

    def notes_payload(self) -> Dict[str, List[str]]:
        """Free-form notes column of the persisted row."""
        return {
            "requirements": list(self.operational_requirements),
            "fragility": list(self.fragility_notes),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.key.to_dict(),
            "status": self.current_status.value,
            "need_level": self.need_level.value,
            "scores": self.scores.to_dict(),
            "last_window_id": self.last_window_id,
            "notes": self.notes_payload(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "last_status_change_at": (
                self.last_status_change_at.isoformat()
                if self.last_status_change_at else None
            ),
        }


@dataclass(frozen=True)
class NeedAudit:
    """Immutable record of one evaluation.

    Holds enough of the inputs (scores, flags, config) to replay the
    decision. Entries for a key form a hash chain.
    """
    audit_id: str
    key: NeedKey
    timestamp: datetime
    previous_status: NeedStatus
    proposed_status: NeedStatus
    final_status: NeedStatus
    confidence: float
    strategy: str
    reasoning_summary: str
    legal_transition: bool
    guardrails_applied: List[str]
    scores_snapshot: Dict[str, Any]
    booleans_snapshot: Dict[str, bool]
    config_snapshot: Dict[str, Any]
    model: str = "rule-based-engine"
    prompt_version: str = "v1"
    initial_evaluation: bool = False
    advisory_fallback_reason: Optional[str] = None
    illegal_transition_reason: Optional[str] = None
    contradiction_detected: bool = False
    key_evidence: List[str] = field(default_factory=list)
    previous_hash: str = ""
    entry_hash: str = ""

    @staticmethod
    def new_id() -> str:
        return f"naud_{uuid.uuid4().hex[:16]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            **self.key.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "previous_status": self.previous_status.value,
            "proposed_status": self.proposed_status.value,
            "final_status": self.final_status.value,
            "confidence": self.confidence,
            "strategy": self.strategy,
            "reasoning_summary": self.reasoning_summary,
            "legal_transition": self.legal_transition,
            "guardrails_applied": list(self.guardrails_applied),
            "scores_snapshot": self.scores_snapshot,
            "booleans_snapshot": self.booleans_snapshot,
            "config_snapshot": self.config_snapshot,
            "model": self.model,
            "prompt_version": self.prompt_version,
            "initial_evaluation": self.initial_evaluation,
            "advisory_fallback_reason": self.advisory_fallback_reason,
            "illegal_transition_reason": self.illegal_transition_reason,
            "contradiction_detected": self.contradiction_detected,
            "key_evidence": list(self.key_evidence),
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NeedAudit":
        """Rebuild an audit from its stored document."""
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            audit_id=data["audit_id"],
            key=NeedKey(data["event_id"], data["sector_id"], data["capacity_type_id"]),
            timestamp=timestamp,
            previous_status=NeedStatus(data["previous_status"]),
            proposed_status=NeedStatus(data["proposed_status"]),
            final_status=NeedStatus(data["final_status"]),
            confidence=data["confidence"],
            strategy=data["strategy"],
            reasoning_summary=data["reasoning_summary"],
            legal_transition=data["legal_transition"],
            guardrails_applied=list(data["guardrails_applied"]),
            scores_snapshot=data["scores_snapshot"],
            booleans_snapshot=data["booleans_snapshot"],
            config_snapshot=data["config_snapshot"],
            model=data.get("model", "rule-based-engine"),
            prompt_version=data.get("prompt_version", "v1"),
            initial_evaluation=data.get("initial_evaluation", False),
            advisory_fallback_reason=data.get("advisory_fallback_reason"),
            illegal_transition_reason=data.get("illegal_transition_reason"),
            contradiction_detected=data.get("contradiction_detected", False),
            key_evidence=list(data.get("key_evidence") or []),
            previous_hash=data.get("previous_hash", ""),
            entry_hash=data.get("entry_hash", ""),
        )

    def compute_hash(self) -> str:
        """Compute SHA-256 hash of the entry for chain verification.

        Returns:
            Hex-encoded hash string
        """
        content = self.to_dict()
        content.pop("entry_hash")
        content_str = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(content_str.encode()).hexdigest()
