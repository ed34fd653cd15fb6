"""Shared domain models for the reliefgrid platform."""
from .need import (
    NeedStatus,
    NeedLevel,
    SignalClassification,
    SourceReliability,
    CoverageKind,
    NeedKey,
    Signal,
    DimensionScores,
    NeedFlags,
    NeedState,
    NeedAudit,
    as_utc,
    utc_now,
)

__all__ = [
    "NeedStatus",
    "NeedLevel",
    "SignalClassification",
    "SourceReliability",
    "CoverageKind",
    "NeedKey",
    "Signal",
    "DimensionScores",
    "NeedFlags",
    "NeedState",
    "NeedAudit",
    "as_utc",
    "utc_now",
]
