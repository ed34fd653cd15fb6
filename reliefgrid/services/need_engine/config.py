"""Need engine configuration and canonical thresholds.

This is the single source of truth for every threshold and weight the
engine uses. A config value is built once and passed into each
evaluation; nothing here is read from mutable module state.
"""
import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional

from reliefgrid.shared.models import SourceReliability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardrailThresholds:
    """Score thresholds behind the boolean flags and guardrails.

    Scores are sums of confidence * source weight over the rolling window,
    so one fully confident NGO signal contributes 1.0.
    """
    demand_escalation: float = 1.0
    insufficiency_escalation: float = 0.75
    stabilization_downgrade: float = 0.7
    stabilization_min_consecutive_windows: int = 1
    fragility_reactivation: float = 0.9
    coverage_activation: float = 0.9
    coverage_intent: float = 0.4     # Lower bar than coverage_activation

    def __post_init__(self):
        if self.coverage_intent > self.coverage_activation:
            raise ValueError(
                "coverage_intent must not exceed coverage_activation, "
                f"got {self.coverage_intent} > {self.coverage_activation}"
            )
        if self.stabilization_min_consecutive_windows < 0:
            raise ValueError("stabilization_min_consecutive_windows must be >= 0")


def _default_source_weights() -> Dict[SourceReliability, float]:
    return {
        SourceReliability.INSTITUTIONAL: 1.0,
        SourceReliability.NGO: 1.0,
        SourceReliability.SOCIAL_MEDIA: 0.4,
        SourceReliability.ORIGINAL_CONTEXT: 1.0,
    }


@dataclass(frozen=True)
class NeedEngineConfig:
    """Configuration for one deployment of the need engine."""

    thresholds: GuardrailThresholds = field(default_factory=GuardrailThresholds)
    source_weights: Mapping[SourceReliability, float] = field(
        default_factory=_default_source_weights
    )

    # Advisory proposals below this confidence keep the previous status
    min_advisory_confidence: float = 0.65

    # Trailing evidence window and stabilization bucket size
    rolling_window_hours: float = 24.0
    consecutive_window_minutes: int = 60

    # Evidence items surfaced to the advisory service and the audit
    top_evidence_limit: int = 10

    # Tier assumed for evidence that does not state one (field reports)
    default_reliability: SourceReliability = SourceReliability.NGO

    # Version tracking for audit trail
    evaluator_model: str = "rule-based-engine"
    prompt_version: str = "v1"

    def __post_init__(self):
        missing = [r.value for r in SourceReliability if r not in self.source_weights]
        if missing:
            raise ValueError(f"Missing source weights for: {', '.join(missing)}")
        if any(w < 0 for w in self.source_weights.values()):
            raise ValueError("Source weights must be non-negative")
        if self.rolling_window_hours <= 0:
            raise ValueError("rolling_window_hours must be positive")
        if self.consecutive_window_minutes <= 0:
            raise ValueError("consecutive_window_minutes must be positive")
        if not 0.0 <= self.min_advisory_confidence <= 1.0:
            raise ValueError("min_advisory_confidence must be 0.0-1.0")

    def source_weight(self, reliability: SourceReliability) -> float:
        return self.source_weights[reliability]

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot stored with every audit entry."""
        return {
            "thresholds": asdict(self.thresholds),
            "source_weights": {r.value: w for r, w in self.source_weights.items()},
            "min_advisory_confidence": self.min_advisory_confidence,
            "rolling_window_hours": self.rolling_window_hours,
            "consecutive_window_minutes": self.consecutive_window_minutes,
            "top_evidence_limit": self.top_evidence_limit,
            "default_reliability": self.default_reliability.value,
            "evaluator_model": self.evaluator_model,
            "prompt_version": self.prompt_version,
        }

    @classmethod
    def from_env(cls) -> "NeedEngineConfig":
        """Create config from environment variables.

        Environment variables (all optional, canonical defaults otherwise):
            NEED_DEMAND_ESCALATION
            NEED_INSUFFICIENCY_ESCALATION
            NEED_STABILIZATION_DOWNGRADE
            NEED_STABILIZATION_MIN_WINDOWS
            NEED_FRAGILITY_REACTIVATION
            NEED_COVERAGE_ACTIVATION
            NEED_COVERAGE_INTENT
            NEED_MIN_ADVISORY_CONFIDENCE
            NEED_ROLLING_WINDOW_HOURS
            NEED_WINDOW_MINUTES
            NEED_SOCIAL_MEDIA_WEIGHT
        """
        defaults = GuardrailThresholds()
        thresholds = GuardrailThresholds(
            demand_escalation=float(os.getenv(
                "NEED_DEMAND_ESCALATION", defaults.demand_escalation)),
            insufficiency_escalation=float(os.getenv(
                "NEED_INSUFFICIENCY_ESCALATION", defaults.insufficiency_escalation)),
            stabilization_downgrade=float(os.getenv(
                "NEED_STABILIZATION_DOWNGRADE", defaults.stabilization_downgrade)),
            stabilization_min_consecutive_windows=int(os.getenv(
                "NEED_STABILIZATION_MIN_WINDOWS", defaults.stabilization_min_consecutive_windows)),
            fragility_reactivation=float(os.getenv(
                "NEED_FRAGILITY_REACTIVATION", defaults.fragility_reactivation)),
            coverage_activation=float(os.getenv(
                "NEED_COVERAGE_ACTIVATION", defaults.coverage_activation)),
            coverage_intent=float(os.getenv(
                "NEED_COVERAGE_INTENT", defaults.coverage_intent)),
        )
        weights = _default_source_weights()
        weights[SourceReliability.SOCIAL_MEDIA] = float(os.getenv(
            "NEED_SOCIAL_MEDIA_WEIGHT", weights[SourceReliability.SOCIAL_MEDIA]))

        config = cls(
            thresholds=thresholds,
            source_weights=weights,
            min_advisory_confidence=float(os.getenv("NEED_MIN_ADVISORY_CONFIDENCE", "0.65")),
            rolling_window_hours=float(os.getenv("NEED_ROLLING_WINDOW_HOURS", "24")),
            consecutive_window_minutes=int(os.getenv("NEED_WINDOW_MINUTES", "60")),
        )
        logger.info("NEED_ENGINE_CONFIG_LOADED", extra=config.to_dict())
        return config


@dataclass(frozen=True)
class AdvisoryConfig:
    """Configuration for the advisory decision service."""
    api_key: str
    model: str = "google/gemini-2.5-flash"
    base_url: Optional[str] = None
    timeout_seconds: float = 10.0
    max_tokens: int = 400
    temperature: float = 0.1

    @classmethod
    def from_env(cls) -> Optional["AdvisoryConfig"]:
        """Create config from environment variables.

        Returns None when ADVISORY_API_KEY is unset, which selects the
        rule baseline for the deployment.

        Environment variables:
            ADVISORY_API_KEY: API key for the decision service
            ADVISORY_MODEL: Model name
            ADVISORY_BASE_URL: OpenAI-compatible gateway URL
            ADVISORY_TIMEOUT_SECONDS: Hard timeout per call (default 10)
        """
        api_key = os.getenv("ADVISORY_API_KEY")
        if not api_key:
            return None
        return cls(
            api_key=api_key,
            model=os.getenv("ADVISORY_MODEL", cls.model),
            base_url=os.getenv("ADVISORY_BASE_URL") or None,
            timeout_seconds=float(os.getenv("ADVISORY_TIMEOUT_SECONDS", "10")),
        )
