"""Need-Level Evaluation Engine.

Turns timestamped, weighted evidence signals into one canonical status
(WHITE, GREEN, YELLOW, ORANGE, RED) per (event, sector, capability):

1. Normalize evidence payloads into Signals
2. Aggregate the trailing window into dimension scores
3. Propose a status (rule baseline or advisory service)
4. Apply guardrails and transition legality
5. Store the state and append a hash-chained audit entry

Endpoints:
- POST /needs/evaluate - Evaluate a caller-supplied signal set
- POST /needs/signals - Store signals and re-evaluate
- GET /needs/<event>/<sector>/<capability> - Current state
- GET /needs/<event>/<sector>/<capability>/audits - Audit trail
"""

from .config import AdvisoryConfig, GuardrailThresholds, NeedEngineConfig
from .engine import EvaluationResult, KeyedLockRegistry, NeedLevelEngine
from .normalizer import EvidenceError, normalize_batch, normalize_evidence
from .proposer import AdvisoryProposer, Proposal, RuleBasedProposer
from .repository import (
    InMemoryNeedRepository,
    NeedRepository,
    PostgresNeedRepository,
    verify_audit_chain,
)

__all__ = [
    "AdvisoryConfig",
    "GuardrailThresholds",
    "NeedEngineConfig",
    "EvaluationResult",
    "KeyedLockRegistry",
    "NeedLevelEngine",
    "EvidenceError",
    "normalize_batch",
    "normalize_evidence",
    "AdvisoryProposer",
    "Proposal",
    "RuleBasedProposer",
    "InMemoryNeedRepository",
    "NeedRepository",
    "PostgresNeedRepository",
    "verify_audit_chain",
]
