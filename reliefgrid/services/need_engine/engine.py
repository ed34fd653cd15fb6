"""Need-level evaluation engine - per-key serialized orchestration.

One evaluation is a read-modify-write over a key's NeedState:

    read state -> aggregate -> propose -> guardrails -> write state + audit

The whole sequence runs under a per-key lock, so concurrent evaluations
of the same key never interleave while different keys run in parallel.
The engine holds no mutable config; everything comes from the injected
NeedEngineConfig.
"""
import dataclasses
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from reliefgrid.shared.models import (
    DimensionScores,
    NeedAudit,
    NeedFlags,
    NeedKey,
    NeedLevel,
    NeedState,
    NeedStatus,
    Signal,
    as_utc,
    utc_now,
)

from .aggregator import aggregate, evaluate_flags, merge_notes, window_bounds
from .config import NeedEngineConfig
from .events import NeedStatusPublisher
from .guardrails import GuardrailContext, apply_guardrails
from .proposer import STRATEGY_ADVISORY, RuleBasedProposer, StatusProposer
from .reasoning import build_reasoning
from .repository import NeedRepository

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """One lock per need key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[NeedKey, threading.Lock] = {}

    def lock_for(self, key: NeedKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: NeedKey) -> Iterator[None]:
        with self.lock_for(key):
            yield


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of one evaluation, as returned to callers."""
    key: NeedKey
    status: NeedStatus
    previous_status: NeedStatus
    proposed_status: NeedStatus
    reasoning: str
    scores: DimensionScores
    flags: NeedFlags
    guardrails_applied: List[str]
    legal_transition: bool
    strategy: str
    confidence: float
    audit_id: str
    advisory_fallback_reason: Optional[str] = None
    contradiction_detected: bool = False
    key_evidence: List[str] = field(default_factory=list)
    initial_evaluation: bool = False

    @property
    def need_level(self) -> NeedLevel:
        return self.status.need_level

    @property
    def advisory_used(self) -> bool:
        return self.strategy == STRATEGY_ADVISORY

    @property
    def status_changed(self) -> bool:
        return self.status != self.previous_status

    def to_response(self) -> Dict[str, Any]:
        return {
            **self.key.to_dict(),
            "status": self.status.value,
            "need_level": self.need_level.value,
            "reasoning": self.reasoning,
            "scores": self.scores.to_dict(),
            "booleans": self.flags.to_dict(),
            "guardrails_applied": list(self.guardrails_applied),
            "legal_transition": self.legal_transition,
            "strategy": self.strategy,
            "confidence": self.confidence,
            "advisory_used": self.advisory_used,
            "advisory_fallback_reason": self.advisory_fallback_reason,
            "contradiction_detected": self.contradiction_detected,
            "key_evidence": list(self.key_evidence),
            "audit_id": self.audit_id,
        }


class NeedLevelEngine:
    """Evaluates need statuses and records every decision."""

    def __init__(
        self,
        repository: NeedRepository,
        config: Optional[NeedEngineConfig] = None,
        proposer: Optional[StatusProposer] = None,
        publisher: Optional[NeedStatusPublisher] = None,
    ):
        """Initialize engine with dependencies.

        Args:
            repository: State & audit store
            config: Thresholds and weights (canonical defaults if None)
            proposer: Proposal strategy (rule baseline if None)
            publisher: Status change publisher (no events if None)
        """
        self.repository = repository
        self.config = config or NeedEngineConfig()
        self.proposer = proposer or RuleBasedProposer(model=self.config.evaluator_model)
        self.publisher = publisher
        self._locks = KeyedLockRegistry()

        logger.info(
            "NEED_ENGINE_INITIALIZED",
            extra={
                "proposer": type(self.proposer).__name__,
                "repository": type(repository).__name__,
                "publisher_enabled": bool(publisher and publisher.enabled),
            }
        )

    def evaluate(
        self,
        key: NeedKey,
        now: Optional[datetime] = None,
        signals: Optional[Sequence[Signal]] = None,
        previous_status: Optional[NeedStatus] = None,
    ) -> EvaluationResult:
        """Evaluate the status of one need.

        Args:
            key: Need to evaluate
            now: Evaluation time; naive values are taken as UTC (defaults
                to current UTC time)
            signals: Full signal set to evaluate; when None the signals in
                the trailing window are read from the store. Given signals
                are not persisted.
            previous_status: Caller's view of the previous status; takes
                precedence over the stored one

        Returns:
            EvaluationResult for the committed evaluation

        Raises:
            RepositoryError: If the state or audit cannot be stored
        """
        now = as_utc(now) if now is not None else utc_now()
        with self._locks.hold(key):
            return self._evaluate_locked(key, now, signals, previous_status)

    def ingest(
        self,
        key: NeedKey,
        signals: Sequence[Signal],
        now: Optional[datetime] = None,
    ) -> EvaluationResult:
        """Store new signals for a key, then re-evaluate from the store."""
        now = as_utc(now) if now is not None else utc_now()
        with self._locks.hold(key):
            self.repository.append_signals(key, signals)
            return self._evaluate_locked(key, now, None, None)

    def get_state(self, key: NeedKey) -> Optional[NeedState]:
        return self.repository.get_state(key)

    def _evaluate_locked(
        self,
        key: NeedKey,
        now: datetime,
        signals: Optional[Sequence[Signal]],
        previous_status: Optional[NeedStatus],
    ) -> EvaluationResult:
        stored = self.repository.get_state(key)

        if previous_status is not None:
            previous, initial = previous_status, False
        elif stored is not None:
            previous, initial = stored.current_status, False
        else:
            previous, initial = NeedStatus.WHITE, True

        if signals is None:
            start, end = window_bounds(now, self.config)
            signals = self.repository.list_signals(key, start, end)

        aggregation = aggregate(signals, self.config, now)
        flags = evaluate_flags(aggregation.scores, self.config)
        proposal = self.proposer.propose(previous, aggregation, flags)

        outcome = apply_guardrails(GuardrailContext(
            previous_status=previous,
            proposal=proposal,
            flags=flags,
            scores=aggregation.scores,
            config=self.config,
            augmentation_detected=aggregation.augmentation_detected,
            initial_evaluation=initial,
        ))
        final = outcome.final_status

        reasoning = build_reasoning(
            strategy_is_advisory=proposal.is_advisory,
            final_status=final,
            applied=outcome.applied,
            previous_status=previous,
            proposed_status=proposal.proposed_status,
            advisory_summary=proposal.rationale,
            fallback_reason=proposal.fallback_reason,
        )

        state = stored or NeedState.initial(key, now)
        if stored is None or stored.current_status != final:
            state.last_status_change_at = now
        state.current_status = final
        state.scores = aggregation.scores
        state.last_window_id = aggregation.window_id
        state.operational_requirements = merge_notes(
            state.operational_requirements, aggregation.operational_requirements
        )
        state.fragility_notes = merge_notes(state.fragility_notes, aggregation.fragility_notes)
        state.last_updated_at = now

        audit = NeedAudit(
            audit_id=NeedAudit.new_id(),
            key=key,
            timestamp=now,
            previous_status=previous,
            proposed_status=proposal.proposed_status,
            final_status=final,
            confidence=proposal.confidence,
            strategy=proposal.strategy,
            reasoning_summary=reasoning,
            legal_transition=outcome.legal_transition,
            guardrails_applied=list(outcome.applied),
            scores_snapshot=aggregation.scores.to_dict(),
            booleans_snapshot=flags.to_dict(),
            config_snapshot=self.config.to_dict(),
            model=proposal.model,
            prompt_version=self.config.prompt_version,
            initial_evaluation=initial,
            advisory_fallback_reason=proposal.fallback_reason,
            illegal_transition_reason=outcome.illegal_transition_reason,
            contradiction_detected=proposal.contradiction_detected,
            key_evidence=list(proposal.key_evidence),
            previous_hash=self.repository.latest_audit_hash(key),
        )
        audit = dataclasses.replace(audit, entry_hash=audit.compute_hash())

        try:
            self.repository.save_evaluation(state, audit)
        except Exception as e:
            logger.error(
                "NEED_EVALUATION_STORE_FAILED",
                extra={"key": str(key), "audit_id": audit.audit_id, "error": str(e)}
            )
            raise

        logger.info(
            "NEED_EVALUATION_COMPLETED",
            extra={
                "key": str(key),
                "audit_id": audit.audit_id,
                "previous_status": previous.value,
                "proposed_status": proposal.proposed_status.value,
                "final_status": final.value,
                "strategy": proposal.strategy,
                "guardrails_applied": list(outcome.applied),
                "signal_count": aggregation.signal_count,
            }
        )

        result = EvaluationResult(
            key=key,
            status=final,
            previous_status=previous,
            proposed_status=proposal.proposed_status,
            reasoning=reasoning,
            scores=aggregation.scores,
            flags=flags,
            guardrails_applied=list(outcome.applied),
            legal_transition=outcome.legal_transition,
            strategy=proposal.strategy,
            confidence=proposal.confidence,
            audit_id=audit.audit_id,
            advisory_fallback_reason=proposal.fallback_reason,
            contradiction_detected=proposal.contradiction_detected,
            key_evidence=list(proposal.key_evidence),
            initial_evaluation=initial,
        )

        if self.publisher is not None and result.status_changed:
            self.publisher.publish_status_change(
                key=key,
                previous_status=previous,
                new_status=final,
                audit_id=audit.audit_id,
                reasoning=reasoning,
                guardrails_applied=list(outcome.applied),
            )

        return result
