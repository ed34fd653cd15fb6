"""Advisory decision service client.

The advisory service is an OpenAI-compatible chat-completions endpoint
that proposes a status from the scores, flags and evidence quotes. It is
fallible by contract: every failure surfaces as an AdvisoryError so the
proposer can fall back to the rule baseline.
"""
import json
import logging
import math
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openai

from reliefgrid.shared.models import NeedStatus

from .config import AdvisoryConfig

logger = logging.getLogger(__name__)


class AdvisoryError(Exception):
    """Advisory service unavailable or unusable for this call."""
    pass


class AdvisoryTimeoutError(AdvisoryError):
    """Advisory call exceeded its timeout."""
    pass


class AdvisoryResponseError(AdvisoryError):
    """Advisory response malformed or outside the status vocabulary."""
    pass


STATUS_DEFINITIONS = (
    "WHITE: monitoring/weak evidence, no strong situation identified.",
    "RED: demand increase strong and no active credible coverage.",
    "YELLOW: coverage active but outcomes not validated; uncertainty state.",
    "ORANGE: coverage active and insufficiency validated.",
    "GREEN: stabilization validated strongly and consistently, not blocked by "
    "fragility, and no dominant demand/insufficiency.",
    "Ordering of severity: RED > ORANGE > YELLOW > GREEN > WHITE.",
)

ORANGE_TO_YELLOW_RULE = (
    "ORANGE->YELLOW transition rule: only when there is credible new augmentation "
    "commitment addressing insufficiency and outcomes are not yet validated."
)

SYSTEM_PROMPT = """You are a humanitarian crisis need-level evaluator.
Given dimensional scores, boolean flags, evidence quotes, and the set of allowed status transitions, propose the most appropriate need status.
Return ONLY valid JSON, no markdown and no explanation outside the JSON.

Status definitions:
{definitions}

{orange_rule}

Response format:
{{
  "proposed_status": "WHITE"|"RED"|"YELLOW"|"ORANGE"|"GREEN",
  "confidence": <0.0-1.0>,
  "reasoning_summary": "<one-sentence explanation>",
  "contradiction_detected": <true|false>,
  "augmentation_commitment_detected": <true|false>,
  "key_evidence": ["<quote1>", "<quote2>"]
}}"""


def status_definitions_text() -> str:
    return "\n".join(STATUS_DEFINITIONS)


@dataclass(frozen=True)
class AdvisoryRequest:
    """Context sent to the advisory service for one evaluation."""
    previous_status: NeedStatus
    scores: Dict[str, Any]
    booleans: Dict[str, bool]
    window_id: str
    top_evidence: List[str] = field(default_factory=list)
    allowed_transitions: List[NeedStatus] = field(default_factory=list)
    status_definitions_text: str = field(default_factory=status_definitions_text)
    orange_to_yellow_rule: str = ORANGE_TO_YELLOW_RULE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_status": self.previous_status.value,
            "scores": self.scores,
            "booleans": self.booleans,
            "window_id": self.window_id,
            "top_evidence": list(self.top_evidence),
            "allowed_transitions": [s.value for s in self.allowed_transitions],
        }

    def system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(
            definitions=self.status_definitions_text,
            orange_rule=self.orange_to_yellow_rule,
        )


@dataclass(frozen=True)
class AdvisoryResponse:
    """Validated proposal returned by the advisory service."""
    proposed_status: NeedStatus
    confidence: float
    reasoning_summary: str = ""
    contradiction_detected: bool = False
    key_evidence: List[str] = field(default_factory=list)
    augmentation_commitment_detected: bool = False


_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def parse_advisory_response(content: Optional[str]) -> AdvisoryResponse:
    """Parse and validate the raw text of an advisory reply.

    Raises:
        AdvisoryResponseError: On non-JSON text, a missing or unknown
            status, or a non-numeric confidence
    """
    if not content or not content.strip():
        raise AdvisoryResponseError("Empty advisory response")

    text = _FENCE.sub("", content).strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise AdvisoryResponseError(f"Advisory response is not JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise AdvisoryResponseError("Advisory response must be a JSON object")

    raw_status = parsed.get("proposed_status")
    try:
        status = NeedStatus(str(raw_status).strip().upper())
    except ValueError as e:
        raise AdvisoryResponseError(f"Invalid proposed_status: {raw_status!r}") from e

    raw_confidence = parsed.get("confidence", 0.0)
    if isinstance(raw_confidence, bool):
        raise AdvisoryResponseError("Confidence must be numeric")
    try:
        confidence = float(raw_confidence)
    except (TypeError, ValueError) as e:
        raise AdvisoryResponseError(f"Confidence must be numeric, got {raw_confidence!r}") from e
    if math.isnan(confidence):
        raise AdvisoryResponseError("Confidence must be numeric, got NaN")

    key_evidence = parsed.get("key_evidence") or []
    if not isinstance(key_evidence, list):
        key_evidence = [key_evidence]

    return AdvisoryResponse(
        proposed_status=status,
        confidence=min(1.0, max(0.0, confidence)),
        reasoning_summary=str(parsed.get("reasoning_summary") or ""),
        contradiction_detected=bool(parsed.get("contradiction_detected", False)),
        key_evidence=[str(item) for item in key_evidence],
        augmentation_commitment_detected=bool(
            parsed.get("augmentation_commitment_detected", False)
        ),
    )


class AdvisoryClient(ABC):
    """Anything that can turn an AdvisoryRequest into a proposal."""

    @abstractmethod
    def propose(self, request: AdvisoryRequest) -> AdvisoryResponse:
        """Request a proposal.

        Raises:
            AdvisoryError: On any failure; callers fall back
        """
        pass


class OpenAIAdvisoryClient(AdvisoryClient):
    """Advisory client for OpenAI-compatible chat-completion gateways."""

    def __init__(self, config: AdvisoryConfig, client: Optional[openai.OpenAI] = None):
        self.config = config
        self._client = client

        logger.info(
            "ADVISORY_CLIENT_INITIALIZED",
            extra={
                "model": config.model,
                "base_url": config.base_url,
                "timeout_seconds": config.timeout_seconds,
            }
        )

    @property
    def client(self) -> openai.OpenAI:
        """Lazy initialization of the SDK client."""
        if self._client is None:
            self._client = openai.OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def propose(self, request: AdvisoryRequest) -> AdvisoryResponse:
        start_time = time.time()

        try:
            completion = self.client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": request.system_prompt()},
                    {"role": "user", "content": json.dumps(request.to_dict())},
                ],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                timeout=self.config.timeout_seconds,
            )
        except openai.APITimeoutError as e:
            raise AdvisoryTimeoutError(
                f"Advisory call timed out after {self.config.timeout_seconds}s"
            ) from e
        except openai.OpenAIError as e:
            raise AdvisoryError(f"Advisory call failed: {e}") from e

        if not completion.choices:
            raise AdvisoryResponseError("Advisory response has no choices")

        response = parse_advisory_response(completion.choices[0].message.content)

        logger.info(
            "ADVISORY_PROPOSAL_RECEIVED",
            extra={
                "model": self.config.model,
                "proposed_status": response.proposed_status.value,
                "confidence": response.confidence,
                "latency_ms": round((time.time() - start_time) * 1000, 1),
            }
        )
        return response
