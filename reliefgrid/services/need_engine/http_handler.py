"""Need Engine HTTP handler - evaluation and inspection endpoints.

Collaborators (ingestion adapters, dashboards) call these endpoints with
already-structured evidence. The engine, its store and its proposer are
built from environment variables at import time.
"""
import logging
import os
from typing import Any, Dict, Optional, Tuple

from flask import Flask, jsonify, request

from reliefgrid.shared.database import (
    ConnectionManager,
    DatabaseConfig,
    RepositoryError,
    get_connection_manager,
)
from reliefgrid.shared.models import NeedKey, NeedStatus, utc_now

from .advisory import OpenAIAdvisoryClient
from .config import AdvisoryConfig, NeedEngineConfig
from .engine import NeedLevelEngine
from .events import NeedStatusPublisher
from .normalizer import EvidenceError, normalize_batch
from .proposer import AdvisoryProposer, RuleBasedProposer, StatusProposer
from .repository import (
    InMemoryNeedRepository,
    NeedRepository,
    PostgresNeedRepository,
    verify_audit_chain,
)

logger = logging.getLogger(__name__)


def build_repository() -> NeedRepository:
    """Store selected by NEED_STORE_BACKEND (memory | postgres)."""
    backend = os.getenv("NEED_STORE_BACKEND", "memory").lower()
    if backend != "postgres":
        return InMemoryNeedRepository()

    secret_arn = os.getenv("DB_SECRET_ARN")
    if secret_arn:
        manager = ConnectionManager(DatabaseConfig.from_secrets_manager(
            secret_arn, region=os.getenv("AWS_REGION", "us-east-1")
        ))
    else:
        manager = get_connection_manager()
    manager.initialize()
    return PostgresNeedRepository(manager)


def build_proposer(config: NeedEngineConfig) -> StatusProposer:
    """Advisory strategy when ADVISORY_API_KEY is set, rule baseline otherwise."""
    baseline = RuleBasedProposer(model=config.evaluator_model)
    advisory_config = AdvisoryConfig.from_env()
    if advisory_config is None:
        return baseline
    return AdvisoryProposer(
        client=OpenAIAdvisoryClient(advisory_config),
        fallback=baseline,
        model=advisory_config.model,
    )


def build_engine() -> NeedLevelEngine:
    config = NeedEngineConfig.from_env()
    publisher = NeedStatusPublisher(
        stream_name=os.getenv("KINESIS_STREAM_NAME", "reliefgrid-need-status"),
        enabled=os.getenv("NEED_EVENTS_ENABLED", "false").lower() == "true",
    )
    return NeedLevelEngine(
        repository=build_repository(),
        config=config,
        proposer=build_proposer(config),
        publisher=publisher,
    )


# Initialize Flask app
app = Flask(__name__)

need_engine = build_engine()


def _key_from_body(data: Dict[str, Any]) -> Optional[NeedKey]:
    event_id = data.get("event_id")
    sector_id = data.get("sector_id")
    capability_id = data.get("capacity_type_id") or data.get("capability_id")
    if not event_id or not sector_id or not capability_id:
        return None
    return NeedKey(str(event_id), str(sector_id), str(capability_id))


def _parse_request() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[Any, int]]]:
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return None, (jsonify({"error": "Request body required"}), 400)
    return data, None


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "need-engine",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check (store reachable)."""
    if need_engine is None:
        return jsonify({"status": "not_ready"}), 503
    store = need_engine.repository.health_check()
    if not store.get("healthy"):
        return jsonify({"status": "not_ready", "store": store}), 503
    return jsonify({"status": "ready", "store": store}), 200


@app.route("/needs/evaluate", methods=["POST"])
def evaluate_need():
    """Evaluate a need from a caller-supplied signal set.

    Request Body:
        {
            "event_id": "evt_1",
            "sector_id": "sector_north",
            "capacity_type_id": "water",
            "signals": [{"state": "needed", "urgency": "high"}],
            "previous_status": "YELLOW"
        }

    Response:
        {
            "status": "RED",
            "need_level": "critical",
            "reasoning": "...",
            "scores": {...},
            "guardrails_applied": ["B_insufficiency_red_floor"],
            ...
        }
    """
    data, error = _parse_request()
    if error:
        return error

    key = _key_from_body(data)
    if key is None:
        return jsonify({"error": "Missing event_id, sector_id or capacity_type_id"}), 400

    previous_status = None
    if data.get("previous_status"):
        try:
            previous_status = NeedStatus(str(data["previous_status"]).upper())
        except ValueError:
            return jsonify({"error": f"Invalid previous_status: {data['previous_status']}"}), 400

    raw_signals = data.get("signals") or []
    if not isinstance(raw_signals, list):
        return jsonify({"error": "signals must be a list"}), 400

    now = utc_now()
    try:
        signals = normalize_batch(raw_signals, now, need_engine.config.default_reliability)
    except EvidenceError as e:
        return jsonify({"error": str(e)}), 400

    try:
        result = need_engine.evaluate(
            key, now=now, signals=signals, previous_status=previous_status
        )
    except RepositoryError as e:
        logger.error("NEED_EVALUATE_STORE_ERROR", extra={"key": str(key), "error": str(e)})
        return jsonify({"error": "Failed to store evaluation"}), 500
    except Exception as e:
        logger.error("NEED_EVALUATE_ERROR", extra={"key": str(key), "error": str(e)})
        return jsonify({"error": "Failed to evaluate need"}), 500

    return jsonify(result.to_response()), 200


@app.route("/needs/signals", methods=["POST"])
def ingest_signals():
    """Store new evidence for a need and re-evaluate it.

    Request Body: same shape as /needs/evaluate, without previous_status.
    """
    data, error = _parse_request()
    if error:
        return error

    key = _key_from_body(data)
    if key is None:
        return jsonify({"error": "Missing event_id, sector_id or capacity_type_id"}), 400

    raw_signals = data.get("signals") or []
    if not isinstance(raw_signals, list):
        return jsonify({"error": "signals must be a list"}), 400

    now = utc_now()
    try:
        signals = normalize_batch(raw_signals, now, need_engine.config.default_reliability)
    except EvidenceError as e:
        return jsonify({"error": str(e)}), 400

    try:
        result = need_engine.ingest(key, signals, now=now)
    except RepositoryError as e:
        logger.error("NEED_INGEST_STORE_ERROR", extra={"key": str(key), "error": str(e)})
        return jsonify({"error": "Failed to store signals"}), 500
    except Exception as e:
        logger.error("NEED_INGEST_ERROR", extra={"key": str(key), "error": str(e)})
        return jsonify({"error": "Failed to ingest signals"}), 500

    response = result.to_response()
    response["signals_accepted"] = len(signals)
    return jsonify(response), 201


@app.route("/needs/<event_id>/<sector_id>/<capability_id>", methods=["GET"])
def get_need(event_id: str, sector_id: str, capability_id: str):
    """Current state of one need."""
    key = NeedKey(event_id, sector_id, capability_id)
    try:
        state = need_engine.get_state(key)
    except RepositoryError as e:
        logger.error("NEED_STATE_READ_ERROR", extra={"key": str(key), "error": str(e)})
        return jsonify({"error": "Failed to read need state"}), 500

    if state is None:
        return jsonify({"error": "Need not found"}), 404
    return jsonify(state.to_dict()), 200


@app.route("/needs/<event_id>/<sector_id>/<capability_id>/audits", methods=["GET"])
def get_need_audits(event_id: str, sector_id: str, capability_id: str):
    """Audit trail of one need, newest first.

    Query Params:
        limit: Maximum entries (default 100)
    """
    key = NeedKey(event_id, sector_id, capability_id)
    try:
        limit = int(request.args.get("limit", "100"))
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400
    if limit <= 0:
        return jsonify({"error": "limit must be positive"}), 400

    try:
        audits = need_engine.repository.list_audits(key, limit=limit)
    except RepositoryError as e:
        logger.error("NEED_AUDIT_READ_ERROR", extra={"key": str(key), "error": str(e)})
        return jsonify({"error": "Failed to read audits"}), 500

    oldest_first = list(reversed(audits))
    complete = len(audits) < limit
    return jsonify({
        "count": len(audits),
        "chain_valid": verify_audit_chain(oldest_first, complete=complete),
        "audits": [a.to_dict() for a in audits],
    }), 200


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "8010"))
    app.run(host="0.0.0.0", port=port, debug=False)
