"""State & audit store for the need engine.

A narrow repository interface the engine depends on, with an in-memory
implementation for development/tests and a PostgreSQL one for production.

PostgreSQL layout (column order matters for row mapping):

    need_states  (event_id, sector_id, capacity_type_id, level, status,
                  notes JSONB, scores JSONB, last_window_id,
                  last_updated_at, last_status_change_at)
                 PRIMARY KEY (event_id, sector_id, capacity_type_id)
    need_audits  (audit_seq BIGSERIAL, audit_id, event_id, sector_id,
                  capacity_type_id, timestamp, final_status, document JSONB,
                  previous_hash, entry_hash)    -- append-only
    need_signals (signal_id, event_id, sector_id, capacity_type_id,
                  classification, confidence, timestamp, source_reliability,
                  short_quote, note, coverage_kind)

Every storage failure surfaces as RepositoryError.
"""
import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import psycopg2

from reliefgrid.shared.database import (
    BaseRepository,
    ConnectionManager,
    DuplicateError,
    RepositoryError,
)
from reliefgrid.shared.models import (
    DimensionScores,
    NeedAudit,
    NeedKey,
    NeedLevel,
    NeedState,
    NeedStatus,
    Signal,
)

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


class NeedRepository(ABC):
    """Store interface used by the engine."""

    @abstractmethod
    def get_state(self, key: NeedKey) -> Optional[NeedState]:
        """Current state for a key, or None if never evaluated."""
        pass

    @abstractmethod
    def upsert_state(self, state: NeedState) -> None:
        pass

    @abstractmethod
    def append_audit(self, audit: NeedAudit) -> None:
        pass

    @abstractmethod
    def list_audits(self, key: NeedKey, limit: int = 100) -> List[NeedAudit]:
        """Most recent audits for a key, newest first."""
        pass

    @abstractmethod
    def latest_audit_hash(self, key: NeedKey) -> str:
        """Hash of the newest audit for a key, or the genesis marker."""
        pass

    @abstractmethod
    def append_signals(self, key: NeedKey, signals: Sequence[Signal]) -> None:
        pass

    @abstractmethod
    def list_signals(self, key: NeedKey, start: datetime, end: datetime) -> List[Signal]:
        """Signals for a key with start <= timestamp <= end."""
        pass

    def save_evaluation(self, state: NeedState, audit: NeedAudit) -> None:
        """Persist the new state and its audit entry."""
        self.upsert_state(state)
        self.append_audit(audit)

    def health_check(self) -> Dict[str, Any]:
        return {"healthy": True}


class InMemoryNeedRepository(NeedRepository):
    """Thread-safe in-process store (development and tests only)."""

    def __init__(self):
        self._lock = threading.RLock()
        self._states: Dict[NeedKey, NeedState] = {}
        self._audits: Dict[NeedKey, List[NeedAudit]] = defaultdict(list)
        self._signals: Dict[NeedKey, List[Signal]] = defaultdict(list)

        logger.info("NEED_REPOSITORY_INITIALIZED", extra={"backend": "memory"})

    def get_state(self, key: NeedKey) -> Optional[NeedState]:
        with self._lock:
            state = self._states.get(key)
            return copy.deepcopy(state) if state is not None else None

    def upsert_state(self, state: NeedState) -> None:
        with self._lock:
            self._states[state.key] = copy.deepcopy(state)

    def append_audit(self, audit: NeedAudit) -> None:
        with self._lock:
            if any(a.audit_id == audit.audit_id for a in self._audits[audit.key]):
                raise DuplicateError(f"Audit {audit.audit_id} already recorded")
            self._audits[audit.key].append(audit)

    def list_audits(self, key: NeedKey, limit: int = 100) -> List[NeedAudit]:
        with self._lock:
            return list(reversed(self._audits[key]))[:limit]

    def latest_audit_hash(self, key: NeedKey) -> str:
        with self._lock:
            audits = self._audits.get(key)
            return audits[-1].entry_hash if audits else GENESIS_HASH

    def append_signals(self, key: NeedKey, signals: Sequence[Signal]) -> None:
        with self._lock:
            stored = self._signals[key]
            known = {s.signal_id for s in stored}
            for signal in signals:
                if signal.signal_id in known:
                    continue
                known.add(signal.signal_id)
                stored.append(signal)

    def list_signals(self, key: NeedKey, start: datetime, end: datetime) -> List[Signal]:
        with self._lock:
            return [s for s in self._signals.get(key, []) if start <= s.timestamp <= end]

    def save_evaluation(self, state: NeedState, audit: NeedAudit) -> None:
        with self._lock:
            self.append_audit(audit)
            self.upsert_state(state)

    def health_check(self) -> Dict[str, Any]:
        return {"healthy": True, "backend": "memory"}


def _load_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class NeedStateTable(BaseRepository[NeedState]):
    """need_states rows, one per key."""

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(
            connection_manager,
            "need_states",
            key_columns=("event_id", "sector_id", "capacity_type_id"),
        )

    def _row_to_entity(self, row: tuple) -> NeedState:
        notes = _load_json(row[5]) or {}
        scores = _load_json(row[6]) or {}
        # Rows written by older writers carry only the coarse level
        status = NeedStatus(row[4]) if row[4] else NeedLevel.to_status(row[3])
        return NeedState(
            key=NeedKey(row[0], row[1], row[2]),
            current_status=status,
            scores=DimensionScores(**scores),
            operational_requirements=list(notes.get("requirements", [])),
            fragility_notes=list(notes.get("fragility", [])),
            last_window_id=row[7],
            last_updated_at=row[8],
            last_status_change_at=row[9],
        )

    def _entity_to_params(self, entity: NeedState) -> Dict[str, Any]:
        return {
            **entity.key.to_dict(),
            "level": entity.need_level.value,
            "status": entity.current_status.value,
            "notes": json.dumps(entity.notes_payload()),
            "scores": json.dumps(entity.scores.to_dict()),
            "last_window_id": entity.last_window_id,
            "last_updated_at": entity.last_updated_at,
            "last_status_change_at": entity.last_status_change_at,
        }


class NeedAuditTable(BaseRepository[NeedAudit]):
    """need_audits rows; inserts only, never updated."""

    _COLUMNS = (
        "audit_id", "event_id", "sector_id", "capacity_type_id", "timestamp",
        "final_status", "document", "previous_hash", "entry_hash",
    )

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "need_audits", key_columns=("audit_id",))

    def _row_to_entity(self, row: tuple) -> NeedAudit:
        # row[0] is audit_seq
        return NeedAudit.from_dict(_load_json(row[7]))

    def _entity_to_params(self, entity: NeedAudit) -> Dict[str, Any]:
        return {
            "audit_id": entity.audit_id,
            **entity.key.to_dict(),
            "timestamp": entity.timestamp,
            "final_status": entity.final_status.value,
            "document": json.dumps(entity.to_dict(), default=str),
            "previous_hash": entity.previous_hash,
            "entry_hash": entity.entry_hash,
        }

    def append(self, audit: NeedAudit, conn=None) -> None:
        params = self._entity_to_params(audit)
        query = f"""
            INSERT INTO {self.table_name} ({", ".join(self._COLUMNS)})
            VALUES ({", ".join(["%s"] * len(self._COLUMNS))})
        """
        try:
            with self._connection(conn) as c:
                with c.cursor() as cur:
                    cur.execute(query, [params[col] for col in self._COLUMNS])
        except psycopg2.IntegrityError as e:
            logger.error(
                "NEED_AUDIT_DUPLICATE",
                extra={"audit_id": audit.audit_id, "error": str(e)}
            )
            raise DuplicateError(f"Audit {audit.audit_id} already recorded") from e
        except Exception as e:
            logger.error(
                "NEED_AUDIT_APPEND_FAILED",
                extra={"audit_id": audit.audit_id, "error": str(e)}
            )
            raise RepositoryError(f"Failed to append audit {audit.audit_id}: {e}") from e

    def list_for_key(self, key: NeedKey, limit: int) -> List[NeedAudit]:
        query = f"""
            SELECT * FROM {self.table_name}
            WHERE event_id = %s AND sector_id = %s AND capacity_type_id = %s
            ORDER BY audit_seq DESC LIMIT %s
        """
        try:
            with self._connection() as c:
                with c.cursor() as cur:
                    cur.execute(query, (key.event_id, key.sector_id, key.capability_id, limit))
                    rows = cur.fetchall()
        except Exception as e:
            logger.error("NEED_AUDIT_QUERY_FAILED", extra={"key": str(key), "error": str(e)})
            raise RepositoryError(f"Failed to list audits for {key}: {e}") from e
        return [self._row_to_entity(row) for row in rows]

    def latest_hash(self, key: NeedKey, conn=None) -> str:
        query = f"""
            SELECT entry_hash FROM {self.table_name}
            WHERE event_id = %s AND sector_id = %s AND capacity_type_id = %s
            ORDER BY audit_seq DESC LIMIT 1
        """
        try:
            with self._connection(conn) as c:
                with c.cursor() as cur:
                    cur.execute(query, (key.event_id, key.sector_id, key.capability_id))
                    row = cur.fetchone()
        except Exception as e:
            logger.error("NEED_AUDIT_QUERY_FAILED", extra={"key": str(key), "error": str(e)})
            raise RepositoryError(f"Failed to read latest audit for {key}: {e}") from e
        return row[0] if row else GENESIS_HASH


@dataclass(frozen=True)
class StoredSignal:
    """A signal bound to the key it is stored under."""
    key: NeedKey
    signal: Signal


class NeedSignalTable(BaseRepository[StoredSignal]):
    """need_signals rows; re-ingesting a signal id overwrites it."""

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "need_signals", key_columns=("signal_id",))

    def _row_to_entity(self, row: tuple) -> StoredSignal:
        signal = Signal.from_dict({
            "signal_id": row[0],
            "classification": row[4],
            "confidence": row[5],
            "timestamp": row[6],
            "source_reliability": row[7],
            "short_quote": row[8],
            "note": row[9],
            "coverage_kind": row[10],
        })
        return StoredSignal(key=NeedKey(row[1], row[2], row[3]), signal=signal)

    def _entity_to_params(self, entity: StoredSignal) -> Dict[str, Any]:
        data = entity.signal.to_dict()
        return {
            "signal_id": data["signal_id"],
            **entity.key.to_dict(),
            "classification": data["classification"],
            "confidence": data["confidence"],
            "timestamp": entity.signal.timestamp,
            "source_reliability": data["source_reliability"],
            "short_quote": data["short_quote"],
            "note": data["note"],
            "coverage_kind": data["coverage_kind"],
        }

    def list_window(self, key: NeedKey, start: datetime, end: datetime) -> List[Signal]:
        query = f"""
            SELECT * FROM {self.table_name}
            WHERE event_id = %s AND sector_id = %s AND capacity_type_id = %s
              AND timestamp >= %s AND timestamp <= %s
            ORDER BY timestamp ASC
        """
        try:
            with self._connection() as c:
                with c.cursor() as cur:
                    cur.execute(
                        query,
                        (key.event_id, key.sector_id, key.capability_id, start, end),
                    )
                    rows = cur.fetchall()
        except Exception as e:
            logger.error("NEED_SIGNAL_QUERY_FAILED", extra={"key": str(key), "error": str(e)})
            raise RepositoryError(f"Failed to list signals for {key}: {e}") from e
        return [self._row_to_entity(row).signal for row in rows]


class PostgresNeedRepository(NeedRepository):
    """PostgreSQL-backed store.

    State upsert and audit append for one evaluation commit in a single
    transaction, so a state change is never stored without its audit.
    """

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager
        self.states = NeedStateTable(connection_manager)
        self.audits = NeedAuditTable(connection_manager)
        self.signals = NeedSignalTable(connection_manager)

        logger.info("NEED_REPOSITORY_INITIALIZED", extra={"backend": "postgresql"})

    def get_state(self, key: NeedKey) -> Optional[NeedState]:
        return self.states.find_one(key.to_dict())

    def upsert_state(self, state: NeedState) -> None:
        self.states.save(state)

    def append_audit(self, audit: NeedAudit) -> None:
        self.audits.append(audit)

    def list_audits(self, key: NeedKey, limit: int = 100) -> List[NeedAudit]:
        return self.audits.list_for_key(key, limit)

    def latest_audit_hash(self, key: NeedKey) -> str:
        return self.audits.latest_hash(key)

    def append_signals(self, key: NeedKey, signals: Sequence[Signal]) -> None:
        if not signals:
            return
        try:
            with self.connection_manager.transaction() as conn:
                for signal in signals:
                    self.signals.save(StoredSignal(key, signal), conn=conn)
        except RepositoryError:
            raise
        except Exception as e:
            raise RepositoryError(f"Failed to store signals for {key}: {e}") from e

        logger.info(
            "NEED_SIGNALS_STORED",
            extra={"key": str(key), "signal_count": len(signals)}
        )

    def list_signals(self, key: NeedKey, start: datetime, end: datetime) -> List[Signal]:
        return self.signals.list_window(key, start, end)

    def save_evaluation(self, state: NeedState, audit: NeedAudit) -> None:
        try:
            with self.connection_manager.transaction() as conn:
                self.states.save(state, conn=conn)
                self.audits.append(audit, conn=conn)
        except RepositoryError:
            raise
        except Exception as e:
            raise RepositoryError(f"Failed to save evaluation for {state.key}: {e}") from e

    def health_check(self) -> Dict[str, Any]:
        health = self.connection_manager.health_check()
        return {**health, "backend": "postgresql"}


def verify_audit_chain(audits: Sequence[NeedAudit], complete: bool = True) -> bool:
    """Verify hash linkage and integrity of audits given oldest first.

    A complete history must start from the genesis marker; a partial
    (most recent) slice is anchored on its first entry's previous hash.
    """
    if not audits:
        return True

    expected_prev = GENESIS_HASH if complete else audits[0].previous_hash
    for audit in audits:
        if audit.previous_hash != expected_prev:
            logger.critical(
                "NEED_AUDIT_CHAIN_BROKEN",
                extra={
                    "audit_id": audit.audit_id,
                    "expected": expected_prev[:16],
                    "actual": audit.previous_hash[:16],
                }
            )
            return False

        computed = audit.compute_hash()
        if computed != audit.entry_hash:
            logger.critical(
                "NEED_AUDIT_ENTRY_TAMPERED",
                extra={
                    "audit_id": audit.audit_id,
                    "computed": computed[:16],
                    "stored": audit.entry_hash[:16],
                }
            )
            return False

        expected_prev = audit.entry_hash

    return True
