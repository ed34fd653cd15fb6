"""PostgreSQL pool for the reliefgrid stores.

Need evaluation is a read-modify-write per key, so the stores lean on
`transaction()` to write state and audit together. Credentials come from
Secrets Manager when DB_SECRET_ARN is set, from DB_* variables otherwise.
"""
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class DatabaseConfig:
    """Where and how the need stores connect."""
    host: str
    port: int = 5432
    database: str = "reliefgrid"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    ssl_mode: str = "require"
    application_name: str = "reliefgrid"
    statement_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Read DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD, DB_MIN_CONN,
        DB_MAX_CONN, DB_SSL_MODE and DB_STATEMENT_TIMEOUT_MS."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=_env_int("DB_PORT", 5432),
            database=os.getenv("DB_NAME", "reliefgrid"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=_env_int("DB_MIN_CONN", 2),
            max_connections=_env_int("DB_MAX_CONN", 10),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
            statement_timeout_ms=_env_int("DB_STATEMENT_TIMEOUT_MS", 5000),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Credentials from an RDS-style secret; host details fall back to env.

        Errors from Secrets Manager are logged and re-raised.
        """
        import boto3

        try:
            response = boto3.client("secretsmanager", region_name=region).get_secret_value(
                SecretId=secret_arn
            )
            secret = json.loads(response["SecretString"])
        except Exception as e:
            logger.error(
                "DB_SECRET_LOAD_FAILED",
                extra={"secret_arn": secret_arn, "region": region, "error": str(e)}
            )
            raise

        base = cls.from_env()
        return cls(
            host=secret.get("host", base.host),
            port=int(secret.get("port", base.port)),
            database=secret.get("dbname", base.database),
            username=secret.get("username", ""),
            password=secret.get("password", ""),
            min_connections=base.min_connections,
            max_connections=base.max_connections,
            ssl_mode=base.ssl_mode,
            statement_timeout_ms=base.statement_timeout_ms,
        )

    def pool_kwargs(self) -> Dict[str, Any]:
        return {
            "minconn": self.min_connections,
            "maxconn": self.max_connections,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "sslmode": self.ssl_mode,
            "application_name": self.application_name,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }


class ConnectionManager:
    """Lazily created psycopg2 ThreadedConnectionPool.

    Evaluations for different keys run on different threads, so the pool
    must be the threaded variant.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool = None
        self._initialized = False
        self._init_lock = threading.Lock()

    def initialize(self) -> None:
        """Open the pool. Safe to call more than once, from any thread."""
        if self._initialized:
            return

        from psycopg2 import pool

        with self._init_lock:
            if self._initialized:
                return
            try:
                self._pool = pool.ThreadedConnectionPool(**self.config.pool_kwargs())
            except Exception as e:
                logger.error(
                    "DB_POOL_INIT_FAILED",
                    extra={"host": self.config.host, "database": self.config.database, "error": str(e)}
                )
                raise
            self._initialized = True

        logger.info(
            "DB_POOL_READY",
            extra={
                "host": self.config.host,
                "database": self.config.database,
                "max_connections": self.config.max_connections,
            }
        )

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection; it always goes back to the pool."""
        if not self._initialized:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self):
        """Connection whose work commits on success and rolls back on error."""
        with self.get_connection() as conn:
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            conn.commit()

    def health_check(self) -> Dict[str, Any]:
        """Readiness payload for the /ready endpoint."""
        if not self._initialized:
            return {"status": "not_initialized", "healthy": False}

        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except Exception as e:
            logger.error("DB_HEALTH_CHECK_FAILED", extra={"error": str(e)})
            return {"status": "error", "healthy": False, "error": str(e)}

        return {
            "status": "connected",
            "healthy": True,
            "database": self.config.database,
            "pool_max": self.config.max_connections,
        }

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            logger.info("DB_POOL_CLOSED", extra={"database": self.config.database})

        self._pool = None
        self._initialized = False


_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Process-wide manager configured from DB_* variables."""
    global _connection_manager

    if _connection_manager is None:
        _connection_manager = ConnectionManager(DatabaseConfig.from_env())

    return _connection_manager
