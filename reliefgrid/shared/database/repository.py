"""Base repository pattern for database operations.

Provides common lookup and upsert operations keyed by a (possibly
composite) natural key. Every write failure surfaces as RepositoryError.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Generic, Optional, Sequence, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses implement entity-specific row mapping while inheriting:
    - Connection management (own connection or a caller's transaction)
    - Upsert on the natural key
    - Error handling and logging patterns
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
        key_columns: Sequence[str] = ("id",),
    ):
        """Initialize repository.

        Args:
            connection_manager: Database connection manager
            table_name: Name of the database table
            key_columns: Columns forming the unique key used for upserts
        """
        self.connection_manager = connection_manager
        self.table_name = table_name
        self.key_columns = tuple(key_columns)

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name, "key_columns": list(self.key_columns)}
        )

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row to entity.

        Args:
            row: Database row tuple

        Returns:
            Entity instance
        """
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert entity to database parameters.

        Args:
            entity: Entity instance

        Returns:
            Dictionary of column names to values
        """
        pass

    @contextmanager
    def _connection(self, conn=None):
        if conn is not None:
            yield conn
            return
        with self.connection_manager.transaction() as own:
            yield own

    def find_one(self, criteria: Dict[str, Any], conn=None) -> Optional[T]:
        """Find a single entity matching all criteria.

        Args:
            criteria: Column to value equality filters
            conn: Optional connection of an enclosing transaction

        Returns:
            Entity if found, None otherwise
        """
        where = " AND ".join(f"{col} = %s" for col in criteria)
        query = f"SELECT * FROM {self.table_name} WHERE {where} LIMIT 1"

        try:
            with self._connection(conn) as c:
                with c.cursor() as cur:
                    cur.execute(query, tuple(criteria.values()))
                    row = cur.fetchone()
        except Exception as e:
            logger.error(
                "REPOSITORY_READ_FAILED",
                extra={"table_name": self.table_name, "error": str(e)}
            )
            raise RepositoryError(f"Failed to read from {self.table_name}: {e}") from e

        if row is None:
            return None
        return self._row_to_entity(row)

    def save(self, entity: T, conn=None) -> None:
        """Save entity (insert or update on the key columns).

        Args:
            entity: Entity to save
            conn: Optional connection of an enclosing transaction

        Raises:
            RepositoryError: If the write fails
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        placeholders = ["%s"] * len(columns)

        update_clause = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in columns if col not in self.key_columns
        )

        query = f"""
            INSERT INTO {self.table_name} ({", ".join(columns)})
            VALUES ({", ".join(placeholders)})
            ON CONFLICT ({", ".join(self.key_columns)}) DO UPDATE SET {update_clause}
        """

        try:
            with self._connection(conn) as c:
                with c.cursor() as cur:
                    cur.execute(query, list(params.values()))
        except Exception as e:
            logger.error(
                "REPOSITORY_WRITE_FAILED",
                extra={"table_name": self.table_name, "error": str(e)}
            )
            raise RepositoryError(f"Failed to write to {self.table_name}: {e}") from e
