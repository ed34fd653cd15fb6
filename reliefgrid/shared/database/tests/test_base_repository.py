"""Tests for base repository pattern."""
import pytest
from unittest.mock import MagicMock
from dataclasses import dataclass
from typing import Any, Dict

from reliefgrid.shared.database.connection import ConnectionManager, DatabaseConfig
from reliefgrid.shared.database.repository import (
    BaseRepository,
    RepositoryError,
    DuplicateError,
)


@dataclass
class SampleEntity:
    """Entity used by the repository tests."""
    region: str
    name: str
    value: int


class SampleRepository(BaseRepository[SampleEntity]):
    """Concrete repository keyed by (region, name)."""

    def _row_to_entity(self, row: tuple) -> SampleEntity:
        return SampleEntity(region=row[0], name=row[1], value=row[2])

    def _entity_to_params(self, entity: SampleEntity) -> Dict[str, Any]:
        return {
            "region": entity.region,
            "name": entity.name,
            "value": entity.value,
        }


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def connection_manager(cursor):
    """Connection manager whose pool hands out a mocked connection."""
    manager = ConnectionManager(DatabaseConfig(host="localhost"))
    manager._initialized = True
    manager._pool = MagicMock()
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    manager._pool.getconn.return_value = conn
    return manager


@pytest.fixture
def repository(connection_manager):
    return SampleRepository(connection_manager, "samples", key_columns=("region", "name"))


class TestRepositoryExceptions:
    """Tests for repository exception classes."""

    def test_repository_error(self):
        error = RepositoryError("Test error")
        assert str(error) == "Test error"

    def test_duplicate_error(self):
        assert isinstance(DuplicateError("dup"), RepositoryError)


class TestBaseRepository:
    """Tests for BaseRepository class."""

    def test_initialization(self, repository):
        assert repository.table_name == "samples"
        assert repository.key_columns == ("region", "name")

    def test_find_one_returns_none_when_missing(self, repository, cursor):
        cursor.fetchone.return_value = None

        assert repository.find_one({"region": "north", "name": "a"}) is None

    def test_find_one_maps_row(self, repository, cursor):
        cursor.fetchone.return_value = ("north", "a", 7)

        entity = repository.find_one({"region": "north", "name": "a"})

        assert entity == SampleEntity(region="north", name="a", value=7)
        query, params = cursor.execute.call_args.args
        assert "WHERE region = %s AND name = %s" in query
        assert params == ("north", "a")

    def test_save_upserts_on_key_columns(self, repository, cursor):
        repository.save(SampleEntity(region="north", name="a", value=3))

        query, params = cursor.execute.call_args.args
        assert "ON CONFLICT (region, name)" in query
        assert "value = EXCLUDED.value" in query
        assert "region = EXCLUDED.region" not in query
        assert params == ["north", "a", 3]

    def test_save_uses_callers_connection(self, repository, connection_manager):
        outer = MagicMock()

        repository.save(SampleEntity(region="north", name="a", value=3), conn=outer)

        outer.cursor.assert_called_once()
        connection_manager._pool.getconn.assert_not_called()

    def test_save_failure_raises_repository_error(self, repository, cursor):
        cursor.execute.side_effect = RuntimeError("disk full")

        with pytest.raises(RepositoryError, match="disk full"):
            repository.save(SampleEntity(region="north", name="a", value=3))
