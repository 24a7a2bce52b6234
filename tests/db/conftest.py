"""DB-specific pytest fixtures.

Tests run against a throwaway SQLite file through aiosqlite; the migration
catalog is written to be portable between SQLite and PostgreSQL.
"""

from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import text

from tachyon_ops.db.config import DatabaseConfig
from tachyon_ops.db.connection import Database
from tachyon_ops.db.migrations.base import MigrationUnit
from tachyon_ops.db.migrations.registry import MigrationCatalog


def _unit(version: str, description: str, sql: str) -> MigrationUnit:
    return MigrationUnit(
        version=version,
        description=description,
        content=sql.encode("utf-8"),
        filename=f"{version}_{description}.sql",
    )


@pytest.fixture
def make_unit():
    """Factory for in-memory migration units."""
    return _unit


@pytest.fixture
def table_names():
    """Names of the tables present in a SQLite database."""

    async def _names(database: Database) -> set[str]:
        rows = await database.query("SELECT name FROM sqlite_master WHERE type = 'table'")
        return {row["name"] for row in rows}

    return _names


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "tachyon.db"


@pytest.fixture
def sqlite_config(db_path: Path) -> DatabaseConfig:
    """Database configuration pointing at a temporary SQLite file."""
    return DatabaseConfig(url=f"sqlite+aiosqlite:///{db_path}", retry_attempts=1)


@pytest_asyncio.fixture
async def database(sqlite_config):
    """Connected database handle, closed after the test."""
    db = Database(sqlite_config)
    await db.connect()
    try:
        yield db
    finally:
        await db.close()


@pytest.fixture
def sample_catalog() -> MigrationCatalog:
    """Two small units creating related tables."""
    return MigrationCatalog(
        [
            _unit(
                "001",
                "create_accounts",
                """
                -- accounts owned by users
                CREATE TABLE accounts (id integer PRIMARY KEY, name varchar(50) NOT NULL);
                CREATE INDEX idx_accounts_name ON accounts (name);
                """,
            ),
            _unit(
                "002",
                "create_orders",
                "CREATE TABLE orders (id integer PRIMARY KEY, account_id integer REFERENCES accounts (id));",
            ),
        ]
    )


@pytest.fixture
def count_rows():
    """Count rows of a table through the database handle."""

    async def _count(database: Database, table: str) -> int:
        async with database.transaction() as conn:
            result = await conn.execute(text(f"SELECT COUNT(*) FROM {table}"))
            return result.scalar_one()

    return _count
