"""Relational store connection management.

Provides an explicitly owned database handle wrapping a SQLAlchemy async
engine: bounded connection pool, startup connection retries, transactions
and a SQL script splitter for multi-statement migration files.
"""

import asyncio
import logging
import re
import ssl
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from ..utils.resilience import RetryConfig, async_retry
from .config import DatabaseConfig

logger = logging.getLogger(__name__)

# Opening tag of a dollar-quoted string: $$ or $name$
DOLLAR_QUOTE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


class ConnectionError(Exception):
    """Database connection error."""

    pass


class QueryError(Exception):
    """Database query error."""

    pass


@dataclass
class ConnectionStats:
    """Connection statistics."""

    total_connections: int = 0
    failed_connections: int = 0
    total_queries: int = 0
    failed_queries: int = 0
    last_connected: Optional[datetime] = None
    last_error: Optional[str] = None


def split_statements(sql: str) -> list[str]:
    """Split a SQL script into individual statements.

    Semicolons inside quoted strings, quoted identifiers, comments and
    dollar-quoted bodies do not terminate a statement. Fragments containing
    only whitespace or comments are dropped.

    Args:
        sql: SQL script text

    Returns:
        List of statements without trailing semicolons
    """
    statements: list[str] = []
    buffer: list[str] = []
    has_code = False
    i = 0
    n = len(sql)

    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            end = sql.find("\n", i)
            end = n if end == -1 else end
            buffer.append(sql[i:end])
            i = end
            continue

        if ch == "/" and nxt == "*":
            end = sql.find("*/", i + 2)
            end = n if end == -1 else end + 2
            buffer.append(sql[i:end])
            i = end
            continue

        if ch in ("'", '"'):
            j = i + 1
            while j < n:
                if sql[j] == ch:
                    # Doubled quote is an escaped quote
                    if j + 1 < n and sql[j + 1] == ch:
                        j += 2
                        continue
                    break
                j += 1
            end = min(j + 1, n)
            buffer.append(sql[i:end])
            has_code = True
            i = end
            continue

        if ch == "$":
            match = DOLLAR_QUOTE.match(sql, i)
            if match:
                tag = match.group(0)
                end = sql.find(tag, match.end())
                end = n if end == -1 else end + len(tag)
                buffer.append(sql[i:end])
                has_code = True
                i = end
                continue

        if ch == ";":
            if has_code:
                statements.append("".join(buffer).strip())
            buffer = []
            has_code = False
            i += 1
            continue

        if not ch.isspace():
            has_code = True
        buffer.append(ch)
        i += 1

    if has_code:
        statements.append("".join(buffer).strip())

    return statements


async def execute_script(conn: AsyncConnection, sql: str) -> int:
    """Execute every statement of a SQL script on an open connection.

    Statements run in order on the caller's connection, so they share the
    caller's transaction.

    Args:
        conn: Connection with an active transaction
        sql: SQL script text

    Returns:
        Number of statements executed
    """
    statements = split_statements(sql)
    for statement in statements:
        await conn.exec_driver_sql(statement)
    return len(statements)


def _enable_sqlite_transactional_ddl(engine: AsyncEngine) -> None:
    """Make SQLite run DDL inside the transaction SQLAlchemy begins.

    The sqlite3 driver otherwise commits implicitly around DDL, which
    breaks rollback of a failed migration.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _ssl_context(config: DatabaseConfig) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not config.ssl_reject_unauthorized:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class Database:
    """Owned handle to the relational store.

    The caller constructs it, opens it, passes it to the components that
    need it and closes it on every exit path.

    Example:
        async with Database(config) as db:
            async with db.transaction() as conn:
                await conn.execute(text("SELECT 1"))
    """

    def __init__(
        self,
        config: DatabaseConfig,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the handle. No connection is made until connect().

        Args:
            config: Database configuration
            retry_config: Startup connection retry policy (built from config if omitted)
            sleep: Sleep coroutine used between connection attempts
        """
        self.config = config
        self.retry_config = retry_config or RetryConfig(
            max_attempts=config.retry_attempts,
            base_delay=config.retry_delay,
            retryable_exceptions=(SQLAlchemyError, OSError, asyncio.TimeoutError),
        )
        self.stats = ConnectionStats()
        self._engine: Optional[AsyncEngine] = None
        self._sleep = sleep

    @property
    def is_connected(self) -> bool:
        """Check if the engine has been created and verified."""
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        """Get the underlying engine.

        Raises:
            ConnectionError: If connect() has not been called
        """
        if self._engine is None:
            raise ConnectionError("Database is not connected; call connect() first")
        return self._engine

    def _create_engine(self) -> AsyncEngine:
        url = self.config.sqlalchemy_url
        kwargs: dict[str, Any] = {"pool_pre_ping": True}
        connect_args: dict[str, Any] = dict(self.config.connect_args)

        if self.config.is_sqlite:
            connect_args.setdefault("timeout", self.config.connect_timeout)
        else:
            kwargs.update(
                pool_size=self.config.pool_size,
                pool_timeout=self.config.pool_timeout,
                pool_recycle=int(self.config.idle_timeout),
            )
            connect_args.setdefault("timeout", self.config.connect_timeout)
            if self.config.ssl:
                connect_args.setdefault("ssl", _ssl_context(self.config))

        engine = create_async_engine(url, connect_args=connect_args, **kwargs)

        if self.config.is_sqlite:
            _enable_sqlite_transactional_ddl(engine)

        return engine

    async def connect(self) -> None:
        """Create the engine and verify the store is reachable.

        Connection attempts are retried with exponential backoff.

        Raises:
            ConnectionError: If the store is unreachable after all attempts
        """
        if self._engine is not None:
            return

        target = self.config.safe_url()

        try:
            engine = self._create_engine()
        except (SQLAlchemyError, ImportError) as e:
            self.stats.failed_connections += 1
            self.stats.last_error = str(e)
            raise ConnectionError(f"Cannot create engine for {target}: {e}") from e

        async def _probe() -> None:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        try:
            await async_retry(
                _probe,
                self.retry_config,
                description=f"connect to {target}",
                sleep=self._sleep,
            )
        except self.retry_config.retryable_exceptions as e:
            self.stats.failed_connections += 1
            self.stats.last_error = str(e)
            await engine.dispose()
            raise ConnectionError(
                f"Could not connect to {target} after "
                f"{self.retry_config.max_attempts} attempt(s): {e}"
            ) from e

        self._engine = engine
        self.stats.total_connections += 1
        self.stats.last_connected = datetime.now(timezone.utc)
        logger.debug(f"Connected to {target}")

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine is None:
            return
        try:
            await self._engine.dispose()
        finally:
            self._engine = None
            logger.debug("Database connection pool closed")

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncConnection, None]:
        """Open a transaction that commits on exit and rolls back on error.

        Yields:
            Connection bound to the transaction
        """
        async with self.engine.begin() as conn:
            yield conn

    async def query(
        self,
        sql: str,
        params: Optional[dict[str, Any]] = None,
    ) -> list[dict[str, Any]]:
        """Execute a single statement in its own transaction.

        Args:
            sql: SQL statement with :name placeholders
            params: Statement parameters

        Returns:
            List of result rows as dictionaries (empty for statements without rows)

        Raises:
            QueryError: If the statement fails
        """
        self.stats.total_queries += 1
        try:
            async with self.transaction() as conn:
                result = await conn.execute(text(sql), params or {})
                if not result.returns_rows:
                    return []
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            self.stats.failed_queries += 1
            self.stats.last_error = str(e)
            raise QueryError(f"Query failed: {e}") from e

    async def health_check(self) -> dict[str, Any]:
        """Check store health.

        Returns:
            Health status dictionary with round-trip latency
        """
        start = time.perf_counter()
        try:
            await self.query("SELECT 1")
            return {
                "healthy": True,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "target": self.config.safe_url(),
            }
        except (QueryError, ConnectionError) as e:
            return {
                "healthy": False,
                "error": str(e),
                "target": self.config.safe_url(),
            }
