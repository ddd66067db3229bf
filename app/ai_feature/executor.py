import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, Callable, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from app.core.config import settings
from app.core.database import readonly_engine
from app.ai_feature.errors import QueryExecutionError, QueryTimeoutError

logger = logging.getLogger(__name__)

# VM instructions between deadline checks on SQLite
SQLITE_PROGRESS_STEPS = 1000

PG_QUERY_CANCELED = "57014"


@dataclass
class QueryResult:
    columns: List[str] = field(default_factory=list)
    rows: List[List[Any]] = field(default_factory=list)
    truncated: bool = False
    elapsed_ms: int = 0

    @property
    def row_count(self) -> int:
        return len(self.rows)


def to_json_value(value: Any) -> Any:
    """Make a DB value safe for JSON responses and message payloads."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.hex()
    return value


class ReadOnlyExecutor:
    """
    Run one validated SELECT inside a read-only transaction.

    PostgreSQL gets SET TRANSACTION READ ONLY plus a statement_timeout,
    SQLite gets PRAGMA query_only and a progress handler that aborts the
    statement once the time budget is spent. Other dialects rely on
    READONLY_DATABASE_URL pointing at a SELECT-only login. The
    transaction is always rolled back.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        row_limit: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.engine = engine
        self.row_limit = row_limit or settings.SQL_ROW_LIMIT
        self.timeout_seconds = timeout_seconds or settings.SQL_TIMEOUT_SECONDS

    async def _enter_read_only(self, conn: AsyncConnection, deadline: float) -> None:
        dialect = conn.dialect.name
        if dialect == "postgresql":
            await conn.execute(text("SET TRANSACTION READ ONLY"))
            budget_ms = max(1, int(self.timeout_seconds * 1000))
            await conn.execute(text(f"SET LOCAL statement_timeout = {budget_ms}"))
        elif dialect == "sqlite":
            await conn.execute(text("PRAGMA query_only = ON"))
            await self._sqlite_progress_handler(
                conn, lambda: time.monotonic() > deadline
            )

    async def _leave_read_only(self, conn: AsyncConnection) -> None:
        if conn.dialect.name == "sqlite":
            await conn.execute(text("PRAGMA query_only = OFF"))

    async def _sqlite_progress_handler(
        self, conn: AsyncConnection, handler: Optional[Callable[[], bool]]
    ) -> None:
        # Runs on the driver's worker thread; a truthy return interrupts the statement
        raw = await conn.get_raw_connection()
        await raw.driver_connection.set_progress_handler(handler, SQLITE_PROGRESS_STEPS)

    async def _fetch(self, conn: AsyncConnection, sql: str) -> QueryResult:
        result = await conn.execute(text(sql))
        if not result.returns_rows:
            return QueryResult()

        columns = list(result.keys())
        # One extra row tells us whether the answer was cut
        fetched = result.fetchmany(self.row_limit + 1)
        result.close()
        truncated = len(fetched) > self.row_limit
        rows = [
            [to_json_value(value) for value in row]
            for row in fetched[: self.row_limit]
        ]
        return QueryResult(columns=columns, rows=rows, truncated=truncated)

    def _timeout_error(self) -> QueryTimeoutError:
        logger.warning(
            f"Query exceeded {self.timeout_seconds}s budget and was cancelled"
        )
        return QueryTimeoutError(
            f"query did not finish within {self.timeout_seconds} seconds"
        )

    async def run(self, sql: str) -> QueryResult:
        """
        Execute a statement and return at most `row_limit` rows.

        Raises:
            QueryTimeoutError: statement exceeded the time budget
            QueryExecutionError: database error, message kept for repair
        """
        started = time.perf_counter()
        deadline = time.monotonic() + self.timeout_seconds

        async with self.engine.connect() as conn:
            try:
                await self._enter_read_only(conn, deadline)
                try:
                    query_result = await asyncio.wait_for(
                        self._fetch(conn, sql), timeout=self.timeout_seconds
                    )
                finally:
                    # Cleared first so the handler cannot abort the rollback
                    if conn.dialect.name == "sqlite":
                        await self._sqlite_progress_handler(conn, None)
                    await conn.rollback()
                    await self._leave_read_only(conn)
            except asyncio.TimeoutError as e:
                raise self._timeout_error() from e
            except SQLAlchemyError as e:
                if _is_timeout(e) or time.monotonic() >= deadline:
                    raise self._timeout_error() from e
                message = str(getattr(e, "orig", None) or e)
                logger.info(f"Database rejected generated SQL: {message}")
                raise QueryExecutionError(message) from e

        query_result.elapsed_ms = int((time.perf_counter() - started) * 1000)
        return query_result


def _is_timeout(error: SQLAlchemyError) -> bool:
    """Server-side cancellation: PostgreSQL query_canceled or an interrupted SQLite statement."""
    orig = getattr(error, "orig", None)
    if getattr(orig, "sqlstate", None) == PG_QUERY_CANCELED:
        return True
    message = str(orig or error).lower()
    return "statement timeout" in message or "interrupted" in message


def get_executor() -> ReadOnlyExecutor:
    """FastAPI dependency bound to the read-only engine."""
    return ReadOnlyExecutor(readonly_engine)
