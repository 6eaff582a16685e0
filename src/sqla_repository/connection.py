"""Execution capability: SQL text + positional params in, rows out.

The repository layer only needs ``execute(sql, params)``. ``SqlaConnection``
supplies it on top of SQLAlchemy's asyncio engine or a checked-out
connection, sending the already-rendered text straight to the DB-API
driver with ``exec_driver_sql``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .clauses import SqlDialect


logger = logging.getLogger(__name__)

_R = TypeVar("_R")


@dataclass(slots=True)
class QueryResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    last_insert_id: Any = None
    affected_rows: int = 0


@runtime_checkable
class Connection(Protocol):
    @property
    def dialect(self) -> SqlDialect: ...

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult: ...


def _collect(result: CursorResult[Any]) -> QueryResult:
    if result.returns_rows:
        return QueryResult(
            rows=[dict(row) for row in result.mappings().all()],
            affected_rows=result.rowcount,
        )

    return QueryResult(last_insert_id=result.lastrowid, affected_rows=result.rowcount)


class SqlaConnection:
    """``Connection`` over an ``AsyncEngine`` (pool) or an ``AsyncConnection``.

    With an engine, each statement checks out a connection and runs in its
    own short transaction, committed on success. With a connection, the
    statement joins whatever transaction the caller holds open.
    """

    __slots__ = ("_bind", "_dialect")

    def __init__(self, bind: AsyncEngine | AsyncConnection) -> None:
        if not isinstance(bind, AsyncEngine | AsyncConnection):
            raise TypeError(f"Expected AsyncEngine or AsyncConnection, got {type(bind).__name__}")

        self._bind = bind
        self._dialect = SqlDialect(bind.dialect)

    @property
    def dialect(self) -> SqlDialect:
        return self._dialect

    @property
    def bind(self) -> AsyncEngine | AsyncConnection:
        return self._bind

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        if isinstance(self._bind, AsyncEngine):
            async with self._bind.begin() as conn:
                return _collect(await conn.exec_driver_sql(sql, tuple(params)))

        return _collect(await self._bind.exec_driver_sql(sql, tuple(params)))


def as_connection(source: Connection | AsyncEngine | AsyncConnection) -> Connection:
    """Wrap SQLAlchemy binds; pass through anything already implementing ``Connection``."""
    if isinstance(source, AsyncEngine | AsyncConnection):
        return SqlaConnection(source)
    if isinstance(source, Connection):
        return source

    raise TypeError(f"{type(source).__name__} does not provide execute(sql, params)")


@asynccontextmanager
async def transaction(engine: AsyncEngine) -> AsyncIterator[SqlaConnection]:
    """Check out one connection and run the block inside a transaction.

    Commits when the block exits normally; on any exception rolls back and
    re-raises. The connection always goes back to the pool.

    Example::

        async with transaction(engine) as conn:
            users = repository(conn, User)
            await users.create({"name": "alice"})
    """
    conn = await engine.connect()
    trans = await conn.begin()
    try:
        yield SqlaConnection(conn)
    except BaseException:
        logger.debug("Rolling back transaction")
        await trans.rollback()
        raise
    else:
        await trans.commit()
    finally:
        await conn.close()


async def run_in_transaction(
    work: Callable[[SqlaConnection], Awaitable[_R]],
    engine: AsyncEngine,
) -> _R:
    """Await ``work(connection)`` inside :func:`transaction` and return its result."""
    async with transaction(engine) as conn:
        return await work(conn)
