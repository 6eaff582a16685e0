from __future__ import annotations

import logging
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncConnection

from sqla_repository import UnsupportedQueryOperator, repository, set_options

from ..conftest import CountingConnection
from ..models import User

pytestmark = pytest.mark.anyio


class TestWhereOperators:
    async def test_range(self, connection: AsyncConnection, seed_data: dict[str, Any]) -> None:
        users = await repository(connection, User).find({"age": {"gt": 18, "lt": 65}})

        assert {u.name for u in users} == {"alice", "bob"}

    async def test_like(self, connection: AsyncConnection, seed_data: dict[str, Any]) -> None:
        users = await repository(connection, User).find({"name": {"like": "%li%"}})

        assert {u.name for u in users} == {"alice", "charlie"}

    async def test_in_and_not_in(self, connection: AsyncConnection, seed_data: dict[str, Any]) -> None:
        users = repository(connection, User)

        assert {u.name for u in await users.find({"id": [1, 3]})} == {"alice", "charlie"}
        assert {u.name for u in await users.find({"id": {"notIn": [1, 3]}})} == {"bob"}
        assert await users.find({"id": {"in": []}}) == []

    async def test_null_checks(self, connection: AsyncConnection, seed_data: dict[str, Any]) -> None:
        users = repository(connection, User)

        assert [u.name for u in await users.find({"email": None})] == ["charlie"]
        assert len(await users.find({"email": {"notNull": True}})) == 2

    async def test_between(self, connection: AsyncConnection, seed_data: dict[str, Any]) -> None:
        users = await repository(connection, User).find({"age": {"between": [20, 30]}})

        assert {u.name for u in users} == {"alice", "bob"}

    async def test_boolean(self, connection: AsyncConnection, seed_data: dict[str, Any]) -> None:
        users = await repository(connection, User).find({"active": False})

        assert [u.name for u in users] == ["charlie"]

    async def test_multiple_columns_are_anded(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        users = await repository(connection, User).find({"active": True, "age": {"lte": 25}})

        assert [u.name for u in users] == ["bob"]

    async def test_unsupported_operator(
        self, counter: CountingConnection, seed_data: dict[str, Any]
    ) -> None:
        with pytest.raises(UnsupportedQueryOperator):
            await repository(counter, User).find({"age": {"approx": 30}})

        assert counter.count == 0


class TestStatements:
    async def test_find_one_limits_to_one(
        self, counter: CountingConnection, seed_data: dict[str, Any]
    ) -> None:
        await repository(counter, User).find_one({"name": "alice"})
        sql, params = counter.statements[0]

        assert sql.endswith("LIMIT ?") or sql.endswith("LIMIT %s")
        assert params[-1] == 1

    async def test_soft_delete_predicate_is_last(
        self, counter: CountingConnection, seed_data: dict[str, Any]
    ) -> None:
        await repository(counter, User).find({"age": {"gt": 18}}, order_by={"name": "ASC"})
        sql, _ = counter.statements[0]
        quote = counter.dialect.quote

        assert f"{quote('deleted_at')} IS NULL ORDER BY" in sql


class TestQueryLogging:
    async def test_debug_by_default(
        self, connection: AsyncConnection, seed_data: dict[str, Any], caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.DEBUG, logger="sqla_repository.repository"):
            await repository(connection, User).find({"name": "alice"})

        records = [r for r in caplog.records if r.getMessage().startswith("Executing SQL")]
        assert records
        assert all(r.levelno == logging.DEBUG for r in records)

    async def test_print_query_logs_at_info(
        self, connection: AsyncConnection, seed_data: dict[str, Any], caplog: pytest.LogCaptureFixture
    ) -> None:
        set_options(print_query=True)
        with caplog.at_level(logging.INFO, logger="sqla_repository.repository"):
            await repository(connection, User).find({"name": "alice"})

        assert "Executing SQL" in caplog.text
        assert "'alice'" in caplog.text
