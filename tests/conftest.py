from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator, Sequence
from datetime import datetime
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from sqla_repository import QueryResult, SqlaConnection, cache_clear, set_options
from sqla_repository.catalog import Catalog
from sqla_repository.clauses import SqlDialect

from .models import (
    comments_table,
    metadata,
    posts_table,
    profiles_table,
    roles_table,
    user_roles,
    users_table,
)


pytestmark = pytest.mark.anyio

DELETED_AT = datetime(2024, 1, 1, 12, 0, 0)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "mysql", "mariadb"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "mysql":
            from testcontainers.mysql import MySqlContainer

            my = MySqlContainer(image="mysql:8.0")
            if os.name == "nt":
                my.get_container_host_ip = lambda: "127.0.0.1"
            with my:
                host = my.get_container_host_ip()
                port = my.get_exposed_port(my.port)
                yield f"mysql+asyncmy://{my.username}:{my.password}@{host}:{port}/{my.dbname}"

        case "mariadb":
            from testcontainers.mysql import MySqlContainer as MariaDBContainer

            ma = MariaDBContainer(image="mariadb:latest")
            if os.name == "nt":
                ma.get_container_host_ip = lambda: "127.0.0.1"
            with ma:
                host = ma.get_container_host_ip()
                port = ma.get_exposed_port(ma.port)
                yield f"mysql+asyncmy://{ma.username}:{ma.password}@{host}:{port}/{ma.dbname}"

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


class CountingConnection:
    """Connection wrapper that records every statement sent through it."""

    def __init__(self, inner: SqlaConnection) -> None:
        self.inner = inner
        self.statements: list[tuple[str, tuple[Any, ...]]] = []

    @property
    def dialect(self) -> SqlDialect:
        return self.inner.dialect

    @property
    def count(self) -> int:
        return len(self.statements)

    def reset(self) -> None:
        self.statements.clear()

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        self.statements.append((sql, tuple(params)))
        return await self.inner.execute(sql, params)


@pytest.fixture
def counter(connection: AsyncConnection) -> CountingConnection:
    return CountingConnection(SqlaConnection(connection))


@pytest.fixture
async def seed_data(connection: AsyncConnection) -> dict[str, list[dict[str, Any]]]:
    users = [
        {"id": 1, "name": "alice", "email": "alice@example.com", "age": 30, "active": True,
         "settings": '{"theme": "dark"}', "deleted_at": None},
        {"id": 2, "name": "bob", "email": "bob@example.com", "age": 25, "active": True,
         "settings": None, "deleted_at": None},
        {"id": 3, "name": "charlie", "email": None, "age": 17, "active": False,
         "settings": None, "deleted_at": None},
        {"id": 4, "name": "dave", "email": "dave@example.com", "age": 40, "active": True,
         "settings": None, "deleted_at": DELETED_AT},
    ]
    posts = [
        {"id": 1, "title": "Alice Post 1", "body": "body1", "author_id": 1, "deleted_at": None},
        {"id": 2, "title": "Alice Post 2", "body": "body2", "author_id": 1, "deleted_at": None},
        {"id": 3, "title": "Alice Post 3", "body": "body3", "author_id": 1, "deleted_at": None},
        {"id": 4, "title": "Bob Post 1", "body": "body4", "author_id": 2, "deleted_at": None},
        {"id": 5, "title": "Bob Draft", "body": "body5", "author_id": 2, "deleted_at": DELETED_AT},
    ]
    comments = [
        {"id": 1, "text": "Great post!", "post_id": 1},
        {"id": 2, "text": "Nice work", "post_id": 1},
        {"id": 3, "text": "Thanks bob", "post_id": 4},
    ]
    profiles = [
        {"id": 1, "bio": "Alice bio", "user_id": 1},
        {"id": 2, "bio": "Bob bio", "user_id": 2},
    ]
    roles = [
        {"id": 1, "name": "admin", "level": 10},
        {"id": 2, "name": "editor", "level": 5},
        {"id": 3, "name": "viewer", "level": 1},
    ]
    memberships = [
        {"user_id": 1, "role_id": 1},
        {"user_id": 1, "role_id": 2},
        {"user_id": 2, "role_id": 2},
        {"user_id": 2, "role_id": 3},
        {"user_id": 4, "role_id": 1},
    ]

    for table, rows in (
        (users_table, users),
        (posts_table, posts),
        (comments_table, comments),
        (profiles_table, profiles),
        (roles_table, roles),
        (user_roles, memberships),
    ):
        await connection.execute(table.insert(), rows)

    return {
        "users": users,
        "posts": posts,
        "comments": comments,
        "profiles": profiles,
        "roles": roles,
        "user_roles": memberships,
    }


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    cache_clear()


@pytest.fixture(autouse=True)
def reset_options() -> Iterator[None]:
    yield
    set_options(print_query=False, source_entity_id_alias="_orm_source_fk_")


@pytest.fixture
def restore_catalog() -> Iterator[None]:
    catalog = Catalog()
    saved = dict(catalog._entries)
    yield
    catalog._entries = saved
    cache_clear()
