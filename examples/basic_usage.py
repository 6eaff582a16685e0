"""Basic sqla-repository usage examples.

Demonstrates engine setup, filtering, relation loading (plain, dotted and
configured), writes, soft delete and transactions.

NOTE: This file is illustrative: it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine

from sqla_repository import engine_from_env, is_deleted, repository, run_in_transaction, transaction
from sqla_repository.connection import SqlaConnection

from .models import Post, Role, User


# ── 1. Engine from DB_* environment variables ───────────────────────

engine: AsyncEngine = engine_from_env()


# ── 2. Filtering ────────────────────────────────────────────────────


async def get_adults() -> list[User]:
    users = repository(engine, User)
    return await users.find(
        {"age": {"gte": 18, "lt": 65}, "name": {"notLike": "test%"}},
        order_by={"age": "DESC"},
        limit=20,
    )


# ── 3. Relations: one query per relation, whatever the batch size ───


async def get_users_with_posts() -> list[User]:
    return await repository(engine, User).find(relations=("posts", "profile", "roles"))


async def get_users_deep() -> list[User]:
    # users -> posts -> comments: three queries in total
    return await repository(engine, User).find(relations=("posts.comments",))


async def get_users_with_published_posts() -> list[User]:
    return await repository(engine, User).find(
        relations={
            "posts": {
                "where": {"published": True},
                "order_by": {"id": "DESC"},
                "relations": ("comments",),
            },
            "roles": {"where": {"level": {"gte": 5}}, "select": ("name",)},
        },
    )


async def get_post_authors() -> list[Post]:
    return await repository(engine, Post).find(relations=("author",))


# ── 4. Writes and soft delete ───────────────────────────────────────


async def lifecycle() -> None:
    users = repository(engine, User)

    alice = await users.create({"name": "alice", "age": 30})
    alice.age = 31
    await users.update(alice)

    await users.delete(alice)
    assert is_deleted(alice)
    assert await users.find_one({"name": "alice"}) is None

    await users.restore(alice)
    await users.update({"age": {"lt": 18}}, {"age": 18})


# ── 5. Transactions ─────────────────────────────────────────────────


async def ensure_admin_role() -> None:
    async with transaction(engine) as conn:
        roles = repository(conn, Role)
        if await roles.find_one({"name": "admin"}) is None:
            await roles.create({"name": "admin", "level": 10})


async def count_posts_atomically() -> int:
    async def work(conn: SqlaConnection) -> int:
        return len(await repository(conn, Post).find(select=("id",)))

    return await run_in_transaction(work, engine)
