from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncConnection

from sqla_repository import (
    Column,
    ColumnNotFound,
    ManyToOne,
    OneToMany,
    OneToOne,
    entity,
    repository,
    set_options,
)

from ..conftest import CountingConnection
from ..models import AuditEntry, Comment, Post, Profile, Role, User

pytestmark = pytest.mark.anyio


class TestOneToMany:
    async def test_find_one_costs_two_queries(
        self, counter: CountingConnection, seed_data: dict[str, Any]
    ) -> None:
        alice = await repository(counter, User).find_one({"id": 1}, relations=["posts"])

        assert alice is not None
        assert {p.title for p in alice.posts} == {"Alice Post 1", "Alice Post 2", "Alice Post 3"}
        assert counter.count == 2

    async def test_batch_over_many_parents(
        self, counter: CountingConnection, seed_data: dict[str, Any]
    ) -> None:
        users = await repository(counter, User).find(order_by=["id"], relations="posts")
        by_name = {u.name: u for u in users}

        assert len(by_name["alice"].posts) == 3
        # soft-deleted posts are not loaded
        assert [p.id for p in by_name["bob"].posts] == [4]
        assert by_name["charlie"].posts == []
        assert counter.count == 2

    async def test_configured_where_and_order(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        alice = await repository(connection, User).find_one(
            {"id": 1},
            relations=[{"posts": {"where": {"title": {"notLike": "%2"}}, "order_by": {"id": "DESC"}}}],
        )

        assert alice is not None
        assert [p.id for p in alice.posts] == [3, 1]

    async def test_narrowed_select_keeps_keys(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        alice = await repository(connection, User).find_one(
            {"id": 1}, relations={"posts": {"select": ["title"]}}
        )

        assert alice is not None
        assert len(alice.posts) == 3
        assert alice.posts[0].body is None

    async def test_disabled_and_unknown_relations_are_skipped(
        self, counter: CountingConnection, seed_data: dict[str, Any]
    ) -> None:
        alice = await repository(counter, User).find_one(
            {"id": 1}, relations=["followers", {"posts": False}]
        )

        assert alice is not None
        assert "posts" not in vars(alice)
        assert counter.count == 1

    async def test_no_parents_no_relation_queries(
        self, counter: CountingConnection, seed_data: dict[str, Any]
    ) -> None:
        users = await repository(counter, User).find({"name": "nobody"}, relations=["posts", "roles"])

        assert users == []
        assert counter.count == 1


class TestManyToOne:
    async def test_author(self, counter: CountingConnection, seed_data: dict[str, Any]) -> None:
        posts = await repository(counter, Post).find(order_by=["id"], relations=["author"])

        assert [p.author.name for p in posts] == ["alice", "alice", "alice", "bob"]
        assert posts[0].author is posts[1].author
        assert counter.count == 2

    async def test_default_foreign_key(self, connection: AsyncConnection, seed_data: dict[str, Any]) -> None:
        comments = await repository(connection, Comment).find(order_by=["id"], relations=["post"])

        assert [c.post.id for c in comments] == [1, 1, 4]

    async def test_soft_deleted_target_is_none(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        await repository(connection, User).delete({"id": 2})
        profiles = await repository(connection, Profile).find(order_by=["id"], relations=["user"])

        assert profiles[0].user.name == "alice"
        assert profiles[1].user is None


class TestOneToOne:
    async def test_profile(self, counter: CountingConnection, seed_data: dict[str, Any]) -> None:
        users = await repository(counter, User).find(order_by=["id"], relations=["profile"])

        assert users[0].profile.bio == "Alice bio"
        assert users[1].profile.bio == "Bob bio"
        assert users[2].profile is None
        assert counter.count == 2


class TestManyToMany:
    async def test_roles(self, counter: CountingConnection, seed_data: dict[str, Any]) -> None:
        users = await repository(counter, User).find(order_by=["id"], relations=["roles"])
        roles = {u.name: sorted(r.name for r in u.roles) for u in users}

        assert roles == {"alice": ["admin", "editor"], "bob": ["editor", "viewer"], "charlie": []}
        assert counter.count == 2

        sql, _ = counter.statements[1]
        assert sql.startswith("SELECT DISTINCT")
        assert counter.dialect.quote("user_roles") in sql

    async def test_reverse_side_filters_soft_deleted_targets(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        roles = await repository(connection, Role).find(order_by=["id"], relations=["users"])
        members = {r.name: sorted(u.name for u in r.users) for r in roles}

        # dave is soft-deleted
        assert members == {"admin": ["alice"], "editor": ["alice", "bob"], "viewer": ["bob"]}

    async def test_configured_where_order_and_select(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        alice = await repository(connection, User).find_one(
            {"id": 1},
            relations={
                "roles": {
                    "where": {"level": {"gte": 5}},
                    "order_by": {"id": "DESC"},
                    "select": ["name"],
                }
            },
        )

        assert alice is not None
        assert [r.name for r in alice.roles] == ["editor", "admin"]
        assert alice.roles[0].level is None
        assert alice.roles[0].id == 2

    async def test_limit_bounds_whole_batch(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        users = await repository(connection, User).find(
            order_by=["id"], relations={"roles": {"order_by": {"id": "ASC"}, "limit": 1}}
        )

        assert sum(len(u.roles) for u in users) == 1
        assert [r.name for r in users[0].roles] == ["admin"]

    async def test_custom_source_alias(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        set_options(source_entity_id_alias="_parent_id_")
        alice = await repository(connection, User).find_one({"id": 1}, relations=["roles"])

        assert alice is not None
        assert len(alice.roles) == 2


class TestNestedRelations:
    async def test_dotted_path_adds_one_query_per_segment(
        self, counter: CountingConnection, seed_data: dict[str, Any]
    ) -> None:
        users = await repository(counter, User).find(order_by=["id"], relations=["posts.comments"])
        alice_posts = {p.id: p for p in users[0].posts}
        bob_posts = {p.id: p for p in users[1].posts}

        assert len(alice_posts[1].comments) == 2
        assert alice_posts[2].comments == []
        assert [c.text for c in bob_posts[4].comments] == ["Thanks bob"]
        assert counter.count == 3

    async def test_nested_config(self, counter: CountingConnection, seed_data: dict[str, Any]) -> None:
        alice = await repository(counter, User).find_one(
            {"id": 1},
            relations=[
                "profile",
                {"posts": {"where": {"id": 1}, "relations": ["comments", "author"]}},
            ],
        )

        assert alice is not None
        assert alice.profile.bio == "Alice bio"
        assert [p.id for p in alice.posts] == [1]
        assert len(alice.posts[0].comments) == 2
        assert alice.posts[0].author.name == "alice"
        assert counter.count == 5

    async def test_unknown_tail_is_skipped(
        self, counter: CountingConnection, seed_data: dict[str, Any]
    ) -> None:
        alice = await repository(counter, User).find_one({"id": 1}, relations=["posts.likes"])

        assert alice is not None
        assert len(alice.posts) == 3
        assert counter.count == 2

    async def test_nested_error_names_target_entity(
        self, connection: AsyncConnection, seed_data: dict[str, Any]
    ) -> None:
        with pytest.raises(ColumnNotFound) as exc_info:
            await repository(connection, User).find_one(
                {"id": 1}, relations={"posts": {"where": {"rating": {"gt": 3}}}}
            )

        assert exc_info.value.entity_name == "Post"
        assert exc_info.value.column_name == "rating"

    async def test_nested_order_error(self, connection: AsyncConnection, seed_data: dict[str, Any]) -> None:
        with pytest.raises(ColumnNotFound, match='"Role"'):
            await repository(connection, User).find(relations={"roles": {"order_by": {"rank": "ASC"}}})


class TestUnresolvableKeys:
    async def test_one_to_one_default_key_on_keyless_target(
        self, counter: CountingConnection, seed_data: dict[str, Any], restore_catalog: None
    ) -> None:
        @entity("users")
        class Member:
            id = Column(type="number", primary=True)
            name = Column()
            entry = OneToOne(lambda: AuditEntry)

        members = await repository(counter, Member).find(order_by=["id"], relations=["entry"])

        assert len(members) == 4
        assert all(m.entry is None for m in members)
        assert counter.count == 1

    async def test_many_to_one_default_key_missing(
        self, counter: CountingConnection, seed_data: dict[str, Any], restore_catalog: None
    ) -> None:
        @entity("posts")
        class Article:
            id = Column(type="number", primary=True)
            title = Column()
            writer = ManyToOne(lambda: User)

        articles = await repository(counter, Article).find(relations="writer")

        assert len(articles) == 5
        assert all(a.writer is None for a in articles)
        assert counter.count == 1

    async def test_one_to_many_inverse_default_key_missing(
        self, counter: CountingConnection, seed_data: dict[str, Any], restore_catalog: None
    ) -> None:
        @entity("posts")
        class Article:
            id = Column(type="number", primary=True)
            writer = ManyToOne(lambda: Member)

        @entity("users")
        class Member:
            id = Column(type="number", primary=True)
            articles = OneToMany(lambda: Article, inverse_side="writer")

        members = await repository(counter, Member).find(relations=["articles"])

        assert members
        assert all(m.articles == [] for m in members)
        assert counter.count == 1

    async def test_configured_key_still_raises(
        self, connection: AsyncConnection, seed_data: dict[str, Any], restore_catalog: None
    ) -> None:
        @entity("posts")
        class Article:
            id = Column(type="number", primary=True)
            writer = ManyToOne(lambda: User, foreign_key="writer_id")

        with pytest.raises(ColumnNotFound) as exc_info:
            await repository(connection, Article).find(relations=["writer"])

        assert exc_info.value.entity_name == "Article"
        assert exc_info.value.column_name == "writer_id"
