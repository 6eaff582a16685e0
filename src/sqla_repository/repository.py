from __future__ import annotations

import logging
import sys
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack

from .catalog import ColumnDescriptor, EntityDescriptor, RelationDescriptor, get_entity_descriptor
from .clauses import (
    Fragment,
    SqlDialect,
    render_order_by,
    render_pagination,
    render_select,
    render_where,
)
from .config import options as orm_options
from .connection import Connection, QueryResult, as_connection
from .datastructures import frozendict
from .errors import ColumnNotFound, EntityMetadataNotFound, SoftDeleteNotSupported
from .mapper import is_soft_deleted, to_entity, to_row
from .relations import RelationLoader, RelationSpecs


logger = logging.getLogger(__name__)

T = TypeVar("T")


class WriteOptions(TypedDict, total=False):
    with_deleted: bool


class FindOneOptions(WriteOptions, total=False):
    select: Sequence[str]
    order_by: Mapping[str, str] | Sequence[str]
    relations: RelationSpecs


class FindOptions(FindOneOptions, total=False):
    limit: int | None
    offset: int | None


class Repository(Generic[T]):
    """CRUD and relation loading for one entity type.

    Each public coroutine is an independent pipeline: render (and validate)
    the clauses, send one statement through the connection, map the rows,
    then resolve any requested relations with further batched queries.
    Validation errors are raised before anything is sent.
    """

    __slots__ = ("connection", "descriptor", "entity")

    def __init__(
        self,
        connection: Connection | AsyncEngine | AsyncConnection,
        entity: type[T],
    ) -> None:
        descriptor = get_entity_descriptor(entity)
        if not descriptor.is_registered:
            raise EntityMetadataNotFound(entity.__name__)

        self.connection: Connection = as_connection(connection)
        self.entity = entity
        self.descriptor: EntityDescriptor = descriptor

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.entity.__name__} -> {self.descriptor.table_name}>"

    @property
    def column_map(self) -> frozendict[str, ColumnDescriptor]:
        return self.descriptor.column_map

    @property
    def relation_map(self) -> frozendict[str, RelationDescriptor]:
        return self.descriptor.relation_map

    @property
    def primary_key(self) -> ColumnDescriptor | None:
        return self.descriptor.primary_key

    @property
    def dialect(self) -> SqlDialect:
        return self.connection.dialect

    def for_entity(self, entity: type[Any]) -> Repository[Any]:
        """Repository for another entity type sharing this connection."""
        if entity is self.entity:
            return self

        return Repository(self.connection, entity)

    async def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Send one statement to the connection; the only place SQL is executed."""
        level = logging.INFO if orm_options.print_query else logging.DEBUG
        if logger.isEnabledFor(level):
            logger.log(level, "Executing SQL: %s", sql)
            if params:
                logger.log(level, "\tParameters: %r", tuple(params))

        return await self.connection.execute(sql, params)

    def _select_statement(
        self,
        where: Mapping[str, Any] | None,
        options: Mapping[str, Any],
        *,
        limit: int | None,
        offset: int | None,
    ) -> Fragment:
        dialect = self.dialect
        condition = render_where(
            where,
            self.descriptor,
            with_soft_delete_filter=not options.get("with_deleted", False),
            dialect=dialect,
        )
        columns = render_select(options.get("select"), self.descriptor, dialect=dialect)
        order_by = render_order_by(options.get("order_by"), self.descriptor, dialect=dialect)
        pagination = render_pagination(limit, offset, dialect=dialect)

        return Fragment.join((
            Fragment(f"SELECT {columns.sql} FROM {dialect.table(self.descriptor.table_name)}"),
            condition.prefixed("WHERE"),
            order_by,
            pagination,
        ))

    async def find(
        self, where: Mapping[str, Any] | None = None, **options: Unpack[FindOptions]
    ) -> list[T]:
        """Return every matching entity (an empty list when nothing matches).

        Example::

            adults = await users.find(
                {"age": {"gte": 18}},
                order_by={"name": "ASC"},
                limit=20,
                relations=("posts.comments",),
            )
        """
        statement = self._select_statement(
            where, options, limit=options.get("limit"), offset=options.get("offset")
        )
        result = await self.query(statement.sql, statement.params)
        entities = [to_entity(row, self.descriptor) for row in result.rows]

        if entities and (relations := options.get("relations")):
            await RelationLoader(self).load(entities, relations)

        return entities

    async def find_one(
        self, where: Mapping[str, Any] | None = None, **options: Unpack[FindOneOptions]
    ) -> T | None:
        """Return the first matching entity, or ``None``."""
        statement = self._select_statement(where, options, limit=1, offset=None)
        result = await self.query(statement.sql, statement.params)
        if not result.rows:
            return None

        entity = to_entity(result.rows[0], self.descriptor)
        if relations := options.get("relations"):
            await RelationLoader(self).load([entity], relations)

        return entity

    async def find_by_primary_value(self, value: Any, **options: Unpack[FindOneOptions]) -> T | None:
        if self.primary_key is None:
            return None

        return await self.find_one({self.primary_key.property_key: value}, **options)

    async def create(self, entity: T | Mapping[str, Any]) -> T | Any:
        """Insert *entity* and return its persisted shape.

        A live instance is updated in place with the re-fetched row and
        returned; a mapping yields a freshly fetched entity. Without a primary
        key (or when the row cannot be found again) the driver's insert id is
        returned instead.
        """
        dialect = self.dialect
        row = to_row(entity, self.descriptor)
        columns = ", ".join(dialect.quote(name) for name in row)
        result = await self.query(
            f"INSERT INTO {dialect.table(self.descriptor.table_name)} ({columns}) "
            f"VALUES ({dialect.placeholders(len(row))})",
            tuple(row.values()),
        )

        primary = self.primary_key
        if primary is None:
            return result.last_insert_id

        key = _field_value(entity, primary.property_key)
        fetched = await self.find_by_primary_value(result.last_insert_id if key is None else key)
        if fetched is None:
            return result.last_insert_id

        if isinstance(entity, self.entity):
            _assign(entity, fetched)
            return entity

        return fetched

    def _identity(self, entity: T) -> dict[str, Any]:
        """Filter that narrows to *entity*: its primary key, else its set columns."""
        if self.primary_key is not None:
            key = self.primary_key.property_key
            return {key: getattr(entity, key)}

        identity = {
            c.property_key: value
            for c in self.descriptor.columns
            if (value := _field_value(entity, c.property_key)) is not None
        }
        if not identity:
            raise ValueError(f"Cannot identify {self.entity.__name__} instance without values")

        return identity

    async def update(
        self,
        where: T | Mapping[str, Any],
        updates: T | Mapping[str, Any] | None = None,
        **options: Unpack[WriteOptions],
    ) -> T | int:
        """Update matching rows.

        Given an entity instance, the instance doubles as the payload (unless
        *updates* is passed), the filter narrows to its primary key, and on
        success it is refreshed in place and returned. Given a filter, every
        matching row is updated and the affected-row count is returned.
        """
        instance = where if isinstance(where, self.entity) else None
        if instance is not None:
            updates = instance if updates is None else updates
            where = self._identity(instance)
        if updates is None:
            raise TypeError("update() needs an entity instance or an updates payload")

        row = to_row(updates, self.descriptor)
        if not row:
            logger.debug("Nothing to update on %s", self.entity.__name__)
            return 0

        dialect = self.dialect
        with_deleted = options.get("with_deleted", False)
        condition = render_where(
            where,  # type: ignore[arg-type]
            self.descriptor,
            with_soft_delete_filter=not with_deleted,
            dialect=dialect,
        )
        assignments = ", ".join(f"{dialect.quote(name)} = {dialect.placeholder}" for name in row)
        statement = Fragment.join((
            Fragment(
                f"UPDATE {dialect.table(self.descriptor.table_name)} SET {assignments}",
                tuple(row.values()),
            ),
            condition.prefixed("WHERE"),
        ))
        result = await self.query(statement.sql, statement.params)

        if instance is not None and result.affected_rows > 0:
            refreshed = await self.find_one(where, with_deleted=with_deleted)  # type: ignore[arg-type]
            if refreshed is not None:
                _assign(instance, refreshed)
                return instance

        return result.affected_rows

    def _soft_delete_key(self) -> str:
        column = self.descriptor.soft_delete_descriptor
        if column is None:
            raise ColumnNotFound(self.descriptor.soft_delete_column or "", self.descriptor.name)

        return column.property_key

    async def delete(self, where: T | Mapping[str, Any]) -> T | int:
        """Soft-delete (stamp the soft-delete column) or hard-delete matching rows."""
        if self.descriptor.soft_delete:
            return await self.update(
                where, {self._soft_delete_key(): datetime.now(timezone.utc)}, with_deleted=True
            )

        if isinstance(where, self.entity):
            where = self._identity(where)

        dialect = self.dialect
        condition = render_where(
            where,  # type: ignore[arg-type]
            self.descriptor,
            with_soft_delete_filter=False,
            dialect=dialect,
        )
        statement = Fragment.join((
            Fragment(f"DELETE FROM {dialect.table(self.descriptor.table_name)}"),
            condition.prefixed("WHERE"),
        ))
        result = await self.query(statement.sql, statement.params)

        return result.affected_rows

    async def restore(self, where: T | Mapping[str, Any]) -> T | int:
        """Clear the soft-delete column on matching rows.

        Raises:
            SoftDeleteNotSupported: The entity has no soft-delete column.
        """
        if not self.descriptor.soft_delete:
            raise SoftDeleteNotSupported(self.entity.__name__)

        return await self.update(where, {self._soft_delete_key(): None}, with_deleted=True)


def _field_value(source: Any, key: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(key)

    return vars(source).get(key)


def _assign(target: Any, source: Any) -> None:
    for key, value in vars(source).items():
        setattr(target, key, value)


def is_deleted(entity: Any) -> bool:
    """True when *entity*'s soft-delete column holds a timestamp."""
    return is_soft_deleted(entity, get_entity_descriptor(type(entity)))


def repository(
    connection: Connection | AsyncEngine | AsyncConnection, entity: type[T]
) -> Repository[T]:
    """Shorthand for ``Repository(connection, entity)``."""
    return Repository(connection, entity)
