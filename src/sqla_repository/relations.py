"""Batched loading of related entities.

Relations are never loaded one parent at a time. For a batch of parents each
typed loader collects the key values of the whole batch and issues a single
query keyed by ``IN (...)``, then stitches the results back onto the parents.
Nested specifications recurse over the flattened batch of children, so a
path like ``"posts.comments"`` costs one query per segment whatever the
number of parents.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from .catalog import (
    EntityDescriptor,
    ManyToManyRelation,
    ManyToOneRelation,
    OneToManyRelation,
    OneToOneRelation,
    RelationDescriptor,
)
from .clauses import Fragment, render_order_by, render_pagination, render_select, render_where
from .config import options as orm_options
from .datastructures import frozendict
from .errors import ColumnNotFound
from .mapper import from_db_value, to_db_value, to_entity
from .tools import distinct_values, get_primary_key, get_table_name, unique_by


if sys.version_info >= (3, 11):
    from typing import TypedDict, assert_never
else:
    from typing_extensions import TypedDict, assert_never

if TYPE_CHECKING:
    from .repository import Repository


logger = logging.getLogger(__name__)

_TARGET_ALIAS = "t"
_JOIN_ALIAS = "jt"


class RelationConfig(TypedDict, total=False):
    where: Mapping[str, Any]
    order_by: Mapping[str, str] | Sequence[str]
    select: Sequence[str]
    limit: int
    offset: int
    relations: RelationSpecs


RelationSpec = str | Mapping[str, "RelationConfig | bool"]
RelationSpecs = RelationSpec | Sequence[RelationSpec]

_QUERY_KEYS = ("select", "order_by", "limit", "offset")


def normalize_specs(specs: RelationSpecs | None) -> tuple[RelationSpec, ...]:
    """Accept a single spec or a sequence of them."""
    if not specs:
        return ()
    if isinstance(specs, str | Mapping):
        return (specs,)

    return tuple(specs)


def _query_options(
    config: Mapping[str, Any] | None, target: EntityDescriptor, *keys: str
) -> dict[str, Any]:
    """Pick the query options out of *config*.

    A narrowed ``select`` always keeps the target primary key and *keys*, so
    results can still be matched to parents and loaded further.
    """
    if not config:
        return {}

    options = {key: config[key] for key in _QUERY_KEYS if config.get(key) is not None}
    if select := options.get("select"):
        options["select"] = [*([select] if isinstance(select, str) else select), *keys]
        if target.primary_key is not None:
            options["select"].append(target.primary_key.property_key)

    return options


def _order_keys(order_by: Any) -> tuple[str, ...]:
    if not order_by:
        return ()
    if isinstance(order_by, str):
        return (order_by,)

    return tuple(order_by)


def _property_key(descriptor: EntityDescriptor, name: str) -> str:
    """Resolve a key named by property key or column name to its property key."""
    column = descriptor.resolve_column(name)
    if column is None:
        raise ColumnNotFound(name, descriptor.name)

    return column.property_key


def _resolve_key(descriptor: EntityDescriptor, configured: str | None, default: str) -> str | None:
    """Property key for *configured*, or for *default* when nothing was configured.

    A configured key that does not resolve raises ``ColumnNotFound``; an
    unresolvable default yields ``None``.
    """
    if configured is not None:
        return _property_key(descriptor, configured)

    column = descriptor.resolve_column(default)
    return column.property_key if column is not None else None


def _assign_unresolved(
    entities: Sequence[Any], parent: EntityDescriptor, relation: RelationDescriptor
) -> None:
    to_many = _is_to_many(relation)
    logger.debug(
        "Cannot resolve keys for %s.%s; assigning %s",
        parent.name,
        relation.property_key,
        "empty lists" if to_many else "None",
    )
    for entity in entities:
        setattr(entity, relation.property_key, [] if to_many else None)


def _with_where(relation_where: Mapping[str, Any] | None, **keys: Any) -> dict[str, Any]:
    # the relation's own filter wins on key collisions
    return {**keys, **(relation_where or {})}


def _is_to_many(relation: RelationDescriptor) -> bool:
    return isinstance(relation, OneToManyRelation | ManyToManyRelation)


def collect_related(entities: Iterable[Any], relation: RelationDescriptor) -> list[Any]:
    """Flatten the entities attached under *relation* across all parents."""
    related: list[Any] = []
    for entity in entities:
        value = getattr(entity, relation.property_key, None)
        if not value:
            continue
        if _is_to_many(relation):
            related.extend(value)
        else:
            related.append(value)

    return related


class RelationLoader:
    """Resolves relation specifications for one entity type.

    Stateless apart from the repository it reads through; one instance is
    created per entity type visited while walking a specification tree.
    """

    __slots__ = ("repository",)

    def __init__(self, repository: Repository[Any]) -> None:
        self.repository = repository

    @property
    def descriptor(self) -> EntityDescriptor:
        return self.repository.descriptor

    async def load(self, entities: Sequence[Any], specs: RelationSpecs | None) -> None:
        """Attach every relation named by *specs* to *entities*, in order.

        Plain names and dotted paths load segment by segment; mappings carry
        per-relation ``where``/``order_by``/``select``/``limit``/``offset`` and
        nested ``relations``. Names that are not relations of this entity are
        skipped.
        """
        if not entities:
            return

        for spec in normalize_specs(specs):
            if isinstance(spec, str):
                await self._load_path(entities, spec)
            elif isinstance(spec, Mapping):
                await self._load_configured(entities, spec)
            else:
                raise TypeError(f"Invalid relation spec: {spec!r}")

    def _nested(self, relation: RelationDescriptor) -> RelationLoader:
        return RelationLoader(self.repository.for_entity(relation.target_type))

    async def _load_path(self, entities: Sequence[Any], path: str) -> None:
        head, _, rest = path.partition(".")
        relation = self.descriptor.relation_map.get(head)
        if relation is None:
            logger.debug("Skipping unknown relation %r on %s", head, self.descriptor.name)
            return

        await self.load_relation(entities, relation)

        if rest and (related := collect_related(entities, relation)):
            await self._nested(relation).load(related, rest)

    async def _load_configured(
        self, entities: Sequence[Any], configs: Mapping[str, RelationConfig | bool]
    ) -> None:
        for name, config in configs.items():
            relation = self.descriptor.relation_map.get(name)
            if relation is None or not config:
                logger.debug("Skipping relation %r on %s", name, self.descriptor.name)
                continue

            config = config if isinstance(config, Mapping) else {}
            if where := config.get("where"):
                relation = replace(
                    relation, where=frozendict(relation.where or {}).merge(where)
                )

            await self.load_relation(entities, relation, config)

            nested = config.get("relations")
            if nested and (related := collect_related(entities, relation)):
                await self._nested(relation).load(related, nested)

    async def load_relation(
        self,
        entities: Sequence[Any],
        relation: RelationDescriptor,
        config: Mapping[str, Any] | None = None,
    ) -> None:
        """Dispatch to the typed loader for *relation*."""
        match relation:
            case OneToOneRelation():
                await self._load_one_to_one(entities, relation, config)
            case OneToManyRelation():
                await self._load_one_to_many(entities, relation, config)
            case ManyToOneRelation():
                await self._load_many_to_one(entities, relation, config)
            case ManyToManyRelation():
                await self._load_many_to_many(entities, relation, config)
            case _:
                assert_never(relation)

    async def _load_one_to_one(
        self,
        entities: Sequence[Any],
        relation: OneToOneRelation,
        config: Mapping[str, Any] | None,
    ) -> None:
        """Foreign key on the parent side, matched against a target-side local key."""
        parent = self.descriptor
        target_repo = self.repository.for_entity(relation.target_type)
        target = target_repo.descriptor

        local_key = _resolve_key(
            target,
            relation.local_key,
            target.primary_key.property_key if target.primary_key else f"{target.table_name}_id",
        )
        foreign_key = _resolve_key(
            parent,
            relation.foreign_key,
            parent.primary_key.property_key if parent.primary_key else f"{parent.table_name}_id",
        )
        if local_key is None or foreign_key is None:
            _assign_unresolved(entities, parent, relation)
            return

        ids = distinct_values(getattr(e, foreign_key) for e in entities)
        found = (
            await target_repo.find(
                _with_where(relation.where, **{local_key: {"in": ids}}),
                **_query_options(config, target, local_key),
            )
            if ids
            else []
        )

        by_key: dict[Any, Any] = {}
        for item in found:
            by_key.setdefault(getattr(item, local_key), item)

        for entity in entities:
            setattr(entity, relation.property_key, by_key.get(getattr(entity, foreign_key)))

    async def _load_one_to_many(
        self,
        entities: Sequence[Any],
        relation: OneToManyRelation,
        config: Mapping[str, Any] | None,
    ) -> None:
        """Foreign key on the target side, found through the inverse many-to-one."""
        parent = self.descriptor
        target_repo = self.repository.for_entity(relation.target_type)
        target = target_repo.descriptor

        foreign_key = None
        if relation.foreign_key is not None:
            foreign_key = _property_key(target, relation.foreign_key)
        else:
            inverse = target.relation_map.get(relation.inverse_side)
            if isinstance(inverse, ManyToOneRelation):
                foreign_key = _resolve_key(
                    target, inverse.foreign_key, f"{parent.name.lower()}_id"
                )

        primary = parent.primary_key
        if primary is None or foreign_key is None:
            _assign_unresolved(entities, parent, relation)
            return

        ids = distinct_values(getattr(e, primary.property_key) for e in entities)
        found = (
            await target_repo.find(
                _with_where(relation.where, **{foreign_key: {"in": ids}}),
                **_query_options(config, target, foreign_key),
            )
            if ids
            else []
        )

        groups: dict[Any, list[Any]] = {key: [] for key in ids}
        for item in found:
            bucket = groups.get(getattr(item, foreign_key))
            if bucket is not None:
                bucket.append(item)

        for entity in entities:
            setattr(entity, relation.property_key, groups.get(getattr(entity, primary.property_key), []))

    async def _load_many_to_one(
        self,
        entities: Sequence[Any],
        relation: ManyToOneRelation,
        config: Mapping[str, Any] | None,
    ) -> None:
        """Foreign key on the parent side pointing at the target primary key."""
        target_repo = self.repository.for_entity(relation.target_type)
        target = target_repo.descriptor

        primary = get_primary_key(target.entity)
        foreign_key = _resolve_key(
            self.descriptor, relation.foreign_key, f"{target.name.lower()}_id"
        )
        if primary is None or foreign_key is None:
            _assign_unresolved(entities, self.descriptor, relation)
            return

        ids = distinct_values(getattr(e, foreign_key) for e in entities)
        found = (
            await target_repo.find(
                _with_where(relation.where, **{primary.property_key: {"in": ids}}),
                **_query_options(config, target, primary.property_key),
            )
            if ids
            else []
        )

        by_key = {getattr(item, primary.property_key): item for item in found}
        for entity in entities:
            setattr(entity, relation.property_key, by_key.get(getattr(entity, foreign_key)))

    async def _load_many_to_many(
        self,
        entities: Sequence[Any],
        relation: ManyToManyRelation,
        config: Mapping[str, Any] | None,
    ) -> None:
        """One join between the join table and the target table for the whole batch.

        ``limit``/``offset`` bound the combined query, not each parent's share.
        """
        parent = self.descriptor
        target_repo = self.repository.for_entity(relation.target_type)
        target = target_repo.descriptor
        parent_pk = parent.primary_key
        target_pk = target.primary_key

        ids = distinct_values(getattr(e, parent_pk.property_key) for e in entities) if parent_pk else []
        if parent_pk is None or target_pk is None or not ids:
            for entity in entities:
                setattr(entity, relation.property_key, [])
            return

        options = _query_options(config, target)
        dialect = self.repository.dialect
        source_alias = orm_options.source_entity_id_alias
        t, jt = _TARGET_ALIAS, _JOIN_ALIAS

        columns = render_select(
            options.get("select"),
            target,
            dialect=dialect,
            alias=t,
            # MySQL rejects DISTINCT with ORDER BY on unselected columns
            required=(target_pk.property_key, *_order_keys(options.get("order_by"))),
        )
        source_key = dialect.column(relation.join_column_name, jt)
        head = Fragment(
            f"SELECT DISTINCT {columns.sql}, {source_key} AS {dialect.quote(source_alias)} "
            f"FROM {dialect.table(get_table_name(target.entity), t)} "
            f"JOIN {dialect.table(relation.join_table_name, jt)} "
            f"ON {dialect.column(relation.inverse_join_column_name, jt)} = "
            f"{dialect.column(target_pk.column_name, t)} "
            f"WHERE {source_key} IN ({dialect.placeholders(len(ids))})",
            tuple(to_db_value(parent_pk, i) for i in ids),
        )
        statement = Fragment.join((
            head,
            render_where(relation.where, target, dialect=dialect, alias=t).prefixed("AND"),
            render_order_by(options.get("order_by"), target, dialect=dialect, alias=t),
            render_pagination(options.get("limit"), options.get("offset"), dialect=dialect),
        ))
        result = await self.repository.query(statement.sql, statement.params)

        groups: dict[Any, list[Any]] = {key: [] for key in ids}
        for row in result.rows:
            bucket = groups.get(from_db_value(parent_pk, row.get(source_alias)))
            if bucket is not None:
                bucket.append(to_entity(row, target))

        for entity in entities:
            related = groups.get(getattr(entity, parent_pk.property_key), [])
            setattr(
                entity,
                relation.property_key,
                unique_by(related, key=lambda item: getattr(item, target_pk.property_key)),
            )
