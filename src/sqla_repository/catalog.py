from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, ClassVar, Final, Literal, final

from .datastructures import frozendict


ColumnType = Literal["string", "number", "boolean", "date", "json"]
COLUMN_TYPES: Final[frozenset[str]] = frozenset({"string", "number", "boolean", "date", "json"})
DEFAULT_SOFT_DELETE_COLUMN: Final[str] = "deleted_at"

WhereClause = Mapping[str, Any]
Hook = Callable[[Any], Any]


@final
class LazyTarget:
    """Deferred reference to a related entity class.

    Relations are declared before the class they point at may exist, so the
    target is kept as a zero-argument callable and resolved on first use.
    The resolved class is memoized.
    """

    __slots__ = ("_factory", "_resolved")

    def __init__(self, factory: Callable[[], type]) -> None:
        if not callable(factory):
            raise TypeError(f"Relation target must be a zero-argument callable, got {factory!r}")

        self._factory = factory
        self._resolved: type | None = None

    def resolve(self) -> type:
        if self._resolved is None:
            self._resolved = self._factory()

        return self._resolved

    def __repr__(self) -> str:
        name = self._resolved.__name__ if self._resolved is not None else "<unresolved>"
        return f"LazyTarget({name})"


@dataclass(slots=True, frozen=True)
class ColumnDescriptor:
    """One mapped column.

    ``hidden`` marks the column for serializers built on top of the
    repository. Queries and hydration ignore it, so hidden columns are still
    selected and mapped.
    """

    property_key: str
    column_name: str = ""
    type: ColumnType = "string"
    hidden: bool = False
    primary: bool = False
    soft_delete: bool = False

    def __post_init__(self) -> None:
        if self.type not in COLUMN_TYPES:
            raise ValueError(f"Unknown column type {self.type!r} for {self.property_key!r}")

        if not self.column_name:
            object.__setattr__(self, "column_name", self.property_key)


@dataclass(slots=True, frozen=True, kw_only=True)
class _Relation:
    # hidden is carried for serializers, as on ColumnDescriptor
    property_key: str
    target: LazyTarget
    where: frozendict[str, Any] | None = None
    hidden: bool = False

    kind: ClassVar[str] = ""

    @property
    def target_type(self) -> type:
        return self.target.resolve()


@dataclass(slots=True, frozen=True, kw_only=True)
class OneToOneRelation(_Relation):
    kind: ClassVar[str] = "OneToOne"

    foreign_key: str | None = None
    local_key: str | None = None


@dataclass(slots=True, frozen=True, kw_only=True)
class OneToManyRelation(_Relation):
    kind: ClassVar[str] = "OneToMany"

    inverse_side: str
    foreign_key: str | None = None


@dataclass(slots=True, frozen=True, kw_only=True)
class ManyToOneRelation(_Relation):
    kind: ClassVar[str] = "ManyToOne"

    foreign_key: str | None = None


@dataclass(slots=True, frozen=True, kw_only=True)
class ManyToManyRelation(_Relation):
    kind: ClassVar[str] = "ManyToMany"

    join_table_name: str
    join_column_name: str
    inverse_join_column_name: str


RelationDescriptor = OneToOneRelation | OneToManyRelation | ManyToOneRelation | ManyToManyRelation


@dataclass(slots=True, frozen=True)
class TransformHooks:
    before_save: Hook | None = None
    after_load: Hook | None = None


@dataclass(slots=True, frozen=True)
class EntityDescriptor:
    """Static schema of one entity type.

    Built once per class and never mutated. The lookup tables
    (``column_map``, ``column_name_map``, ``relation_map``, ``primary_key``)
    are derived at construction so the renderer and resolver get O(1)
    access for every referenced field.
    """

    entity: type
    table_name: str = ""
    columns: tuple[ColumnDescriptor, ...] = ()
    relations: tuple[RelationDescriptor, ...] = ()
    soft_delete: bool = False
    soft_delete_column: str | None = None
    hooks: TransformHooks = field(default_factory=TransformHooks)

    column_map: frozendict[str, ColumnDescriptor] = field(init=False, repr=False, compare=False)
    column_name_map: frozendict[str, ColumnDescriptor] = field(init=False, repr=False, compare=False)
    relation_map: frozendict[str, RelationDescriptor] = field(init=False, repr=False, compare=False)
    primary_key: ColumnDescriptor | None = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.soft_delete and not self.soft_delete_column:
            object.__setattr__(self, "soft_delete_column", DEFAULT_SOFT_DELETE_COLUMN)

        column_map: dict[str, ColumnDescriptor] = {}
        for column in self.columns:
            if column.property_key in column_map:
                raise ValueError(
                    f"Duplicate column {column.property_key!r} on {self.entity.__name__}"
                )
            column_map[column.property_key] = column

        object.__setattr__(self, "column_map", frozendict(column_map))
        object.__setattr__(
            self, "column_name_map", frozendict({c.column_name: c for c in self.columns})
        )
        object.__setattr__(
            self, "relation_map", frozendict({r.property_key: r for r in self.relations})
        )
        object.__setattr__(
            self, "primary_key", next((c for c in self.columns if c.primary), None)
        )

    @property
    def name(self) -> str:
        return self.entity.__name__

    @property
    def is_registered(self) -> bool:
        return bool(self.table_name)

    def resolve_column(self, key: str) -> ColumnDescriptor | None:
        """Look up a column by property key, falling back to column name."""
        return self.column_map.get(key) or self.column_name_map.get(key)

    @property
    def soft_delete_descriptor(self) -> ColumnDescriptor | None:
        if not self.soft_delete or not self.soft_delete_column:
            return None

        return self.resolve_column(self.soft_delete_column)


@final
class Catalog:
    """Process-wide store of entity descriptors, keyed by entity class.

    A singleton: every repository reads the same table. Entries are written
    once at registration; looking up an unknown class stores an empty shell
    so that queries against it fail validation instead of crashing.
    """

    __instance: ClassVar[Catalog | None] = None
    _entries: dict[type, EntityDescriptor]

    def __new__(cls) -> Catalog:
        if cls.__instance is None:
            instance = super().__new__(cls)
            instance._entries = {}
            cls.__instance = instance

        return cls.__instance

    def get(self, entity: type) -> EntityDescriptor:
        """Return the descriptor for *entity*, creating an empty shell if needed."""
        descriptor = self._entries.get(entity)
        if descriptor is None:
            descriptor = EntityDescriptor(entity=entity)
            self._entries[entity] = descriptor

        return descriptor

    def __getitem__(self, entity: type) -> EntityDescriptor:
        """Look up a registered descriptor, raising ``KeyError`` if absent."""
        return self._entries[entity]

    def __contains__(self, entity: object) -> bool:
        return entity in self._entries

    def register(self, descriptor: EntityDescriptor) -> None:
        self._entries[descriptor.entity] = descriptor

    @property
    def entries(self) -> Mapping[type, EntityDescriptor]:
        return frozendict(self._entries)

    @classmethod
    def reset(cls) -> None:
        """Drop every descriptor (primarily for tests)."""
        if cls.__instance is not None:
            cls.__instance._entries = {}


def get_entity_descriptor(entity: type) -> EntityDescriptor:
    return Catalog().get(entity)


def register_entity(descriptor: EntityDescriptor) -> EntityDescriptor:
    """Store *descriptor* in the catalog, replacing any shell for its class."""
    from .tools import cache_clear

    Catalog().register(descriptor)
    cache_clear()

    return descriptor


def build_descriptor(
    entity: type,
    table_name: str,
    columns: Sequence[ColumnDescriptor],
    relations: Sequence[RelationDescriptor] = (),
    *,
    soft_delete: bool | None = None,
    soft_delete_column: str | None = None,
    hooks: TransformHooks | None = None,
) -> EntityDescriptor:
    """Assemble an EntityDescriptor, settling the soft-delete configuration.

    A column flagged ``soft_delete`` enables soft delete on its own. When soft
    delete is requested without a declared column, a hidden ``date`` column is
    added under the configured (or default) name so writes can target it.
    """
    if not table_name:
        raise ValueError(f"{entity.__name__} needs a non-empty table name")

    flagged = next((c for c in columns if c.soft_delete), None)
    if flagged is not None:
        soft_delete = True
        soft_delete_column = flagged.column_name
    else:
        soft_delete = bool(soft_delete or soft_delete_column)
        if soft_delete:
            soft_delete_column = soft_delete_column or DEFAULT_SOFT_DELETE_COLUMN

    columns = tuple(columns)
    if soft_delete and soft_delete_column and flagged is None:
        declared = next(
            (i for i, c in enumerate(columns) if soft_delete_column in (c.column_name, c.property_key)),
            None,
        )
        if declared is None:
            columns += (
                ColumnDescriptor(
                    property_key=soft_delete_column,
                    type="date",
                    hidden=True,
                    soft_delete=True,
                ),
            )
        else:
            column = replace(columns[declared], soft_delete=True)
            soft_delete_column = column.column_name
            columns = (*columns[:declared], column, *columns[declared + 1 :])

    return EntityDescriptor(
        entity=entity,
        table_name=table_name,
        columns=columns,
        relations=tuple(relations),
        soft_delete=soft_delete,
        soft_delete_column=soft_delete_column if soft_delete else None,
        hooks=hooks or TransformHooks(),
    )


def catalog_clear() -> None:
    Catalog.reset()
