"""Declarative entity registration.

Entity classes declare their columns and relations as class attributes and
are registered with the :func:`entity` class decorator::

    @entity("users", soft_delete=True)
    class User:
        id = Column(type="number", primary=True)
        name = Column()
        posts = OneToMany(lambda: Post, inverse_side="author")

Each attribute is a data descriptor: values are kept in the instance
``__dict__`` under the attribute name, unset fields read as ``None``, and a
field that was never assigned counts as absent for partial writes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Any, Final, TypeVar, overload

from .catalog import (
    ColumnDescriptor,
    ColumnType,
    EntityDescriptor,
    LazyTarget,
    ManyToManyRelation,
    ManyToOneRelation,
    OneToManyRelation,
    OneToOneRelation,
    RelationDescriptor,
    TransformHooks,
    build_descriptor,
    register_entity,
)
from .datastructures import frozendict


_E = TypeVar("_E", bound=type)
_F = TypeVar("_F", bound=Callable[..., Any])

_HOOK_ATTR: Final[str] = "__sqla_repository_hook__"


class _Field:
    __slots__ = ("key",)

    def __init__(self) -> None:
        self.key = ""

    def __set_name__(self, owner: type, name: str) -> None:
        self.key = name

    @overload
    def __get__(self, instance: None, owner: type) -> _Field: ...

    @overload
    def __get__(self, instance: object, owner: type) -> Any: ...

    def __get__(self, instance: object | None, owner: type) -> Any:
        if instance is None:
            return self

        return instance.__dict__.get(self.key)

    def __set__(self, instance: object, value: Any) -> None:
        instance.__dict__[self.key] = value

    def __delete__(self, instance: object) -> None:
        instance.__dict__.pop(self.key, None)


class Column(_Field):
    __slots__ = ("name", "type", "hidden", "primary", "soft_delete")

    def __init__(
        self,
        name: str | None = None,
        *,
        type: ColumnType = "string",  # noqa: A002
        hidden: bool = False,
        primary: bool = False,
        soft_delete: bool = False,
    ) -> None:
        super().__init__()
        self.name = name
        self.type = type
        self.hidden = hidden
        self.primary = primary
        self.soft_delete = soft_delete

    def describe(self) -> ColumnDescriptor:
        return ColumnDescriptor(
            property_key=self.key,
            column_name=self.name or self.key,
            type=self.type,
            hidden=self.hidden,
            primary=self.primary,
            soft_delete=self.soft_delete,
        )


class _RelationField(_Field, ABC):
    __slots__ = ("target", "where", "hidden")

    def __init__(
        self,
        target: Callable[[], type],
        *,
        where: Mapping[str, Any] | None = None,
        hidden: bool = False,
    ) -> None:
        super().__init__()
        self.target = LazyTarget(target)
        self.where = frozendict(where) if where else None
        self.hidden = hidden

    def _common(self) -> dict[str, Any]:
        return {
            "property_key": self.key,
            "target": self.target,
            "where": self.where,
            "hidden": self.hidden,
        }

    @abstractmethod
    def describe(self) -> RelationDescriptor: ...


class OneToOne(_RelationField):
    __slots__ = ("foreign_key", "local_key")

    def __init__(
        self,
        target: Callable[[], type],
        *,
        foreign_key: str | None = None,
        local_key: str | None = None,
        where: Mapping[str, Any] | None = None,
        hidden: bool = False,
    ) -> None:
        super().__init__(target, where=where, hidden=hidden)
        self.foreign_key = foreign_key
        self.local_key = local_key

    def describe(self) -> OneToOneRelation:
        return OneToOneRelation(
            **self._common(), foreign_key=self.foreign_key, local_key=self.local_key
        )


class OneToMany(_RelationField):
    __slots__ = ("inverse_side", "foreign_key")

    def __init__(
        self,
        target: Callable[[], type],
        *,
        inverse_side: str,
        foreign_key: str | None = None,
        where: Mapping[str, Any] | None = None,
        hidden: bool = False,
    ) -> None:
        super().__init__(target, where=where, hidden=hidden)
        self.inverse_side = inverse_side
        self.foreign_key = foreign_key

    def describe(self) -> OneToManyRelation:
        return OneToManyRelation(
            **self._common(), inverse_side=self.inverse_side, foreign_key=self.foreign_key
        )


class ManyToOne(_RelationField):
    __slots__ = ("foreign_key",)

    def __init__(
        self,
        target: Callable[[], type],
        *,
        foreign_key: str | None = None,
        where: Mapping[str, Any] | None = None,
        hidden: bool = False,
    ) -> None:
        super().__init__(target, where=where, hidden=hidden)
        self.foreign_key = foreign_key

    def describe(self) -> ManyToOneRelation:
        return ManyToOneRelation(**self._common(), foreign_key=self.foreign_key)


class ManyToMany(_RelationField):
    __slots__ = ("join_table_name", "join_column_name", "inverse_join_column_name")

    def __init__(
        self,
        target: Callable[[], type],
        *,
        join_table_name: str,
        join_column_name: str,
        inverse_join_column_name: str,
        where: Mapping[str, Any] | None = None,
        hidden: bool = False,
    ) -> None:
        super().__init__(target, where=where, hidden=hidden)
        self.join_table_name = join_table_name
        self.join_column_name = join_column_name
        self.inverse_join_column_name = inverse_join_column_name

    def describe(self) -> ManyToManyRelation:
        return ManyToManyRelation(
            **self._common(),
            join_table_name=self.join_table_name,
            join_column_name=self.join_column_name,
            inverse_join_column_name=self.inverse_join_column_name,
        )


def before_save(fn: _F) -> _F:
    """Mark a method to run on the entity (or cast partial) before it is written."""
    setattr(fn, _HOOK_ATTR, "before_save")
    return fn


def after_load(fn: _F) -> _F:
    """Mark a method to run on each entity after it is hydrated from a row."""
    setattr(fn, _HOOK_ATTR, "after_load")
    return fn


def _keyword_constructor(self: Any, **kwargs: Any) -> None:
    cls = type(self)
    for key, value in kwargs.items():
        if not isinstance(getattr(cls, key, None), _Field):
            raise TypeError(f"{key!r} is an invalid keyword argument for {cls.__name__}")
        setattr(self, key, value)


def entity(
    table_name: str,
    *,
    soft_delete: bool | None = None,
    soft_delete_column: str | None = None,
) -> Callable[[_E], _E]:
    """Register the decorated class as an entity stored in *table_name*.

    Fields are collected base classes first, each class in declaration
    order. When several methods are marked with the same hook, the last one
    found wins.
    """

    def decorate(cls: _E) -> _E:
        columns: dict[str, ColumnDescriptor] = {}
        relations: dict[str, RelationDescriptor] = {}
        hooks: dict[str, Callable[[Any], Any]] = {}

        for klass in reversed(cls.__mro__):
            for name, attr in vars(klass).items():
                if isinstance(attr, Column):
                    columns[name] = attr.describe()
                elif isinstance(attr, _RelationField):
                    relations[name] = attr.describe()
                elif (kind := getattr(attr, _HOOK_ATTR, None)) is not None:
                    hooks[kind] = attr

        if "__init__" not in vars(cls) and cls.__init__ is object.__init__:
            cls.__init__ = _keyword_constructor  # type: ignore[misc]

        descriptor: EntityDescriptor = build_descriptor(
            cls,
            table_name,
            tuple(columns.values()),
            tuple(relations.values()),
            soft_delete=soft_delete,
            soft_delete_column=soft_delete_column,
            hooks=TransformHooks(**hooks),
        )
        register_entity(descriptor)

        return cls

    return decorate
