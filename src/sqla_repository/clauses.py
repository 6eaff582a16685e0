"""Rendering of where / order-by / select / pagination descriptors to SQL.

Every function here is pure: it validates the descriptor against the entity
catalog, then returns SQL text with positional placeholders and the matching
parameter tuple. Nothing is executed. Identifiers are only ever taken from
the catalog and quoted by the SQLAlchemy dialect, so caller input never
reaches the SQL text except as bound parameters.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

from sqlalchemy.dialects import mysql
from sqlalchemy.engine import Dialect

from .catalog import ColumnDescriptor, EntityDescriptor
from .datastructures import frozendict
from .errors import ColumnNotFound, UnsupportedQueryOperator
from .mapper import to_db_value
from .tools import placeholder_for


# Largest LIMIT both MySQL and SQLite accept; used when only OFFSET is given.
MAX_LIMIT: Final[int] = 2**63 - 1
VARIADIC: Final[int] = -1

# operator name -> (SQL operator, number of bound values)
OPERATORS: Final[frozendict[str, tuple[str, int]]] = frozendict({
    "eq": ("=", 1),
    "ne": ("<>", 1),
    "gt": (">", 1),
    "gte": (">=", 1),
    "lt": ("<", 1),
    "lte": ("<=", 1),
    "like": ("LIKE", 1),
    "notLike": ("NOT LIKE", 1),
    "in": ("IN", VARIADIC),
    "notIn": ("NOT IN", VARIADIC),
    "between": ("BETWEEN", 2),
    "notBetween": ("NOT BETWEEN", 2),
    "isNull": ("IS NULL", 0),
    "notNull": ("IS NOT NULL", 0),
    "exists": ("IS NOT NULL", 0),
    "notExists": ("IS NULL", 0),
})
_NEGATED: Final[frozendict[str, str]] = frozendict({
    "IS NULL": "IS NOT NULL",
    "IS NOT NULL": "IS NULL",
})
_DIRECTIONS: Final[frozenset[str]] = frozenset({"ASC", "DESC"})


@dataclass(slots=True, frozen=True)
class SqlDialect:
    """Quoting and placeholder rules taken from an SQLAlchemy dialect."""

    dialect: Dialect
    placeholder: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "placeholder", placeholder_for(self.dialect))

    @property
    def name(self) -> str:
        return self.dialect.name

    def quote(self, identifier: str) -> str:
        return self.dialect.identifier_preparer.quote_identifier(identifier)

    def column(self, column_name: str, alias: str | None = None) -> str:
        quoted = self.quote(column_name)
        return f"{self.quote(alias)}.{quoted}" if alias else quoted

    def table(self, table_name: str, alias: str | None = None) -> str:
        quoted = self.quote(table_name)
        return f"{quoted} {self.quote(alias)}" if alias else quoted

    def placeholders(self, count: int) -> str:
        return ", ".join([self.placeholder] * count)


MYSQL: Final[SqlDialect] = SqlDialect(mysql.dialect())


@dataclass(slots=True, frozen=True)
class Fragment:
    sql: str = ""
    params: tuple[Any, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.sql)

    def prefixed(self, keyword: str) -> Fragment:
        """Return ``keyword sql`` or an empty fragment when there is nothing to render."""
        return Fragment(f"{keyword} {self.sql}", self.params) if self.sql else self

    @classmethod
    def join(cls, fragments: Iterable[Fragment], separator: str = " ") -> Fragment:
        parts = [f for f in fragments if f]
        return cls(
            separator.join(f.sql for f in parts),
            tuple(p for f in parts for p in f.params),
        )


@dataclass(slots=True, frozen=True)
class SelectFragment(Fragment):
    columns: tuple[str, ...] = ()


def _resolve(descriptor: EntityDescriptor, key: str) -> ColumnDescriptor:
    column = descriptor.resolve_column(key) if isinstance(key, str) else None
    if column is None:
        raise ColumnNotFound(str(key), descriptor.name)

    return column


def _normalize(value: Any) -> Mapping[str, Any]:
    """A bare value means equality; a bare list/tuple/set means membership."""
    if isinstance(value, Mapping):
        return value
    if isinstance(value, list | tuple | set | frozenset):
        return {"in": list(value)}

    return {"eq": value}


def _render_operator(
    name: str,
    value: Any,
    column: ColumnDescriptor,
    ref: str,
    dialect: SqlDialect,
) -> Fragment:
    try:
        operator, arity = OPERATORS[name]
    except KeyError:
        raise UnsupportedQueryOperator(name) from None

    ph = dialect.placeholder

    if arity == 0:
        return Fragment(f"{ref} {operator if value else _NEGATED[operator]}")

    if arity == 1:
        if value is None and name in ("eq", "ne"):
            return Fragment(f"{ref} {'IS NULL' if name == 'eq' else 'IS NOT NULL'}")
        return Fragment(f"{ref} {operator} {ph}", (to_db_value(column, value),))

    if arity == VARIADIC:
        values = [value] if isinstance(value, str) or not isinstance(value, Iterable) else list(value)
        if not values:
            return Fragment(f"{ref} {operator} (NULL)")
        return Fragment(
            f"{ref} {operator} ({dialect.placeholders(len(values))})",
            tuple(to_db_value(column, v) for v in values),
        )

    if isinstance(value, str) or not isinstance(value, Sequence) or len(value) != arity:
        raise ValueError(f"Operator {name!r} on {column.property_key!r} expects {arity} values")
    low, high = value

    return Fragment(
        f"{ref} {operator} {ph} AND {ph}",
        (to_db_value(column, low), to_db_value(column, high)),
    )


def render_where(
    where: Mapping[str, Any] | None,
    descriptor: EntityDescriptor,
    *,
    with_soft_delete_filter: bool = True,
    dialect: SqlDialect = MYSQL,
    alias: str | None = None,
) -> Fragment:
    """Render a where descriptor into an ``AND``-joined predicate.

    Keys are property keys (column names are accepted too). Values are either
    literals (implicit ``eq``, or ``in`` for lists) or operator objects such as
    ``{"gt": 18, "lt": 65}``; each operator yields one predicate, in the order
    given. The soft-delete ``IS NULL`` predicate is appended last when
    requested and the entity supports soft delete.

    Raises:
        ColumnNotFound: A key does not name a column of *descriptor*.
        UnsupportedQueryOperator: An operator key is not in :data:`OPERATORS`.
    """
    fragments: list[Fragment] = []
    for key, value in (where or {}).items():
        column = _resolve(descriptor, key)
        ref = dialect.column(column.column_name, alias)
        for name, operand in _normalize(value).items():
            fragments.append(_render_operator(name, operand, column, ref, dialect))

    if with_soft_delete_filter and descriptor.soft_delete and descriptor.soft_delete_column:
        fragments.append(Fragment(f"{dialect.column(descriptor.soft_delete_column, alias)} IS NULL"))

    return Fragment.join(fragments, " AND ")


def render_order_by(
    order_by: Mapping[str, str | None] | Sequence[str] | str | None,
    descriptor: EntityDescriptor,
    *,
    dialect: SqlDialect = MYSQL,
    alias: str | None = None,
) -> Fragment:
    """Render ``ORDER BY`` from ``{field: "ASC" | "DESC"}`` or a list of fields.

    List entries sort ascending. Mapping entries with an empty or unknown
    direction are skipped, but their field must still exist.
    """
    if not order_by:
        return Fragment()

    if isinstance(order_by, str):
        order_by = (order_by,)

    items: Iterable[tuple[str, Any]] = (
        order_by.items() if isinstance(order_by, Mapping) else ((f, "ASC") for f in order_by)
    )
    terms: list[str] = []
    for key, direction in items:
        column = _resolve(descriptor, key)
        if not isinstance(direction, str) or direction.upper() not in _DIRECTIONS:
            continue
        terms.append(f"{dialect.column(column.column_name, alias)} {direction.upper()}")

    return Fragment(f"ORDER BY {', '.join(terms)}") if terms else Fragment()


def render_select(
    select: Sequence[str] | None,
    descriptor: EntityDescriptor,
    *,
    dialect: SqlDialect = MYSQL,
    alias: str | None = None,
    required: Sequence[str] = (),
) -> SelectFragment:
    """Resolve the selected columns, defaulting to all in declaration order.

    *required* names columns that must be present whatever the caller
    selected (the primary key needed for de-duplication, for example).
    """
    if select:
        if isinstance(select, str):
            select = (select,)
        names = [_resolve(descriptor, key).column_name for key in select]
        names += [_resolve(descriptor, key).column_name for key in required]
    else:
        names = [c.column_name for c in descriptor.columns]

    columns = tuple(dict.fromkeys(names))

    return SelectFragment(
        sql=", ".join(dialect.column(name, alias) for name in columns),
        columns=columns,
    )


def render_pagination(
    limit: int | None = None,
    offset: int | None = None,
    *,
    dialect: SqlDialect = MYSQL,
) -> Fragment:
    """Render ``LIMIT ? [OFFSET ?]`` for non-negative integer bounds."""
    has_limit = _is_bound(limit)
    has_offset = _is_bound(offset)
    if not has_limit and not has_offset:
        return Fragment()

    ph = dialect.placeholder
    sql = f"LIMIT {ph}"
    params: tuple[Any, ...] = (limit if has_limit else MAX_LIMIT,)
    if has_offset:
        sql += f" OFFSET {ph}"
        params += (offset,)

    return Fragment(sql, params)


def _is_bound(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0
