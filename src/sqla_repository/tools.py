from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from functools import lru_cache
from typing import Any, TypeVar

from sqlalchemy.engine import Dialect

from .catalog import ColumnDescriptor, get_entity_descriptor
from .errors import EntityMetadataNotFound


_T = TypeVar("_T")


@lru_cache
def _get_table_name(entity: type) -> str:
    """Return the registered table name for *entity* (cached)."""
    descriptor = get_entity_descriptor(entity)
    if not descriptor.is_registered:
        raise EntityMetadataNotFound(entity.__name__)

    return descriptor.table_name


@lru_cache
def _get_primary_key(entity: type) -> ColumnDescriptor | None:
    """Return the primary-key column of *entity*, if one is declared (cached)."""
    return get_entity_descriptor(entity).primary_key


@lru_cache(maxsize=32)
def _placeholder_for(paramstyle: str) -> str:
    """Map a DB-API paramstyle to the positional placeholder it expects."""
    match paramstyle:
        case "qmark":
            return "?"
        case "format" | "pyformat":
            return "%s"
        case _:
            raise ValueError(f"Unsupported positional paramstyle: {paramstyle!r}")


def get_table_name(entity: type) -> str:
    """Get the table name for a registered entity class.

    Raises:
        EntityMetadataNotFound: If *entity* was never registered.
    """
    return _get_table_name(entity)


def get_primary_key(entity: type) -> ColumnDescriptor | None:
    """Get the primary-key column descriptor for an entity class, or ``None``."""
    return _get_primary_key(entity)


def placeholder_for(dialect: Dialect) -> str:
    """Return the value placeholder used by *dialect*'s DB-API driver."""
    return _placeholder_for(dialect.paramstyle or dialect.default_paramstyle)


def unique_by(items: Iterable[_T], key: Callable[[_T], Hashable]) -> list[_T]:
    """Drop later items whose *key* was already seen, keeping first-seen order."""
    seen: set[Hashable] = set()
    out: list[_T] = []
    for item in items:
        marker = key(item)
        if marker in seen:
            continue
        seen.add(marker)
        out.append(item)

    return out


def distinct_values(values: Iterable[Any]) -> list[Any]:
    """De-duplicate *values* in order, skipping ``None``."""
    return unique_by((v for v in values if v is not None), key=lambda v: v)


def cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    return {
        fn.__name__: fn.cache_info()
        for fn in (_get_table_name, _get_primary_key, _placeholder_for)
    }


def cache_clear() -> None:
    """Clear all internal LRU caches."""
    for fn in (_get_table_name, _get_primary_key, _placeholder_for):
        fn.cache_clear()
