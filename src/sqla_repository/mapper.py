"""Conversion between database rows and entity instances.

``to_entity`` hydrates one row into a fresh instance of the entity class,
coercing each value by its declared column type. ``to_row`` goes the other
way for INSERT/UPDATE payloads and only emits the columns that are present
on the source, which is what makes partial updates possible.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Final, TypeVar

from .catalog import ColumnDescriptor, EntityDescriptor


logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMESTAMP_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"


class RawJson(str):
    """Stored text of a json column that did not parse.

    Written back verbatim, so loading and saving such a row leaves the
    stored value untouched.
    """

    __slots__ = ()


def format_timestamp(value: date | datetime) -> str:
    """Render *value* as ``YYYY-MM-DD HH:MM:SS``; aware datetimes are shifted to UTC."""
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    elif value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)

    return value.strftime(TIMESTAMP_FORMAT)


def _parse_number(value: Any) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, bytes):
        value = value.decode()

    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


def _parse_boolean(value: Any) -> bool:
    if isinstance(value, bytes):
        return int.from_bytes(value, "big") != 0

    return bool(value)


def _parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    return datetime.fromisoformat(str(value).strip())


def from_db_value(column: ColumnDescriptor, value: Any, entity_name: str = "") -> Any:
    """Coerce a raw driver value into the Python value for *column*."""
    if value is None:
        return None

    match column.type:
        case "number":
            return _parse_number(value)
        case "boolean":
            return _parse_boolean(value)
        case "date":
            return _parse_date(value)
        case "json":
            if isinstance(value, bytes):
                value = value.decode()
            if not isinstance(value, str):
                return value
            try:
                return json.loads(value)
            except ValueError:
                logger.warning(
                    "Keeping raw value for %s.%s: stored JSON does not parse",
                    entity_name,
                    column.property_key,
                )
                return RawJson(value)
        case _:
            return value


def to_db_value(column: ColumnDescriptor, value: Any) -> Any:
    """Coerce a Python value into what gets bound for *column*."""
    if value is None:
        return None

    match column.type:
        case "date":
            return format_timestamp(value) if isinstance(value, date) else value
        case "json":
            if isinstance(value, RawJson):
                return str(value)
            return json.dumps(value, default=str)
        case "boolean":
            return 1 if value else 0
        case _:
            return value


def _present_values(source: Any) -> Mapping[str, Any]:
    """Return the fields explicitly set on *source*.

    Mappings are taken as-is. For entity instances, declared fields live in
    the instance ``__dict__``, so anything never assigned is absent.
    """
    if isinstance(source, Mapping):
        return source

    return vars(source)


def blank(entity: type[T]) -> T:
    """Allocate an instance without running its constructor."""
    return entity.__new__(entity)


def cast(entity: type[T], data: Mapping[str, Any]) -> T:
    """Build an instance of *entity* carrying exactly the keys of *data*."""
    instance = blank(entity)
    for key, value in data.items():
        setattr(instance, key, value)

    return instance


def to_entity(row: Mapping[str, Any], descriptor: EntityDescriptor) -> Any:
    """Hydrate *row* (keyed by column name) into a new entity instance.

    Every declared column is assigned; columns missing from the row (for
    example when a ``select`` narrowed the query) become ``None``. The
    ``after_load`` hook runs last and its return value, when not ``None``,
    replaces the instance.
    """
    entity = blank(descriptor.entity)
    for column in descriptor.columns:
        raw = row.get(column.column_name)
        setattr(entity, column.property_key, from_db_value(column, raw, descriptor.name))

    if (hook := descriptor.hooks.after_load) is not None:
        result = hook(entity)
        if result is not None:
            entity = result

    return entity


def to_row(source: Any, descriptor: EntityDescriptor) -> dict[str, Any]:
    """Map an entity or a partial mapping to ``{column_name: db_value}``.

    The ``before_save`` hook sees an entity instance (mappings are cast into
    one first) and may mutate it or return a replacement. Fields that were
    never set are left out of the result; explicit ``None`` is kept.
    """
    if (hook := descriptor.hooks.before_save) is not None:
        if isinstance(source, Mapping):
            source = cast(descriptor.entity, source)
        result = hook(source)
        if result is not None:
            source = result

    present = _present_values(source)
    row: dict[str, Any] = {}
    for column in descriptor.columns:
        if column.property_key not in present:
            continue
        row[column.column_name] = to_db_value(column, present[column.property_key])

    return row


def is_soft_deleted(entity: Any, descriptor: EntityDescriptor) -> bool:
    """True when *entity* carries a value in its soft-delete column."""
    column = descriptor.soft_delete_descriptor
    if column is None:
        return False

    return getattr(entity, column.property_key, None) is not None
