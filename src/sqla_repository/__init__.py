"""Repository and batched relation loading for MySQL-family databases.

sqla_repository renders where / order-by / select / pagination descriptors to
parameterized SQL, maps rows to plain entity classes, and resolves declared
relations with one ``IN (...)`` query per relation whatever the number of
parents. Declare entities with the ``@entity`` decorator, then work through
``repository(connection, Entity)``.
"""

from .catalog import Catalog, EntityDescriptor, catalog_clear, get_entity_descriptor
from .clauses import render_order_by, render_pagination, render_select, render_where
from .config import Options, engine_from_env, options, set_options, url_from_env
from .connection import Connection, QueryResult, SqlaConnection, run_in_transaction, transaction
from .datastructures import frozendict
from .errors import (
    ColumnNotFound,
    EntityMetadataNotFound,
    ORMError,
    SoftDeleteNotSupported,
    UnsupportedQueryOperator,
)
from .fields import (
    Column,
    ManyToMany,
    ManyToOne,
    OneToMany,
    OneToOne,
    after_load,
    before_save,
    entity,
)
from .mapper import RawJson
from .relations import RelationConfig, RelationLoader
from .repository import Repository, is_deleted, repository
from .tools import cache_clear, cache_info, get_primary_key, get_table_name, unique_by


__version__ = "0.1.0"

__all__ = (
    "Catalog",
    "Column",
    "ColumnNotFound",
    "Connection",
    "EntityDescriptor",
    "EntityMetadataNotFound",
    "ManyToMany",
    "ManyToOne",
    "ORMError",
    "OneToMany",
    "OneToOne",
    "Options",
    "QueryResult",
    "RawJson",
    "RelationConfig",
    "RelationLoader",
    "Repository",
    "SoftDeleteNotSupported",
    "SqlaConnection",
    "UnsupportedQueryOperator",
    "__version__",
    "after_load",
    "before_save",
    "cache_clear",
    "cache_info",
    "catalog_clear",
    "engine_from_env",
    "entity",
    "frozendict",
    "get_entity_descriptor",
    "get_primary_key",
    "get_table_name",
    "is_deleted",
    "options",
    "render_order_by",
    "render_pagination",
    "render_select",
    "render_where",
    "repository",
    "run_in_transaction",
    "set_options",
    "transaction",
    "unique_by",
    "url_from_env",
)
