"""Runtime options and environment-driven engine construction."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any, Final

from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine


logger = logging.getLogger(__name__)

DEFAULT_DRIVER: Final[str] = "mysql+asyncmy"


@dataclass(slots=True)
class Options:
    print_query: bool = False
    source_entity_id_alias: str = "_orm_source_fk_"


options = Options()


def set_options(**changes: Any) -> Options:
    """Update the process-wide options in place and return them.

    Example:
        >>> set_options(print_query=True)
        Options(print_query=True, source_entity_id_alias='_orm_source_fk_')
    """
    known = {f.name for f in fields(Options)}
    if unknown := set(changes) - known:
        raise TypeError(f"Unknown option(s): {', '.join(sorted(unknown))}")

    for key, value in changes.items():
        setattr(options, key, value)

    return options


def _env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def url_from_env(environ: Mapping[str, str] | None = None, *, driver: str = DEFAULT_DRIVER) -> URL:
    """Build a database URL from ``DB_*`` environment variables."""
    env = os.environ if environ is None else environ

    return URL.create(
        driver,
        username=env.get("DB_USER", "root"),
        password=env.get("DB_PASSWORD") or None,
        host=env.get("DB_HOST", "localhost"),
        port=int(env.get("DB_PORT", "3306")),
        database=env.get("DB_NAME", "test"),
        query={"charset": env.get("DB_CHARSET", "utf8mb4")},
    )


def engine_from_env(environ: Mapping[str, str] | None = None, **engine_kw: Any) -> AsyncEngine:
    """Create an async engine (connection pool) configured from the environment.

    ``DB_CONNECTION_LIMIT`` sizes the pool, ``DB_CONNECT_TIMEOUT`` (seconds)
    bounds connection attempts, and ``DB_DEBUG=true`` enables query printing.
    """
    env = os.environ if environ is None else environ

    if _env_flag(env.get("DB_DEBUG")):
        set_options(print_query=True)
        logger.info("Query printing enabled from DB_DEBUG")

    engine_kw.setdefault("pool_size", int(env.get("DB_CONNECTION_LIMIT", "10")))
    engine_kw.setdefault(
        "connect_args", {"connect_timeout": int(env.get("DB_CONNECT_TIMEOUT", "5"))}
    )

    return create_async_engine(url_from_env(env), **engine_kw)
