from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Read-only mapping used for descriptor lookup tables and relation filters.

    Entity descriptors are shared process-wide, so their column, relation and
    ``where`` mappings must not be mutated after registration. Values may be
    unhashable (a ``where`` filter can hold lists for ``in``), so the hash is
    computed on first use and only succeeds when every value is hashable.

    Example:
        >>> base = frozendict({"active": True})
        >>> base.merge({"role": "admin"})
        <frozendict {'active': True, 'role': 'admin'}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def merge(self, other: Mapping[K, V] | None = None, /, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *other* layered over this one.

        Keys from *other* (and keyword arguments) take precedence. The merge
        is shallow: nested operator objects are replaced, not combined.
        """
        merged = dict(self._dict)
        merged.update(other or {})
        merged.update(add_or_replace)

        return type(self)(merged)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash
