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
    """Read-only, hashable mapping.

    Join parameters are cached with ``functools.lru_cache``, so every mapping
    that reaches the cache key (callbacks per relationship path, the
    relationship graph) has to be hashable. ``frozendict`` is a thin
    ``Mapping`` over a private ``dict`` whose hash is computed once.

    Example:
        >>> callbacks = frozendict({"posts": add_join_conditions(Post.published)})
        >>> callbacks["posts"]
        <function add_join_conditions.<locals>._add ...>
        >>> callbacks.copy(roles=None)
        <frozendict {'posts': <function ...>, 'roles': None}>
    """

    __slots__ = ("_data", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._data: dict[K, V] = dict(*args, **kwargs)
        self._hash = hash(frozenset(self._data.items()))

    def __getitem__(self, key: K) -> V:
        return self._data[key]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[K]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._data == other._data

        if isinstance(other, dict):
            return self._data == other

        return NotImplemented

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._data!r}>"

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new instance with *add_or_replace* merged on top."""
        return type(self)(self._data, **add_or_replace)


def freeze(value: Any) -> Any:
    """Recursively turn plain mappings into :class:`frozendict`.

    Callbacks for two-step joins are given as ``{table_name: callback}``
    nested inside the per-path mapping; both levels must be hashable.
    Non-mapping values are returned untouched.
    """
    if isinstance(value, frozendict):
        return value

    if isinstance(value, Mapping):
        return frozendict({key: freeze(item) for key, item in value.items()})

    return value
