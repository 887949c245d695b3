from __future__ import annotations

import sys
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Final, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Required, TypedDict, Unpack
else:
    from typing_extensions import Required, TypedDict, Unpack

import sqlalchemy as sa
from sqlalchemy import orm

from .datastructures import freeze
from .node import Node
from .relations import JoinCallbackArg, JoinType, RelationshipJoin, check_join_type
from .tools import _walk_froms


T = TypeVar("T", bound=orm.DeclarativeBase)
DEFAULT_JOIN_TYPE: Final[JoinType] = "left"


@dataclass(slots=True, frozen=True)
class _JoinParams(Generic[T]):
    __class_getitem__ = classmethod(lambda cls, *args: cls)

    model: type[T]
    joins: tuple[str, ...] = ()
    node: Node = field(default_factory=Node)
    join_type: JoinType = field(default=DEFAULT_JOIN_TYPE)
    callbacks: Mapping[str, JoinCallbackArg] | None = field(default=None)
    check_tables: bool = field(default=False)
    query: sa.Select[tuple[T]] | None = field(default=None)
    having: tuple[str, int] | None = field(default=None)


class _JoinParamsType(TypedDict, Generic[T], total=False):
    model: Required[type[T]]
    joins: tuple[str, ...]
    node: Node
    join_type: JoinType
    callbacks: Mapping[str, JoinCallbackArg]
    check_tables: bool
    query: sa.Select[tuple[T]]
    having: tuple[str, int]


class JoinBuilder(Generic[T]):
    """Adds JOIN clauses for relationship paths to a ``sa.Select``.

    Each path (``"posts"``, ``"posts.comments"``, ``"roles"``) is resolved to
    a chain of relationships and joined hop by hop through
    :class:`~sqla_joins.relations.RelationshipJoin`. A path prefix joined
    once is reused by later paths. A table that is already part of the
    statement is joined again under an alias named
    ``<table>_<relationship key>``, so self-referential relationships and
    repeated tables produce valid SQL.

    One instance is created per unique set of join parameters;
    ``_join_with_relationships`` caches the resulting statement.
    """

    __slots__ = (
        "_froms",
        "_given",
        "_joined",
        "_query",
        "callbacks",
        "check_tables",
        "join_type",
        "model",
        "node",
    )

    def __init__(
        self,
        model: type[T],
        node: Node,
        *,
        join_type: JoinType = DEFAULT_JOIN_TYPE,
        callbacks: Mapping[str, JoinCallbackArg] | None = None,
        check_tables: bool = False,
    ) -> None:
        if orm.DeclarativeBase in getattr(model, "__bases__", ()) or model is orm.DeclarativeBase:
            raise TypeError("model must not be orm.DeclarativeBase")

        self.model = model
        self.node = node
        self.join_type = check_join_type(join_type)
        self.callbacks = callbacks or {}
        self.check_tables = check_tables
        self._query: sa.Select[tuple[T]] = sa.select(model)
        self._froms: dict[str, sa.FromClause] = {}
        self._given: frozenset[str] = frozenset()
        self._joined: dict[str, sa.FromClause] = {}

    def build(
        self,
        joins: tuple[str, ...] = (),
        query: sa.Select[tuple[T]] | None = None,
        having: tuple[str, int] | None = None,
    ) -> sa.Select[tuple[T]]:
        """Build the statement with every requested relationship path joined.

        Args:
            joins: Relationship paths, joined in the given order.
            query: Optional statement to extend instead of ``sa.select(model)``.
            having: ``(operator, count)`` filtering on the number of rows
                joined by the last path.

        Returns:
            The extended ``sa.Select``.

        Raises:
            ValueError: If a path cannot be resolved or *having* is given
                without a path.
        """
        if query is not None:
            self._query = query

        self._froms = {
            name: node
            for node in _walk_froms(self._query)
            if (name := getattr(node, "name", None))
        }
        root = sa.inspect(self.model).local_table
        self._given = frozenset(
            name
            for name, node in self._froms.items()
            if isinstance(node, sa.Table) and node is not root
        )

        last: tuple[RelationshipJoin, sa.FromClause] | None = None
        for path in joins:
            last = self._join_path(_resolve_path(self.model, path, self.node))

        if having is not None:
            if last is None:
                raise ValueError("having requires a relationship to join")

            operator, count = having
            rel_join, target = last
            self._query = rel_join.perform_having(
                self._query,
                operator,
                count,
                target=target,
                group_by=tuple(sa.inspect(self.model).local_table.primary_key),
            )

        return self._query

    def _join_path(
        self,
        relationships: Sequence[orm.RelationshipProperty[orm.DeclarativeBase]],
    ) -> tuple[RelationshipJoin, sa.FromClause]:
        """Join every hop of *path*; return the last hop and its joined selectable."""
        source: sa.FromClause = sa.inspect(self.model).local_table
        cumulative = ""
        rel_join: RelationshipJoin | None = None

        for relationship in relationships:
            key = relationship.key
            cumulative = f"{cumulative}.{key}" if cumulative else key
            rel_join = RelationshipJoin(relationship)

            if (joined := self._joined.get(cumulative)) is not None:
                source = joined
                continue

            related_name = rel_join.related_table.description
            if self.check_tables and related_name in self._given:
                source = self._joined[cumulative] = self._froms[related_name]
                continue

            secondary = None
            if (secondary_table := rel_join.secondary_table) is not None:
                secondary = self._selectable(
                    secondary_table, f"{secondary_table.description}_{key}"
                )

            target = self._selectable(rel_join.related_table, rel_join.alias_name)
            self._query = rel_join.perform_join(
                self._query,
                self.join_type,
                self._callback(cumulative, key),
                source=source,
                target=target,
                secondary=secondary,
            )
            self._joined[cumulative] = target
            source = target

        assert rel_join is not None

        return rel_join, source

    def _selectable(self, table: sa.FromClause, alias_name: str) -> sa.FromClause:
        """Return *table* itself, or an alias when its name is already taken."""
        name = table.description
        if name not in self._froms:
            self._froms[name] = table
            return table

        while alias_name in self._froms:
            alias_name = f"{alias_name}_alias"

        alias = table.alias(alias_name)
        self._froms[alias_name] = alias

        return alias

    def _callback(self, cumulative: str, key: str) -> JoinCallbackArg:
        """Callbacks are keyed by dotted path, falling back to the relationship key."""
        if cumulative in self.callbacks:
            return self.callbacks[cumulative]

        return self.callbacks.get(key)


@lru_cache(maxsize=2048)
def _bfs_search(
    start: type[T],
    end: str,
    node: Node,
) -> Sequence[orm.RelationshipProperty[orm.DeclarativeBase]]:
    """Find the shortest chain of relationships from *start* to the key *end*.

    Relationships declared directly on *start* are found first; otherwise the
    graph is traversed breadth-first.

    Returns:
        Sequence of relationship properties forming the path, or ``()``.
    """
    queue: deque[
        tuple[type[orm.DeclarativeBase], list[orm.RelationshipProperty[orm.DeclarativeBase]]]
    ] = deque([(start, [])])
    seen: set[type[orm.DeclarativeBase]] = set()

    while queue:
        current, path = queue.popleft()
        if current in seen:
            continue
        seen.add(current)

        for rel in node.get(current):
            new_path = [*path, rel]
            if rel.key == end:
                return tuple(new_path)

            queue.append((rel.mapper.class_, new_path))

    return ()


@lru_cache(maxsize=1028)
def _resolve_dotted_path(
    model: type[T],
    dotted: str,
    node: Node,
) -> Sequence[orm.RelationshipProperty[orm.DeclarativeBase]]:
    """Resolve ``'posts.comments.reactions'`` into its relationship properties.

    Each segment must be a relationship declared on the model reached by the
    previous segment. A path without dots falls back to :func:`_bfs_search`.
    """
    parts = dotted.split(".")
    if len(parts) == 1:
        return _bfs_search(model, dotted, node)

    result: list[orm.RelationshipProperty[orm.DeclarativeBase]] = []
    current_cls: type[orm.DeclarativeBase] = model
    for segment in parts:
        relations = node.get(current_cls)
        rel = next((r for r in relations if r.key == segment), None)
        if rel is None:
            raise ValueError(
                f"No relationship '{segment}' on {current_cls.__name__} "
                f"(resolving '{dotted}' from {model.__name__})"
            )
        result.append(rel)
        current_cls = rel.mapper.class_

    return tuple(result)


def _resolve_path(
    model: type[T],
    path: str,
    node: Node,
) -> Sequence[orm.RelationshipProperty[orm.DeclarativeBase]]:
    if not (relationships := _resolve_dotted_path(model, path, node)):
        raise ValueError(f"No relationship '{path}' reachable from {model.__name__}")

    return relationships


@lru_cache(maxsize=1028)
def _join_with_relationships(
    params: _JoinParams[T],
) -> sa.Select[tuple[T]]:
    """Build the joined statement for one set of join parameters (cached)."""
    builder = JoinBuilder(
        model=params.model,
        node=params.node,
        join_type=params.join_type,
        callbacks=params.callbacks,
        check_tables=params.check_tables,
    )

    return builder.build(joins=params.joins, query=params.query, having=params.having)


def sqla_join(
    **params: Unpack[_JoinParamsType[T]],
) -> sa.Select[tuple[T]]:
    """Create a select statement with JOIN clauses derived from relationships.

    Args:
        model: type[T]
            The SQLAlchemy model class to select from.
        joins: tuple[str, ...]
            Relationship paths to join, e.g. ``("posts.comments", "roles")``.
            A bare name not declared on *model* is resolved to the shortest
            relationship path reaching it.
        node: Node
            Relationship graph. Defaults to the :class:`Node` singleton.
        join_type: ``"inner" | "left" | "full"``
            Defaults to ``"left"``.
        callbacks: Mapping[str, JoinCallback | Mapping[str, JoinCallback]]
            Join refinements keyed by path (or relationship key). Pivot and
            through joins are reached with a nested mapping keyed by table
            name: ``{"roles": {"user_roles": ..., "roles": ...}}``.
        check_tables: bool
            Reuse tables already joined in *query* instead of aliasing them.
        query: sa.Select[tuple[T]]
            Existing statement to extend.
        having: tuple[str, int]
            ``(operator, count)`` applied to the number of rows joined by the
            last path (see :func:`has_using_joins`).

    Returns:
        A ``sa.Select`` with the JOIN clauses added.

    Examples:
        Nested path with soft deletes handled automatically::

            query = sqla_join(model=User, joins=("posts.comments",))

        Refining the pivot and related joins of a many-to-many::

            query = sqla_join(
                model=User,
                joins=("roles",),
                join_type="inner",
                callbacks={
                    "roles": {
                        "user_roles": lambda join: join.where("active", True),
                        "roles": add_join_conditions(Role.level > 3),
                    },
                },
            )
    """
    params["callbacks"] = freeze(params.get("callbacks") or {})

    return _join_with_relationships(_JoinParams[T](**params))


def _join_one(
    model: type[T],
    relation: str,
    join_type: JoinType,
    callback: JoinCallbackArg,
    **params: Any,
) -> sa.Select[tuple[T]]:
    if callback is not None:
        params["callbacks"] = {relation: callback}

    params = {key: value for key, value in params.items() if value is not None}

    return sqla_join(model=model, joins=(relation,), join_type=join_type, **params)


def join_relationship(
    model: type[T],
    relation: str,
    callback: JoinCallbackArg = None,
    *,
    query: sa.Select[tuple[T]] | None = None,
    node: Node | None = None,
) -> sa.Select[tuple[T]]:
    """INNER JOIN *relation* (a path) onto a select of *model*."""
    return _join_one(model, relation, "inner", callback, query=query, node=node)


def left_join_relationship(
    model: type[T],
    relation: str,
    callback: JoinCallbackArg = None,
    *,
    query: sa.Select[tuple[T]] | None = None,
    node: Node | None = None,
) -> sa.Select[tuple[T]]:
    """LEFT OUTER JOIN *relation* (a path) onto a select of *model*."""
    return _join_one(model, relation, "left", callback, query=query, node=node)


def full_join_relationship(
    model: type[T],
    relation: str,
    callback: JoinCallbackArg = None,
    *,
    query: sa.Select[tuple[T]] | None = None,
    node: Node | None = None,
) -> sa.Select[tuple[T]]:
    """FULL OUTER JOIN *relation* (a path) onto a select of *model*."""
    return _join_one(model, relation, "full", callback, query=query, node=node)


def has_using_joins(
    model: type[T],
    relation: str,
    operator: str = ">=",
    count: int = 1,
    callback: JoinCallbackArg = None,
    *,
    join_type: JoinType = DEFAULT_JOIN_TYPE,
    query: sa.Select[tuple[T]] | None = None,
    node: Node | None = None,
) -> sa.Select[tuple[T]]:
    """Select *model* rows with ``count(related) <operator> count`` using a join.

    The join replaces an ``EXISTS`` subquery: the last relationship of
    *relation* is joined, the statement is grouped by the model's primary key
    and filtered with ``HAVING``::

        # users with at least two posts
        query = has_using_joins(User, "posts", ">=", 2)

    Rows are ``(entity, <related table>_count)``; ``session.scalars(query)``
    returns the entities.
    """
    return _join_one(
        model,
        relation,
        join_type,
        callback,
        query=query,
        node=node,
        having=(operator, count),
    )


def does_not_have_using_joins(
    model: type[T],
    relation: str,
    callback: JoinCallbackArg = None,
    *,
    query: sa.Select[tuple[T]] | None = None,
    node: Node | None = None,
) -> sa.Select[tuple[T]]:
    """Select *model* rows without any related row (``count(related) < 1``)."""
    return has_using_joins(
        model, relation, "<", 1, callback, join_type="left", query=query, node=node
    )


def sqla_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .tools import _get_primary_key, _get_table_name

    return {
        fn.__name__: fn.cache_info()
        for fn in (
            _bfs_search,
            _resolve_dotted_path,
            _join_with_relationships,
            _get_primary_key,
            _get_table_name,
        )
    }


def sqla_cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .tools import _get_primary_key, _get_table_name

    for fn in (
        _bfs_search,
        _resolve_dotted_path,
        _join_with_relationships,
        _get_primary_key,
        _get_table_name,
    ):
        fn.cache_clear()
