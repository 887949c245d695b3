from __future__ import annotations

from collections.abc import Callable, Sequence
from functools import lru_cache
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.sql.selectable import Alias


if TYPE_CHECKING:
    from .clauses import JoinClause

T = TypeVar("T", bound=orm.DeclarativeBase)
_R = TypeVar("_R")


def unique_scalars(result: sa.Result[tuple[_R]]) -> Sequence[_R]:
    """Shorthand for ``result.unique().scalars().all()``.

    One-to-many and many-to-many joins repeat the parent row once per related
    row; use this after ``session.execute(query)`` to get each entity once.

    Example (async)::

        users = unique_scalars(await session.execute(query))
    """
    return result.unique().scalars().all()


@lru_cache
def _get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Return the first primary-key column element for *model* (cached)."""
    return next(iter(model.__table__.primary_key))


@lru_cache
def _get_table_name(model: type[T]) -> str:
    """Return the table name for *model*, preferring ``__tablename__`` (cached)."""
    result = getattr(
        model,
        "__tablename__",
        model.__table__.description,
    )
    if not result:
        raise ValueError(f"Cannot determine tablename for {model}")

    return result


def get_table_name(model: type[T]) -> str:
    """Get the table name for a SQLAlchemy model.

    Raises:
        ValueError: If the table name cannot be determined.
    """
    return _get_table_name(model)


def get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Get the (first) primary key column for a SQLAlchemy model."""
    return _get_primary_key(model)


def _walk_froms(query: sa.Select[Any]) -> list[sa.FromClause]:
    """Flatten the FROM tree of *query* into its leaf selectables."""
    out: list[sa.FromClause] = []
    for root in query.get_final_froms():
        stack: list[sa.FromClause] = [root]
        while stack:
            node = stack.pop()
            if isinstance(node, sa.Join):
                stack.extend([node.right, node.left])
                continue

            out.append(node)

    return out


def get_table_names(query: sa.Select[Any]) -> Sequence[str]:
    """Extract all table names from a select statement.

    Traverses the FROM clause, including joins. For an alias both the alias
    name and the name of the aliased table are reported.
    """
    seen: set[str] = set()
    out: list[str] = []

    def add(name: str | None) -> None:
        if name and name not in seen:
            seen.add(name)
            out.append(name)

    for node in _walk_froms(query):
        add(getattr(node, "name", None))
        if (element := getattr(node, "element", None)) is not None:
            add(getattr(element, "name", None))

    return out


def add_join_conditions(
    *criteria: sa.ColumnExpressionArgument[bool],
) -> Callable[[JoinClause], JoinClause]:
    """Create a join callback that ANDs *criteria* into the ON clause.

    Criteria written against the model are adapted onto the alias when the
    joined table ends up aliased.

    Example:
        >>> query = sqla_join(
        ...     model=User,
        ...     joins=("posts",),
        ...     callbacks={"posts": add_join_conditions(Post.published.is_(True))},
        ... )
    """

    def _add(join: JoinClause) -> JoinClause:
        for criterion in criteria:
            join.where(criterion)

        return join

    return _add


def resolve_col(query: sa.Select[Any], ref: str) -> sa.ColumnElement[Any]:
    """Resolve ``'alias.column'`` to a bound column of *query*.

    Aliased joins (``categories_children``, ``users_author``) cannot be
    referenced through the model class; use this instead::

        col = resolve_col(query, "categories_children.name")
        query = query.where(col == "child_1")

    Raises ``ValueError`` if the table/alias or the column is not found.
    """
    name, sep, col_name = ref.partition(".")
    if not sep:
        raise ValueError(f"Expected 'alias.column' format, got {ref!r}")

    for node in _walk_froms(query):
        if getattr(node, "name", None) == name:
            try:
                return node.c[col_name]
            except KeyError:
                raise ValueError(
                    f"Column {col_name!r} not found in {name!r}. "
                    f"Available: {[c.key for c in node.c]}"
                ) from None

    raise ValueError(f"Alias {name!r} not found in query. Available: {get_table_names(query)}")


def sqla_aliases(query: sa.Select[Any]) -> dict[str, Alias]:
    """Return ``{alias_name: alias}`` for every aliased table joined into *query*."""
    return {
        node.name: node
        for node in _walk_froms(query)
        if isinstance(node, Alias) and node.name
    }
