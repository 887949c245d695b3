from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar

import sqlalchemy as sa
from sqlalchemy import orm

from .tools import get_table_name


class SoftDeletes:
    """Declarative mixin for models whose rows are hidden instead of deleted.

    Adds a nullable ``deleted_at`` timestamp column. Every join built by
    :mod:`sqla_joins` onto a model using this mixin carries an additional
    ``deleted_at IS NULL`` predicate unless the join callback calls
    :meth:`~sqla_joins.clauses.JoinClause.with_trashed`.

    Override ``__deleted_at_column__`` to use another column name::

        class Post(SoftDeletes, Base):
            __tablename__ = "posts"
            __deleted_at_column__ = "removed_at"
    """

    __deleted_at_column__: ClassVar[str] = "deleted_at"

    @orm.declared_attr
    def deleted_at(cls) -> orm.Mapped[datetime | None]:  # noqa: N805
        return orm.mapped_column(
            cls.__deleted_at_column__,
            sa.DateTime(timezone=True),
            nullable=True,
            default=None,
        )


def uses_soft_deletes(model: Any) -> bool:
    """Return whether *model* (a class or instance) opts into soft deletes."""
    cls = model if isinstance(model, type) else type(model)

    return issubclass(cls, SoftDeletes)


def get_deleted_at_column(model: type[Any]) -> str:
    """Return the name of *model*'s deletion timestamp column.

    Raises:
        ValueError: If *model* does not use soft deletes.
    """
    if not uses_soft_deletes(model):
        raise ValueError(f"{model.__name__} does not use soft deletes")

    return model.__deleted_at_column__


def get_qualified_deleted_at_column(model: type[Any]) -> str:
    """Return ``"<table>.<deleted_at column>"`` for *model*."""
    return f"{get_table_name(model)}.{get_deleted_at_column(model)}"


def deleted_at_criteria(
    model: type[Any], selectable: sa.FromClause | None = None
) -> sa.ColumnElement[bool]:
    """Build ``<deleted_at> IS NULL`` for *model*, optionally on an alias of its table."""
    name = get_deleted_at_column(model)
    table = sa.inspect(model).local_table
    column = next(col for col in table.c if col.name == name)
    if selectable is not None:
        column = selectable.corresponding_column(column)

    return column.is_(None)
