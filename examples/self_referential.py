"""Self-referential relationship joins.

A table joined to itself is aliased as ``<table>_<relationship key>``;
use ``resolve_col`` to reference the aliased columns.
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from sqla_joins import join_relationship, left_join_relationship, resolve_col, sqla_join

from .models import Category


async def get_categories_with_children(session: AsyncSession) -> list[tuple[str, str | None]]:
    query = left_join_relationship(Category, "children", query=sa.select(Category.name))
    query = query.add_columns(resolve_col(query, "categories_children.name"))
    result = await session.execute(query)
    return [tuple(row) for row in result.all()]


async def get_parent_of(session: AsyncSession, name: str) -> list[Category]:
    query = join_relationship(Category, "children")
    query = query.where(resolve_col(query, "categories_children.name") == name)
    return list((await session.scalars(query)).all())


async def get_grandparents(session: AsyncSession) -> list[Category]:
    # the second hop becomes categories_children_alias
    query = sqla_join(model=Category, joins=("children.children",), join_type="inner")
    result = await session.execute(query)
    return list(result.unique().scalars().all())
