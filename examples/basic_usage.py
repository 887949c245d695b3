"""Basic sqla-joins usage examples.

Demonstrates initialization, relationship joins, dotted paths,
join callbacks, soft deletes and counting with HAVING.

NOTE: This file is illustrative; it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from sqla_joins import (
    add_join_conditions,
    does_not_have_using_joins,
    get_node,
    has_using_joins,
    init_node,
    join_relationship,
    left_join_relationship,
    sqla_join,
    unique_scalars,
)

from .models import Base, Country, Image, Post, Role, User


# ── 1. Initialize once at startup ────────────────────────────────────

engine = create_async_engine("sqlite+aiosqlite:///:memory:")


async def setup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Call once; builds a singleton graph of all relationships
    init_node(get_node(Base))


# ── 2. Simple joins ──────────────────────────────────────────────────


async def get_authors(session: AsyncSession) -> list[User]:
    # deleted posts are excluded in the ON clause
    result = await session.execute(join_relationship(User, "posts"))
    return list(unique_scalars(result))


async def get_titles_per_user(session: AsyncSession) -> list[tuple[str, str | None]]:
    query = (
        left_join_relationship(User, "posts", query=sa.select(User.name))
        .add_columns(Post.title)
    )
    result = await session.execute(query)
    return [tuple(row) for row in result.all()]


# ── 3. Dotted paths and several joins at once ───────────────────────


async def get_users_with_post_images(session: AsyncSession) -> list[User]:
    query = sqla_join(model=User, joins=("posts.images", "roles"), join_type="inner")
    return list(unique_scalars(await session.execute(query)))


# ── 4. Callbacks ─────────────────────────────────────────────────────


async def get_senior_staff(session: AsyncSession) -> list[User]:
    query = sqla_join(
        model=User,
        joins=("roles",),
        join_type="inner",
        callbacks={
            "roles": {
                # the pivot join
                "user_roles": lambda join: join.where("active", True),
                # the related join
                "roles": add_join_conditions(Role.level > 3),  # noqa: PLR2004
            },
        },
    )
    return list(unique_scalars(await session.execute(query)))


async def get_posts_with_png_images(session: AsyncSession) -> list[tuple[Post, str]]:
    # images.imageable_id = posts.id AND images.imageable_type = 'post' AND ...
    query = join_relationship(
        Post, "images", lambda join: join.where("url", "like", "%.png")
    ).add_columns(Image.url)
    result = await session.execute(query)
    return [(post, url) for post, url in result.all()]


# ── 5. Soft deletes ─────────────────────────────────────────────────


async def get_posts_including_deleted(session: AsyncSession) -> list[User]:
    query = join_relationship(User, "posts", lambda join: join.with_trashed())
    return list(unique_scalars(await session.execute(query)))


async def get_countries_with_posts(session: AsyncSession) -> list[Country]:
    # Country -> users -> posts; both joins skip soft-deleted rows
    query = join_relationship(Country, "posts")
    return list(unique_scalars(await session.execute(query)))


# ── 6. Counting with HAVING ──────────────────────────────────────────


async def get_prolific_authors(session: AsyncSession) -> list[tuple[User, int]]:
    query = has_using_joins(User, "posts", ">=", 10)  # noqa: PLR2004
    result = await session.execute(query)
    return [(user, count) for user, count in result.all()]


async def get_users_without_posts(session: AsyncSession) -> list[User]:
    return list((await session.scalars(does_not_have_using_joins(User, "posts"))).all())
