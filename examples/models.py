"""Minimal models for sqla-joins examples."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import orm

from sqla_joins import SoftDeletes, has_many_through, morph_many


class Base(orm.DeclarativeBase):
    pass


user_roles = sa.Table(
    "user_roles",
    Base.metadata,
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), primary_key=True),
    sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), primary_key=True),
    sa.Column("active", sa.Boolean, nullable=False, default=True),
)


class Country(Base):
    __tablename__ = "countries"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))

    posts: orm.Mapped[list[Post]] = has_many_through(
        "Post",
        "User",
        through_table="users",
        parent="Country",
        first_key="country_id",
        second_key="author_id",
        lazy="noload",
    )


class User(SoftDeletes, Base):
    __tablename__ = "users"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    country_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("countries.id"))

    posts: orm.Mapped[list[Post]] = orm.relationship(back_populates="author", lazy="noload")
    roles: orm.Mapped[list[Role]] = orm.relationship(secondary=user_roles, lazy="noload")


class Post(SoftDeletes, Base):
    __tablename__ = "posts"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.String(200))
    published: orm.Mapped[bool] = orm.mapped_column(default=False)
    author_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("users.id"))

    author: orm.Mapped[User] = orm.relationship(back_populates="posts", lazy="noload")
    images: orm.Mapped[list[Image]] = morph_many(
        "Image", "imageable", parent="Post", morph_class="post", lazy="noload"
    )


class Role(Base):
    __tablename__ = "roles"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(50))
    level: orm.Mapped[int] = orm.mapped_column(default=0)


class Image(Base):
    __tablename__ = "images"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    url: orm.Mapped[str] = orm.mapped_column(sa.String(500))
    imageable_type: orm.Mapped[str] = orm.mapped_column(sa.String(50))
    imageable_id: orm.Mapped[int] = orm.mapped_column()


class Category(Base):
    __tablename__ = "categories"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    parent_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("categories.id"))

    parent: orm.Mapped[Category | None] = orm.relationship(
        back_populates="children", remote_side=[id], lazy="noload"
    )
    children: orm.Mapped[list[Category]] = orm.relationship(
        back_populates="parent", lazy="noload"
    )
