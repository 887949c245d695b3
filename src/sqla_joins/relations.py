from __future__ import annotations

import warnings
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Final, Literal

import sqlalchemy as sa
from sqlalchemy import orm

from .clauses import JoinClause, get_operator
from .softdeletes import deleted_at_criteria, uses_soft_deletes
from .tools import get_primary_key, get_table_name


RelationKind = Literal[
    "belongs_to",
    "has_one",
    "has_many",
    "belongs_to_many",
    "morph_one",
    "morph_many",
    "has_many_through",
]
JoinType = Literal["inner", "left", "full"]
JoinCallback = Callable[[JoinClause], Any]
JoinCallbackArg = JoinCallback | Mapping[str, JoinCallback] | None

JOIN_TYPES: Final[frozenset[str]] = frozenset({"inner", "left", "full"})
MORPH_INFO_KEY: Final[str] = "morph"
THROUGH_INFO_KEY: Final[str] = "through"


@dataclass(slots=True, frozen=True)
class MorphMeta:
    """Columns of a polymorphic (morph) relationship on the related table.

    ``attachable_id`` holds the parent key and ``attachable_type`` the
    ``morph_class`` identifying which parent model a row belongs to.
    """

    name: str
    morph_class: str
    id_column: str
    type_column: str
    local_key: str = "id"


@dataclass(slots=True, frozen=True)
class ThroughMeta:
    """Keys of a has-many-through relationship (``Country -> User -> Post``).

    ``first_key`` is the column of the through table pointing at the far
    parent, ``second_key`` the column of the related table pointing at the
    through table.
    """

    through: str
    first_key: str
    second_key: str
    local_key: str = "id"
    second_local_key: str = "id"


def check_join_type(join_type: str) -> JoinType:
    """Validate *join_type*.

    Raises:
        ValueError: For anything but ``"inner"``, ``"left"`` or ``"full"``.
    """
    if join_type == "right":
        raise ValueError("RIGHT JOIN is not supported by SQLAlchemy; swap the sides and use 'left'")

    if join_type not in JOIN_TYPES:
        raise ValueError(f"Unknown join_type: {join_type!r}. Expected one of {sorted(JOIN_TYPES)}")

    return join_type  # type: ignore[return-value]


def _as_property(
    relationship: Any,
) -> orm.RelationshipProperty[orm.DeclarativeBase]:
    if isinstance(relationship, orm.RelationshipProperty):
        return relationship

    prop = getattr(relationship, "property", None)
    if not isinstance(prop, orm.RelationshipProperty):
        raise TypeError(f"{relationship!r} is not a relationship")

    return prop


def relation_kind(relationship: Any) -> RelationKind:
    """Classify a relationship into one of the supported join kinds.

    Morph and through metadata stored in ``relationship.info`` by
    :func:`morph_many`, :func:`morph_one` and :func:`has_many_through` take
    precedence over the shape of the relationship.
    """
    prop = _as_property(relationship)

    if MORPH_INFO_KEY in prop.info:
        return "morph_many" if prop.uselist else "morph_one"

    if prop.secondary is not None:
        related_table = prop.mapper.local_table
        if THROUGH_INFO_KEY in prop.info or any(
            related_table.c.contains_column(dest) for _, dest in prop.secondary_synchronize_pairs
        ):
            return "has_many_through"

        return "belongs_to_many"

    if prop.direction is orm.MANYTOONE:
        return "belongs_to"

    return "has_many" if prop.uselist else "has_one"


def _column(selectable: sa.FromClause, column: sa.ColumnElement[Any]) -> sa.ColumnElement[Any]:
    """Return the column of *selectable* standing for *column* (table or alias)."""
    found = selectable.corresponding_column(column)
    if found is None:
        raise ValueError(f"{column} has no counterpart in {selectable.description!r}")

    return found


def _named_column(table: sa.FromClause, name: str) -> sa.ColumnElement[Any]:
    for column in table.c:
        if column.name == name:
            return column

    raise ValueError(
        f"Column {name!r} not found in {table.description!r}. "
        f"Available: {[c.name for c in table.c]}"
    )


def _join(
    query: sa.Select[Any],
    target: sa.FromClause,
    join: JoinClause,
    join_type: JoinType,
) -> sa.Select[Any]:
    return query.join(
        target,
        join.onclause,
        isouter=join_type == "left",
        full=join_type == "full",
    )


class RelationshipJoin:
    """JOIN construction for one declared relationship.

    Reads the relationship's metadata (foreign key, owner/local key, pivot
    table, morph columns, through table) and adds the matching JOIN clauses
    to a ``sa.Select``. The join kind is chosen by :func:`relation_kind`.

    Example::

        query = RelationshipJoin(User.posts).perform_join(sa.select(User))
        # SELECT users.* FROM users LEFT OUTER JOIN posts ON posts.author_id = users.id
    """

    __slots__ = ("kind", "relationship")

    def __init__(self, relationship: Any) -> None:
        self.relationship = _as_property(relationship)
        self.kind: RelationKind = relation_kind(self.relationship)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.relationship} ({self.kind})>"

    @property
    def parent(self) -> type[orm.DeclarativeBase]:
        """The model the relationship is declared on."""
        return self.relationship.parent.class_

    @property
    def related(self) -> type[orm.DeclarativeBase]:
        """The model the relationship points at."""
        return self.relationship.mapper.class_

    @property
    def parent_table(self) -> sa.FromClause:
        return self.relationship.parent.local_table

    @property
    def related_table(self) -> sa.FromClause:
        return self.relationship.mapper.local_table

    @property
    def secondary_table(self) -> sa.FromClause | None:
        """The pivot table (belongs-to-many) or through table (has-many-through)."""
        return self.relationship.secondary

    @property
    def alias_name(self) -> str:
        """Name used when the related table has to be aliased (``categories_children``)."""
        return f"{get_table_name(self.related)}_{self.relationship.key}"

    @property
    def through_parent(self) -> type[orm.DeclarativeBase] | None:
        """Mapped class of the through table of a has-many-through relationship."""
        secondary = self.secondary_table
        if self.kind != "has_many_through" or secondary is None:
            return None

        return next(
            (
                mapper.class_
                for mapper in self.relationship.parent.registry.mappers
                if mapper.local_table is secondary
            ),
            None,
        )

    @property
    def far_parent(self) -> type[orm.DeclarativeBase] | None:
        """The model a has-many-through relationship starts from."""
        return self.parent if self.kind == "has_many_through" else None

    @staticmethod
    def uses_soft_deletes(model: Any) -> bool:
        """Whether *model* opts into soft deletes."""
        return uses_soft_deletes(model)

    def perform_join(
        self,
        query: sa.Select[Any],
        join_type: JoinType = "left",
        callback: JoinCallbackArg = None,
        *,
        source: sa.FromClause | None = None,
        target: sa.FromClause | None = None,
        secondary: sa.FromClause | None = None,
    ) -> sa.Select[Any]:
        """Add the JOIN clause(s) for this relationship to *query*.

        Args:
            query: Statement to extend.
            join_type: ``"inner"``, ``"left"`` or ``"full"``.
            callback: Refinement of the ON clause. A callable receives the
                :class:`JoinClause` of the related table. A mapping is keyed
                by table name and refines the join of each named table, which
                is how the pivot/through join of two-step kinds is reached.
            source: Selectable standing for the parent table (e.g. an alias
                joined by a previous hop). Defaults to the parent table.
            target: Selectable standing for the related table.
            secondary: Selectable standing for the pivot/through table.

        Returns:
            The extended statement.
        """
        join_type = check_join_type(join_type)
        source = source if source is not None else self.parent_table
        if target is None:
            # a table cannot be joined to itself without an alias
            target = (
                self.related_table.alias(self.alias_name)
                if self.related_table is source
                else self.related_table
            )

        if self.kind == "belongs_to_many":
            return self._join_belongs_to_many(query, join_type, callback, source, target, secondary)

        if self.kind in ("morph_one", "morph_many"):
            return self._join_morph(query, join_type, callback, source, target)

        if self.kind in ("has_one", "has_many"):
            return self._join_has_many(query, join_type, callback, source, target)

        if self.kind == "has_many_through":
            return self._join_has_many_through(
                query, join_type, callback, source, target, secondary
            )

        return self._join_belongs_to(query, join_type, callback, source, target)

    def _join_belongs_to(
        self,
        query: sa.Select[Any],
        join_type: JoinType,
        callback: JoinCallbackArg,
        source: sa.FromClause,
        target: sa.FromClause,
    ) -> sa.Select[Any]:
        """``parent.<foreign key> = related.<owner key>``."""
        join = JoinClause(target, self.related_table)
        for foreign_key, owner_key in self.relationship.local_remote_pairs:
            join.key(_column(source, foreign_key) == _column(target, owner_key))

        self._soft_delete(join, self.related, target)
        self._refine(join, callback, final=True)
        self._warn_unused(callback, target)

        return _join(query, target, join, join_type)

    def _join_has_many(
        self,
        query: sa.Select[Any],
        join_type: JoinType,
        callback: JoinCallbackArg,
        source: sa.FromClause,
        target: sa.FromClause,
    ) -> sa.Select[Any]:
        """``related.<foreign key> = parent.<local key>``."""
        join = JoinClause(target, self.related_table)
        for local_key, foreign_key in self.relationship.local_remote_pairs:
            join.key(_column(target, foreign_key) == _column(source, local_key))

        self._soft_delete(join, self.related, target)
        self._refine(join, callback, final=True)
        self._warn_unused(callback, target)

        return _join(query, target, join, join_type)

    def _join_belongs_to_many(
        self,
        query: sa.Select[Any],
        join_type: JoinType,
        callback: JoinCallbackArg,
        source: sa.FromClause,
        target: sa.FromClause,
        secondary: sa.FromClause | None,
    ) -> sa.Select[Any]:
        """Pivot join on the parent key, then related join on the related pivot key."""
        pivot_table = self.secondary_table
        assert pivot_table is not None
        pivot = secondary if secondary is not None else pivot_table

        pivot_join = JoinClause(pivot, pivot_table)
        for parent_key, foreign_pivot_key in self.relationship.synchronize_pairs:
            pivot_join.key(_column(pivot, foreign_pivot_key) == _column(source, parent_key))

        self._refine(pivot_join, callback, final=False)
        query = _join(query, pivot, pivot_join, join_type)

        join = JoinClause(target, self.related_table)
        for related_key, related_pivot_key in self.relationship.secondary_synchronize_pairs:
            join.key(_column(target, related_key) == _column(pivot, related_pivot_key))

        self._soft_delete(join, self.related, target)
        self._refine(join, callback, final=True)
        self._warn_unused(callback, pivot, target)

        return _join(query, target, join, join_type)

    def _join_morph(
        self,
        query: sa.Select[Any],
        join_type: JoinType,
        callback: JoinCallbackArg,
        source: sa.FromClause,
        target: sa.FromClause,
    ) -> sa.Select[Any]:
        """``related.<name>_id = parent.<local key> AND related.<name>_type = <morph class>``."""
        meta: MorphMeta = self.relationship.info[MORPH_INFO_KEY]
        related_table = self.related_table

        join = JoinClause(target, related_table)
        join.key(
            _column(target, _named_column(related_table, meta.id_column))
            == _column(source, _named_column(self.parent_table, meta.local_key))
        )
        join.key(
            _column(target, _named_column(related_table, meta.type_column)) == meta.morph_class
        )

        self._soft_delete(join, self.related, target)
        self._refine(join, callback, final=True)
        self._warn_unused(callback, target)

        return _join(query, target, join, join_type)

    def _join_has_many_through(
        self,
        query: sa.Select[Any],
        join_type: JoinType,
        callback: JoinCallbackArg,
        source: sa.FromClause,
        target: sa.FromClause,
        secondary: sa.FromClause | None,
    ) -> sa.Select[Any]:
        """Through join on ``first key = local key``, then related join on ``second key``."""
        through_table = self.secondary_table
        assert through_table is not None
        through = secondary if secondary is not None else through_table

        through_join = JoinClause(through, through_table)
        for local_key, first_key in self.relationship.synchronize_pairs:
            through_join.key(_column(through, first_key) == _column(source, local_key))

        if (through_parent := self.through_parent) is not None:
            self._soft_delete(through_join, through_parent, through)

        self._refine(through_join, callback, final=False)
        query = _join(query, through, through_join, join_type)

        join = JoinClause(target, self.related_table)
        for second_local_key, second_key in self.relationship.secondary_synchronize_pairs:
            join.key(_column(target, second_key) == _column(through, second_local_key))

        self._soft_delete(join, self.related, target)
        self._refine(join, callback, final=True)
        self._warn_unused(callback, through, target)

        return _join(query, target, join, join_type)

    def perform_having(
        self,
        query: sa.Select[Any],
        operator: str,
        count: int,
        *,
        target: sa.FromClause | None = None,
        group_by: tuple[sa.ColumnElement[Any], ...] | None = None,
    ) -> sa.Select[Any]:
        """Select ``count(<related pk>) AS <related table>_count`` and filter on it.

        The statement is grouped by *group_by*, defaulting to the parent's
        primary key, and gets ``HAVING count(...) <operator> <count>``.
        Call after :meth:`perform_join`.
        """
        compare = get_operator(operator)
        target = target if target is not None else self.related_table
        counted = sa.func.count(_column(target, get_primary_key(self.related)))
        if group_by is None:
            group_by = tuple(self.parent_table.primary_key)

        return (
            query.add_columns(counted.label(f"{get_table_name(self.related)}_count"))
            .group_by(*group_by)
            .having(compare(counted, int(count)))
        )

    def _soft_delete(
        self,
        join: JoinClause,
        model: type[orm.DeclarativeBase],
        selectable: sa.FromClause,
    ) -> None:
        if self.uses_soft_deletes(model):
            join.soft_delete(deleted_at_criteria(model, selectable))

    @staticmethod
    def _refine(join: JoinClause, callback: JoinCallbackArg, *, final: bool) -> None:
        if callback is None:
            return

        if isinstance(callback, Mapping):
            refine = callback.get(join.table.description) or callback.get(join.name)
            if refine is not None:
                refine(join)
        elif final:
            callback(join)

    @staticmethod
    def _warn_unused(callback: JoinCallbackArg, *joined: sa.FromClause) -> None:
        if not isinstance(callback, Mapping):
            return

        names = set()
        for selectable in joined:
            names.add(selectable.description)
            if (element := getattr(selectable, "element", None)) is not None:
                names.add(element.description)

        if unused := sorted(set(callback) - names):
            warnings.warn(
                f"Join callbacks for {unused} match no joined table (joined: {sorted(names)})",
                stacklevel=3,
            )


def morph_many(
    argument: str,
    name: str,
    *,
    parent: str,
    morph_class: str | None = None,
    local_key: str = "id",
    **kw: Any,
) -> Any:
    """Declare a polymorphic one-to-many relationship.

    The related model stores the parent key in ``<name>_id`` and the parent
    type in ``<name>_type``::

        class Post(Base):
            attachments: orm.Mapped[list[Attachment]] = morph_many(
                "Attachment", "attachable", parent="Post", morph_class="post"
            )

    ``morph_class`` defaults to the parent class name. Extra keyword
    arguments go to ``orm.relationship``; ``viewonly`` defaults to ``True``.
    """
    return _morph(argument, name, parent, morph_class, local_key, uselist=True, **kw)


def morph_one(
    argument: str,
    name: str,
    *,
    parent: str,
    morph_class: str | None = None,
    local_key: str = "id",
    **kw: Any,
) -> Any:
    """Declare a polymorphic one-to-one relationship (see :func:`morph_many`)."""
    return _morph(argument, name, parent, morph_class, local_key, uselist=False, **kw)


def _morph(
    argument: str,
    name: str,
    parent: str,
    morph_class: str | None,
    local_key: str,
    *,
    uselist: bool,
    **kw: Any,
) -> Any:
    meta = MorphMeta(
        name=name,
        morph_class=morph_class or parent,
        id_column=f"{name}_id",
        type_column=f"{name}_type",
        local_key=local_key,
    )
    primaryjoin = (
        f"and_({parent}.{local_key} == foreign({argument}.{meta.id_column}), "
        f"{argument}.{meta.type_column} == {meta.morph_class!r})"
    )
    kw.setdefault("viewonly", True)
    info = {**kw.pop("info", {}), MORPH_INFO_KEY: meta}

    return orm.relationship(
        argument, primaryjoin=primaryjoin, uselist=uselist, info=info, **kw
    )


def has_many_through(
    argument: str,
    through: str,
    *,
    through_table: str,
    parent: str,
    first_key: str,
    second_key: str,
    local_key: str = "id",
    second_local_key: str = "id",
    **kw: Any,
) -> Any:
    """Declare a has-many-through relationship.

    ``Country.posts`` through ``User``: ``users.country_id`` is the
    *first_key* and ``posts.author_id`` the *second_key*::

        class Country(Base):
            posts: orm.Mapped[list[Post]] = has_many_through(
                "Post",
                "User",
                through_table="users",
                parent="Country",
                first_key="country_id",
                second_key="author_id",
            )

    The relationship is always ``viewonly``.
    """
    meta = ThroughMeta(
        through=through,
        first_key=first_key,
        second_key=second_key,
        local_key=local_key,
        second_local_key=second_local_key,
    )
    info = {**kw.pop("info", {}), THROUGH_INFO_KEY: meta}

    return orm.relationship(
        argument,
        secondary=through_table,
        primaryjoin=f"{parent}.{local_key} == foreign({through}.{first_key})",
        secondaryjoin=f"{through}.{second_local_key} == foreign({argument}.{second_key})",
        viewonly=True,
        info=info,
        **kw,
    )
