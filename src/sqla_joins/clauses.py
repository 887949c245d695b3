from __future__ import annotations

import operator as op
import sys
from collections.abc import Callable, Iterable
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy.sql.util import ClauseAdapter


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


_OPERATORS: Final[dict[str, Callable[[Any, Any], sa.ColumnElement[bool]]]] = {
    "=": op.eq,
    "==": op.eq,
    "!=": op.ne,
    "<>": op.ne,
    "<": op.lt,
    "<=": op.le,
    ">": op.gt,
    ">=": op.ge,
    "like": lambda col, value: col.like(value),
    "not like": lambda col, value: col.not_like(value),
    "ilike": lambda col, value: col.ilike(value),
    "in": lambda col, value: col.in_(value),
    "not in": lambda col, value: col.not_in(value),
    "is": lambda col, value: col.is_(value),
    "is not": lambda col, value: col.is_not(value),
}

_NO_VALUE: Final = object()


def get_operator(name: str) -> Callable[[Any, Any], sa.ColumnElement[bool]]:
    """Look up a comparison operator by its SQL spelling (``">="``, ``"not in"``).

    Raises:
        ValueError: If the operator is not supported.
    """
    try:
        return _OPERATORS[" ".join(name.lower().split())]
    except KeyError:
        raise ValueError(
            f"Unsupported operator: {name!r}. Supported: {sorted(_OPERATORS)}"
        ) from None


class JoinClause:
    """The ON clause of a single relationship join, handed to join callbacks.

    The key predicates (foreign key = owner/local key) are added by the
    relationship join itself; callbacks refine the clause further::

        def only_published(join: JoinClause) -> None:
            join.where("published", True).where_null("archived_at")

    Column arguments are either column keys of the joined table or column
    expressions. Expressions written against the model's table are adapted
    onto the alias when the joined table is aliased.
    """

    __slots__ = (
        "_adapter",
        "_criteria",
        "_keys",
        "_soft_delete",
        "_with_trashed",
        "table",
        "target",
    )

    def __init__(self, target: sa.FromClause, table: sa.FromClause | None = None) -> None:
        self.target = target
        self.table = table if table is not None else target
        self._adapter = ClauseAdapter(target) if target is not self.table else None
        self._keys: list[sa.ColumnElement[bool]] = []
        self._criteria: list[sa.ColumnElement[bool]] = []
        self._soft_delete: sa.ColumnElement[bool] | None = None
        self._with_trashed = False

    @property
    def c(self) -> sa.ColumnCollection[str, sa.ColumnElement[Any]]:
        """Columns of the joined table (or of its alias)."""
        return self.target.c

    @property
    def name(self) -> str:
        """Name of the joined table as it appears in the statement."""
        return getattr(self.target, "name", "")

    @property
    def onclause(self) -> sa.ColumnElement[bool]:
        """The complete ON clause: key predicates, refinements, soft-delete filter."""
        criteria = [*self._keys, *self._criteria]
        if self._soft_delete is not None and not self._with_trashed:
            criteria.append(self._soft_delete)

        if not criteria:
            return sa.true()

        return sa.and_(*criteria)

    @property
    def trashed(self) -> bool:
        """Whether soft-deleted rows are kept in this join."""
        return self._with_trashed

    def on(self, left: Any, operator: str, right: Any) -> Self:
        """Add ``left <operator> right`` comparing two columns."""
        self._criteria.append(get_operator(operator)(self._column(left), self._column(right)))

        return self

    def where(self, column: Any, operator: Any = _NO_VALUE, value: Any = _NO_VALUE) -> Self:
        """Add a predicate to the ON clause.

        Accepts ``where(expression)``, ``where(column, value)`` (equality) and
        ``where(column, operator, value)``.
        """
        self._criteria.append(self._predicate(column, operator, value))

        return self

    def or_where(self, column: Any, operator: Any = _NO_VALUE, value: Any = _NO_VALUE) -> Self:
        """OR a predicate with everything added so far by callbacks."""
        predicate = self._predicate(column, operator, value)
        if not self._criteria:
            self._criteria.append(predicate)
        else:
            self._criteria = [sa.or_(sa.and_(*self._criteria), predicate)]

        return self

    def where_null(self, column: Any) -> Self:
        self._criteria.append(self._column(column).is_(None))

        return self

    def where_not_null(self, column: Any) -> Self:
        self._criteria.append(self._column(column).is_not(None))

        return self

    def where_in(self, column: Any, values: Iterable[Any]) -> Self:
        self._criteria.append(self._column(column).in_(list(values)))

        return self

    def with_trashed(self) -> Self:
        """Keep soft-deleted rows of the joined table."""
        self._with_trashed = True

        return self

    def soft_delete(self, criterion: sa.ColumnElement[bool]) -> None:
        """Register the ``deleted_at IS NULL`` predicate of the joined model."""
        self._soft_delete = criterion

    def key(self, criterion: sa.ColumnElement[bool]) -> None:
        """Add a key predicate built from relationship metadata (not adapted)."""
        self._keys.append(criterion)

    def _predicate(self, column: Any, operator: Any, value: Any) -> sa.ColumnElement[bool]:
        if operator is _NO_VALUE:
            return self._adapt(column)

        if value is _NO_VALUE:
            operator, value = "=", operator

        if value is None and operator in ("=", "=="):
            operator = "is"
        elif value is None and operator in ("!=", "<>"):
            operator = "is not"

        return get_operator(operator)(self._column(column), value)

    def _column(self, column: Any) -> sa.ColumnElement[Any]:
        if isinstance(column, str):
            try:
                return self.target.c[column]
            except KeyError:
                raise ValueError(
                    f"Column {column!r} not found in {self.name!r}. "
                    f"Available: {[c.key for c in self.target.c]}"
                ) from None

        return self._adapt(column)

    def _adapt(self, expression: Any) -> Any:
        if (clause_element := getattr(expression, "__clause_element__", None)) is not None:
            expression = clause_element()

        return self._adapter.traverse(expression) if self._adapter else expression
