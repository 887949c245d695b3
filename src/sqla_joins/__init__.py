"""Relationship-driven JOINs for SQLAlchemy.

sqla_joins adds JOIN clauses to ``sa.Select`` statements straight from the
relationships declared on your models: belongs-to, has-one/has-many,
many-to-many (pivot tables), polymorphic (morph) and has-many-through
relationships. Soft-deleted rows are filtered in the ON clause, and every
join can be refined with a callback.

Initialize a ``Node`` singleton at startup with your declarative base, then
call ``sqla_join(model=..., joins=(...))``.
"""

from ._version import __version__, __version_tuple__
from .clauses import JoinClause
from .core import (
    JoinBuilder,
    does_not_have_using_joins,
    full_join_relationship,
    has_using_joins,
    join_relationship,
    left_join_relationship,
    sqla_cache_clear,
    sqla_cache_info,
    sqla_join,
)
from .datastructures import frozendict
from .node import Node, get_node, init_node
from .relations import (
    MorphMeta,
    RelationshipJoin,
    ThroughMeta,
    has_many_through,
    morph_many,
    morph_one,
    relation_kind,
)
from .softdeletes import SoftDeletes, uses_soft_deletes
from .tools import (
    add_join_conditions,
    get_primary_key,
    get_table_name,
    get_table_names,
    resolve_col,
    sqla_aliases,
    unique_scalars,
)


__all__ = (
    "JoinBuilder",
    "JoinClause",
    "MorphMeta",
    "Node",
    "RelationshipJoin",
    "SoftDeletes",
    "ThroughMeta",
    "__version__",
    "__version_tuple__",
    "add_join_conditions",
    "does_not_have_using_joins",
    "frozendict",
    "full_join_relationship",
    "get_node",
    "get_primary_key",
    "get_table_name",
    "get_table_names",
    "has_many_through",
    "has_using_joins",
    "init_node",
    "join_relationship",
    "left_join_relationship",
    "morph_many",
    "morph_one",
    "relation_kind",
    "resolve_col",
    "sqla_aliases",
    "sqla_cache_clear",
    "sqla_cache_info",
    "sqla_join",
    "unique_scalars",
    "uses_soft_deletes",
)
