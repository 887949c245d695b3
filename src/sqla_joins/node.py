from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import ClassVar, final

from sqlalchemy import orm

from .datastructures import frozendict


RelationshipGraph = Mapping[
    type[orm.DeclarativeBase], Sequence[orm.RelationshipProperty[orm.DeclarativeBase]]
]


@final
class Node:
    """Singleton holding the relationship graph of the mapped models.

    Every model class is mapped to the relationships declared on it. The
    join builder walks this graph to resolve relationship paths such as
    ``"posts.comments"`` or a bare relationship name reached over several hops.
    """

    __instance: ClassVar[Node | None] = None
    _node: RelationshipGraph

    def __new__(cls, node: RelationshipGraph | None = None) -> Node:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if node is not None:
                instance.set_node(node)

            cls.__instance = instance

        if not getattr(cls.__instance, "_node", None):
            raise RuntimeError("Node is not initialized or empty")

        return cls.__instance

    def get(
        self, model: type[orm.DeclarativeBase]
    ) -> Sequence[orm.RelationshipProperty[orm.DeclarativeBase]]:
        """Return the relationships declared on *model*, or ``()``."""
        return self.node.get(model, ())

    def __getitem__(
        self, model: type[orm.DeclarativeBase]
    ) -> Sequence[orm.RelationshipProperty[orm.DeclarativeBase]]:
        return self.node[model]

    @property
    def node(self) -> RelationshipGraph:
        """The underlying model-to-relationships mapping (read-only)."""
        return self._node

    def set_node(self, node: RelationshipGraph) -> None:
        """Replace the relationship graph.

        Args:
            node: Mapping from model classes to their relationship properties.
        """
        self._node = node

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._node = {}
        cls.__instance = None


def get_node(base: type[orm.DeclarativeBase]) -> RelationshipGraph:
    """Extract the relationship graph from a declarative base.

    Every mapper in ``base.registry`` contributes its class and the tuple of
    its relationship properties.

    Args:
        base: SQLAlchemy declarative base class.

    Returns:
        Frozen mapping of model classes to their relationship properties.

    Raises:
        AssertionError: If base is not a direct subclass of orm.DeclarativeBase.
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    return frozendict({
        mapper.class_: tuple(mapper.relationships.values()) for mapper in base.registry.mappers
    })


def init_node(node: RelationshipGraph) -> None:
    """Initialize the global :class:`Node` singleton.

    Call once during application startup, after all models are imported::

        from myapp.models import Base

        init_node(get_node(Base))
    """
    Node(node)
