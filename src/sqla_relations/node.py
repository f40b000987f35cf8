"""Preload tree nodes: one node per relation, merged by name among siblings."""

from __future__ import annotations

import warnings
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .core import RelationQueryBuilder
    from .relations import Relation

ScopeCallback = Callable[["RelationQueryBuilder[Any]"], object]


class PreloadNode:
    """One relation in a preload tree.

    Nodes are keyed by relation name among their siblings, so registering
    ``"posts"`` and then ``"posts.comments"`` yields a single ``posts`` node
    with a single ``comments`` child. The root node is nameless and only
    holds the top-level relations.
    """

    __slots__ = ("_children", "relation", "relation_name", "scope")

    def __init__(
        self,
        relation_name: str = "",
        relation: Relation[Any] | None = None,
        scope: ScopeCallback | None = None,
    ) -> None:
        self.relation_name = relation_name
        self.relation = relation
        self.scope = scope
        self._children: dict[str, PreloadNode] = {}

    @property
    def children(self) -> tuple[PreloadNode, ...]:
        """Child nodes in registration order."""
        return tuple(self._children.values())

    def child(self, relation_name: str) -> PreloadNode | None:
        return self._children.get(relation_name)

    def insert(
        self,
        relations: Sequence[Relation[Any]],
        scope: ScopeCallback | None = None,
    ) -> PreloadNode:
        """Merge a resolved relation path below this node and return its leaf.

        Existing nodes along the path are reused. A *scope* applies to the
        leaf only and replaces a previously registered one.
        """
        node = self
        for relation in relations:
            existing = node._children.get(relation.name)
            if existing is None:
                existing = node._children[relation.name] = PreloadNode(relation.name, relation)
            node = existing

        if scope is not None:
            if node.scope is not None and node.scope is not scope:
                warnings.warn(
                    f"Preload scope for {node.relation_name!r} registered twice. "
                    "Using the latest one.",
                    stacklevel=3,
                )
            node.scope = scope

        return node

    def __repr__(self) -> str:
        return f"PreloadNode({self.relation_name!r}, children={list(self._children)!r})"
