"""Breadth-first eager loading of dotted relation paths.

``resolve_relation_path`` turns ``"posts.comments"`` into relation objects,
``Preloader`` merges such paths into a tree and runs it level by level.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping, Sequence
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from .database import get_client
from .datastructures import frozendict
from .exceptions import RelationNotFoundError
from .node import PreloadNode, ScopeCallback


if TYPE_CHECKING:
    from .database import QueryClient
    from .model import BaseModel
    from .relations import Relation

M = TypeVar("M", bound="BaseModel")

logger = logging.getLogger(__name__)

_Level = list[tuple[PreloadNode, tuple["BaseModel", ...]]]


@lru_cache(maxsize=1028)
def resolve_relation_path(model: type[BaseModel], dotted: str) -> tuple[Relation[Any], ...]:
    """Resolve a dot-notation path like ``'posts.comments'`` into relations.

    Each segment must be a relation declared on the model the previous
    segment points at.

    Raises:
        RelationNotFoundError: Naming the first unknown segment and the model
            it was looked up on.
    """
    result: list[Relation[Any]] = []
    current: type[BaseModel] = model
    for segment in dotted.split("."):
        relation = current.__relations__.get(segment)
        if relation is None:
            raise RelationNotFoundError(segment, current.__name__)
        result.append(relation)
        current = relation.related_model

    return tuple(result)


class Preloader(Generic[M]):
    """Eager loads a tree of relation paths over a batch of parent instances.

    Paths are merged into one ``PreloadNode`` tree, so each relation is queried
    once per nesting level no matter how many paths mention it or how many
    parents there are. Levels run in order: the instances attached at depth
    ``n`` are the parent batch of depth ``n + 1``.

    Example:
        >>> preloader = Preloader(User).preload("posts").preload("posts.comments")
        >>> await preloader.run(users)
    """

    __slots__ = ("_root", "model")

    def __init__(self, model: type[M]) -> None:
        self.model = model
        self._root = PreloadNode()

    @property
    def preloads(self) -> Mapping[str, PreloadNode]:
        """Top-level nodes keyed by relation name (read-only)."""
        return frozendict((node.relation_name, node) for node in self._root.children)

    def preload(self, path: str, scope: ScopeCallback | None = None) -> Self:
        """Register *path*; *scope* customizes the query of its last relation."""
        self._root.insert(resolve_relation_path(self.model, path), scope)
        return self

    async def run(
        self,
        parents: Sequence[BaseModel],
        client: QueryClient | None = None,
    ) -> None:
        """Execute the preload tree over *parents* and attach the results.

        Every local-key value of a level is validated before the level's first
        query. Results of a level are attached only once all of its queries
        succeeded, so a failure leaves that level's relations unset.

        Args:
            parents: Instances of ``self.model``.
            client: Connection to query on; defaults to the one named by the
                first parent's ``options``.
        """
        if not parents or not self._root.children:
            return

        if client is None:
            client = get_client(parents[0].options.get("connection"))

        depth = 1
        level: _Level = [(node, tuple(parents)) for node in self._root.children]
        while level:
            for node, batch in level:
                _relation(node).parent_values(batch)

            loaded = []
            for node, batch in level:
                relation = _relation(node)
                logger.debug(
                    "Preloading %s for %d parents (depth %d, connection %r)",
                    relation.label,
                    len(batch),
                    depth,
                    client.connection_name,
                )
                grouped = await relation.eager_load(batch, client, node.scope)
                loaded.append((node, batch, grouped))

            next_level: _Level = []
            for node, batch, grouped in loaded:
                related = tuple(_relation(node).attach(batch, grouped))
                if related:
                    next_level.extend((child, related) for child in node.children)

            level = next_level
            depth += 1


def _relation(node: PreloadNode) -> Relation[Any]:
    assert node.relation is not None, "root node has no relation"
    return node.relation


def cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .tools import _snake_case

    return {fn.__name__: fn.cache_info() for fn in (resolve_relation_path, _snake_case)}


def cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .tools import _snake_case

    for fn in (resolve_relation_path, _snake_case):
        fn.cache_clear()
