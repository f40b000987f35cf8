"""Relation mapping and eager loading on top of SQLAlchemy Core.

Models declare ``has_one``, ``has_many``, ``many_to_many`` and
``has_many_through`` relations; sqla_relations builds the join/where SQL for
them and preloads dotted relation paths (``"posts.comments"``) with one
batched query per relation per nesting level. Initialize the ``Database``
singleton at startup with your named engines, then query through
``Model.query(...).preload(...)``.
"""

from ._version import __version__, __version_tuple__
from .core import SQL, QueryBuilder, RelationQueryBuilder
from .database import (
    DEFAULT_CONNECTION,
    Database,
    QueryClient,
    engines_from_urls,
    get_client,
    init_database,
)
from .datastructures import frozendict
from .exceptions import (
    MissingForeignKeyError,
    MissingKeyError,
    MissingLocalKeyError,
    MissingLocalKeyValueError,
    MissingSelectedKeyError,
    RelationError,
    RelationNotFoundError,
    RelationSaveUnsupportedError,
)
from .keys import RelationDefinition, ResolvedKey, ThroughRelationDefinition, foreign_key_for
from .model import BaseModel, Field, column
from .node import PreloadNode
from .preloader import Preloader, cache_clear, cache_info, resolve_relation_path
from .relations import (
    HasMany,
    HasManyThrough,
    HasOne,
    ManyToMany,
    Relation,
    has_many,
    has_many_through,
    has_one,
    many_to_many,
)
from .tools import group_rows, resolve_column, snake_case


__all__ = (
    "DEFAULT_CONNECTION",
    "SQL",
    "BaseModel",
    "Database",
    "Field",
    "HasMany",
    "HasManyThrough",
    "HasOne",
    "ManyToMany",
    "MissingForeignKeyError",
    "MissingKeyError",
    "MissingLocalKeyError",
    "MissingLocalKeyValueError",
    "MissingSelectedKeyError",
    "PreloadNode",
    "Preloader",
    "QueryBuilder",
    "QueryClient",
    "Relation",
    "RelationDefinition",
    "RelationError",
    "RelationNotFoundError",
    "RelationQueryBuilder",
    "RelationSaveUnsupportedError",
    "ResolvedKey",
    "ThroughRelationDefinition",
    "__version__",
    "__version_tuple__",
    "cache_clear",
    "cache_info",
    "column",
    "engines_from_urls",
    "foreign_key_for",
    "frozendict",
    "get_client",
    "group_rows",
    "has_many",
    "has_many_through",
    "has_one",
    "init_database",
    "many_to_many",
    "resolve_column",
    "resolve_relation_path",
    "snake_case",
)
