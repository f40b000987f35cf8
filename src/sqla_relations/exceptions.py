"""Exception hierarchy for relation boot, query and preload failures.

Every error carries a stable ``code`` and renders as ``"<code>: <message>"``.
Boot-time errors describe a schema mismatch between the declaring model and
the related (or through) model; query-time errors are caused by the caller's
column selection. None of them are retried.
"""

from __future__ import annotations

from typing import ClassVar


class RelationError(Exception):
    """Base exception for every error raised by ``sqla_relations``."""

    code: ClassVar[str] = "E_RELATION"

    def __init__(self, message: str) -> None:
        super().__init__(f"{self.code}: {message}")
        self.message = message


class MissingKeyError(RelationError):
    """A key required by a relation is not a declared field."""

    def __init__(self, model: str, key: str, relation: str) -> None:
        super().__init__(f"{model}.{key} required by {relation} relation is missing")
        self.model = model
        self.key = key
        self.relation = relation


class MissingLocalKeyError(MissingKeyError):
    code = "E_MISSING_RELATED_LOCAL_KEY"


class MissingForeignKeyError(MissingKeyError):
    code = "E_MISSING_RELATED_FOREIGN_KEY"


class MissingSelectedKeyError(RelationError):
    """The eager query no longer selects the column its rows are grouped by."""

    code = "E_MISSING_SELECTED_KEY"

    def __init__(self, relation: str, column: str) -> None:
        super().__init__(
            f"Cannot group {relation} rows, column {column} was removed from the selection"
        )
        self.relation = relation
        self.column = column


class MissingLocalKeyValueError(RelationError):
    code = "E_MISSING_LOCAL_KEY_VALUE"

    def __init__(self, relation: str, model: str, key: str) -> None:
        super().__init__(f"Cannot preload {relation}, value of {model}.{key} is undefined")
        self.relation = relation
        self.model = model
        self.key = key


class RelationSaveUnsupportedError(RelationError):
    code = "E_RELATION_SAVE_UNSUPPORTED"

    def __init__(self, method: str, kind: str) -> None:
        super().__init__(f"Cannot call {method} method with {kind} relation")
        self.method = method
        self.kind = kind


class RelationNotFoundError(RelationError, ValueError):
    code = "E_UNDEFINED_RELATIONSHIP"

    def __init__(self, relation: str, model: str) -> None:
        super().__init__(f"{relation} is not defined as a relationship on {model} model")
        self.relation = relation
        self.model = model
