"""Key resolution for relation declarations.

A relation may name its keys explicitly or rely on conventions:

* the local key defaults to the declaring model's primary key;
* a foreign key defaults to ``<snake_case(model name)>_<primary key>`` of the
  model it points at (``User`` with primary key ``id`` -> ``user_id``);
* a pivot table defaults to both model names, snake-cased, sorted and joined
  by ``_`` (``User`` + ``Role`` -> ``role_user``).

Every resolved key is reported twice: the application-facing field key and
the storage column (``adapter_key``), which differ when a field is declared
with ``column(name=...)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .exceptions import MissingForeignKeyError, MissingLocalKeyError
from .tools import snake_case


if TYPE_CHECKING:
    from .model import BaseModel


@dataclass(slots=True, frozen=True)
class ResolvedKey:
    key: str
    adapter_key: str


@dataclass(slots=True, frozen=True)
class RelationDefinition:
    """Resolved keys of a relation, produced once by ``Relation.boot()``."""

    relation_name: str
    related_model: type[BaseModel]
    local_key: str
    local_adapter_key: str
    foreign_key: str
    foreign_adapter_key: str
    pivot_table: str | None = None
    pivot_local_key: str | None = None
    pivot_foreign_key: str | None = None


@dataclass(slots=True, frozen=True)
class ThroughRelationDefinition(RelationDefinition):
    """Keys of a has-many-through relation.

    ``local_key``/``foreign_key`` are the parent key and the through-table
    column referencing it; ``via_key`` is the through-table's own key and
    ``via_foreign_key`` the related-table column referencing it.
    """

    through_model: type[BaseModel] | None = None
    via_key: str = ""
    via_adapter_key: str = ""
    via_foreign_key: str = ""
    via_foreign_adapter_key: str = ""


def foreign_key_for(model: type[BaseModel]) -> str:
    """Conventional name of a column referencing *model*'s primary key."""
    return f"{snake_case(model.__name__)}_{model.__primary_key__}"


def pivot_table_for(model: type[BaseModel], related: type[BaseModel]) -> str:
    """Conventional pivot table name for a many-to-many between two models."""
    return "_".join(sorted((snake_case(model.__name__), snake_case(related.__name__))))


def _resolve(
    model: type[BaseModel],
    key: str,
    relation: str,
    error: type[MissingLocalKeyError] | type[MissingForeignKeyError],
) -> ResolvedKey:
    field: Any = model.__fields__.get(key)
    if field is None:
        raise error(model.__name__, key, relation)

    return ResolvedKey(key=key, adapter_key=field.adapter_key)


def resolve_local_key(
    model: type[BaseModel],
    key: str | None,
    relation: str,
) -> ResolvedKey:
    """Resolve a key that must exist on the declaring model.

    Args:
        model: Declaring model class.
        key: Explicit key, or ``None`` for the model's primary key.
        relation: ``"Model.relation"`` label used in error messages.

    Raises:
        MissingLocalKeyError: If the key is not a declared field of *model*.
    """
    return _resolve(model, key or model.__primary_key__, relation, MissingLocalKeyError)


def resolve_foreign_key(
    model: type[BaseModel],
    key: str | None,
    relation: str,
    *,
    convention_model: type[BaseModel],
) -> ResolvedKey:
    """Resolve a key that must exist on the related (or through) model.

    Args:
        model: Model the key lives on.
        key: Explicit key, or ``None`` for ``foreign_key_for(convention_model)``.
        relation: ``"Model.relation"`` label used in error messages.
        convention_model: Model the conventional key is derived from.

    Raises:
        MissingForeignKeyError: If the key is not a declared field of *model*.
    """
    return _resolve(
        model, key or foreign_key_for(convention_model), relation, MissingForeignKeyError
    )
