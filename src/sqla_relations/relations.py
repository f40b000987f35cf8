"""Relation descriptors: ``HasOne``, ``HasMany``, ``ManyToMany`` and ``HasManyThrough``.

Each relation resolves its keys on first use and builds both the lazy and
the eager query for its related model.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, ClassVar, Generic, NoReturn, TypeVar, overload

import sqlalchemy as sa

from .core import RelationQueryBuilder
from .database import get_client
from .exceptions import (
    MissingForeignKeyError,
    MissingLocalKeyValueError,
    RelationSaveUnsupportedError,
)
from .keys import (
    RelationDefinition,
    ThroughRelationDefinition,
    foreign_key_for,
    pivot_table_for,
    resolve_foreign_key,
    resolve_local_key,
)
from .tools import unique_values


if TYPE_CHECKING:
    from .database import QueryClient
    from .model import BaseModel
    from .node import ScopeCallback

M = TypeVar("M", bound="BaseModel")

logger = logging.getLogger(__name__)


class Relation(ABC, Generic[M]):
    """A relation declared on a model class.

    Relations are descriptors: declaring ``posts = has_many(lambda: Post)`` on
    ``User`` binds the relation to ``User`` under the name ``posts``, and
    ``user.posts`` reads the loaded value back (``AttributeError`` until it
    is preloaded or lazily loaded).

    Keys are resolved on the first ``boot()``, not at declaration time, because
    the related model may not exist yet when the owner's class body runs.
    """

    kind: ClassVar[str]
    many: ClassVar[bool] = True

    owner: type[BaseModel]
    name: str

    def __init__(
        self,
        related: type[M] | Callable[[], type[M]],
        *,
        local_key: str | None = None,
        foreign_key: str | None = None,
    ) -> None:
        self._related = related
        self._local_key = local_key
        self._foreign_key = foreign_key
        self._definition: RelationDefinition | None = None

    def __set_name__(self, owner: type[BaseModel], name: str) -> None:
        self.owner = owner
        self.name = name

    @overload
    def __get__(self, instance: None, owner: type[Any] | None = None) -> Relation[M]: ...

    @overload
    def __get__(self, instance: BaseModel, owner: type[Any] | None = None) -> Any: ...

    def __get__(self, instance: BaseModel | None, owner: type[Any] | None = None) -> Any:
        if instance is None:
            return self
        return instance.get_related(self.name)

    def __set__(self, instance: BaseModel, value: Any) -> None:
        instance.set_related(self.name, value)

    def __repr__(self) -> str:
        owner = getattr(self, "owner", None)
        return f"<{type(self).__name__} {owner.__name__ if owner else '?'}.{getattr(self, 'name', '?')}>"

    @property
    def label(self) -> str:
        """``"Owner.relation"``, as used in error messages."""
        return f"{self.owner.__name__}.{self.name}"

    @property
    def related_model(self) -> type[M]:
        related = self._related
        return related if isinstance(related, type) else related()

    @property
    def booted(self) -> bool:
        return self._definition is not None

    @property
    def definition(self) -> RelationDefinition:
        self.boot()
        assert self._definition is not None
        return self._definition

    @property
    def local_key(self) -> str:
        return self.definition.local_key

    @property
    def local_adapter_key(self) -> str:
        return self.definition.local_adapter_key

    @property
    def foreign_key(self) -> str:
        return self.definition.foreign_key

    @property
    def foreign_adapter_key(self) -> str:
        return self.definition.foreign_adapter_key

    def boot(self) -> None:
        """Resolve and cache the relation keys (idempotent).

        Raises:
            MissingLocalKeyError: The local key is not a field of the owner.
            MissingForeignKeyError: The foreign key is not a field of the
                related (or through) model.
        """
        if self._definition is not None:
            return

        self._definition = self._resolve_keys()
        logger.debug(
            "Booted %s %s: local_key=%s, foreign_key=%s",
            self.kind,
            self.label,
            self._definition.local_key,
            self._definition.foreign_key,
        )

    @abstractmethod
    def _resolve_keys(self) -> RelationDefinition: ...

    @abstractmethod
    def _constrain(self, query: RelationQueryBuilder[M], values: Sequence[Any]) -> None:
        """Add joins, the parent-key filter and the grouping column to *query*."""

    def _filter(
        self,
        query: RelationQueryBuilder[M],
        column: sa.ColumnElement[Any],
        values: Sequence[Any],
    ) -> None:
        if query.eager:
            query.where_in(column, values)
        elif values[0] is None:
            # a NULL key owns no rows; `column == None` would match the orphans
            query.where(sa.false())
        else:
            query.where(column == values[0])

    def _local_value(self, parent: BaseModel) -> Any:
        try:
            return getattr(parent, self.local_key)
        except AttributeError:
            raise MissingLocalKeyValueError(
                self.name, type(parent).__name__, self.local_key
            ) from None

    def parent_values(self, parents: Sequence[BaseModel]) -> list[Any]:
        """Distinct non-NULL local key values of *parents*, in parent order.

        Raises:
            MissingLocalKeyValueError: If a parent never loaded the local key,
                usually because it was left out of the selected columns.
        """
        return unique_values(self._local_value(parent) for parent in parents)

    def _query(
        self,
        parents: Sequence[BaseModel],
        client: QueryClient,
        values: Sequence[Any],
        *,
        eager: bool,
    ) -> RelationQueryBuilder[M]:
        self.boot()
        query = RelationQueryBuilder(self, client, parents, eager=eager)
        self._constrain(query, values)
        return query

    def get_query(self, parent: BaseModel, client: QueryClient) -> RelationQueryBuilder[M]:
        """Query for the rows related to *parent* alone."""
        return self._query((parent,), client, [self._local_value(parent)], eager=False)

    def get_eager_query(
        self,
        parents: Sequence[BaseModel],
        client: QueryClient,
    ) -> RelationQueryBuilder[M]:
        """Query for the rows related to any of *parents*, in one statement."""
        return self._query(parents, client, self.parent_values(parents), eager=True)

    async def eager_load(
        self,
        parents: Sequence[BaseModel],
        client: QueryClient,
        scope: ScopeCallback | None = None,
    ) -> dict[Any, list[M]]:
        """Fetch related rows for *parents*, grouped by parent key value."""
        values = self.parent_values(parents)
        if not values:
            return {}

        query = self._query(parents, client, values, eager=True)
        return await query.apply_scope(scope).fetch_grouped()

    def collect(self, related: list[M]) -> Any:
        """Shape the related instances of one parent into the attached value."""
        return related

    def attach(self, parents: Sequence[BaseModel], grouped: dict[Any, list[M]]) -> list[M]:
        """Set the relation on every parent and return the attached instances."""
        attached: list[M] = []
        for parent in parents:
            value = self.collect(list(grouped.get(self._local_value(parent), ())))
            parent.set_related(self.name, value)
            if self.many:
                attached.extend(value)
            elif value is not None:
                attached.append(value)

        return attached

    async def load(
        self,
        parent: BaseModel,
        client: QueryClient | None = None,
        scope: ScopeCallback | None = None,
    ) -> Any:
        """Lazily load the relation for *parent* and attach it."""
        client = client or get_client(parent.options.get("connection"))
        if self._local_value(parent) is None:
            value = self.collect([])
        else:
            query = self.get_query(parent, client).apply_scope(scope)
            value = self.collect(await query.fetch())

        parent.set_related(self.name, value)
        return value


class HasMany(Relation[M]):
    """``owner.local_key = related.foreign_key``, any number of related rows."""

    kind = "has_many"

    def _resolve_keys(self) -> RelationDefinition:
        related = self.related_model
        local = resolve_local_key(self.owner, self._local_key, self.label)
        foreign = resolve_foreign_key(
            related, self._foreign_key, self.label, convention_model=self.owner
        )

        return RelationDefinition(
            relation_name=self.name,
            related_model=related,
            local_key=local.key,
            local_adapter_key=local.adapter_key,
            foreign_key=foreign.key,
            foreign_adapter_key=foreign.adapter_key,
        )

    def _constrain(self, query: RelationQueryBuilder[M], values: Sequence[Any]) -> None:
        column = query.table.c[self.foreign_key]
        self._filter(query, column, values)
        query.grouping_column = column

    async def save(self, parent: BaseModel, related: M) -> M:
        """Point *related* at *parent* and persist it.

        An unsaved parent is saved first so its local key exists.
        """
        if not parent.persisted:
            await parent.save()

        setattr(related, self.foreign_key, self._local_value(parent))
        if not related.persisted:
            related.options = parent.options
        return await related.save()

    async def create(self, parent: BaseModel, **values: Any) -> M:
        return await self.save(parent, self.related_model(**values))


class HasOne(HasMany[M]):
    """Same keys and SQL as ``HasMany``; attaches the first row or ``None``."""

    kind = "has_one"
    many = False

    def collect(self, related: list[M]) -> M | None:
        return related[0] if related else None


class ManyToMany(Relation[M]):
    """Owner and related rows linked through a pivot table.

    The pivot has no model: it is the declared ``sa.Table`` of that name in
    the owner's metadata when there is one, a lightweight ``sa.table``
    otherwise. Keys:

    * ``local_key``: owner column, default owner primary key;
    * ``foreign_key`` (``related_key``): related column, default related
      primary key;
    * ``pivot_local_key``: pivot column referencing the owner, default
      ``foreign_key_for(owner)``;
    * ``pivot_foreign_key``: pivot column referencing the related model,
      default ``foreign_key_for(related)``.
    """

    kind = "many_to_many"

    def __init__(
        self,
        related: type[M] | Callable[[], type[M]],
        *,
        local_key: str | None = None,
        related_key: str | None = None,
        pivot_table: str | None = None,
        pivot_local_key: str | None = None,
        pivot_foreign_key: str | None = None,
    ) -> None:
        super().__init__(related, local_key=local_key, foreign_key=related_key)
        self._pivot_table = pivot_table
        self._pivot_local_key = pivot_local_key
        self._pivot_foreign_key = pivot_foreign_key
        self._pivot: sa.TableClause | None = None

    def _resolve_keys(self) -> RelationDefinition:
        related = self.related_model
        local = resolve_local_key(self.owner, self._local_key, self.label)
        related_key = resolve_foreign_key(
            related,
            self._foreign_key or related.__primary_key__,
            self.label,
            convention_model=self.owner,
        )
        pivot_table = self._pivot_table or pivot_table_for(self.owner, related)
        pivot_local_key = self._pivot_local_key or foreign_key_for(self.owner)
        pivot_foreign_key = self._pivot_foreign_key or foreign_key_for(related)

        # only a declared pivot table can be checked, a lightweight one has no schema
        declared = self.owner.metadata.tables.get(pivot_table)
        if declared is not None:
            for key in (pivot_local_key, pivot_foreign_key):
                if key not in declared.c:
                    raise MissingForeignKeyError(pivot_table, key, self.label)

        return RelationDefinition(
            relation_name=self.name,
            related_model=related,
            local_key=local.key,
            local_adapter_key=local.adapter_key,
            foreign_key=related_key.key,
            foreign_adapter_key=related_key.adapter_key,
            pivot_table=pivot_table,
            pivot_local_key=pivot_local_key,
            pivot_foreign_key=pivot_foreign_key,
        )

    @property
    def related_key(self) -> str:
        return self.definition.foreign_key

    @property
    def pivot_table(self) -> str:
        assert self.definition.pivot_table is not None
        return self.definition.pivot_table

    @property
    def pivot_local_key(self) -> str:
        assert self.definition.pivot_local_key is not None
        return self.definition.pivot_local_key

    @property
    def pivot_foreign_key(self) -> str:
        assert self.definition.pivot_foreign_key is not None
        return self.definition.pivot_foreign_key

    @property
    def pivot(self) -> sa.TableClause:
        if self._pivot is None:
            declared = self.owner.metadata.tables.get(self.pivot_table)
            self._pivot = (
                declared
                if declared is not None
                else sa.table(
                    self.pivot_table,
                    sa.column(self.pivot_local_key),
                    sa.column(self.pivot_foreign_key),
                )
            )
        return self._pivot

    def _constrain(self, query: RelationQueryBuilder[M], values: Sequence[Any]) -> None:
        pivot = self.pivot
        related = query.table
        pivot_local = pivot.c[self.pivot_local_key]
        grouping = pivot_local.label(f"pivot_{self.pivot_local_key}")

        query.select(*related.c, grouping)
        query.inner_join(pivot, pivot.c[self.pivot_foreign_key] == related.c[self.related_key])
        self._filter(query, pivot_local, values)
        query.grouping_column = grouping

    async def save(self, parent: BaseModel, related: M) -> M:
        """Persist *related* if needed and link it to *parent* in the pivot."""
        if not parent.persisted:
            await parent.save()
        if not related.persisted:
            related.options = parent.options
            await related.save()

        statement = sa.insert(self.pivot).values({
            self.pivot_local_key: self._local_value(parent),
            self.pivot_foreign_key: getattr(related, self.related_key),
        })
        async with parent.client.connect() as conn:
            await conn.execute(statement)

        return related

    async def create(self, parent: BaseModel, **values: Any) -> M:
        return await self.save(parent, self.related_model(**values))


class HasManyThrough(Relation[M]):
    """Owner has many related rows through an intermediate model.

    ``Country -> User -> Post``: ``from_key`` is ``countries.id``, ``to_key``
    is ``users.country_id``, ``via_key`` is ``users.id`` and
    ``via_foreign_key`` is ``posts.user_id``. The related rows are joined to
    the through table and filtered on ``to_key``, which is also selected so
    rows can be grouped back onto their parents.

    The relation is read-only: a related row has no single foreign key that
    would tie it to the owner, so ``save``/``create`` always fail.
    """

    kind = "has_many_through"

    def __init__(
        self,
        related: type[M] | Callable[[], type[M]],
        through: type[BaseModel] | Callable[[], type[BaseModel]],
        *,
        from_key: str | None = None,
        to_key: str | None = None,
        via_key: str | None = None,
        via_foreign_key: str | None = None,
    ) -> None:
        super().__init__(related, local_key=from_key, foreign_key=to_key)
        self._through = through
        self._via_key = via_key
        self._via_foreign_key = via_foreign_key

    @property
    def through_model(self) -> type[BaseModel]:
        through = self._through
        return through if isinstance(through, type) else through()

    @property
    def definition(self) -> ThroughRelationDefinition:
        definition = super().definition
        assert isinstance(definition, ThroughRelationDefinition)
        return definition

    def _resolve_keys(self) -> ThroughRelationDefinition:
        related = self.related_model
        through = self.through_model
        from_key = resolve_local_key(self.owner, self._local_key, self.label)
        to_key = resolve_foreign_key(
            through, self._foreign_key, self.label, convention_model=self.owner
        )
        via_key = resolve_local_key(through, self._via_key, self.label)
        via_foreign_key = resolve_foreign_key(
            related, self._via_foreign_key, self.label, convention_model=through
        )

        return ThroughRelationDefinition(
            relation_name=self.name,
            related_model=related,
            local_key=from_key.key,
            local_adapter_key=from_key.adapter_key,
            foreign_key=to_key.key,
            foreign_adapter_key=to_key.adapter_key,
            through_model=through,
            via_key=via_key.key,
            via_adapter_key=via_key.adapter_key,
            via_foreign_key=via_foreign_key.key,
            via_foreign_adapter_key=via_foreign_key.adapter_key,
        )

    @property
    def from_key(self) -> str:
        return self.definition.local_key

    @property
    def to_key(self) -> str:
        return self.definition.foreign_key

    @property
    def via_key(self) -> str:
        return self.definition.via_key

    @property
    def via_foreign_key(self) -> str:
        return self.definition.via_foreign_key

    def build_join_query(self, query: RelationQueryBuilder[M]) -> sa.ColumnElement[Any]:
        """Select related columns plus ``through.to_key`` and join the through table.

        Returns the selected ``to_key`` column.
        """
        through = self.through_model.__table__
        related = query.table
        to_column = through.c[self.to_key]

        query.select(*related.c, to_column)
        query.inner_join(through, through.c[self.via_key] == related.c[self.via_foreign_key])
        return to_column

    def _constrain(self, query: RelationQueryBuilder[M], values: Sequence[Any]) -> None:
        to_column = self.build_join_query(query)
        self._filter(query, to_column, values)
        query.grouping_column = to_column

    async def save(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise RelationSaveUnsupportedError("save", self.kind)

    async def create(self, *args: Any, **kwargs: Any) -> NoReturn:
        raise RelationSaveUnsupportedError("create", self.kind)


def has_many(
    related: type[M] | Callable[[], type[M]],
    *,
    local_key: str | None = None,
    foreign_key: str | None = None,
) -> Any:
    """Declare a one-to-many relation.

    Example:
        >>> class User(Base):
        ...     __tablename__ = "users"
        ...     id: int = column(sa.Integer, primary=True)
        ...     posts: list[Post] = has_many(lambda: Post)
    """
    return HasMany(related, local_key=local_key, foreign_key=foreign_key)


def has_one(
    related: type[M] | Callable[[], type[M]],
    *,
    local_key: str | None = None,
    foreign_key: str | None = None,
) -> Any:
    """Declare a one-to-one relation (foreign key on the related model)."""
    return HasOne(related, local_key=local_key, foreign_key=foreign_key)


def many_to_many(
    related: type[M] | Callable[[], type[M]],
    *,
    local_key: str | None = None,
    related_key: str | None = None,
    pivot_table: str | None = None,
    pivot_local_key: str | None = None,
    pivot_foreign_key: str | None = None,
) -> Any:
    """Declare a many-to-many relation through a pivot table."""
    return ManyToMany(
        related,
        local_key=local_key,
        related_key=related_key,
        pivot_table=pivot_table,
        pivot_local_key=pivot_local_key,
        pivot_foreign_key=pivot_foreign_key,
    )


def has_many_through(
    related: type[M] | Callable[[], type[M]],
    through: type[BaseModel] | Callable[[], type[BaseModel]],
    *,
    from_key: str | None = None,
    to_key: str | None = None,
    via_key: str | None = None,
    via_foreign_key: str | None = None,
) -> Any:
    """Declare a has-many relation mediated by an intermediate model."""
    return HasManyThrough(
        related,
        through,
        from_key=from_key,
        to_key=to_key,
        via_key=via_key,
        via_foreign_key=via_foreign_key,
    )
