"""Fluent SELECT builders over SQLAlchemy Core and the relation query variant."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Generic, NamedTuple, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import MissingSelectedKeyError
from .preloader import Preloader
from .tools import group_rows, resolve_column


if TYPE_CHECKING:
    from .database import QueryClient
    from .model import BaseModel
    from .node import ScopeCallback
    from .relations import Relation

M = TypeVar("M", bound="BaseModel")

logger = logging.getLogger(__name__)


class SQL(NamedTuple):
    sql: str
    bindings: Mapping[str, Any]


class QueryBuilder(Generic[M]):
    """Fluent, mutable wrapper around a ``sa.Select`` over one model's table.

    Every method that narrows the query returns the builder itself. Execution
    is deferred until ``fetch``/``first``; rows are hydrated into model
    instances carrying the builder's ``options`` (which always name the
    connection used), then the registered preloads run over them.

    String column references are either a field key of the model (``"title"``)
    or ``"table.column"`` for joined tables.
    """

    __slots__ = ("_preloader", "_query", "client", "model", "options")

    def __init__(
        self,
        model: type[M],
        client: QueryClient,
        *,
        options: Mapping[str, Any] | None = None,
    ) -> None:
        if getattr(model, "__table__", None) is None:
            raise TypeError(f"{model.__name__} has no table, declare __tablename__")

        self.model = model
        self.client = client
        self.options: frozendict[str, Any] = frozendict(options or {}).merge(
            connection=client.connection_name
        )
        self._query: sa.Select[Any] = sa.select(model.__table__)
        self._preloader: Preloader[M] = Preloader(model)

    @property
    def table(self) -> sa.Table:
        return self.model.__table__

    @property
    def statement(self) -> sa.Select[Any]:
        """The ``sa.Select`` built so far."""
        return self._query

    @property
    def preloader(self) -> Preloader[M]:
        return self._preloader

    def _column(self, ref: str | sa.ColumnElement[Any]) -> sa.ColumnElement[Any]:
        if isinstance(ref, str):
            return resolve_column(self._query, ref, table=self.table)
        return ref

    def select(self, *columns: str | sa.ColumnElement[Any]) -> Self:
        """Replace the selected columns.

        Args:
            *columns: Field keys, ``"table.column"`` references or column
                expressions.

        Returns:
            This builder, for chaining.

        Raises:
            ValueError: If a string reference matches no selectable column.
        """
        self._query = self._query.with_only_columns(*(self._column(c) for c in columns))
        return self

    def inner_join(self, target: sa.FromClause, onclause: sa.ColumnElement[bool]) -> Self:
        """Add an ``INNER JOIN`` against *target*.

        Args:
            target: Table (declared or lightweight) to join.
            onclause: Join condition.

        Returns:
            This builder, for chaining.
        """
        self._query = self._query.join(target, onclause)
        return self

    def where(self, *clauses: sa.ColumnExpressionArgument[bool], **values: Any) -> Self:
        """Add ``WHERE`` criteria; keywords compare a column for equality.

        Example:
            >>> User.query().where(username="virk")
            >>> User.query().where(User.__table__.c.id > 10)
        """
        criteria = [*clauses, *(self._column(key) == value for key, value in values.items())]
        if criteria:
            self._query = self._query.where(*criteria)
        return self

    def where_in(self, column: str | sa.ColumnElement[Any], values: Iterable[Any]) -> Self:
        """Restrict *column* to *values* with an ``IN`` clause.

        Args:
            column: Field key, ``"table.column"`` reference or column expression.
            values: Values to match, consumed once.

        Returns:
            This builder, for chaining.
        """
        self._query = self._query.where(self._column(column).in_(list(values)))
        return self

    def where_null(self, column: str | sa.ColumnElement[Any]) -> Self:
        self._query = self._query.where(self._column(column).is_(None))
        return self

    def where_not_null(self, column: str | sa.ColumnElement[Any]) -> Self:
        self._query = self._query.where(self._column(column).is_not(None))
        return self

    def order_by(self, *columns: str | sa.ColumnElement[Any]) -> Self:
        """Append ``ORDER BY`` columns; wrap with ``sa.desc`` for descending order."""
        self._query = self._query.order_by(*(self._column(c) for c in columns))
        return self

    def limit(self, limit: int | None) -> Self:
        self._query = self._query.limit(limit)
        return self

    def offset(self, offset: int | None) -> Self:
        self._query = self._query.offset(offset)
        return self

    def preload(self, path: str, scope: ScopeCallback | None = None) -> Self:
        """Eager load the dotted relation *path* once rows are fetched."""
        self._preloader.preload(path, scope)
        return self

    def to_sql(self) -> SQL:
        """Compile against the client's dialect, returning SQL text and bind values."""
        compiled = self._query.compile(dialect=self.client.dialect)
        return SQL(sql=str(compiled), bindings=compiled.params)

    async def fetch_rows(self) -> Sequence[sa.Row[Any]]:
        return await self.client.fetch(self._query)

    def _hydrate(self, rows: Iterable[sa.Row[Any]]) -> list[M]:
        return [self.model.from_row(row, self.options) for row in rows]

    async def fetch(self) -> list[M]:
        """Execute, hydrate and run the registered preloads."""
        instances = self._hydrate(await self.fetch_rows())
        await self._preloader.run(instances, self.client)
        return instances

    async def first(self) -> M | None:
        """Fetch with ``LIMIT 1``.

        Returns:
            The first instance, or ``None`` when no row matches.
        """
        instances = await self.limit(1).fetch()
        return instances[0] if instances else None


class RelationQueryBuilder(QueryBuilder[M]):
    """Query over a relation's related model, scoped to its parents.

    With ``eager=False`` the query is filtered on one parent's key value (lazy
    loading); with ``eager=True`` on the set of key values of a whole batch,
    and every row is tagged with its owner through ``grouping_column`` so that
    ``fetch_grouped`` can hand rows back to the right parent.

    The relation adds its joins and filters before any caller scope runs, so a
    scope can narrow the query but not lift its structural constraints.
    """

    __slots__ = ("eager", "grouping_column", "parents", "relation")

    def __init__(
        self,
        relation: Relation[M],
        client: QueryClient,
        parents: Sequence[BaseModel],
        *,
        eager: bool,
    ) -> None:
        super().__init__(
            relation.related_model,
            client,
            options=parents[0].options if parents else None,
        )
        self.relation = relation
        self.parents: tuple[BaseModel, ...] = tuple(parents)
        self.eager = eager
        self.grouping_column: sa.ColumnElement[Any] | None = None

    def apply_scope(self, scope: ScopeCallback | None) -> Self:
        if scope is not None:
            scope(self)
        return self

    def _check_grouping_column(self) -> sa.ColumnElement[Any]:
        column = self.grouping_column
        if column is None or not any(
            selected is column for selected in self._query.selected_columns
        ):
            raise MissingSelectedKeyError(self.relation.label, str(column))

        return column

    async def fetch_grouped(self) -> dict[Any, list[M]]:
        """Execute and group related instances by their owner's key value.

        Raises:
            MissingSelectedKeyError: If the grouping column is not selected.
        """
        column = self._check_grouping_column()
        rows = await self.fetch_rows()
        instances = self._hydrate(rows)
        await self._preloader.run(instances, self.client)

        logger.debug(
            "Fetched %d %s rows for %d parents",
            len(instances),
            self.relation.label,
            len(self.parents),
        )
        groups = group_rows(zip(rows, instances), key=lambda pair: pair[0]._mapping[column])

        return {key: [instance for _, instance in pairs] for key, pairs in groups.items()}
