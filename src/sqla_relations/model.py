from __future__ import annotations

import sys
from collections.abc import Callable, Mapping
from typing import Any, ClassVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa

from .core import QueryBuilder
from .database import QueryClient, get_client
from .datastructures import frozendict
from .exceptions import RelationNotFoundError
from .node import ScopeCallback
from .preloader import Preloader
from .relations import Relation


class Field:
    """A declared model field backed by one table column.

    ``key`` is the attribute name; ``adapter_key`` the storage column, which
    is the attribute name unless ``column(name=...)`` says otherwise.
    """

    __slots__ = ("_name", "adapter_key", "key", "nullable", "primary", "type_")

    def __init__(
        self,
        type_: sa.types.TypeEngine[Any] | type[sa.types.TypeEngine[Any]] | None = None,
        *,
        primary: bool = False,
        name: str | None = None,
        nullable: bool | None = None,
    ) -> None:
        self.type_ = type_ if type_ is not None else sa.types.NullType()
        self.primary = primary
        self.nullable = not primary if nullable is None else nullable
        self._name = name
        self.key = ""
        self.adapter_key = name or ""

    def __set_name__(self, owner: type[Any], name: str) -> None:
        self.key = name
        self.adapter_key = self._name or name

    def __get__(self, instance: BaseModel | None, owner: type[Any] | None = None) -> Any:
        if instance is None:
            return self
        try:
            return instance._attributes[self.key]
        except KeyError:
            raise AttributeError(f"{type(instance).__name__}.{self.key} is undefined") from None

    def __set__(self, instance: BaseModel, value: Any) -> None:
        instance._attributes[self.key] = value

    def to_column(self) -> sa.Column[Any]:
        return sa.Column(
            self.adapter_key,
            self.type_,
            key=self.key,
            primary_key=self.primary,
            nullable=self.nullable,
        )


def column(
    type_: sa.types.TypeEngine[Any] | type[sa.types.TypeEngine[Any]] | None = None,
    *,
    primary: bool = False,
    name: str | None = None,
    nullable: bool | None = None,
) -> Any:
    """Declare a model field.

    Args:
        type_: SQLAlchemy column type.
        primary: Whether this field is the primary key.
        name: Storage column name when it differs from the attribute name.
        nullable: Defaults to ``not primary``.
    """
    return Field(type_, primary=primary, name=name, nullable=nullable)


class BaseModel:
    """Base class of relation-aware models.

    Direct subclasses act as a declarative base and get their own
    ``sa.MetaData``; models below them that set ``__tablename__`` get a
    ``__table__`` built from their fields. Fields and relations declared
    anywhere in the class hierarchy are collected at class creation into
    ``__fields__`` and ``__relations__``.

    Example:
        >>> class Base(BaseModel):
        ...     pass
        >>> class User(Base):
        ...     __tablename__ = "users"
        ...     id: int = column(sa.Integer, primary=True)
        ...     posts: list[Post] = has_many(lambda: Post)
    """

    metadata: ClassVar[sa.MetaData] = sa.MetaData()
    __tablename__: ClassVar[str]
    __table__: ClassVar[sa.Table]
    __fields__: ClassVar[frozendict[str, Field]] = frozendict()
    __relations__: ClassVar[frozendict[str, Relation[Any]]] = frozendict()
    __primary_key__: ClassVar[str] = "id"

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if BaseModel in cls.__bases__ and "metadata" not in cls.__dict__:
            cls.metadata = sa.MetaData()

        fields: dict[str, Field] = {}
        relations: dict[str, Relation[Any]] = {}
        for klass in reversed(cls.__mro__):
            for name, value in vars(klass).items():
                if isinstance(value, Field):
                    fields[name] = value
                elif isinstance(value, Relation):
                    relations[name] = value

        cls.__fields__ = frozendict(fields)
        cls.__relations__ = frozendict(relations)
        cls.__primary_key__ = next((f.key for f in fields.values() if f.primary), "id")

        if "__tablename__" in cls.__dict__:
            cls.__table__ = sa.Table(
                cls.__tablename__,
                cls.metadata,
                *(field.to_column() for field in fields.values()),
            )

    def __init__(self, **values: Any) -> None:
        self._attributes: dict[str, Any] = {}
        self._related: dict[str, Any] = {}
        self.options: frozendict[str, Any] = frozendict()
        self.persisted = False
        for key, value in values.items():
            if key not in self.__fields__:
                raise TypeError(f"{type(self).__name__} has no field {key!r}")
            setattr(self, key, value)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._attributes!r}>"

    @classmethod
    def from_row(
        cls,
        row: sa.Row[Any] | Mapping[str, Any],
        options: Mapping[str, Any] | None = None,
    ) -> Self:
        """Hydrate an instance from a result row (or a plain mapping).

        Only the fields present in *row* are set; reading any other field
        raises ``AttributeError``. Result rows are matched by column object,
        so same-named columns of joined tables never leak in.
        """
        instance = cls()
        if isinstance(row, sa.Row):
            mapping = row._mapping
            for key in cls.__fields__:
                try:
                    instance._attributes[key] = mapping[cls.__table__.c[key]]
                except KeyError:
                    continue
        else:
            instance._attributes.update((k, row[k]) for k in cls.__fields__ if k in row)

        instance.options = frozendict(options or {})
        instance.persisted = True
        return instance

    @classmethod
    def get_relation(cls, name: str) -> Relation[Any]:
        try:
            return cls.__relations__[name]
        except KeyError:
            raise RelationNotFoundError(name, cls.__name__) from None

    def set_related(self, name: str, value: Any) -> None:
        """Store a loaded relation value under relation *name*."""
        if name not in self.__relations__:
            raise RelationNotFoundError(name, type(self).__name__)
        self._related[name] = value

    def get_related(self, name: str) -> Any:
        try:
            return self._related[name]
        except KeyError:
            raise AttributeError(
                f"{type(self).__name__}.{name} is not loaded, preload it or call load_related()"
            ) from None

    def is_loaded(self, name: str) -> bool:
        return name in self._related

    @property
    def client(self) -> QueryClient:
        """Client for the connection this instance was loaded from."""
        return get_client(self.options.get("connection"))

    @classmethod
    def query(cls, *, connection: str | None = None, **options: Any) -> QueryBuilder[Self]:
        """Start a query on *connection* (the default one if ``None``).

        Extra *options* are stamped on every instance hydrated by the query,
        including the ones loaded through its preloads.
        """
        return QueryBuilder(cls, get_client(connection), options=options)

    @classmethod
    async def all(cls, *, connection: str | None = None) -> list[Self]:
        return await cls.query(connection=connection).fetch()

    @classmethod
    async def find(cls, value: Any, *, connection: str | None = None) -> Self | None:
        return await cls.query(connection=connection).where(**{cls.__primary_key__: value}).first()

    async def load_related(self, name: str, scope: ScopeCallback | None = None) -> Any:
        """Query relation *name* for this instance alone and attach the result."""
        return await self.get_relation(name).load(self, self.client, scope)

    async def preload(self, *preloads: str | Callable[[Preloader[Self]], object]) -> Self:
        """Eager load relation paths on this instance.

        Each item is a dotted path or a callback receiving the ``Preloader``.

        Example:
            >>> await user.preload(lambda p: p.preload("posts").preload("posts.comments"))
        """
        preloader: Preloader[Self] = Preloader(type(self))
        for item in preloads:
            if callable(item):
                item(preloader)
            else:
                preloader.preload(item)

        await preloader.run([self], self.client)
        return self

    async def save(self) -> Self:
        """Insert the instance, or update it by primary key once persisted."""
        client = self.client
        table = type(self).__table__
        pk = self.__primary_key__
        values = {table.c[key]: value for key, value in self._attributes.items()}

        async with client.connect() as conn:
            if self.persisted:
                changes = {col: value for col, value in values.items() if col.key != pk}
                if changes:
                    await conn.execute(
                        sa.update(table).where(table.c[pk] == getattr(self, pk)).values(changes)
                    )
            else:
                result = await conn.execute(sa.insert(table).values(values))
                if pk not in self._attributes and result.inserted_primary_key:
                    self._attributes[pk] = result.inserted_primary_key[0]

        self.persisted = True
        self.options = self.options.merge(connection=client.connection_name)
        return self
