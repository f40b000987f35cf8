from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, ClassVar, Final, final

import sqlalchemy as sa
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from .datastructures import frozendict


logger = logging.getLogger(__name__)

DEFAULT_CONNECTION: Final[str] = "primary"

Bind = AsyncEngine | AsyncConnection


@dataclass(slots=True, frozen=True)
class QueryClient:
    """A named connection every relation query of one invocation runs on.

    ``bind`` is either an ``AsyncEngine`` (a connection is checked out per
    statement, writes are committed) or an already open ``AsyncConnection``
    (reused as-is, so the caller owns the transaction).
    """

    connection_name: str
    bind: Bind

    @property
    def dialect(self) -> Dialect:
        return self.bind.dialect

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        if isinstance(self.bind, AsyncConnection):
            yield self.bind
            return

        async with self.bind.begin() as conn:
            yield conn

    async def fetch(self, statement: sa.Executable) -> Sequence[sa.Row[Any]]:
        """Execute *statement* and return all of its rows."""
        logger.debug("Executing statement on connection %r", self.connection_name)
        async with self.connect() as conn:
            result = await conn.execute(statement)
            return result.all()


@final
class Database:
    """Singleton registry of named connections.

    Relation queries never pick a connection themselves: they reuse the
    ``QueryClient`` of the query that triggered them, which is resolved here
    by name (``"primary"`` unless told otherwise).
    """

    __instance: ClassVar[Database | None] = None
    _connections: Mapping[str, Bind]
    _default: str

    def __new__(
        cls,
        connections: Mapping[str, Bind] | None = None,
        *,
        default: str = DEFAULT_CONNECTION,
    ) -> Database:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if connections is not None:
                instance.set_connections(connections, default=default)

            cls.__instance = instance

        if not getattr(cls.__instance, "_connections", None):
            raise RuntimeError("Database is not initialized or empty")

        return cls.__instance

    @property
    def connections(self) -> Mapping[str, Bind]:
        """The name-to-bind mapping (read-only)."""
        return self._connections

    @property
    def default(self) -> str:
        return self._default

    def set_connections(
        self,
        connections: Mapping[str, Bind],
        *,
        default: str = DEFAULT_CONNECTION,
    ) -> None:
        """Replace the registered connections.

        Raises:
            ValueError: If *default* is not one of the connection names.
        """
        if connections and default not in connections:
            raise ValueError(
                f"Default connection {default!r} is not configured. "
                f"Available: {sorted(connections)}"
            )
        self._connections = frozendict(connections)
        self._default = default

    def client(self, name: str | None = None) -> QueryClient:
        """Return the client for connection *name* (default connection if ``None``)."""
        name = name or self._default
        try:
            bind = self._connections[name]
        except KeyError:
            raise ValueError(
                f"Unknown connection {name!r}. Available: {sorted(self._connections)}"
            ) from None

        return QueryClient(connection_name=name, bind=bind)

    @classmethod
    def initialize(
        cls,
        connections: Mapping[str, Bind],
        *,
        default: str = DEFAULT_CONNECTION,
    ) -> Database:
        """Create the singleton, or replace the connections of the existing one.

        Args:
            connections: Mapping of connection names to engines or open connections.
            default: Name used when a query does not ask for a connection.

        Returns:
            The singleton instance.
        """
        if cls.__instance is None:
            return cls(connections, default=default)

        cls.__instance.set_connections(connections, default=default)
        return cls.__instance

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._connections = {}
        cls.__instance = None


def init_database(
    connections: Mapping[str, Bind],
    *,
    default: str = DEFAULT_CONNECTION,
) -> None:
    """Initialize the global ``Database`` singleton.

    Call once during application startup; calling again swaps the connections.

    Args:
        connections: Mapping of connection names to engines or open connections.
        default: Name of the default connection.

    Example:
        >>> init_database(engines_from_urls({"primary": "sqlite+aiosqlite:///app.db"}))
    """
    Database.initialize(connections, default=default)


def get_client(name: str | None = None) -> QueryClient:
    """Shorthand for ``Database().client(name)``."""
    return Database().client(name)


def engines_from_urls(urls: Mapping[str, str], **engine_kwargs: Any) -> dict[str, AsyncEngine]:
    """Create one ``AsyncEngine`` per named URL, forwarding *engine_kwargs*."""
    return {name: create_async_engine(url, **engine_kwargs) for name, url in urls.items()}
