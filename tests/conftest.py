from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from sqla_relations import (
    BaseModel,
    Database,
    QueryClient,
    cache_clear,
    engines_from_urls,
    init_database,
)

from .models import Base, Comment, Country, Post, Profile, Role, User, user_roles


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def db_url(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                yield (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture
async def engines(db_url: str) -> AsyncIterator[dict[str, AsyncEngine]]:
    """Two named connections bound to the same database."""
    engines = engines_from_urls({"primary": db_url, "secondary": db_url})
    async with engines["primary"].begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    # first connect runs dialect setup queries, keep them out of `statements`
    async with engines["secondary"].connect():
        pass
    yield engines
    async with engines["primary"].begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    for engine in engines.values():
        await engine.dispose()


@pytest.fixture
def database(engines: dict[str, AsyncEngine]) -> Iterator[Database]:
    Database.reset()
    init_database(engines)
    yield Database()
    Database.reset()


def _make_capture(name: str, captured: list[tuple[str, str]]) -> Callable[..., None]:
    def _capture(
        conn: Any,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        if statement.lstrip().upper().startswith("SELECT"):
            captured.append((name, statement))

    return _capture


@pytest.fixture
def statements(engines: dict[str, AsyncEngine]) -> Iterator[list[tuple[str, str]]]:
    """Record ``(connection name, SELECT statement)`` for every query issued."""
    captured: list[tuple[str, str]] = []
    listeners = []
    for name, engine in engines.items():
        capture = _make_capture(name, captured)
        event.listen(engine.sync_engine, "before_cursor_execute", capture)
        listeners.append((engine, capture))

    yield captured
    for engine, listener in listeners:
        event.remove(engine.sync_engine, "before_cursor_execute", listener)


@pytest.fixture
async def seed_data(database: Database, engines: dict[str, AsyncEngine]) -> None:
    async with engines["primary"].begin() as conn:
        await conn.execute(sa.insert(Country.__table__), [
            {"id": 1, "name": "India"},
            {"id": 2, "name": "Canada"},
        ])
        await conn.execute(sa.insert(User.__table__), [
            {"id": 1, "username": "virk", "country_id": 1},
            {"id": 2, "username": "nikk", "country_id": 1},
            {"id": 3, "username": "romain", "country_id": 2},
            {"id": 4, "username": "aman", "country_id": None},
        ])
        await conn.execute(sa.insert(Post.__table__), [
            {"id": 1, "user_id": 1, "title": "Adonis 101"},
            {"id": 2, "user_id": 1, "title": "Lucid 101"},
            {"id": 3, "user_id": 2, "title": "Preloads 101"},
            {"id": 4, "user_id": 3, "title": "SQLAlchemy 101"},
        ])
        await conn.execute(sa.insert(Comment.__table__), [
            {"id": 1, "post_id": 1, "body": "Looks nice"},
            {"id": 2, "post_id": 1, "body": "Bookmarked"},
            {"id": 3, "post_id": 3, "body": "Wow! Never knew that"},
        ])
        await conn.execute(sa.insert(Profile.__table__), [
            {"id": 1, "user_id": 1, "bio": "virk bio"},
            {"id": 2, "user_id": 2, "bio": "nikk bio"},
        ])
        await conn.execute(sa.insert(Role.__table__), [
            {"id": 1, "name": "admin"},
            {"id": 2, "name": "editor"},
        ])
        await conn.execute(user_roles.insert(), [
            {"user_id": 1, "role_id": 1},
            {"user_id": 1, "role_id": 2},
            {"user_id": 2, "role_id": 2},
        ])


@pytest.fixture
def client() -> QueryClient:
    """Client for compiling statements; never connects."""
    return QueryClient(connection_name="primary", bind=create_async_engine("sqlite+aiosqlite://"))


@pytest.fixture
def base() -> type[BaseModel]:
    """A fresh declarative base, so throwaway models never share a MetaData."""

    class ScratchBase(BaseModel):
        pass

    return ScratchBase


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    cache_clear()


@pytest.fixture
def reset_database_singleton() -> Iterator[None]:
    saved = Database._Database__instance  # type: ignore[attr-defined]
    yield
    Database._Database__instance = saved  # type: ignore[attr-defined]
