# tests/conftest.py

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from taskhub.cache.layer import CacheLayer
from taskhub.database import create_db_and_tables, create_session_factory
from taskhub.models import TagCreate, TagResponse, UserCreate, UserResponse
from taskhub.services import TagService, TaskService, UserService

from .fakes import FakeRedis

SQLITE_URL = "sqlite+aiosqlite://"


@pytest.fixture()
async def engine():
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps the single connection alive, otherwise every checkout
    would see a new empty database.
    """
    engine = create_async_engine(
        SQLITE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def cache(fake_redis: FakeRedis) -> CacheLayer:
    return CacheLayer(fake_redis)


@pytest.fixture()
def task_service(db, cache: CacheLayer) -> TaskService:
    return TaskService(db, cache)


@pytest.fixture()
def user_service(db, cache: CacheLayer) -> UserService:
    return UserService(db, cache)


@pytest.fixture()
def tag_service(db) -> TagService:
    return TagService(db)


@pytest.fixture()
async def alice(user_service: UserService) -> UserResponse:
    return await user_service.create_user(
        UserCreate(username="alice", email="alice@example.com", password="alice-secret")
    )


@pytest.fixture()
async def bob(user_service: UserService) -> UserResponse:
    return await user_service.create_user(
        UserCreate(username="bob", email="bob@example.com", password="bob-secret")
    )


@pytest.fixture()
async def tags(tag_service: TagService) -> list[TagResponse]:
    return [
        await tag_service.create_tag(TagCreate(name="work", color="#FF0000")),
        await tag_service.create_tag(TagCreate(name="home", color="#00FF00")),
        await tag_service.create_tag(TagCreate(name="errands")),
    ]
