"""Test config and shared fixtures."""
import pytest
from datetime import timedelta
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from querylayer.config import Settings
from querylayer.database.manager import DatabaseManager
from querylayer.repository.mixins import utcnow
from querylayer.repository.registry import RepositoryRegistry
from demo.models import build_registry
from demo.blog.repository import CommentRepository, PostRepository, UserRepository


# In-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DB_URL=TEST_DATABASE_URL,
        CACHE_DRIVER="memory",
        APP_ENV="testing",
        QUERYLAYER_PAGINATION_DEFAULT=15,
    )


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def manager(test_settings: Settings, engine: AsyncEngine) -> AsyncGenerator[DatabaseManager, None]:
    manager = DatabaseManager(test_settings, engine=engine)
    yield manager
    await manager.sql.drop_all()


@pytest.fixture
def registry(manager: DatabaseManager) -> RepositoryRegistry:
    return build_registry(manager)


@pytest.fixture
def users(registry: RepositoryRegistry) -> UserRepository:
    return registry.repository(UserRepository)


@pytest.fixture
def posts(registry: RepositoryRegistry) -> PostRepository:
    return registry.repository(PostRepository)


@pytest.fixture
def comments(registry: RepositoryRegistry) -> CommentRepository:
    return registry.repository(CommentRepository)


@pytest.fixture
async def blog(users: UserRepository, posts: PostRepository, comments: CommentRepository) -> dict:
    """
    Two authors and a reader:
    alice (admin) has two published posts and one draft,
    bob (user) has one published post, carol (user, inactive) has none.
    """
    now = utcnow()
    alice = await users.create({"name": "Alice", "email": "alice@example.com", "role": "admin"})
    bob = await users.create({"name": "Bob", "email": "bob@example.com", "role": "user"})
    carol = await users.create(
        {"name": "Carol", "email": "carol@example.com", "role": "user", "is_active": False}
    )

    first = await posts.create({
        "user_id": alice.id, "title": "Repositories in practice", "content": "...",
        "is_published": True, "published_at": now - timedelta(days=1),
    })
    second = await posts.create({
        "user_id": alice.id, "title": "Soft deletes", "content": "...",
        "is_published": True, "published_at": now - timedelta(days=30),
    })
    draft = await posts.create({"user_id": alice.id, "title": "Draft", "content": "wip"})
    third = await posts.create({
        "user_id": bob.id, "title": "Caching reads", "content": "...",
        "is_published": True, "published_at": now - timedelta(days=2),
    })

    approved = await comments.create(
        {"user_id": bob.id, "post_id": first.id, "content": "Great read", "is_approved": True}
    )
    pending = await comments.create(
        {"user_id": carol.id, "post_id": first.id, "content": "Needs more caching"}
    )
    other = await comments.create(
        {"user_id": alice.id, "post_id": third.id, "content": "Nice caching tips", "is_approved": True}
    )

    return {
        "users": {"alice": alice, "bob": bob, "carol": carol},
        "posts": {"first": first, "second": second, "draft": draft, "third": third},
        "comments": {"approved": approved, "pending": pending, "other": other},
    }


@pytest.fixture
async def client(registry: RepositoryRegistry) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against an app wired to the test registry."""
    from main import create_app

    app = create_app(registry)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
