"""Transaction and unit-of-work tests."""
import pytest
from querylayer.exceptions.handler import RecordNotFoundError, ValidationError
from querylayer.repository.unit_of_work import UnitOfWork
from demo.blog.repository import PostRepository, UserRepository


class TestTransaction:
    """transaction(callback) commits on success, rolls back on error."""

    @pytest.mark.asyncio
    async def test_commit(self, users: UserRepository, posts: PostRepository):
        async def work():
            user = await users.create({"name": "Dana", "email": "dana@example.com"})
            await posts.create({"user_id": user.id, "title": "Hello"})
            return user

        user = await users.transaction(work)

        assert await users.find(user.id) is not None
        assert len(await posts.where({"user_id": user.id})) == 1

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, users: UserRepository, posts: PostRepository):
        async def work():
            user = await users.create({"name": "Dana", "email": "dana@example.com"})
            await posts.create({"user_id": user.id, "title": "Hello", "rating": 5})

        with pytest.raises(ValidationError):
            await users.transaction(work)

        assert await users.count() == 0
        assert await posts.count() == 0

    @pytest.mark.asyncio
    async def test_sync_callback(self, users: UserRepository):
        assert await users.transaction(lambda: 42) == 42

    @pytest.mark.asyncio
    async def test_nested_unit_rolls_back_to_savepoint(self, users: UserRepository, manager):
        async with UnitOfWork(manager.sql) as outer:
            await users.create({"name": "Dana", "email": "dana@example.com"})
            with pytest.raises(RuntimeError):
                async with UnitOfWork(manager.sql) as inner:
                    assert inner.nested is True
                    assert inner.session is outer.session
                    await users.create({"name": "Eve", "email": "eve@example.com"})
                    raise RuntimeError("abort inner")
            assert outer.nested is False

        assert [u.name for u in await users.all()] == ["Dana"]

    @pytest.mark.asyncio
    async def test_session_is_unbound_after_exit(self, manager):
        async with UnitOfWork(manager.sql):
            assert manager.sql.current_session() is not None
        assert manager.sql.current_session() is None


class TestOrFail:
    """create_or_fail / update_or_fail."""

    @pytest.mark.asyncio
    async def test_create_or_fail(self, users: UserRepository):
        user = await users.create_or_fail({"name": "Dana", "email": "dana@example.com"})
        assert user.id is not None

        with pytest.raises(ValidationError):
            await users.create_or_fail({"name": "Eve", "email": "eve@example.com", "karma": 1})
        assert await users.count() == 1

    @pytest.mark.asyncio
    async def test_update_or_fail(self, users: UserRepository):
        user = await users.create({"name": "Dana", "email": "dana@example.com"})

        assert await users.update_or_fail(user.id, {"name": "Dana S."}) is True
        assert (await users.find(user.id)).name == "Dana S."

    @pytest.mark.asyncio
    async def test_update_or_fail_missing_record(self, users: UserRepository):
        with pytest.raises(RecordNotFoundError) as exc_info:
            await users.update_or_fail(999, {"name": "Ghost"})
        assert str(exc_info.value) == "Failed to update record with ID 999"
        assert exc_info.value.status_code == 404


class TestCacheAndTransactions:
    """Cached reads and invalidation respect unit-of-work boundaries."""

    @pytest.mark.asyncio
    async def test_rolled_back_rows_are_never_cached(self, users: UserRepository, manager):
        async def work():
            ghost = await users.create({"name": "Ghost", "email": "ghost@example.com"})
            assert (await users.cache(60).find(ghost.id)).name == "Ghost"
            assert [u.name for u in await users.cache(60).all()] == ["Ghost"]
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            await users.transaction(work)

        assert list(manager.cache._items) == []
        assert await users.count() == 0
        assert await users.cache(60).all() == []
        assert await users.cache(60).find(1) is None

    @pytest.mark.asyncio
    async def test_invalidation_runs_after_commit(self, users: UserRepository, manager):
        assert await users.cache(60).all() == []

        async def work():
            await users.create({"name": "Dana", "email": "dana@example.com"})
            assert await users.forget_cache() == 0
            assert any(key.startswith(users.cache_prefix) for key in manager.cache._items)

        await users.transaction(work)

        assert [u.name for u in await users.cache(60).all()] == ["Dana"]

    @pytest.mark.asyncio
    async def test_nested_unit_defers_to_outermost(self, users: UserRepository, manager):
        await users.cache(60).all()

        async with UnitOfWork(manager.sql):
            async with UnitOfWork(manager.sql):
                await users.create({"name": "Dana", "email": "dana@example.com"})
            assert any(key.startswith(users.cache_prefix) for key in manager.cache._items)

        assert list(manager.cache._items) == []
