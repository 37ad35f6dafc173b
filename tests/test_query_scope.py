"""Chained query scope tests: conditions, scopes, ordering and context isolation."""
import asyncio
import pytest
from querylayer.exceptions.handler import ConfigurationError, ValidationError
from querylayer.repository.scope import DEFAULT_SCOPE, TrashedState
from demo.blog.models import User
from demo.blog.repository import PostRepository, UserRepository


class TestConditions:
    """where_condition, or_where, where_nested, where_raw."""

    @pytest.mark.asyncio
    async def test_where_condition_is_anded(self, users: UserRepository, blog):
        found = await users.where_condition({"role": "user"}).where_condition({"is_active": True}).get()
        assert [u.name for u in found] == ["Bob"]

    @pytest.mark.asyncio
    async def test_or_where(self, users: UserRepository, blog):
        found = await users.where_condition({"role": "admin"}).or_where({"name": "Carol"}).order_by("name").get()
        assert [u.name for u in found] == ["Alice", "Carol"]

    @pytest.mark.asyncio
    async def test_or_where_without_previous_conditions(self, users: UserRepository, blog):
        found = await users.or_where({"name": "Bob"}).get()
        assert [u.name for u in found] == ["Bob"]

    @pytest.mark.asyncio
    async def test_where_nested(self, users: UserRepository, blog):
        found = await (
            users.where_nested(lambda model: (model.name == "Alice") | (model.name == "Carol"))
            .where_condition({"is_active": True})
            .get()
        )
        assert [u.name for u in found] == ["Alice"]

    @pytest.mark.asyncio
    async def test_where_raw_with_bindings(self, users: UserRepository, blog):
        found = await users.where_raw("email LIKE :pattern", {"pattern": "b%"}).get()
        assert [u.name for u in found] == ["Bob"]

    @pytest.mark.asyncio
    async def test_unknown_condition_column(self, users: UserRepository):
        with pytest.raises(ValidationError):
            users.where_condition({"nickname": "x"})
        assert users.current_scope() is DEFAULT_SCOPE


class TestScopesAndOrdering:
    """Model scopes and order_by."""

    @pytest.mark.asyncio
    async def test_named_scopes(self, users: UserRepository, blog):
        active_users = await users.scope("active").scope("role", "user").get()
        assert [u.name for u in active_users] == ["Bob"]

    @pytest.mark.asyncio
    async def test_scope_with_argument(self, posts: PostRepository, blog):
        recent = await posts.scope("published").scope("recent", 7).order_by("published_at", "desc").get()
        assert [p.title for p in recent] == ["Repositories in practice", "Caching reads"]

    @pytest.mark.asyncio
    async def test_unknown_scope(self, users: UserRepository):
        with pytest.raises(ConfigurationError):
            users.scope("famous")

    @pytest.mark.asyncio
    async def test_order_by(self, users: UserRepository, blog):
        names = [u.name for u in await users.order_by("name", "desc").get()]
        assert names == ["Carol", "Bob", "Alice"]

        first = await users.order_by("email").first()
        assert first.name == "Alice"

    @pytest.mark.asyncio
    async def test_order_by_rejects_bad_direction(self, users: UserRepository):
        with pytest.raises(ValueError):
            users.order_by("name", "sideways")
        with pytest.raises(ValidationError):
            users.order_by("nickname")

    @pytest.mark.asyncio
    async def test_count_honours_scope(self, users: UserRepository, blog):
        assert await users.scope("active").count() == 2
        assert await users.count() == 3


class TestScopeLifecycle:
    """Builders accumulate; the next terminal call consumes."""

    @pytest.mark.asyncio
    async def test_terminal_call_resets_scope(self, users: UserRepository, blog):
        await users.where_condition({"role": "admin"}).get()

        assert users.current_scope() is DEFAULT_SCOPE
        assert len(await users.get()) == 3

    @pytest.mark.asyncio
    async def test_write_consumes_scope(self, users: UserRepository, blog):
        bob = blog["users"]["bob"]
        users.with_trashed()
        await users.update(bob.id, {"name": "Robert"})
        assert users.current_scope() is DEFAULT_SCOPE

    @pytest.mark.asyncio
    async def test_reset_discards_pending_scope(self, users: UserRepository):
        users.with_("posts").only_trashed().cache(60)
        scope = users.current_scope()
        assert scope.relations == ("posts",)
        assert scope.trashed is TrashedState.ONLY
        assert scope.use_cache is True and scope.cache_ttl == 60

        users.reset()
        assert users.current_scope() is DEFAULT_SCOPE

    @pytest.mark.asyncio
    async def test_with_replaces_relations(self, users: UserRepository):
        users.with_("posts").with_(["comments", "posts"])
        assert users.current_scope().relations == ("comments", "posts")
        users.reset()

    @pytest.mark.asyncio
    async def test_query_consumes_scope(self, users: UserRepository):
        statement = users.where_condition({"role": "admin"}).query()
        assert "role" in str(statement)
        assert users.current_scope() is DEFAULT_SCOPE

    @pytest.mark.asyncio
    async def test_unknown_relation(self, users: UserRepository, blog):
        with pytest.raises(ConfigurationError):
            await users.with_("followers").get()

    @pytest.mark.asyncio
    async def test_concurrent_tasks_do_not_share_scope(self, users: UserRepository):
        async def build(role: str):
            users.where_condition({"role": role})
            await asyncio.sleep(0)
            return users.current_scope()

        admin_scope, user_scope = await asyncio.gather(build("admin"), build("user"))

        assert len(admin_scope.conditions) == 1
        assert len(user_scope.conditions) == 1
        assert admin_scope.fingerprint() != user_scope.fingerprint()
        assert users.current_scope() is DEFAULT_SCOPE

    @pytest.mark.asyncio
    async def test_reads_in_separate_tasks_see_their_own_conditions(self, users: UserRepository, blog):
        async def names(role: str):
            users.where_condition({"role": role}).order_by("name")
            await asyncio.sleep(0)
            return [u.name for u in await users.get()]

        admins = await names("admin")
        regular = await asyncio.create_task(names("user"))
        assert admins == ["Alice"]
        assert regular == ["Bob", "Carol"]

    @pytest.mark.asyncio
    async def test_chain_finished_in_child_task_stays_pending_in_parent(self, users: UserRepository, blog):
        users.where_condition({"role": "admin"})
        found = await asyncio.create_task(users.get())
        assert [u.name for u in found] == ["Alice"]

        assert len(users.current_scope().conditions) == 1
        users.reset()
        assert users.current_scope() is DEFAULT_SCOPE

    @pytest.mark.asyncio
    async def test_fingerprint_includes_bound_values(self, users: UserRepository):
        first = users.where_condition({"role": "admin"}).current_scope().fingerprint()
        users.reset()
        second = users.where_condition({"role": "user"}).current_scope().fingerprint()
        users.reset()
        assert first != second
        assert User.__table__.name == users.table_name
