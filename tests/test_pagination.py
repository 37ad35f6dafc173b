"""Pagination tests."""
import pytest
from starlette.requests import Request
from querylayer.logging.logger import _current_request
from querylayer.pagination import Page, resolve_page, resolve_per_page
from demo.blog.repository import UserRepository


def make_request(query_string: str) -> Request:
    return Request({"type": "http", "method": "GET", "path": "/", "headers": [], "query_string": query_string.encode()})


async def seed(users: UserRepository, count: int):
    await users.insert([{"name": f"User {i:02d}", "email": f"user{i}@example.com"} for i in range(count)])


class TestPaginate:
    """paginate() totals and page windows."""

    @pytest.mark.asyncio
    async def test_pages(self, users: UserRepository):
        await seed(users, 20)

        first = await users.order_by("name").paginate(per_page=10)
        assert first.total == 20
        assert first.per_page == 10
        assert first.current_page == 1
        assert first.last_page == 2
        assert len(first) == 10
        assert first.has_more_pages is True
        assert first.items[0].name == "User 00"

        second = await users.order_by("name").paginate(per_page=10, page=2)
        assert second.items[0].name == "User 10"
        assert second.has_more_pages is False

    @pytest.mark.asyncio
    async def test_default_page_size(self, users: UserRepository):
        await seed(users, 20)
        page = await users.paginate()
        assert page.per_page == 15
        assert len(page.items) == 15

    @pytest.mark.asyncio
    async def test_empty_table(self, users: UserRepository):
        page = await users.paginate(per_page=5)
        assert page.total == 0
        assert page.last_page == 1
        assert page.items == []

    @pytest.mark.asyncio
    async def test_page_past_the_end(self, users: UserRepository):
        await seed(users, 3)
        page = await users.paginate(per_page=2, page=5)
        assert page.items == []
        assert page.total == 3

    @pytest.mark.asyncio
    async def test_request_parameters_are_used(self, users: UserRepository):
        await seed(users, 20)
        token = _current_request.set(make_request("per_page=4&page=3"))
        try:
            page = await users.order_by("name").paginate()
        finally:
            _current_request.reset(token)

        assert page.per_page == 4
        assert page.current_page == 3
        assert page.items[0].name == "User 08"


class TestResolution:
    """per_page / page resolution order."""

    @pytest.mark.asyncio
    async def test_explicit_argument_wins(self, test_settings):
        token = _current_request.set(make_request("per_page=4"))
        try:
            assert resolve_per_page(7, test_settings) == 7
            assert resolve_per_page(None, test_settings) == 4
        finally:
            _current_request.reset(token)
        assert resolve_per_page(None, test_settings) == 15

    @pytest.mark.asyncio
    async def test_invalid_request_values_are_ignored(self, test_settings):
        token = _current_request.set(make_request("per_page=lots&page=-2"))
        try:
            assert resolve_per_page(None, test_settings) == 15
            assert resolve_page(None) == 1
        finally:
            _current_request.reset(token)

    @pytest.mark.asyncio
    async def test_non_positive_arguments(self, test_settings):
        with pytest.raises(ValueError):
            resolve_per_page(0, test_settings)
        with pytest.raises(ValueError):
            resolve_page(0)

    def test_last_page(self):
        assert Page.build([], 21, 10, 1).last_page == 3
        assert Page.build([], 20, 10, 1).last_page == 2
