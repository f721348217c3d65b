# tests/database_implementations/test_scopes_and_filters.py

import pytest

from async_criteria.base.filters import FilterChain
from tests.models import UserRepository


# --- Global Scopes ---


async def test_global_scope_applies_to_every_read(active_user_repository, entity_ids):
    assert entity_ids(await active_user_repository.fetch(order_by="id")) == [1, 2, 4]
    assert await active_user_repository.count() == 3
    assert await active_user_repository.count({"role": "admin"}) == 1


async def test_scope_excluded_by_name(active_user_repository):
    unscoped = active_user_repository.without_global_scopes("active")
    assert unscoped.is_scope_excluded("active")
    assert not active_user_repository.is_scope_excluded("active")
    assert await unscoped.count() == 5
    assert await active_user_repository.count() == 3


async def test_all_scopes_disabled(active_user_repository):
    disabled = active_user_repository.disable_global_scopes()
    assert disabled.is_scope_excluded("anything")
    assert await disabled.count() == 5


async def test_fetch_without_scopes_helpers(active_user_repository, entity_ids):
    users = await active_user_repository.fetch_without_scopes("active", {"role": "admin"}, order_by="id")
    assert entity_ids(users) == [1, 5]
    users = await active_user_repository.fetch_without_any_scopes(order_by="id", limit=2)
    assert entity_ids(users) == [1, 2]


async def test_builder_excludes_scope(active_user_repository):
    assert await active_user_repository.query().without_global_scope("active").count() == 5
    assert await active_user_repository.query().count() == 3


async def test_bulk_operations_ignore_scopes(active_user_repository):
    updated = await active_user_repository.bulk_update({"credits": 7}, {"role": "admin"})
    assert updated == 2


# --- Named Filters ---


async def test_named_filter_returning_criteria(user_repository):
    assert await user_repository.query().apply_filter("adults").count() == 4


async def test_named_filter_from_where_filter(user_repository, entity_ids):
    users = await user_repository.query().apply_filter("admins").order_by("id").get()
    assert entity_ids(users) == [1, 5]


async def test_named_filters_stack_with_scopes(active_user_repository, entity_ids):
    users = await active_user_repository.query().apply_filter("adults").order_by("id").get()
    assert entity_ids(users) == [1, 4]


async def test_unknown_named_filter_ignored(user_repository):
    assert await user_repository.query().apply_filter("nope").count() == 5


async def test_one_shot_filters_in_build_query(user_repository):
    compiled = user_repository.build_query(
        {"status": "active"},
        filters=[FilterChain.or_where_filter([{"role": "admin"}, ["credits", ">", 100]])],
    )
    users = await user_repository.execute_rows(compiled)
    assert sorted(user.id for user in users) == [1, 2]


# --- Persistent Filters ---


async def test_persistent_filter_uses_named_hook(user_repository, entity_ids):
    berlin = user_repository.with_filter("city", "Berlin")
    assert berlin.has_filter("city")
    assert berlin.get_filter("city") == "Berlin"
    assert not user_repository.has_filter("city")
    assert entity_ids(await berlin.fetch(order_by="id")) == [1, 3]
    assert await berlin.count() == 2


async def test_persistent_filter_combines_with_criteria(user_repository):
    berlin = user_repository.with_filter("city", "Berlin")
    assert await berlin.count({"role": "admin"}) == 1


async def test_without_filter(user_repository):
    repository = user_repository.with_filters({"city": "Berlin", "unused": 1})
    assert repository.get_filters() == {"city": "Berlin", "unused": 1}
    assert await repository.without_filter("city").count() == 5
    assert repository.without_filters().get_filters() == {}
    assert repository.get_filter("missing", "fallback") == "fallback"


async def test_unhandled_persistent_filter_is_ignored(user_repository):
    assert await user_repository.with_filter("unknown", 1).count() == 5


async def test_generic_apply_filter_override(engine):
    class RoleFilteredRepository(UserRepository):
        def apply_filter(self, query, name, value):
            if name == "role":
                return {"role": value}
            return None

    repository = RoleFilteredRepository(engine).with_filter("role", "admin")
    assert await repository.count() == 2


@pytest.mark.parametrize("city, expected", [("Berlin", 2), ("Paris", 1), ("Rome", 0)])
async def test_persistent_filter_values(user_repository, city, expected):
    assert await user_repository.with_filter("city", city).count() == expected
