# tests/database_implementations/test_soft_delete.py

from datetime import datetime, timezone

import pytest

from tests.models import UserRepository


async def test_default_mode_includes_deleted_rows(user_repository):
    assert await user_repository.count() == 5


async def test_fetch_variants(user_repository, entity_ids):
    assert entity_ids(await user_repository.fetch_without_deleted(order_by="id")) == [1, 2, 3, 5]
    assert entity_ids(await user_repository.fetch_with_deleted(order_by="id")) == [1, 2, 3, 4, 5]
    assert entity_ids(await user_repository.fetch_only_deleted()) == [4]


async def test_fetch_variants_combine_with_criteria(user_repository, entity_ids):
    users = await user_repository.fetch_without_deleted({"status": "active"}, order_by="id")
    assert entity_ids(users) == [1, 2]


async def test_count_variants(user_repository):
    assert await user_repository.count_without_deleted() == 4
    assert await user_repository.count_only_deleted() == 1
    assert await user_repository.count_only_deleted({"role": "admin"}) == 0


async def test_exclude_soft_deleted_returns_configured_copy(user_repository):
    excluding = user_repository.exclude_soft_deleted()
    assert await excluding.count() == 4
    assert await user_repository.count() == 5
    assert await excluding.include_soft_deleted().count() == 5


async def test_builder_respects_repository_mode(user_repository):
    assert await user_repository.exclude_soft_deleted().query().where("status", "active").count() == 2


async def test_soft_delete_and_restore(user_repository):
    stamped = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert await user_repository.soft_delete({"id": 2}, at=stamped) == 1
    assert await user_repository.count_only_deleted() == 2

    bob = await user_repository.fetch_one({"id": 2})
    assert bob.deleted_at == stamped

    # already deleted rows are left alone
    assert await user_repository.soft_delete({"id": 2}) == 0

    assert await user_repository.restore({"id": 2}) == 1
    assert await user_repository.restore({"id": 2}) == 0
    assert await user_repository.count_only_deleted() == 1


async def test_soft_delete_defaults_to_now(user_repository):
    before = datetime.now(timezone.utc)
    await user_repository.soft_delete({"name": "Eve"})
    eve = await user_repository.fetch_one({"name": "Eve"})
    assert eve.deleted_at >= before.replace(microsecond=0)


async def test_soft_delete_without_field_configured(engine):
    repository = UserRepository(engine, soft_delete_field=None)
    with pytest.raises(ValueError):
        await repository.soft_delete({"id": 1})
    # without a field the modes are no-ops
    assert await repository.exclude_soft_deleted().count() == 5
