from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.db.helpers import DatabaseError
from app.features.follow_up.cache.calculation_cache import CalculationCache, build_cache_key
from app.features.follow_up.cache.idle_timer import IdleCalculationTimer
from app.features.follow_up.cache.persisted_store import PersistedCalculationStore
from app.features.follow_up.domain.models import (
    FollowUpBuckets,
    FollowUpContact,
    StalenessBucket,
)
from tests.conftest import NOW


@pytest.fixture
def buckets(make_contact):
    return FollowUpBuckets(
        needs_approach=(FollowUpContact(contact=make_contact("a")),),
        stale_7_days=(
            FollowUpContact(contact=make_contact("b"), last_activity_at=NOW - timedelta(days=8)),
        ),
    )


# ---------------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------------


def test_cache_key_is_order_independent():
    assert build_cache_key("u1", ["B", "A"], ["y", "x"]) == build_cache_key(
        "u1", ["A", "B"], ["x", "y"]
    )


def test_cache_key_separates_users_and_labels():
    assert build_cache_key("u1", ["A"], []) != build_cache_key("u2", ["A"], [])
    assert build_cache_key("u1", ["A"], ["x"]) != build_cache_key("u1", ["A"], [])
    assert build_cache_key("u1", ["A"], []).startswith("follow_up:u1:")


# ---------------------------------------------------------------------------
# In-memory cache
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_returns_entry_within_ttl(clock, buckets):
    cache = CalculationCache(ttl_seconds=300, clock=clock)
    await cache.set("u1", ["a", "b"], [], buckets)

    clock.advance(seconds=299)
    entry = cache.get("u1", ["b", "a"], [])

    assert entry is not None
    assert entry.buckets == buckets


@pytest.mark.asyncio
async def test_get_misses_after_ttl(clock, buckets):
    cache = CalculationCache(ttl_seconds=300, clock=clock)
    await cache.set("u1", ["a", "b"], [], buckets)

    clock.advance(seconds=300)

    assert cache.get("u1", ["a", "b"], []) is None


@pytest.mark.asyncio
async def test_force_bypasses_cache(clock, buckets):
    cache = CalculationCache(clock=clock)
    await cache.set("u1", ["a", "b"], [], buckets)

    assert cache.get("u1", ["a", "b"], [], force=True) is None


@pytest.mark.asyncio
async def test_invalidate_user_makes_old_entries_miss(clock, buckets):
    cache = CalculationCache(clock=clock)
    await cache.set("u1", ["a", "b"], [], buckets)
    await cache.set("u2", ["a", "b"], [], buckets)

    cache.invalidate_user("u1")

    assert cache.get("u1", ["a", "b"], []) is None
    assert cache.get("u2", ["a", "b"], []) is not None

    await cache.set("u1", ["a", "b"], [], buckets)
    assert cache.get("u1", ["a", "b"], []) is not None


@pytest.mark.asyncio
async def test_invalidate_single_key(clock, buckets):
    cache = CalculationCache(clock=clock)
    await cache.set("u1", ["a", "b"], ["x"], buckets)
    await cache.set("u1", ["a", "b"], [], buckets)

    assert await cache.invalidate("u1", ["b", "a"], ["x"]) is True
    assert cache.get("u1", ["a", "b"], ["x"]) is None
    assert cache.get("u1", ["a", "b"], []) is not None


@pytest.mark.asyncio
async def test_clear_user(clock, buckets):
    cache = CalculationCache(clock=clock)
    await cache.set("u1", ["a"], [], buckets)
    await cache.set("u1", ["a", "b"], [], buckets)

    assert await cache.clear_user("u1") == 2
    assert cache.get("u1", ["a"], []) is None


@pytest.mark.asyncio
async def test_optimistic_patch_removes_contact(clock, buckets):
    cache = CalculationCache(clock=clock)
    await cache.set("u1", ["a", "b"], [], buckets)

    patched = await cache.apply_optimistic_patch("u1", ["a", "b"], [], "b")

    assert patched is not None
    assert patched.buckets.stale_7_days == ()
    assert cache.get("u1", ["a", "b"], []).buckets.bucket_of("b") is None
    assert cache.get("u1", ["a", "b"], []).buckets.bucket_of("a") is StalenessBucket.NEEDS_APPROACH


@pytest.mark.asyncio
async def test_optimistic_patch_with_explicit_bucket(clock, buckets):
    cache = CalculationCache(clock=clock)
    await cache.set("u1", ["a", "b"], [], buckets)

    patched = await cache.apply_optimistic_patch(
        "u1", ["a", "b"], [], "a", from_bucket=StalenessBucket.NEEDS_APPROACH
    )

    assert patched.buckets.needs_approach == ()


@pytest.mark.asyncio
async def test_optimistic_patch_absent(clock, buckets):
    cache = CalculationCache(clock=clock)
    assert await cache.apply_optimistic_patch("u1", ["a", "b"], [], "b") is None

    await cache.set("u1", ["a", "b"], [], buckets)
    assert await cache.apply_optimistic_patch("u1", ["a", "b"], [], "zzz") is None


@pytest.mark.asyncio
async def test_optimistic_patch_wrong_bucket_is_not_a_patch(clock, buckets):
    cache = CalculationCache(clock=clock)
    entry = await cache.set("u1", ["a", "b"], [], buckets)

    patched = await cache.apply_optimistic_patch(
        "u1", ["a", "b"], [], "b", from_bucket=StalenessBucket.STALE_30_DAYS
    )

    assert patched is None
    assert cache.get("u1", ["a", "b"], []) == entry


@pytest.mark.asyncio
async def test_patch_contact_hits_every_entry_of_user(clock, buckets):
    cache = CalculationCache(clock=clock)
    await cache.set("u1", ["a", "b"], [], buckets)
    await cache.set("u1", ["a", "b"], ["x"], buckets)
    await cache.set("u2", ["a", "b"], [], buckets)

    patched = await cache.patch_contact("u1", "b")

    assert len(patched) == 2
    assert cache.get("u2", ["a", "b"], []).buckets.bucket_of("b") is StalenessBucket.STALE_7_DAYS


@pytest.mark.asyncio
async def test_stats_track_hits_and_misses(clock, buckets):
    cache = CalculationCache(clock=clock)
    await cache.set("u1", ["a"], [], buckets)

    cache.get("u1", ["a"], [])
    cache.get("u1", ["missing"], [])

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5


@pytest.mark.asyncio
async def test_expired_entries_are_evicted(clock, buckets):
    cache = CalculationCache(ttl_seconds=300, clock=clock)
    await cache.set("u1", ["a"], [], buckets)
    await cache.set("u1", ["a"], ["x"], buckets)
    assert cache.stats()["entries"] == 2

    clock.advance(seconds=301)
    assert cache.get("u1", ["a"], []) is None
    assert cache.stats()["entries"] == 1

    await cache.set("u1", ["b"], [], buckets)
    assert cache.stats()["entries"] == 1
    assert len(cache._locks) == 1


@pytest.mark.asyncio
async def test_invalidate_user_drops_entries(clock, buckets):
    cache = CalculationCache(clock=clock)
    for labels in ([], ["x"], ["y"]):
        await cache.set("u1", ["a"], labels, buckets)
    await cache.set("u2", ["a"], [], buckets)

    cache.invalidate_user("u1")

    assert cache.stats()["entries"] == 1
    assert await cache.patch_contact("u1", "a") == []


# ---------------------------------------------------------------------------
# Persisted store
# ---------------------------------------------------------------------------


def _repository(row=None):
    repo = AsyncMock()
    repo.fetch_entry.return_value = row
    repo.delete_entry.return_value = 1
    repo.delete_for_user.return_value = 3
    repo.delete_stale.return_value = 5
    return repo


@pytest.mark.asyncio
async def test_persisted_load_valid_row(clock, buckets):
    row = {
        "cache_data": buckets.to_payload(),
        "metadata_version": 2,
        "expires_at": NOW + timedelta(minutes=30),
        "updated_at": NOW - timedelta(minutes=30),
    }
    store = PersistedCalculationStore(repository=_repository(row), metadata_version=2, clock=clock)

    loaded = await store.load("u1", "key")

    assert loaded is not None
    loaded_buckets, written_at = loaded
    assert loaded_buckets == buckets
    assert written_at == NOW - timedelta(minutes=30)


@pytest.mark.asyncio
async def test_persisted_version_mismatch_is_silent_miss(clock, buckets):
    row = {
        "cache_data": buckets.to_payload(),
        "metadata_version": 1,
        "expires_at": NOW + timedelta(minutes=30),
        "updated_at": NOW,
    }
    repo = _repository(row)
    store = PersistedCalculationStore(repository=repo, metadata_version=2, clock=clock)

    assert await store.load("u1", "key") is None
    repo.delete_entry.assert_awaited_once_with("u1", "key")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "cache_data",
    [
        {"needs_approach": [{"no_id": True}]},
        {bucket.value: [1] for bucket in StalenessBucket},
        {bucket.value: ["c1"] for bucket in StalenessBucket},
        ["not", "a", "mapping"],
    ],
)
async def test_persisted_corrupt_blob_is_silent_miss(clock, cache_data):
    row = {
        "cache_data": cache_data,
        "metadata_version": 1,
        "expires_at": NOW + timedelta(minutes=30),
        "updated_at": NOW,
    }
    repo = _repository(row)
    store = PersistedCalculationStore(repository=repo, clock=clock)

    assert await store.load("u1", "key") is None
    repo.delete_entry.assert_awaited_once()


@pytest.mark.asyncio
async def test_persisted_expired_row_is_miss(clock, buckets):
    row = {
        "cache_data": buckets.to_payload(),
        "metadata_version": 1,
        "expires_at": NOW - timedelta(seconds=1),
        "updated_at": NOW - timedelta(hours=1),
    }
    store = PersistedCalculationStore(repository=_repository(row), clock=clock)

    assert await store.load("u1", "key") is None


@pytest.mark.asyncio
async def test_persisted_database_error_degrades(clock, buckets):
    repo = _repository()
    repo.fetch_entry.side_effect = DatabaseError("down", operation="fetch_one")
    repo.upsert_entry.side_effect = DatabaseError("down", operation="execute_query")
    store = PersistedCalculationStore(repository=repo, clock=clock)

    assert await store.load("u1", "key") is None
    assert await store.save("u1", "key", buckets) is False


@pytest.mark.asyncio
async def test_persisted_save_sets_expiry_and_version(clock, buckets):
    repo = _repository()
    store = PersistedCalculationStore(
        repository=repo, metadata_version=4, ttl_seconds=3600, clock=clock
    )

    assert await store.save("u1", "key", buckets) is True

    kwargs = repo.upsert_entry.await_args.kwargs
    assert kwargs["metadata_version"] == 4
    assert kwargs["expires_at"] == NOW + timedelta(hours=1)
    assert kwargs["cache_data"] == buckets.to_payload()


@pytest.mark.asyncio
async def test_persisted_cleanup_uses_current_version(clock):
    repo = _repository()
    store = PersistedCalculationStore(repository=repo, metadata_version=3, clock=clock)

    assert await store.delete_expired() == 5
    repo.delete_stale.assert_awaited_once_with(3)
    assert await store.delete_for_user("u1") == 3


# ---------------------------------------------------------------------------
# Idle timer
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_idle_timer_never_calculated(fake_redis, clock):
    timer = IdleCalculationTimer(store=fake_redis, clock=clock)

    assert await timer.should_calculate("u1") is True
    assert await timer.status("u1") == "never"
    assert await timer.time_until_next("u1") == 0.0


@pytest.mark.asyncio
async def test_idle_timer_lifecycle(fake_redis, clock):
    timer = IdleCalculationTimer(
        store=fake_redis, idle_threshold_seconds=3600, fresh_window_seconds=300, clock=clock
    )
    await timer.mark_done("u1")

    assert await timer.should_calculate("u1") is False
    assert await timer.status("u1") == "fresh"
    assert fake_redis.ttls["follow_up:last_calculation:u1"] == 7200

    clock.advance(minutes=10)
    assert await timer.status("u1") == "idle"
    assert await timer.time_until_next("u1") == 3000.0

    clock.advance(minutes=50)
    assert await timer.status("u1") == "stale"
    assert await timer.should_calculate("u1") is True


@pytest.mark.asyncio
async def test_idle_timer_force(fake_redis, clock):
    timer = IdleCalculationTimer(store=fake_redis, clock=clock)
    await timer.mark_done("u1")

    await timer.force("u1")

    assert await timer.should_calculate("u1") is True


@pytest.mark.asyncio
async def test_idle_timer_ignores_malformed_value(fake_redis, clock):
    fake_redis.store["follow_up:last_calculation:u1"] = "not-a-date"
    timer = IdleCalculationTimer(store=fake_redis, clock=clock)

    assert await timer.should_calculate("u1") is True
