"""キャッシュアサイド層のユニットテスト"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from k1s0_flag_engine import (
    CachedFlagRepository,
    Environment,
    InfrastructureError,
    InMemoryCacheClient,
    InMemoryFlagStore,
    InMemoryInvalidationBus,
    InMemoryOverrideStore,
    ScopeType,
    VersionConflictError,
)
from k1s0_flag_engine.bus import DEFAULT_INVALIDATION_TOPIC

PROD = Environment.PROD
USER = ScopeType.USER


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class CountingFlagStore(InMemoryFlagStore):
    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    async def get(self, env, key):
        self.reads += 1
        return await super().get(env, key)


class SlowFlagStore(InMemoryFlagStore):
    async def get(self, env, key):
        await asyncio.sleep(1)
        return None


class BrokenCache(InMemoryCacheClient):
    async def get(self, key):
        raise ConnectionError("cache down")


def make_repository(
    flag_store=None, override_store=None, cache=None, bus=None, clock=None, **kwargs
) -> CachedFlagRepository:
    clock = clock or FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=UTC))
    return CachedFlagRepository(
        flag_store or InMemoryFlagStore(clock=clock),
        override_store or InMemoryOverrideStore(clock=clock),
        cache or InMemoryCacheClient(),
        bus or InMemoryInvalidationBus(),
        clock=clock,
        **kwargs,
    )


async def test_cache_hit_avoids_store() -> None:
    """2 回目の読み取りはキャッシュから返る。"""
    store = CountingFlagStore()
    cache = InMemoryCacheClient()
    repo = make_repository(flag_store=store, cache=cache)
    await repo.upsert_flag(PROD, "feature", True, [])

    first = await repo.get_flag(PROD, "feature")
    second = await repo.get_flag(PROD, "feature")
    assert first == second
    assert store.reads == 1
    assert cache.keys() == ["flags:prod:feature"]


async def test_absent_flag_is_not_cached() -> None:
    """存在しないフラグはキャッシュしない。"""
    cache = InMemoryCacheClient()
    repo = make_repository(cache=cache)
    assert await repo.get_flag(PROD, "missing") is None
    assert cache.keys() == []


async def test_write_invalidates_cache_and_publishes() -> None:
    """書き込みでキャッシュを削除し、新バージョン付きの通知を発行する。"""
    cache = InMemoryCacheClient()
    bus = InMemoryInvalidationBus()
    repo = make_repository(cache=cache, bus=bus)
    await repo.upsert_flag(PROD, "feature", False, [])
    await repo.get_flag(PROD, "feature")
    assert cache.keys() == ["flags:prod:feature"]

    flag = await repo.upsert_flag(PROD, "feature", True, [], expected_version=1)
    assert cache.keys() == []
    await repo.drain()

    assert [e.topic for e in bus.published] == [DEFAULT_INVALIDATION_TOPIC] * 2
    assert bus.published[-1].payload == {"env": "prod", "key": "feature", "version": 2}
    fresh = await repo.get_flag(PROD, "feature")
    assert fresh is not None
    assert fresh.enabled_default is True
    assert fresh.snapshot_version == flag.snapshot_version


async def test_version_conflict_leaves_cache_untouched() -> None:
    """競合時は VersionConflictError で、キャッシュも通知も変わらない。"""
    cache = InMemoryCacheClient()
    bus = InMemoryInvalidationBus()
    repo = make_repository(cache=cache, bus=bus)
    await repo.upsert_flag(PROD, "feature", False, [])
    await repo.get_flag(PROD, "feature")
    await repo.drain()

    with pytest.raises(VersionConflictError) as exc_info:
        await repo.upsert_flag(PROD, "feature", True, [], expected_version=0)
    assert exc_info.value.expected == 0
    assert exc_info.value.actual == 1
    await repo.drain()
    assert cache.keys() == ["flags:prod:feature"]
    assert len(bus.published) == 1


async def test_peer_drops_cached_flag_on_invalidation() -> None:
    """他インスタンスの書き込み通知でローカルキャッシュが消える。"""
    flag_store = InMemoryFlagStore()
    override_store = InMemoryOverrideStore()
    bus = InMemoryInvalidationBus()
    writer = make_repository(flag_store=flag_store, override_store=override_store, bus=bus)
    peer_cache = InMemoryCacheClient()
    peer = make_repository(
        flag_store=flag_store, override_store=override_store, cache=peer_cache, bus=bus
    )
    bus.subscribe(DEFAULT_INVALIDATION_TOPIC, peer.handle_event)

    await writer.upsert_flag(PROD, "feature", False, [])
    await writer.drain()
    stale = await peer.get_flag(PROD, "feature")
    assert stale is not None and stale.enabled_default is False

    await writer.upsert_flag(PROD, "feature", True, [], expected_version=1)
    await writer.drain()
    assert peer_cache.keys() == []
    fresh = await peer.get_flag(PROD, "feature")
    assert fresh is not None and fresh.enabled_default is True


async def test_override_invalidation_payload() -> None:
    """オーバーライドの書き込み通知にはスコープが含まれる。"""
    bus = InMemoryInvalidationBus()
    repo = make_repository(bus=bus)
    await repo.upsert_override(PROD, "feature", USER, "u1", True)
    await repo.soft_delete_override(PROD, "feature", USER, "u1")
    await repo.drain()
    expected = {"env": "prod", "key": "feature", "scope_type": "user", "scope_id": "u1"}
    assert [e.payload for e in bus.published] == [expected, expected]


async def test_cached_override_expiry_is_rechecked() -> None:
    """キャッシュヒットしたオーバーライドも有効期限を再確認する。"""
    clock = FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=UTC))
    cache = InMemoryCacheClient()
    repo = make_repository(cache=cache, clock=clock, ttl_seconds=3600)
    await repo.upsert_override(
        PROD, "feature", USER, "u1", True, expires_at=clock.now + timedelta(minutes=5)
    )
    found = await repo.find_override(PROD, "feature", USER, "u1")
    assert found is not None and found.value is True
    assert cache.keys() == ["flags:override:prod:feature:user:u1"]

    clock.now += timedelta(minutes=5)
    assert await repo.find_override(PROD, "feature", USER, "u1") is None
    assert cache.keys() == []


async def test_store_timeout_raises_infrastructure_error() -> None:
    """ストアのタイムアウトは InfrastructureError。"""
    repo = make_repository(flag_store=SlowFlagStore(), store_timeout=0.01)
    with pytest.raises(InfrastructureError) as exc_info:
        await repo.get_flag(PROD, "feature")
    assert exc_info.value.operation == "flag_store.get"


async def test_cache_failure_falls_back_to_store() -> None:
    """キャッシュ読み取りの障害時はストアから読む。"""
    store = CountingFlagStore()
    repo = make_repository(flag_store=store, cache=BrokenCache())
    await repo.upsert_flag(PROD, "feature", True, [])
    flag = await repo.get_flag(PROD, "feature")
    assert flag is not None and flag.enabled_default is True
    assert store.reads == 1


async def test_undecodable_cache_entry_is_discarded() -> None:
    """復号できないキャッシュエントリは捨ててストアから読む。"""
    cache = InMemoryCacheClient()
    repo = make_repository(cache=cache)
    await repo.upsert_flag(PROD, "feature", True, [])
    await cache.set("flags:prod:feature", "{not json")
    flag = await repo.get_flag(PROD, "feature")
    assert flag is not None and flag.enabled_default is True


async def test_publish_failure_does_not_fail_write() -> None:
    """通知の発行失敗は書き込みの結果に影響しない。"""

    class FailingBus(InMemoryInvalidationBus):
        async def publish(self, topic, payload):
            raise ConnectionError("bus down")

    repo = make_repository(bus=FailingBus())
    flag = await repo.upsert_flag(PROD, "feature", True, [])
    await repo.drain()
    assert flag.snapshot_version == 1


async def test_malformed_invalidation_is_ignored() -> None:
    """env や key の無い通知は無視する。"""
    cache = InMemoryCacheClient()
    repo = make_repository(cache=cache)
    await cache.set("flags:prod:feature", "{}")
    await repo.handle_invalidation({"key": "feature"})
    assert cache.keys() == ["flags:prod:feature"]
    await repo.handle_invalidation({"env": "prod", "key": "feature"})
    assert cache.keys() == []


async def test_colon_in_identifiers_does_not_collide_in_cache() -> None:
    """":" を含むキーやスコープ ID でも別のオーバーライドとしてキャッシュされる。"""
    cache = InMemoryCacheClient()
    repo = make_repository(cache=cache)
    await repo.upsert_override(PROD, "a", USER, "tenant:x", True)
    assert await repo.find_override(PROD, "a", USER, "tenant:x") is not None

    assert await repo.find_override(PROD, "a:user", ScopeType.TENANT, "x") is None
    assert cache.keys() == ["flags:override:prod:a:user:tenant%3Ax"]
