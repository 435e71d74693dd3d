"""キャッシュアサイド層。

FlagStore / OverrideStore の読み書きを短い TTL のキャッシュで包む。書き込み成功時は
対応するキャッシュエントリを更新せずに削除し、その後バスへ無効化通知を投げる
（完了は待たない）。他インスタンスは通知を受けてローカルのエントリを削除するため、
インスタンス間の整合性は結果整合で、書き込み完了から通知処理までの間に古い値が
見える時間窓がある。
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable
from datetime import datetime
from typing import Any, TypeVar

import structlog

from .background import BackgroundTasks
from .bus import DEFAULT_INVALIDATION_TOPIC, InvalidationEvent, InvalidationPublisher
from .cache import CacheClient, flag_cache_key, override_cache_key
from .exceptions import FlagEngineError, InfrastructureError, VersionConflictError
from .memory import Clock, utc_now
from .metrics import (
    cache_hits_total,
    cache_misses_total,
    invalidations_published_total,
    version_conflicts_total,
)
from .models import (
    Environment,
    FlagDefinition,
    Override,
    OverrideValue,
    Rule,
    ScopeType,
)
from .store import FlagStore, OverrideStore

T = TypeVar("T")

logger = structlog.get_logger(__name__)


class CachedFlagRepository:
    """フラグ・オーバーライドの読み書きをキャッシュアサイドで提供する。"""

    def __init__(
        self,
        flag_store: FlagStore,
        override_store: OverrideStore,
        cache: CacheClient,
        publisher: InvalidationPublisher,
        *,
        ttl_seconds: float = 30.0,
        cache_timeout: float = 0.5,
        store_timeout: float = 2.0,
        topic: str = DEFAULT_INVALIDATION_TOPIC,
        background: BackgroundTasks | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._flags = flag_store
        self._overrides = override_store
        self._cache = cache
        self._publisher = publisher
        self._ttl = ttl_seconds
        self._cache_timeout = cache_timeout
        self._store_timeout = store_timeout
        self._topic = topic
        self._background = background or BackgroundTasks()
        self._clock = clock

    async def _store_call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._store_timeout)
        except FlagEngineError:
            raise
        except Exception as e:
            raise InfrastructureError(operation, e) from e

    async def _cache_call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._cache_timeout)
        except Exception as e:
            raise InfrastructureError(operation, e) from e

    async def _cache_read(self, cache_key: str, kind: str) -> dict[str, Any] | None:
        # キャッシュ障害時はストアを直接読む
        try:
            raw = await self._cache_call("cache.get", self._cache.get(cache_key))
        except InfrastructureError as e:
            logger.warning("cache read failed", cache_key=cache_key, error=str(e))
            return None
        if raw is None:
            cache_misses_total.add(1, {"kind": kind})
            return None
        try:
            data: dict[str, Any] = json.loads(raw)
        except ValueError:
            logger.warning("discarding undecodable cache entry", cache_key=cache_key)
            await self._cache_delete_quietly(cache_key)
            return None
        cache_hits_total.add(1, {"kind": kind})
        return data

    async def _cache_write(self, cache_key: str, data: dict[str, Any]) -> None:
        try:
            await self._cache_call(
                "cache.set", self._cache.set(cache_key, json.dumps(data), ttl=self._ttl)
            )
        except InfrastructureError as e:
            logger.warning("cache write failed", cache_key=cache_key, error=str(e))

    async def _cache_delete_quietly(self, cache_key: str) -> None:
        try:
            await self._cache_call("cache.delete", self._cache.delete(cache_key))
        except InfrastructureError as e:
            logger.warning("cache delete failed", cache_key=cache_key, error=str(e))

    async def get_flag(self, env: Environment, key: str) -> FlagDefinition | None:
        """フラグ定義を取得する。"""
        cache_key = flag_cache_key(env, key)
        cached = await self._cache_read(cache_key, "flag")
        if cached is not None:
            return FlagDefinition.from_dict(cached)
        flag = await self._store_call("flag_store.get", self._flags.get(env, key))
        if flag is not None:
            await self._cache_write(cache_key, flag.to_dict())
        return flag

    async def get_flags(
        self, env: Environment, keys: list[str]
    ) -> dict[str, FlagDefinition | None]:
        """複数のフラグ定義を並行して取得する。"""
        flags = await asyncio.gather(*(self.get_flag(env, key) for key in keys))
        return dict(zip(keys, flags, strict=True))

    async def find_override(
        self, env: Environment, key: str, scope_type: ScopeType, scope_id: str
    ) -> OverrideValue | None:
        """有効なオーバーライドを取得する。キャッシュヒット時も有効期限を再確認する。"""
        cache_key = override_cache_key(env, key, scope_type, scope_id)
        now = self._clock()
        cached = await self._cache_read(cache_key, "override")
        if cached is not None:
            value = OverrideValue.from_dict(cached)
            if value.is_active(now):
                return value
            await self._cache_delete_quietly(cache_key)
            return None
        found = await self._store_call(
            "override_store.find",
            self._overrides.find(env, key, scope_type, scope_id, now),
        )
        if found is not None and found.is_active(now):
            await self._cache_write(cache_key, found.to_dict())
            return found
        return None

    async def upsert_flag(
        self,
        env: Environment,
        key: str,
        enabled_default: bool,
        rules: list[Rule],
        expected_version: int | None = None,
        actor_id: str | None = None,
    ) -> FlagDefinition:
        """フラグ定義を保存する。バージョン不一致なら VersionConflictError。"""
        result = await self._store_call(
            "flag_store.upsert",
            self._flags.upsert(env, key, enabled_default, rules, expected_version, actor_id),
        )
        if result.conflict or result.flag is None:
            version_conflicts_total.add(1, {"env": str(env)})
            raise VersionConflictError(
                expected=expected_version if expected_version is not None else -1,
                actual=result.actual_version,
            )
        flag = result.flag
        await self._cache_call("cache.delete", self._cache.delete(flag_cache_key(env, key)))
        self._notify({"env": str(env), "key": key, "version": flag.snapshot_version})
        return flag

    async def upsert_override(
        self,
        env: Environment,
        key: str,
        scope_type: ScopeType,
        scope_id: str,
        value: bool,
        expires_at: datetime | None = None,
    ) -> Override:
        """オーバーライドを作成または更新する。"""
        override = await self._store_call(
            "override_store.upsert",
            self._overrides.upsert(env, key, scope_type, scope_id, value, expires_at),
        )
        await self._invalidate_override(env, key, scope_type, scope_id)
        return override

    async def soft_delete_override(
        self, env: Environment, key: str, scope_type: ScopeType, scope_id: str
    ) -> None:
        """オーバーライドを論理削除する。"""
        await self._store_call(
            "override_store.soft_delete",
            self._overrides.soft_delete(env, key, scope_type, scope_id),
        )
        await self._invalidate_override(env, key, scope_type, scope_id)

    async def list_expired_overrides(self, now: datetime, limit: int) -> list[Override]:
        return await self._store_call(
            "override_store.list_expired_for_cleanup",
            self._overrides.list_expired_for_cleanup(now, limit),
        )

    async def _invalidate_override(
        self, env: Environment, key: str, scope_type: ScopeType, scope_id: str
    ) -> None:
        await self._cache_call(
            "cache.delete",
            self._cache.delete(override_cache_key(env, key, scope_type, scope_id)),
        )
        self._notify(
            {
                "env": str(env),
                "key": key,
                "scope_type": str(scope_type),
                "scope_id": scope_id,
            }
        )

    def _notify(self, payload: dict[str, Any]) -> None:
        self._background.submit("publish_invalidation", self._publish(payload))

    async def _publish(self, payload: dict[str, Any]) -> None:
        await asyncio.wait_for(
            self._publisher.publish(self._topic, payload), timeout=self._store_timeout
        )
        invalidations_published_total.add(1, {"topic": self._topic})

    async def handle_invalidation(self, payload: dict[str, Any]) -> None:
        """他インスタンスからの無効化通知を受けてローカルのエントリを削除する。"""
        env = payload.get("env")
        key = payload.get("key")
        if not env or not key:
            logger.warning("ignoring malformed invalidation", payload=payload)
            return
        scope_type = payload.get("scope_type")
        scope_id = payload.get("scope_id")
        if scope_type and scope_id:
            cache_key = override_cache_key(env, key, scope_type, scope_id)
        else:
            cache_key = flag_cache_key(env, key)
        await self._cache_delete_quietly(cache_key)

    async def handle_event(self, event: InvalidationEvent) -> None:
        await self.handle_invalidation(event.payload)

    async def drain(self) -> None:
        """未完了の通知発行を待つ。"""
        await self._background.drain()
