"""FlagEngine: 評価・書き込み・オーバーライド操作の公開ファサード"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog
from opentelemetry import trace

from .background import BackgroundTasks
from .bus import (
    DEFAULT_INVALIDATION_TOPIC,
    InvalidationEvent,
    InvalidationPublisher,
    KafkaInvalidationPublisher,
    NoOpInvalidationPublisher,
    decode_invalidation,
)
from .cache import CacheClient, InMemoryCacheClient
from .config import FlagEngineConfig
from .evaluator import BatchEvaluator, parse_keys
from .exceptions import ValidationError, VersionConflictError
from .exposure import (
    BufferedExposureSink,
    ExposureSink,
    HttpExposureSink,
    LoggingExposureSink,
    NoOpExposureSink,
)
from .guard import DEFAULT_PLATFORM_ONLY_KEYS, ensure_override_allowed
from .log import configure_logging
from .memory import Clock, InMemoryFlagStore, InMemoryOverrideStore, utc_now
from .models import (
    Environment,
    EvaluationContext,
    FlagDefinition,
    Override,
    OverrideValue,
    Rule,
    ScopeType,
    parse_rules,
)
from .repository import CachedFlagRepository
from .resolver import OverrideResolver
from .store import FlagStore, OverrideStore

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer("k1s0.flag_engine")


def _require_text(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "must be a non-empty string")
    return value.strip()


def _require_bool(field: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(field, "must be a boolean")
    return value


def _optional_datetime(field: str, value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise ValidationError(field, "must be a datetime")
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class FlagEngine:
    """フィーチャーフラグ評価エンジン。

    ストア・キャッシュ・バス・エクスポージャーシンクはコンストラクタで注入する。
    """

    def __init__(
        self,
        flag_store: FlagStore,
        override_store: OverrideStore,
        cache: CacheClient,
        publisher: InvalidationPublisher,
        sink: ExposureSink,
        *,
        environment: Environment | str = Environment.DEV,
        platform_only_keys: Iterable[str] = DEFAULT_PLATFORM_ONLY_KEYS,
        ttl_seconds: float = 30.0,
        cache_timeout: float = 0.5,
        store_timeout: float = 2.0,
        fail_open_overrides: bool = False,
        topic: str = DEFAULT_INVALIDATION_TOPIC,
        clock: Clock = utc_now,
    ) -> None:
        self._environment = Environment.parse(environment)
        self._platform_only_keys = frozenset(platform_only_keys)
        self._publisher = publisher
        self._sink = sink
        self._clock = clock
        self._background = BackgroundTasks()
        self._repository = CachedFlagRepository(
            flag_store,
            override_store,
            cache,
            publisher,
            ttl_seconds=ttl_seconds,
            cache_timeout=cache_timeout,
            store_timeout=store_timeout,
            topic=topic,
            background=self._background,
            clock=clock,
        )
        self._resolver = OverrideResolver(
            self._repository, fail_open_overrides=fail_open_overrides
        )
        self._evaluator = BatchEvaluator(
            self._resolver, sink, background=self._background, clock=clock
        )

    @classmethod
    def from_config(
        cls,
        config: FlagEngineConfig,
        *,
        flag_store: FlagStore | None = None,
        override_store: OverrideStore | None = None,
        cache: CacheClient | None = None,
        publisher: InvalidationPublisher | None = None,
        sink: ExposureSink | None = None,
        setup_logging: bool = False,
    ) -> FlagEngine:
        """設定からエンジンを組み立てる。省略したポートはインメモリ実装で補う。"""
        if setup_logging:
            configure_logging(
                config.log.level, config.log.format, environment=str(config.environment)
            )
        if publisher is None:
            if config.invalidation.brokers:
                publisher = KafkaInvalidationPublisher(
                    config.invalidation.brokers, timeout_seconds=config.timeouts.store_seconds
                )
            else:
                publisher = NoOpInvalidationPublisher()
        if sink is None:
            sink = _sink_from_config(config)
        return cls(
            flag_store or InMemoryFlagStore(),
            override_store or InMemoryOverrideStore(),
            cache or InMemoryCacheClient(),
            publisher,
            sink,
            environment=config.environment,
            platform_only_keys=config.platform_only_keys,
            ttl_seconds=config.cache.ttl_seconds,
            cache_timeout=config.timeouts.cache_seconds,
            store_timeout=config.timeouts.store_seconds,
            fail_open_overrides=config.resolver.fail_open_overrides,
            topic=config.invalidation.topic,
        )

    @property
    def environment(self) -> Environment:
        return self._environment

    @property
    def repository(self) -> CachedFlagRepository:
        return self._repository

    def _env(self, env: Environment | str | None) -> Environment:
        return self._environment if env is None else Environment.parse(env)

    async def evaluate_many(
        self,
        keys: list[str] | str,
        context: EvaluationContext | dict[str, Any],
        env: Environment | str | None = None,
    ) -> dict[str, bool]:
        """複数フラグを評価する。env 省略時は既定の環境。"""
        return await self._evaluator.evaluate_many(self._env(env), keys, context)

    async def is_enabled(
        self,
        key: str,
        context: EvaluationContext | dict[str, Any],
        env: Environment | str | None = None,
    ) -> bool:
        """単一フラグを評価する。"""
        key = _require_text("key", key)
        results = await self.evaluate_many([key], context, env)
        return results[key]

    async def get_flag(self, env: Environment | str | None, key: str) -> FlagDefinition | None:
        return await self._repository.get_flag(self._env(env), _require_text("key", key))

    async def get_flags(
        self, env: Environment | str | None, keys: list[str] | str
    ) -> dict[str, FlagDefinition | None]:
        return await self._repository.get_flags(self._env(env), parse_keys(keys))

    async def write_flag(
        self,
        env: Environment | str | None,
        key: str,
        enabled_default: bool,
        rules: list[Rule | dict[str, Any]] | None,
        actor_id: str | None = None,
        expected_version: int | None = None,
    ) -> FlagDefinition:
        """フラグ定義をバージョン付きで保存する。

        expected_version が保存済みバージョン（未作成なら 0）と異なる場合は
        VersionConflictError。呼び出し側で再取得して再送する。
        """
        resolved_env = self._env(env)
        key = _require_text("key", key)
        enabled_default = _require_bool("enabled_default", enabled_default)
        parsed_rules = parse_rules(rules)
        if expected_version is not None and (
            isinstance(expected_version, bool)
            or not isinstance(expected_version, int)
            or expected_version < 0
        ):
            raise ValidationError("expected_version", "must be a non-negative integer")

        with tracer.start_as_current_span("flag_engine.write_flag") as span:
            span.set_attribute("flag_engine.env", str(resolved_env))
            span.set_attribute("flag_engine.key", key)
            try:
                flag = await self._repository.upsert_flag(
                    resolved_env, key, enabled_default, parsed_rules, expected_version, actor_id
                )
            except VersionConflictError as e:
                logger.warning(
                    "flag write rejected",
                    env=str(resolved_env),
                    key=key,
                    expected=e.expected,
                    actual=e.actual,
                )
                raise
            span.set_attribute("flag_engine.version", flag.snapshot_version)
        logger.info(
            "flag written",
            env=str(resolved_env),
            key=key,
            version=flag.snapshot_version,
            actor_id=actor_id,
        )
        return flag

    async def set_override(
        self,
        env: Environment | str | None,
        key: str,
        scope_type: ScopeType | str,
        scope_id: str,
        value: bool,
        expires_at: datetime | None = None,
        actor_is_super_admin: bool = False,
    ) -> OverrideValue:
        """オーバーライドを設定する。expires_at が None なら無期限。"""
        resolved_env = self._env(env)
        key = _require_text("key", key)
        ensure_override_allowed(key, actor_is_super_admin, self._platform_only_keys)
        resolved_scope = ScopeType.parse(scope_type)
        scope_id = _require_text("scope_id", scope_id)
        value = _require_bool("value", value)
        expires_at = _optional_datetime("expires_at", expires_at)

        override = await self._repository.upsert_override(
            resolved_env, key, resolved_scope, scope_id, value, expires_at
        )
        logger.info(
            "override set",
            env=str(resolved_env),
            key=key,
            scope_type=str(resolved_scope),
            scope_id=scope_id,
            value=value,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return override.projection()

    async def clear_override(
        self,
        env: Environment | str | None,
        key: str,
        scope_type: ScopeType | str,
        scope_id: str,
        actor_is_super_admin: bool = False,
    ) -> None:
        """オーバーライドを論理削除する。"""
        resolved_env = self._env(env)
        key = _require_text("key", key)
        ensure_override_allowed(key, actor_is_super_admin, self._platform_only_keys)
        resolved_scope = ScopeType.parse(scope_type)
        scope_id = _require_text("scope_id", scope_id)

        await self._repository.soft_delete_override(resolved_env, key, resolved_scope, scope_id)
        logger.info(
            "override cleared",
            env=str(resolved_env),
            key=key,
            scope_type=str(resolved_scope),
            scope_id=scope_id,
        )

    async def get_override(
        self,
        env: Environment | str | None,
        key: str,
        scope_type: ScopeType | str,
        scope_id: str,
    ) -> OverrideValue | None:
        """有効なオーバーライドを返す。期限切れ・削除済みは None。"""
        return await self._repository.find_override(
            self._env(env),
            _require_text("key", key),
            ScopeType.parse(scope_type),
            _require_text("scope_id", scope_id),
        )

    async def expired_overrides(
        self, now: datetime | None = None, limit: int = 200
    ) -> list[Override]:
        """期限切れで未削除のオーバーライドを返す（全環境）。"""
        return await self._repository.list_expired_overrides(now or self._clock(), limit)

    async def handle_invalidation(self, payload: dict[str, Any]) -> None:
        """他インスタンスの無効化通知を処理する。"""
        await self._repository.handle_invalidation(payload)

    async def handle_event(self, event: InvalidationEvent) -> None:
        await self._repository.handle_event(event)

    async def handle_message(self, value: bytes) -> None:
        """Kafka から受信した無効化メッセージを処理する。"""
        await self._repository.handle_invalidation(decode_invalidation(value))

    async def drain(self) -> None:
        """未完了の通知発行・エクスポージャー記録を待つ。"""
        await self._background.drain()

    async def shutdown(self) -> None:
        """バックグラウンド処理を待ち、バッファとプロデューサーを閉じる。"""
        await self.drain()
        if isinstance(self._sink, BufferedExposureSink):
            await self._sink.flush()
        if isinstance(self._publisher, KafkaInvalidationPublisher):
            self._publisher.close()


def _sink_from_config(config: FlagEngineConfig) -> ExposureSink:
    section = config.exposure
    if not section.enabled:
        return NoOpExposureSink()
    sink: ExposureSink
    if section.endpoint:
        sink = HttpExposureSink(
            section.endpoint,
            api_key=section.api_key,
            timeout_seconds=section.timeout_seconds,
        )
    else:
        sink = LoggingExposureSink()
    if section.batch_size > 1:
        sink = BufferedExposureSink(sink, max_batch_size=section.batch_size)
    return sink
