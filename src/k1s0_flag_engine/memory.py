"""InMemoryFlagStore / InMemoryOverrideStore 実装"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

from .models import (
    Environment,
    FlagDefinition,
    FlagUpsertResult,
    Override,
    OverridePatch,
    OverrideValue,
    Rule,
    ScopeType,
    merge_override,
)
from .store import FlagStore, OverrideStore

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class InMemoryFlagStore(FlagStore):
    """テスト用インメモリフラグストア。"""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._flags: dict[tuple[Environment, str], FlagDefinition] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, env: Environment, key: str) -> FlagDefinition | None:
        flag = self._flags.get((env, key))
        return replace(flag, rules=list(flag.rules)) if flag is not None else None

    async def upsert(
        self,
        env: Environment,
        key: str,
        enabled_default: bool,
        rules: list[Rule],
        expected_version: int | None = None,
        actor_id: str | None = None,
    ) -> FlagUpsertResult:
        async with self._lock:
            current = self._flags.get((env, key))
            cur_version = current.snapshot_version if current is not None else 0
            if expected_version is not None and expected_version != cur_version:
                return FlagUpsertResult(conflict=True, actual_version=cur_version)

            flag = FlagDefinition(
                env=env,
                key=key,
                enabled_default=enabled_default,
                rules=list(rules),
                snapshot_version=cur_version + 1,
                last_editor_id=actor_id,
                updated_at=self._clock(),
            )
            self._flags[(env, key)] = flag
            return FlagUpsertResult(flag=replace(flag), actual_version=flag.snapshot_version)


class InMemoryOverrideStore(OverrideStore):
    """テスト用インメモリオーバーライドストア。行は物理削除しない。"""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._rows: dict[tuple[Environment, str, ScopeType, str], Override] = {}
        self._clock = clock

    async def find(
        self,
        env: Environment,
        key: str,
        scope_type: ScopeType,
        scope_id: str,
        now: datetime,
    ) -> OverrideValue | None:
        row = self._rows.get((env, key, scope_type, scope_id))
        if row is None or not row.is_visible(now):
            return None
        return row.projection()

    async def upsert(
        self,
        env: Environment,
        key: str,
        scope_type: ScopeType,
        scope_id: str,
        value: bool,
        expires_at: datetime | None = None,
    ) -> Override:
        identity = (env, key, scope_type, scope_id)
        patch = OverridePatch(
            value=value,
            expires_at=expires_at,
            clear_expires_at=expires_at is None,
            deleted=False,
        )
        row = merge_override(
            self._rows.get(identity),
            patch,
            env=env,
            key=key,
            scope_type=scope_type,
            scope_id=scope_id,
            now=self._clock(),
        )
        self._rows[identity] = row
        return replace(row)

    async def soft_delete(
        self,
        env: Environment,
        key: str,
        scope_type: ScopeType,
        scope_id: str,
    ) -> None:
        identity = (env, key, scope_type, scope_id)
        existing = self._rows.get(identity)
        if existing is None:
            return
        self._rows[identity] = merge_override(
            existing,
            OverridePatch(deleted=True),
            env=env,
            key=key,
            scope_type=scope_type,
            scope_id=scope_id,
            now=self._clock(),
        )

    async def list_expired_for_cleanup(self, now: datetime, limit: int) -> list[Override]:
        expired = [
            replace(row)
            for row in self._rows.values()
            if row.deleted_at is None and row.expires_at is not None and row.expires_at <= now
        ]
        return expired[:limit]

    def all_rows(self) -> list[Override]:
        return list(self._rows.values())
