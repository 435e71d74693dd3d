"""FlagStore / OverrideStore 抽象基底クラス"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from .models import (
    Environment,
    FlagDefinition,
    FlagUpsertResult,
    Override,
    OverrideValue,
    Rule,
    ScopeType,
)


class FlagStore(ABC):
    """フラグ定義ストア抽象基底クラス。"""

    @abstractmethod
    async def get(self, env: Environment, key: str) -> FlagDefinition | None:
        """フラグ定義を取得する。存在しなければ None。"""
        ...

    @abstractmethod
    async def upsert(
        self,
        env: Environment,
        key: str,
        enabled_default: bool,
        rules: list[Rule],
        expected_version: int | None = None,
        actor_id: str | None = None,
    ) -> FlagUpsertResult:
        """バージョン検査とインクリメントを原子的に行って保存する。

        expected_version が現在のバージョン（未作成なら 0）と異なる場合は
        何も変更せず conflict=True を返す。
        """
        ...

    async def get_many(
        self, env: Environment, keys: list[str]
    ) -> dict[str, FlagDefinition | None]:
        """複数キーのフラグ定義を取得する。"""
        return {key: await self.get(env, key) for key in keys}


class OverrideStore(ABC):
    """オーバーライドストア抽象基底クラス。"""

    @abstractmethod
    async def find(
        self,
        env: Environment,
        key: str,
        scope_type: ScopeType,
        scope_id: str,
        now: datetime,
    ) -> OverrideValue | None:
        """有効なオーバーライドを取得する。期限切れ・論理削除済みは None。"""
        ...

    @abstractmethod
    async def upsert(
        self,
        env: Environment,
        key: str,
        scope_type: ScopeType,
        scope_id: str,
        value: bool,
        expires_at: datetime | None = None,
    ) -> Override:
        """オーバーライドを作成または更新する（後勝ち）。"""
        ...

    @abstractmethod
    async def soft_delete(
        self,
        env: Environment,
        key: str,
        scope_type: ScopeType,
        scope_id: str,
    ) -> None:
        """オーバーライドを論理削除する。存在しなければ何もしない。"""
        ...

    @abstractmethod
    async def list_expired_for_cleanup(self, now: datetime, limit: int) -> list[Override]:
        """期限切れかつ未削除のオーバーライドを最大 limit 件返す（スイープ用）。"""
        ...
