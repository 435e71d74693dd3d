"""3 段階の優先順位でフラグ値を決定する。"""

from __future__ import annotations

import structlog

from .exceptions import InfrastructureError
from .models import EXPOSURE_REASON, Environment, EvaluationContext, OverrideValue, ScopeType
from .repository import CachedFlagRepository
from .rules import apply_rules

logger = structlog.get_logger(__name__)


class OverrideResolver:
    """ユーザーオーバーライド → テナントオーバーライド → ルール評価の順で値を決める。"""

    def __init__(
        self, repository: CachedFlagRepository, *, fail_open_overrides: bool = False
    ) -> None:
        self._repository = repository
        self._fail_open_overrides = fail_open_overrides

    async def _lookup(
        self, env: Environment, key: str, scope_type: ScopeType, scope_id: str
    ) -> OverrideValue | None:
        try:
            return await self._repository.find_override(env, key, scope_type, scope_id)
        except InfrastructureError as e:
            if not self._fail_open_overrides:
                raise
            logger.warning(
                "override lookup failed, falling through",
                env=str(env),
                key=key,
                scope_type=str(scope_type),
                error=str(e),
            )
            return None

    async def resolve(
        self,
        env: Environment,
        key: str,
        tenant_id: str | None,
        user_id: str | None,
        context: EvaluationContext,
    ) -> bool:
        """フラグ値を決定する。フラグが存在しない場合は False。"""
        if user_id:
            override = await self._lookup(env, key, ScopeType.USER, user_id)
            if override is not None:
                return override.value
        if tenant_id:
            override = await self._lookup(env, key, ScopeType.TENANT, tenant_id)
            if override is not None:
                return override.value
        flag = await self._repository.get_flag(env, key)
        return apply_rules(flag, context)

    async def resolve_with_reason(
        self,
        env: Environment,
        key: str,
        tenant_id: str | None,
        user_id: str | None,
        context: EvaluationContext,
    ) -> tuple[bool, str]:
        """値と理由の組を返す。

        理由は現在すべて "evaluation" で、オーバーライドとルールの区別はしない。
        エクスポージャーに段階別の理由を載せるときの差し込み口。
        """
        value = await self.resolve(env, key, tenant_id, user_id, context)
        return value, EXPOSURE_REASON
