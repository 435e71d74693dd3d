"""flag_engine データモデル"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from .conditions import Condition, condition_from_dict, condition_to_dict, parse_timestamp
from .exceptions import ValidationError

EXPOSURE_REASON = "evaluation"


class Environment(StrEnum):
    """フラグの環境。"""

    DEV = "dev"
    STAGE = "stage"
    PROD = "prod"
    TEST = "test"

    @classmethod
    def parse(cls, value: str | Environment) -> Environment:
        try:
            return cls(value)
        except ValueError as e:
            raise ValidationError("env", f"unknown environment: {value!r}") from e


class ScopeType(StrEnum):
    """オーバーライドのスコープ。"""

    USER = "user"
    TENANT = "tenant"

    @classmethod
    def parse(cls, value: str | ScopeType) -> ScopeType:
        try:
            return cls(value)
        except ValueError as e:
            raise ValidationError("scope_type", f"unknown scope type: {value!r}") from e


@dataclass
class EvaluationContext:
    """フラグ評価コンテキスト。評価ごとに生成され、永続化されない。"""

    user_id: str | None = None
    tenant_id: str | None = None
    email: str | None = None
    country: str | None = None
    tenant_tags: list[str] = field(default_factory=list)
    plan: str | None = None
    now: datetime | None = None

    def __post_init__(self) -> None:
        self.now = parse_timestamp(self.now, "context.now")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvaluationContext:
        """API リクエストの辞書（camelCase）から EvaluationContext を生成する。"""
        tenant_tags = data.get("tenantTags") or []
        if not isinstance(tenant_tags, list):
            raise ValidationError("context.tenantTags", "must be a list of strings")
        return cls(
            user_id=data.get("userId"),
            tenant_id=data.get("tenantId"),
            email=data.get("email"),
            country=data.get("country"),
            tenant_tags=list(tenant_tags),
            plan=data.get("plan"),
            now=data.get("now"),
        )


@dataclass(frozen=True)
class Rule:
    """条件（AND）と結果値の組。"""

    conditions: tuple[Condition, ...]
    value: bool

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Rule:
        if not isinstance(data, dict):
            raise ValidationError("rule", "must be an object")
        then = data.get("then")
        if not isinstance(then, dict) or not isinstance(then.get("value"), bool):
            raise ValidationError("rule.then", "must be an object with a boolean value")
        raw_conditions = data.get("if") or []
        if not isinstance(raw_conditions, list):
            raise ValidationError("rule.if", "must be a list")
        return cls(
            conditions=tuple(condition_from_dict(c) for c in raw_conditions),
            value=then["value"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "if": [condition_to_dict(c) for c in self.conditions],
            "then": {"value": self.value},
        }


def parse_rules(rules: list[Rule | dict[str, Any]] | None) -> list[Rule]:
    """Rule または辞書のリストを Rule のリストに正規化する。"""
    if rules is None:
        return []
    if not isinstance(rules, list):
        raise ValidationError("rules", "must be a list")
    return [r if isinstance(r, Rule) else Rule.from_dict(r) for r in rules]


@dataclass
class FlagDefinition:
    """フラグ定義。(env, key) で一意。"""

    env: Environment
    key: str
    enabled_default: bool = False
    rules: list[Rule] = field(default_factory=list)
    snapshot_version: int = 0
    last_editor_id: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlagDefinition:
        """キャッシュ／ストアの辞書から FlagDefinition を生成する。"""
        return cls(
            env=Environment.parse(data["env"]),
            key=data["key"],
            enabled_default=bool(data.get("enabledDefault", False)),
            rules=[Rule.from_dict(r) for r in data.get("rules", [])],
            snapshot_version=int(data.get("snapshotVersion", 0)),
            last_editor_id=data.get("lastEditorId"),
            updated_at=parse_timestamp(data.get("updatedAt"), "updatedAt") or datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "env": str(self.env),
            "key": self.key,
            "enabledDefault": self.enabled_default,
            "rules": [r.to_dict() for r in self.rules],
            "snapshotVersion": self.snapshot_version,
            "lastEditorId": self.last_editor_id,
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class FlagUpsertResult:
    """FlagStore.upsert の結果。競合時は flag が None で conflict が True。"""

    flag: FlagDefinition | None = None
    conflict: bool = False
    actual_version: int = 0


@dataclass(frozen=True)
class OverrideValue:
    """オーバーライドの読み取り用射影。"""

    value: bool
    expires_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        """有効期限内か確認する。"""
        return self.expires_at is None or self.expires_at > now

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OverrideValue:
        return cls(
            value=bool(data["value"]),
            expires_at=parse_timestamp(data.get("expiresAt"), "expiresAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class Override:
    """スコープ別オーバーライド。(env, key, scope_type, scope_id) で一意。"""

    env: Environment
    key: str
    scope_type: ScopeType
    scope_id: str
    value: bool
    expires_at: datetime | None = None
    deleted_at: datetime | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_visible(self, now: datetime) -> bool:
        """論理削除されておらず、有効期限内か。"""
        return self.deleted_at is None and self.projection().is_active(now)

    def projection(self) -> OverrideValue:
        return OverrideValue(value=self.value, expires_at=self.expires_at)


@dataclass(frozen=True)
class OverridePatch:
    """オーバーライドの部分更新。None のフィールドは既存値を維持する。"""

    value: bool | None = None
    expires_at: datetime | None = None
    clear_expires_at: bool = False
    deleted: bool | None = None


def merge_override(
    existing: Override | None,
    patch: OverridePatch,
    *,
    env: Environment,
    key: str,
    scope_type: ScopeType,
    scope_id: str,
    now: datetime,
) -> Override:
    """既存オーバーライドにパッチを適用した新しい Override を返す。

    すべてのフィールドを明示的に決める。新規作成時に value が無ければ ValidationError。
    """
    if patch.value is not None:
        value = patch.value
    elif existing is not None:
        value = existing.value
    else:
        raise ValidationError("value", "required when creating an override")

    if patch.clear_expires_at:
        expires_at = None
    elif patch.expires_at is not None:
        expires_at = patch.expires_at
    else:
        expires_at = existing.expires_at if existing is not None else None

    if patch.deleted is True:
        deleted_at = existing.deleted_at if existing and existing.deleted_at else now
    elif patch.deleted is False:
        deleted_at = None
    else:
        deleted_at = existing.deleted_at if existing is not None else None

    return Override(
        env=env,
        key=key,
        scope_type=scope_type,
        scope_id=scope_id,
        value=value,
        expires_at=expires_at,
        deleted_at=deleted_at,
        updated_at=now,
    )


@dataclass(frozen=True)
class ExposureRecord:
    """評価結果のテレメトリレコード。書き込み専用。"""

    env: Environment
    flag_key: str
    value: bool
    timestamp: datetime
    reason: str = EXPOSURE_REASON
    user_id: str | None = None
    tenant_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "env": str(self.env),
            "flagKey": self.flag_key,
            "value": self.value,
            "reason": self.reason,
            "userId": self.user_id,
            "tenantId": self.tenant_id,
            "timestamp": self.timestamp.isoformat(),
        }
