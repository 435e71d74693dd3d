"""ルール条件の型定義と評価。

条件は閉じた直和型として表現する。各バリアントは不変の dataclass で、
ワイヤ形式では ``{"planIn": [...]}`` のようにキーが一つだけの辞書になる。
``matches`` は I/O を持たない全域関数で、必要なコンテキスト項目が欠けていれば
例外ではなく ``False`` を返す。
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeAlias, assert_never

from .exceptions import ValidationError

if TYPE_CHECKING:
    from .models import EvaluationContext

ANONYMOUS_SUBJECT = "anon"


@dataclass(frozen=True)
class PlanIn:
    """プラン ID のいずれかに一致する。"""

    plans: frozenset[str]


@dataclass(frozen=True)
class CountryIn:
    """国コードのいずれかに一致する（大文字小文字を区別しない）。"""

    countries: frozenset[str]

    def __post_init__(self) -> None:
        object.__setattr__(self, "countries", frozenset(c.lower() for c in self.countries))


@dataclass(frozen=True)
class EmailDomainIn:
    """メールアドレスのドメインが一致する。"""

    domains: frozenset[str]

    def __post_init__(self) -> None:
        object.__setattr__(self, "domains", frozenset(d.lower() for d in self.domains))


@dataclass(frozen=True)
class TenantTagIn:
    """テナントタグのいずれかを含む。"""

    tags: frozenset[str]

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", frozenset(t.lower() for t in self.tags))


@dataclass(frozen=True)
class TimeWindow:
    """評価時刻が [start, end] に含まれる。省略した側は無制限。"""

    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        for name in ("start", "end"):
            bound = getattr(self, name)
            if bound is not None and bound.tzinfo is None:
                object.__setattr__(self, name, bound.replace(tzinfo=UTC))


@dataclass(frozen=True)
class Percentage:
    """サブジェクトのバケット (0-99) が threshold 未満。"""

    threshold: int

    def __post_init__(self) -> None:
        if isinstance(self.threshold, float) and self.threshold.is_integer():
            object.__setattr__(self, "threshold", int(self.threshold))
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, int):
            raise ValidationError("percentage", f"must be an integer, got {self.threshold!r}")
        if not 0 <= self.threshold <= 100:
            raise ValidationError("percentage", f"must be 0-100, got {self.threshold}")


Condition: TypeAlias = PlanIn | CountryIn | EmailDomainIn | TenantTagIn | TimeWindow | Percentage

_SET_VARIANTS: dict[str, type[PlanIn | CountryIn | EmailDomainIn | TenantTagIn]] = {
    "planIn": PlanIn,
    "countryIn": CountryIn,
    "emailDomainIn": EmailDomainIn,
    "tenantTagIn": TenantTagIn,
}
CONDITION_KEYS = frozenset([*_SET_VARIANTS, "timeWindow", "percentage"])


def percentage_bucket(subject: str) -> int:
    """SHA-1 の先頭 4 バイトをビッグエンディアンの符号なし整数として 100 で割った余り。

    実装間でロールアウトの割り当てを一致させるため、この計算はビット単位で固定。
    """
    digest = hashlib.sha1(subject.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], byteorder="big") % 100


def subject_of(context: EvaluationContext) -> str:
    """バケット計算に使う安定したサブジェクト識別子を返す。"""
    return context.user_id or context.tenant_id or ANONYMOUS_SUBJECT


def matches(condition: Condition, context: EvaluationContext, now: datetime | None = None) -> bool:
    """条件がコンテキストに一致するか判定する。"""
    if isinstance(condition, PlanIn):
        return context.plan is not None and context.plan in condition.plans
    if isinstance(condition, CountryIn):
        return context.country is not None and context.country.lower() in condition.countries
    if isinstance(condition, EmailDomainIn):
        if not context.email or "@" not in context.email:
            return False
        domain = context.email.rsplit("@", 1)[1].lower()
        return domain in condition.domains
    if isinstance(condition, TenantTagIn):
        if not context.tenant_tags:
            return False
        return not condition.tags.isdisjoint(t.lower() for t in context.tenant_tags)
    if isinstance(condition, TimeWindow):
        at = context.now or now or datetime.now(UTC)
        if at.tzinfo is None:
            at = at.replace(tzinfo=UTC)
        if condition.start is not None and at < condition.start:
            return False
        if condition.end is not None and at > condition.end:
            return False
        return True
    if isinstance(condition, Percentage):
        return percentage_bucket(subject_of(context)) < condition.threshold
    assert_never(condition)


def parse_timestamp(value: Any, field: str) -> datetime | None:
    """ISO 8601 文字列または datetime を UTC の aware datetime に変換する。"""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise ValidationError(field, f"invalid timestamp: {value!r}") from e
    else:
        raise ValidationError(field, f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def condition_from_dict(data: dict[str, Any]) -> Condition:
    """ワイヤ形式の辞書から条件を生成する。バリアントはちょうど一つでなければならない。"""
    if not isinstance(data, dict):
        raise ValidationError("condition", f"must be an object, got {type(data).__name__}")
    unknown = set(data) - CONDITION_KEYS
    if unknown:
        raise ValidationError("condition", f"unknown keys: {sorted(unknown)}")
    present = [k for k in data if data[k] is not None]
    if len(present) != 1:
        raise ValidationError("condition", f"exactly one variant required, got {present}")
    kind = present[0]
    raw = data[kind]

    if kind in _SET_VARIANTS:
        if isinstance(raw, str) or not isinstance(raw, list | tuple | set | frozenset):
            raise ValidationError(kind, "must be a list of strings")
        if not raw:
            raise ValidationError(kind, "must not be empty")
        if not all(isinstance(item, str) and item for item in raw):
            raise ValidationError(kind, "items must be non-empty strings")
        return _SET_VARIANTS[kind](frozenset(raw))
    if kind == "timeWindow":
        if not isinstance(raw, dict):
            raise ValidationError(kind, "must be an object")
        start = parse_timestamp(raw.get("from"), "timeWindow.from")
        end = parse_timestamp(raw.get("to"), "timeWindow.to")
        if start is not None and end is not None and start > end:
            raise ValidationError(kind, "from must be <= to")
        return TimeWindow(start=start, end=end)
    return Percentage(raw)


def condition_to_dict(condition: Condition) -> dict[str, Any]:
    """条件をワイヤ形式の辞書に変換する。"""
    if isinstance(condition, PlanIn):
        return {"planIn": sorted(condition.plans)}
    if isinstance(condition, CountryIn):
        return {"countryIn": sorted(condition.countries)}
    if isinstance(condition, EmailDomainIn):
        return {"emailDomainIn": sorted(condition.domains)}
    if isinstance(condition, TenantTagIn):
        return {"tenantTagIn": sorted(condition.tags)}
    if isinstance(condition, TimeWindow):
        window: dict[str, str] = {}
        if condition.start is not None:
            window["from"] = condition.start.isoformat()
        if condition.end is not None:
            window["to"] = condition.end.isoformat()
        return {"timeWindow": window}
    if isinstance(condition, Percentage):
        return {"percentage": condition.threshold}
    assert_never(condition)
