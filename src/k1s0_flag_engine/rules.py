"""ルール評価"""

from __future__ import annotations

from datetime import UTC, datetime

from .conditions import matches
from .models import EvaluationContext, FlagDefinition


def apply_rules(flag: FlagDefinition | None, context: EvaluationContext) -> bool:
    """ルールを保存順に評価し、最初に全条件が一致したルールの値を返す。

    条件が空のルールは常に一致する。どのルールにも一致しなければ enabled_default、
    フラグが存在しなければ False を返す。
    """
    if flag is None:
        return False
    now = context.now or datetime.now(UTC)
    for rule in flag.rules:
        if all(matches(condition, context, now) for condition in rule.conditions):
            return rule.value
    return flag.enabled_default
