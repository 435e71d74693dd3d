"""プラットフォーム専用フラグのオーバーライド制限"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from .exceptions import ForbiddenError

logger = structlog.get_logger(__name__)

# 環境全体に効くため、テナント管理者がオーバーライドしてはならないキー
DEFAULT_PLATFORM_ONLY_KEYS: frozenset[str] = frozenset(
    [
        "platform.maintenance",
        "mail.enabled",
        "webhooks.outbound.enabled",
        "jobs.dispatch.enabled",
        "billing.actions.enabled",
        "billing.enabled",
        "billing.refund",
        "billing.providers.stripe",
        "billing.providers.razorpay",
        "auth.password.enabled",
        "auth.otp",
        "auth.sso",
        "notify.email.enabled",
        "notify.inapp.enabled",
    ]
)


def is_platform_only(
    key: str, platform_only_keys: Iterable[str] = DEFAULT_PLATFORM_ONLY_KEYS
) -> bool:
    return key in frozenset(platform_only_keys)


def ensure_override_allowed(
    key: str,
    actor_is_super_admin: bool,
    platform_only_keys: Iterable[str] = DEFAULT_PLATFORM_ONLY_KEYS,
) -> None:
    """スーパー管理者以外によるプラットフォーム専用キーの変更を拒否する。"""
    if actor_is_super_admin or not is_platform_only(key, platform_only_keys):
        return
    logger.warning("override on platform-only flag rejected", key=key)
    raise ForbiddenError(key)
