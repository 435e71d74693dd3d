"""期限切れオーバーライドの掃除ジョブ本体（スケジューリングは外部）"""

from __future__ import annotations

from datetime import datetime

import structlog

from .engine import FlagEngine
from .exceptions import FlagEngineError

logger = structlog.get_logger(__name__)

SWEEP_JOB_NAME = "flags.cleanupOverrides"


async def sweep_expired_overrides(
    engine: FlagEngine, now: datetime | None = None, limit: int = 200
) -> int:
    """期限切れのオーバーライドを論理削除し、削除した件数を返す。

    個々の削除失敗はログに残して次へ進む。
    """
    expired = await engine.expired_overrides(now, limit)
    cleared = 0
    for override in expired:
        try:
            await engine.clear_override(
                override.env,
                override.key,
                override.scope_type,
                override.scope_id,
                actor_is_super_admin=True,
            )
        except FlagEngineError as e:
            logger.warning(
                "failed to clear expired override",
                job=SWEEP_JOB_NAME,
                env=str(override.env),
                key=override.key,
                scope_type=str(override.scope_type),
                scope_id=override.scope_id,
                error=str(e),
            )
            continue
        cleared += 1
    logger.info("expired overrides swept", job=SWEEP_JOB_NAME, found=len(expired), cleared=cleared)
    return cleared
