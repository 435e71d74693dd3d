"""複数フラグの一括評価とエクスポージャー記録"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any

import structlog
from opentelemetry import trace

from .background import BackgroundTasks
from .exceptions import ValidationError
from .exposure import ExposureSink
from .memory import Clock, utc_now
from .metrics import batch_duration_seconds, evaluations_total, exposure_failures_total
from .models import Environment, EvaluationContext, ExposureRecord
from .resolver import OverrideResolver

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer("k1s0.flag_engine")

_CONTEXT_STR_FIELDS = ("user_id", "tenant_id", "email", "country", "plan")


def parse_keys(keys: list[str] | str) -> list[str]:
    """キーのリストまたはカンマ区切り文字列を、重複を除いた順序付きリストにする。"""
    if isinstance(keys, str):
        raw = keys.split(",")
    elif isinstance(keys, (list, tuple)):
        raw = list(keys)
    else:
        raise ValidationError("keys", "must be a list or a comma-separated string")

    parsed: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            raise ValidationError("keys", f"key must be a string: {item!r}")
        key = item.strip()
        if not key:
            if isinstance(keys, str):
                continue
            raise ValidationError("keys", "key must not be empty")
        if any(c.isspace() for c in key):
            raise ValidationError("keys", f"key must not contain whitespace: {key!r}")
        if key not in parsed:
            parsed.append(key)
    if not parsed:
        raise ValidationError("keys", "at least one key is required")
    return parsed


def validate_context(context: EvaluationContext | dict[str, Any]) -> EvaluationContext:
    """評価コンテキストを検証し EvaluationContext を返す。"""
    if isinstance(context, dict):
        context = EvaluationContext.from_dict(context)
    if not isinstance(context, EvaluationContext):
        raise ValidationError("context", "must be an EvaluationContext or a dict")
    for name in _CONTEXT_STR_FIELDS:
        value = getattr(context, name)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"context.{name}", "must be a string")
    if not isinstance(context.tenant_tags, list) or not all(
        isinstance(t, str) for t in context.tenant_tags
    ):
        raise ValidationError("context.tenant_tags", "must be a list of strings")
    if context.now is not None and not isinstance(context.now, datetime):
        raise ValidationError("context.now", "must be a datetime")
    return context


class BatchEvaluator:
    """複数キーを並行評価し、結果をエクスポージャーとしてシンクへ非同期に渡す。"""

    def __init__(
        self,
        resolver: OverrideResolver,
        sink: ExposureSink,
        *,
        background: BackgroundTasks | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._resolver = resolver
        self._sink = sink
        self._background = background or BackgroundTasks()
        self._clock = clock

    async def evaluate_many(
        self,
        env: Environment,
        keys: list[str] | str,
        context: EvaluationContext | dict[str, Any],
    ) -> dict[str, bool]:
        """キーごとのフラグ値を返す。シンクへの記録完了は待たない。"""
        parsed = parse_keys(keys)
        ctx = validate_context(context)

        started = time.perf_counter()
        with tracer.start_as_current_span("flag_engine.evaluate_many") as span:
            span.set_attribute("flag_engine.env", str(env))
            span.set_attribute("flag_engine.key_count", len(parsed))
            values = await asyncio.gather(
                *(
                    self._resolver.resolve(env, key, ctx.tenant_id, ctx.user_id, ctx)
                    for key in parsed
                )
            )
        batch_duration_seconds.record(time.perf_counter() - started, {"env": str(env)})
        evaluations_total.add(len(parsed), {"env": str(env)})

        results = dict(zip(parsed, values, strict=True))
        timestamp = self._clock()
        records = [
            ExposureRecord(
                env=env,
                flag_key=key,
                value=value,
                timestamp=timestamp,
                user_id=ctx.user_id,
                tenant_id=ctx.tenant_id,
            )
            for key, value in results.items()
        ]
        self._background.submit("log_exposures", self._log_exposures(records))
        return results

    async def _log_exposures(self, records: list[ExposureRecord]) -> None:
        try:
            await self._sink.log_batch(records)
        except Exception as e:
            exposure_failures_total.add(1)
            logger.warning(
                "exposure sink failed",
                records=len(records),
                error=str(e),
                error_type=type(e).__name__,
            )

    async def drain(self) -> None:
        """未完了のエクスポージャー記録を待つ。"""
        await self._background.drain()
