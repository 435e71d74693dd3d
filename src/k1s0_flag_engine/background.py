"""ファイア・アンド・フォーゲットのバックグラウンドタスク管理"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

from .metrics import background_failures_total

logger = structlog.get_logger(__name__)


class BackgroundTasks:
    """投入したコルーチンを待たずに実行し、失敗はログとメトリクスにのみ残す。

    配信は at-most-once。呼び出し元へ例外は伝播しない。
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """コルーチンをタスクとして開始する。完了は待たない。"""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            background_failures_total.add(1, {"task": task.get_name()})
            logger.warning(
                "background task failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """実行中のタスクがすべて終わるまで待つ（テストと停止処理用）。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
