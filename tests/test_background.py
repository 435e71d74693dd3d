"""バックグラウンドタスク管理のユニットテスト"""

import asyncio

from k1s0_flag_engine.background import BackgroundTasks


async def test_submit_does_not_wait() -> None:
    """submit は完了を待たずに戻る。"""
    tasks = BackgroundTasks()
    release = asyncio.Event()
    done: list[str] = []

    async def job() -> None:
        await release.wait()
        done.append("job")

    tasks.submit("job", job())
    assert tasks.pending == 1
    assert done == []

    release.set()
    await tasks.drain()
    assert done == ["job"]
    assert tasks.pending == 0


async def test_failure_is_not_propagated() -> None:
    """失敗したタスクの例外は呼び出し元へ伝播しない。"""
    tasks = BackgroundTasks()

    async def boom() -> None:
        raise RuntimeError("boom")

    task = tasks.submit("boom", boom())
    await tasks.drain()
    assert task.done()
    assert isinstance(task.exception(), RuntimeError)
    assert tasks.pending == 0
