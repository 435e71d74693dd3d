"""エクスポージャー（評価結果）テレメトリのシンク"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from .exceptions import FlagEngineError, FlagEngineErrorCodes
from .models import ExposureRecord

logger = structlog.get_logger(__name__)


class ExposureSink(ABC):
    """エクスポージャー記録先の抽象基底クラス。"""

    @abstractmethod
    async def log_batch(self, records: list[ExposureRecord]) -> None:
        """レコードをまとめて記録する。"""
        ...


class NoOpExposureSink(ExposureSink):
    """記録を破棄するシンク。"""

    async def log_batch(self, records: list[ExposureRecord]) -> None:
        return None


class LoggingExposureSink(ExposureSink):
    """structlog にレコードを出力するシンク。"""

    def __init__(self, event: str = "flag exposure") -> None:
        self._event = event
        self._logger = structlog.get_logger("k1s0_flag_engine.exposure")

    async def log_batch(self, records: list[ExposureRecord]) -> None:
        for record in records:
            self._logger.info(self._event, **record.to_dict())


class InMemoryExposureSink(ExposureSink):
    """受け取ったバッチを保持するシンク（テスト用）。"""

    def __init__(self) -> None:
        self.batches: list[list[ExposureRecord]] = []

    async def log_batch(self, records: list[ExposureRecord]) -> None:
        self.batches.append(list(records))

    @property
    def records(self) -> list[ExposureRecord]:
        return [r for batch in self.batches for r in batch]


class HttpExposureSink(ExposureSink):
    """httpx でエクスポージャー収集 API に POST するシンク。"""

    def __init__(
        self,
        endpoint: str,
        api_key: str | None = None,
        timeout_seconds: float = 5.0,
        path: str = "/api/v1/exposures",
    ) -> None:
        self._endpoint = endpoint
        self._path = path
        self._timeout_seconds = timeout_seconds
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._headers = headers

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._endpoint,
            headers=self._headers,
            timeout=self._timeout_seconds,
        )

    async def log_batch(self, records: list[ExposureRecord]) -> None:
        if not records:
            return
        body: dict[str, Any] = {"records": [r.to_dict() for r in records]}
        try:
            async with self._make_client() as client:
                resp = await client.post(self._path, json=body)
        except Exception as e:
            raise FlagEngineError(
                code=FlagEngineErrorCodes.EXPOSURE_SINK_ERROR,
                message=f"Failed to send exposures: {e}",
                cause=e,
            ) from e
        if resp.status_code >= 400:
            raise FlagEngineError(
                code=FlagEngineErrorCodes.EXPOSURE_SINK_ERROR,
                message=f"log_batch: HTTP {resp.status_code}: {resp.text}",
            )


class BufferedExposureSink(ExposureSink):
    """レコードを溜め、max_batch_size に達したら内側のシンクへ送る。"""

    def __init__(self, inner: ExposureSink, max_batch_size: int = 100) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self._inner = inner
        self._max_batch_size = max_batch_size
        self._buffer: list[ExposureRecord] = []
        self._lock = asyncio.Lock()

    async def log_batch(self, records: list[ExposureRecord]) -> None:
        async with self._lock:
            self._buffer.extend(records)
            if len(self._buffer) < self._max_batch_size:
                return
            batch, self._buffer = self._buffer, []
        await self._inner.log_batch(batch)

    async def flush(self) -> None:
        """溜まっているレコードをすべて送る。"""
        async with self._lock:
            batch, self._buffer = self._buffer, []
        if batch:
            await self._inner.log_batch(batch)

    @property
    def buffered(self) -> int:
        return len(self._buffer)
