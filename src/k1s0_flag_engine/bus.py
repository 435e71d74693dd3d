"""キャッシュ無効化通知の publish/subscribe"""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .exceptions import FlagEngineError, FlagEngineErrorCodes

DEFAULT_INVALIDATION_TOPIC = "flags.invalidate"


@dataclass
class InvalidationEvent:
    """バス上を流れる無効化通知。"""

    topic: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


InvalidationHandler = Callable[[InvalidationEvent], Awaitable[None]]


class InvalidationPublisher(ABC):
    """無効化通知の発行抽象基底クラス。このコアからは at-most-once。"""

    @abstractmethod
    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """通知を発行する。"""
        ...


class InMemoryInvalidationBus(InvalidationPublisher):
    """同一プロセス内の publish/subscribe バス。テストと単一ノード構成用。"""

    def __init__(self) -> None:
        self._handlers: dict[str, list[InvalidationHandler]] = {}
        self.published: list[InvalidationEvent] = []

    def subscribe(self, topic: str, handler: InvalidationHandler) -> None:
        """トピックにハンドラを登録する。"""
        self._handlers.setdefault(topic, []).append(handler)

    def unsubscribe(self, topic: str) -> None:
        """トピックのハンドラをすべて解除する。"""
        self._handlers.pop(topic, None)

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        event = InvalidationEvent(topic=topic, payload=dict(payload))
        self.published.append(event)
        for handler in self._handlers.get(topic, []):
            await handler(event)


class NoOpInvalidationPublisher(InvalidationPublisher):
    """何もしない publisher。単一インスタンス構成向け。"""

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        return None


class KafkaInvalidationPublisher(InvalidationPublisher):
    """confluent-kafka を使った無効化通知 publisher。"""

    def __init__(self, brokers: list[str], timeout_seconds: float = 10.0) -> None:
        self._brokers = brokers
        self._timeout_seconds = timeout_seconds
        self._producer: Any = None

    def _get_producer(self) -> Any:  # noqa: ANN401
        if self._producer is None:
            from confluent_kafka import Producer

            self._producer = Producer({"bootstrap.servers": ",".join(self._brokers)})
        return self._producer

    def _publish_sync(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            producer = self._get_producer()
            producer.produce(
                topic=topic,
                value=json.dumps(payload).encode(),
                key=f"{payload.get('env')}:{payload.get('key')}".encode(),
            )
            producer.flush(timeout=self._timeout_seconds)
        except Exception as e:
            raise FlagEngineError(
                code=FlagEngineErrorCodes.PUBLISH_FAILED,
                message=f"Failed to publish invalidation to {topic}: {e}",
                cause=e,
            ) from e

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._publish_sync, topic, payload)

    def close(self) -> None:
        """プロデューサーをフラッシュして閉じる。"""
        if self._producer is not None:
            self._producer.flush()
            self._producer = None


def decode_invalidation(value: bytes) -> dict[str, Any]:
    """Kafka メッセージ値を無効化ペイロードに復号する。"""
    data: dict[str, Any] = json.loads(value.decode())
    return data
