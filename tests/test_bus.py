"""無効化通知バスのユニットテスト"""

import json

import pytest
from k1s0_flag_engine import (
    FlagEngineError,
    FlagEngineErrorCodes,
    InMemoryInvalidationBus,
    InvalidationEvent,
)
from k1s0_flag_engine.bus import decode_invalidation


async def test_in_memory_bus_delivers_to_subscribers() -> None:
    """購読ハンドラへ通知を配送し、発行履歴を残す。"""
    bus = InMemoryInvalidationBus()
    received: list[InvalidationEvent] = []

    async def handler(event: InvalidationEvent) -> None:
        received.append(event)

    bus.subscribe("flags.invalidate", handler)
    await bus.publish("flags.invalidate", {"env": "prod", "key": "feature"})
    await bus.publish("other", {"env": "prod", "key": "feature"})

    assert [e.payload for e in received] == [{"env": "prod", "key": "feature"}]
    assert len(bus.published) == 2


async def test_unsubscribe() -> None:
    """購読解除後は配送されない。"""
    bus = InMemoryInvalidationBus()
    received: list[InvalidationEvent] = []

    async def handler(event: InvalidationEvent) -> None:
        received.append(event)

    bus.subscribe("flags.invalidate", handler)
    bus.unsubscribe("flags.invalidate")
    await bus.publish("flags.invalidate", {"env": "prod", "key": "feature"})
    assert received == []


async def test_kafka_publisher_produces_json(mocker) -> None:
    """KafkaInvalidationPublisher が confluent_kafka.Producer を呼び出すこと。"""
    from k1s0_flag_engine.bus import KafkaInvalidationPublisher

    mock_producer = mocker.MagicMock()
    factory = mocker.patch("confluent_kafka.Producer", return_value=mock_producer)

    publisher = KafkaInvalidationPublisher(brokers=["kafka-1:9092", "kafka-2:9092"])
    await publisher.publish("flags.invalidate", {"env": "prod", "key": "feature", "version": 3})

    factory.assert_called_once_with({"bootstrap.servers": "kafka-1:9092,kafka-2:9092"})
    kwargs = mock_producer.produce.call_args.kwargs
    assert kwargs["topic"] == "flags.invalidate"
    assert kwargs["key"] == b"prod:feature"
    assert json.loads(kwargs["value"]) == {"env": "prod", "key": "feature", "version": 3}
    mock_producer.flush.assert_called_once()

    publisher.close()
    assert mock_producer.flush.call_count == 2


async def test_kafka_publisher_wraps_errors(mocker) -> None:
    """produce の失敗は FlagEngineError(PUBLISH_FAILED)。"""
    from k1s0_flag_engine.bus import KafkaInvalidationPublisher

    mock_producer = mocker.MagicMock()
    mock_producer.produce.side_effect = BufferError("queue full")
    mocker.patch("confluent_kafka.Producer", return_value=mock_producer)

    publisher = KafkaInvalidationPublisher(brokers=["localhost:9092"])
    with pytest.raises(FlagEngineError) as exc_info:
        await publisher.publish("flags.invalidate", {"env": "prod", "key": "feature"})
    assert exc_info.value.code == FlagEngineErrorCodes.PUBLISH_FAILED


def test_decode_invalidation() -> None:
    """Kafka メッセージ値を辞書に復号する。"""
    value = json.dumps({"env": "dev", "key": "a", "scope_type": "user", "scope_id": "u1"})
    assert decode_invalidation(value.encode()) == {
        "env": "dev",
        "key": "a",
        "scope_type": "user",
        "scope_id": "u1",
    }
