"""
Emitters that write a stage's output.

Features:
- XADD of typed records onto an intermediate stream (optionally trimmed)
- Fire-and-forget JSON PUBLISH of final results to the result channel
- Dead-letter writes for poison messages
- Send counters for worker statistics
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from redis.asyncio import Redis

from src.streaming.records import ProcessedResult, RawFix
from src.utils.logging import get_logger

logger = get_logger(__name__)


def serialize_message(message: dict[str, Any]) -> bytes:
    """Serialize a message to JSON bytes."""
    return json.dumps(message).encode("utf-8")


def deserialize_message(data: bytes | str) -> dict[str, Any]:
    """Deserialize a JSON message."""
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    return json.loads(data)


class Emitter(ABC):
    """Destination for the record a stage produces."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._messages_sent = 0

    @abstractmethod
    async def emit(self, record: Any) -> None:
        """Write one record. Must raise if the write did not happen."""

    def get_stats(self) -> dict[str, Any]:
        return {"target": self.name, "messages_sent": self._messages_sent}


class StreamProducer(Emitter):
    """Appends records to a Redis stream."""

    def __init__(self, redis: Redis, stream: str, max_length: int | None = None) -> None:
        """
        Initialize the producer.

        Args:
            redis: Async Redis client
            stream: Target stream key
            max_length: Approximate MAXLEN trim (None keeps everything)
        """
        super().__init__(stream)
        self._redis = redis
        self.stream = stream
        self.max_length = max_length

    async def send(self, fields: Mapping[str, str]) -> str:
        """
        Append raw fields to the stream.

        Returns:
            The entry id assigned by the broker
        """
        message_id = await self._redis.xadd(
            self.stream,
            dict(fields),
            maxlen=self.max_length,
            approximate=True,
        )
        self._messages_sent += 1
        return message_id.decode() if isinstance(message_id, bytes) else message_id

    async def emit(self, record: RawFix) -> None:
        await self.send(record.to_fields())


class ResultPublisher(Emitter):
    """Publishes final results as JSON on a pub/sub channel."""

    def __init__(self, redis: Redis, channel: str) -> None:
        super().__init__(channel)
        self._redis = redis
        self.channel = channel
        self._deliveries = 0

    async def emit(self, record: ProcessedResult) -> None:
        # Nobody listening is not an error
        receivers = await self._redis.publish(self.channel, serialize_message(record.to_dict()))
        self._messages_sent += 1
        self._deliveries += int(receivers or 0)

    def get_stats(self) -> dict[str, Any]:
        stats = super().get_stats()
        stats["deliveries"] = self._deliveries
        return stats


class DeadLetterWriter:
    """Copies poison messages to a dead-letter stream."""

    def __init__(self, redis: Redis, stream: str) -> None:
        self._redis = redis
        self.stream = stream

    async def write(
        self,
        fields: Mapping[bytes | str, bytes | str],
        source_stream: str,
        source_message_id: str,
        group: str,
        delivery_count: int,
    ) -> None:
        """
        Write the original fields plus provenance.

        Args:
            fields: Original entry fields
            source_stream: Stream the entry was read from
            source_message_id: Entry id on the source stream
            group: Consumer group that gave up on it
            delivery_count: Deliveries recorded by the broker
        """
        entry: dict[str, bytes | str] = {
            key.decode("utf-8", errors="replace") if isinstance(key, bytes) else key: value
            for key, value in fields.items()
        }
        # Provenance overwrites any same-named field from an upstream hop
        entry.update(
            {
                "sourceStream": source_stream,
                "sourceMessageId": source_message_id,
                "group": group,
                "deliveryCount": str(delivery_count),
            }
        )
        await self._redis.xadd(self.stream, entry)
        logger.warning(
            "Message dead-lettered",
            source_stream=source_stream,
            message_id=source_message_id,
            group=group,
            delivery_count=delivery_count,
        )
