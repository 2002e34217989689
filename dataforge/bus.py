"""Redis-backed message bus and durable key-value store.

A bus subject is a Redis stream; a durable consumer is a consumer group on
that stream. Key-value entries are plain string keys under a bucket prefix.
"""

from __future__ import annotations

from dataclasses import dataclass

import redis

from dataforge.config import DataforgeConfig
from dataforge.exceptions import BusError
from dataforge.logging_utils import get_logger
from dataforge.models import PublishAck

logger = get_logger(__name__)

PAYLOAD_FIELD = b"data"


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


@dataclass(frozen=True)
class Delivery:
    """A message handed to a consumer, acknowledged by ``message_id``."""

    subject: str
    message_id: str
    data: bytes


class KeyValueStore:
    """Durable key-value entries for bindings and cursors."""

    def __init__(self, client: redis.Redis, bucket: str = "dataforge"):
        self.client = client
        self.bucket = bucket

    def _key(self, key: str) -> str:
        return f"{self.bucket}:{key}"

    def get(self, key: str) -> bytes | None:
        try:
            return self.client.get(self._key(key))
        except redis.RedisError as e:
            raise BusError(f"Failed to read key {key!r}", details={"error": str(e)}) from e

    def put(self, key: str, value: bytes) -> None:
        try:
            self.client.set(self._key(key), value)
        except redis.RedisError as e:
            raise BusError(f"Failed to write key {key!r}", details={"error": str(e)}) from e


class MessageBus:
    """Publish/subscribe on named subjects with explicit acknowledgement."""

    def __init__(self, client: redis.Redis, max_length: int | None = None):
        self.client = client
        self.max_length = max_length

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"Bus ping failed: {e}")
            return False

    def publish(self, subject: str, payload: bytes) -> PublishAck:
        try:
            message_id = self.client.xadd(
                subject,
                {PAYLOAD_FIELD: payload},
                maxlen=self.max_length,
                approximate=True,
            )
        except redis.RedisError as e:
            raise BusError(f"Failed to publish message to {subject} subject", details={"error": str(e)}) from e
        return PublishAck(stream=subject, sequence=_text(message_id))

    def ensure_consumer(self, subject: str, group: str) -> None:
        """Create the durable consumer group (and the stream) if missing."""
        try:
            self.client.xgroup_create(subject, group, id="0", mkstream=True)
            logger.info("Consumer group created", extra={"subject": subject, "group": group})
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise BusError(f"Failed to create consumer group {group}", details={"error": str(e)}) from e
        except redis.RedisError as e:
            raise BusError(f"Failed to create consumer group {group}", details={"error": str(e)}) from e

    def fetch(
        self,
        subject: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: int | None = None,
        pending: bool = False,
    ) -> list[Delivery]:
        """Read deliveries for ``consumer``.

        With ``pending=True`` this returns entries already delivered to this
        consumer but never acknowledged, instead of new ones.
        """
        start_id = "0" if pending else ">"
        try:
            response = self.client.xreadgroup(
                group,
                consumer,
                {subject: start_id},
                count=count,
                block=None if pending else block_ms,
            )
        except redis.RedisError as e:
            raise BusError(f"Failed to read from {subject} subject", details={"error": str(e)}) from e

        deliveries: list[Delivery] = []
        for _stream, entries in response or []:
            for message_id, fields in entries:
                if not fields:
                    # Entry was trimmed after delivery; nothing left to process.
                    self.ack(subject, group, _text(message_id))
                    continue
                deliveries.append(
                    Delivery(subject=subject, message_id=_text(message_id), data=fields.get(PAYLOAD_FIELD, b""))
                )
        return deliveries

    def has_pending(self, subject: str, group: str, consumer: str) -> bool:
        """True while ``consumer`` holds delivered but unacknowledged entries."""
        try:
            entries = self.client.xpending_range(subject, group, min="-", max="+", count=1, consumername=consumer)
        except redis.RedisError as e:
            raise BusError(f"Failed to read pending entries of {subject}", details={"error": str(e)}) from e
        return bool(entries)

    def ack(self, subject: str, group: str, message_id: str) -> None:
        try:
            self.client.xack(subject, group, message_id)
        except redis.RedisError as e:
            raise BusError(f"Failed to acknowledge {message_id}", details={"error": str(e)}) from e


def connect(config: DataforgeConfig) -> tuple[MessageBus, KeyValueStore]:
    """Open the bus and its key-value store from configuration."""
    client = redis.Redis.from_url(config.redis_url)
    return MessageBus(client, max_length=config.stream_max_length), KeyValueStore(client, bucket=config.kv_bucket)
