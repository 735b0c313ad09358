"""Message publishing for award notifications (at-least-once)."""

import threading
from dataclasses import dataclass
from typing import Protocol

import redis
import structlog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class MessagePublisher(Protocol):
    def publish(self, topic: str, message_id: str, payload: str) -> None: ...


class RedisStreamPublisher:
    """Appends each message to a Redis stream named after its topic."""

    def __init__(self, client: redis.Redis, maxlen: int | None = None) -> None:
        self.client: redis.Redis = client
        self.maxlen: int | None = maxlen

    @classmethod
    def from_url(cls, url: str, maxlen: int | None = None) -> "RedisStreamPublisher":
        return cls(redis.Redis.from_url(url, decode_responses=True), maxlen=maxlen)

    def publish(self, topic: str, message_id: str, payload: str) -> None:
        entry_id: str = self.client.xadd(
            topic,
            {"message_id": message_id, "payload": payload},
            maxlen=self.maxlen,
            approximate=True,
        )
        logger.debug("message_published", topic=topic, message_id=message_id, entry_id=entry_id)


@dataclass(frozen=True, slots=True)
class PublishedMessage:
    topic: str
    message_id: str
    payload: str


class MemoryPublisher:
    """Keeps published messages in memory; for single-process runs."""

    def __init__(self) -> None:
        self.messages: list[PublishedMessage] = []
        self._lock: threading.Lock = threading.Lock()

    def publish(self, topic: str, message_id: str, payload: str) -> None:
        with self._lock:
            self.messages.append(PublishedMessage(topic, message_id, payload))
        logger.debug("message_published", topic=topic, message_id=message_id)

    def message_ids(self, topic: str | None = None) -> list[str]:
        with self._lock:
            return [m.message_id for m in self.messages if topic is None or m.topic == topic]
