from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Mapping, Optional

from redis import Redis
from redis.exceptions import RedisError, ResponseError

from ..config import QueueConfig
from ..errors import QueueError
from ..metrics.registry import (
    QUEUE_MESSAGES_ACK_TOTAL,
    QUEUE_MESSAGES_CLAIMED_TOTAL,
    QUEUE_MESSAGES_DEAD_LETTERED_TOTAL,
    QUEUE_MESSAGES_READ_TOTAL,
    QUEUE_READ_LATENCY_SECONDS,
)
from .models import QueueMessage

logger = logging.getLogger(__name__)

_PAYLOAD_FIELD = b"payload"
_PROMOTE_BATCH = 100


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisStreamsQueue:
    """
    Work queue on a Redis stream with a consumer group.

    - At-least-once delivery: a message stays pending until ``ack``.
    - Delayed messages (retry backoff) wait in a sorted set scored by due
      time and are moved onto the stream by whichever reader sees them due
      first; ``ZREM`` decides the winner so each is promoted once.
    - Dead letters go to a separate stream ``<stream>:dead``.

    All Redis failures surface as ``QueueError``.
    """

    def __init__(self, redis: Redis, config: QueueConfig) -> None:
        self.redis = redis
        self.config = config
        self._ensure_group()

    def _ensure_group(self) -> None:
        try:
            self.redis.xgroup_create(
                name=self.config.stream_key,
                groupname=self.config.consumer_group,
                id="0",
                mkstream=True,
            )
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise QueueError(f"Failed to create consumer group: {exc}") from exc
        except RedisError as exc:
            raise QueueError(f"Failed to create consumer group: {exc}") from exc

    def enqueue(self, payload: Mapping[str, Any], delay_s: float = 0) -> str:
        """
        Add a message. With ``delay_s > 0`` the message becomes readable
        only after the delay; the returned id is then a local token, not a
        stream id.
        """
        body = json.dumps(dict(payload), separators=(",", ":"), default=str)
        try:
            if delay_s and delay_s > 0:
                token = uuid.uuid4().hex
                member = json.dumps({"token": token, "body": body})
                self.redis.zadd(self.config.delayed_key, {member: time.time() + delay_s})
                return token
            entry_id = self.redis.xadd(self.config.stream_key, {_PAYLOAD_FIELD: body})
        except RedisError as exc:
            raise QueueError(f"Failed to enqueue message: {exc}") from exc
        return _decode(entry_id)

    def promote_due(self, now: Optional[float] = None) -> int:
        """Move due delayed messages onto the stream. Returns how many moved."""
        now = time.time() if now is None else now
        moved = 0
        try:
            members = self.redis.zrangebyscore(
                self.config.delayed_key, "-inf", now, start=0, num=_PROMOTE_BATCH
            )
            for member in members:
                if self.redis.zrem(self.config.delayed_key, member) != 1:
                    continue  # another reader promoted it
                body = json.loads(_decode(member))["body"]
                self.redis.xadd(self.config.stream_key, {_PAYLOAD_FIELD: body})
                moved += 1
        except RedisError as exc:
            raise QueueError(f"Failed to promote delayed messages: {exc}") from exc
        return moved

    def read(self, block_ms: int, count: int = 1) -> list[QueueMessage]:
        self.promote_due()
        start = time.monotonic()
        try:
            response = self.redis.xreadgroup(
                groupname=self.config.consumer_group,
                consumername=self.config.consumer_name,
                streams={self.config.stream_key: ">"},
                count=count,
                block=block_ms,
            )
        except RedisError as exc:
            raise QueueError(f"Failed to read from stream: {exc}") from exc

        messages: list[QueueMessage] = []
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                messages.append(self._to_message(entry_id, fields))

        if messages:
            stream = self.config.stream_key
            QUEUE_MESSAGES_READ_TOTAL.labels(stream=stream).inc(len(messages))
            QUEUE_READ_LATENCY_SECONDS.labels(stream=stream).observe(time.monotonic() - start)
        return messages

    def ack(self, msg: QueueMessage) -> None:
        try:
            self.redis.xack(self.config.stream_key, self.config.consumer_group, msg.id)
        except RedisError as exc:
            raise QueueError(f"Failed to ack message {msg.id}: {exc}") from exc
        QUEUE_MESSAGES_ACK_TOTAL.labels(stream=self.config.stream_key).inc()

    def claim_stale(self, min_idle_ms: int, count: int = 1) -> list[QueueMessage]:
        """
        Claim messages pending on other consumers for at least ``min_idle_ms``.
        """
        try:
            result = self.redis.xautoclaim(
                name=self.config.stream_key,
                groupname=self.config.consumer_group,
                consumername=self.config.consumer_name,
                min_idle_time=min_idle_ms,
                start_id="0-0",
                count=count,
            )
        except RedisError as exc:
            raise QueueError(f"Failed to claim stale messages: {exc}") from exc

        entries = result[1] if len(result) > 1 else []
        messages = [
            self._to_message(entry_id, fields, delivery_count=2)
            for entry_id, fields in entries
            if fields  # entries deleted from the stream come back empty
        ]
        if messages:
            QUEUE_MESSAGES_CLAIMED_TOTAL.labels(stream=self.config.stream_key).inc(len(messages))
        return messages

    def dead_letter(self, msg: QueueMessage, reason: str) -> Optional[str]:
        """Copy ``msg`` to the dead-letter stream, then ack the original."""
        body = json.dumps(msg.payload, separators=(",", ":"), default=str)
        try:
            dead_id = self.redis.xadd(
                self.config.dead_letter_key,
                {_PAYLOAD_FIELD: body, b"reason": reason, b"source_id": msg.id},
            )
        except RedisError as exc:
            raise QueueError(f"Failed to dead-letter message {msg.id}: {exc}") from exc
        QUEUE_MESSAGES_DEAD_LETTERED_TOTAL.labels(stream=self.config.stream_key).inc()
        logger.warning("Dead-lettered message %s: %s", msg.id, reason)
        self.ack(msg)
        return _decode(dead_id)

    def pending_count(self) -> int:
        try:
            summary = self.redis.xpending(self.config.stream_key, self.config.consumer_group)
        except RedisError as exc:
            raise QueueError(f"Failed to read pending summary: {exc}") from exc
        return int(summary.get("pending", 0)) if isinstance(summary, dict) else 0

    def _to_message(self, entry_id: Any, fields: Mapping[Any, Any], delivery_count: int = 1) -> QueueMessage:
        raw = fields.get(_PAYLOAD_FIELD)
        if raw is None:
            raw = fields.get("payload")
        try:
            payload = json.loads(_decode(raw)) if raw is not None else {}
        except ValueError as exc:
            raise QueueError(f"Malformed payload on entry {_decode(entry_id)}: {exc}") from exc
        return QueueMessage(
            stream=self.config.stream_key,
            group=self.config.consumer_group,
            id=_decode(entry_id),
            payload=payload,
            delivery_count=delivery_count,
        )
