from __future__ import annotations

import time

import pytest
from redis import Redis

from bulkline.cache import RedisCache
from bulkline.config import QueueConfig
from bulkline.errors import QueueError
from bulkline.queue import QueueConsumer, QueueMessage, RedisStreamsQueue

pytestmark = pytest.mark.redis


class TestConsumerGroupInitialization:
    """Tests for consumer group initialization."""

    def test_creates_new_consumer_group(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        RedisStreamsQueue(redis_client, queue_config)

        groups = redis_client.xinfo_groups(queue_config.stream_key)
        group_names = [g["name"].decode() if isinstance(g["name"], bytes) else g["name"] for g in groups]
        assert queue_config.consumer_group in group_names

    def test_handles_existing_group_gracefully(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        queue1 = RedisStreamsQueue(redis_client, queue_config)
        queue2 = RedisStreamsQueue(redis_client, queue_config)

        assert queue1.config.consumer_group == queue2.config.consumer_group


class TestEnqueueAndRead:
    def test_round_trips_json_payload(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        queue = RedisStreamsQueue(redis_client, queue_config)
        payload = {"execution_id": "e1", "batch_id": 3, "attempt": 1}

        entry_id = queue.enqueue(payload)
        messages = queue.read(block_ms=100, count=1)

        assert "-" in entry_id
        assert len(messages) == 1
        assert isinstance(messages[0], QueueMessage)
        assert messages[0].payload == payload
        assert messages[0].id == entry_id
        assert messages[0].stream == queue_config.stream_key

    def test_read_empty_stream_returns_empty_list(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        queue = RedisStreamsQueue(redis_client, queue_config)
        assert queue.read(block_ms=100, count=1) == []

    def test_ack_clears_pending(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        queue = RedisStreamsQueue(redis_client, queue_config)
        queue.enqueue({"a": 1})
        msg = queue.read(block_ms=100)[0]
        assert queue.pending_count() == 1

        queue.ack(msg)

        assert queue.pending_count() == 0


class TestDelayed:
    def test_delayed_message_is_promoted_when_due(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        queue = RedisStreamsQueue(redis_client, queue_config)
        queue.enqueue({"retry": 1}, delay_s=0.2)

        assert queue.read(block_ms=50) == []
        time.sleep(0.3)

        messages = queue.read(block_ms=100)
        assert [m.payload for m in messages] == [{"retry": 1}]

    def test_promote_due_moves_each_message_once(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        queue = RedisStreamsQueue(redis_client, queue_config)
        queue.enqueue({"retry": 1}, delay_s=0.01)
        time.sleep(0.05)

        assert queue.promote_due() == 1
        assert queue.promote_due() == 0


class TestDeadLetter:
    def test_dead_letter_copies_and_acks(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        queue = RedisStreamsQueue(redis_client, queue_config)
        queue.enqueue({"batch_id": 9})
        msg = queue.read(block_ms=100)[0]

        queue.dead_letter(msg, "retries exhausted")

        assert queue.pending_count() == 0
        entries = redis_client.xrange(queue_config.dead_letter_key)
        assert len(entries) == 1
        fields = entries[0][1]
        assert fields[b"reason"] == b"retries exhausted"
        assert fields[b"source_id"].decode() == msg.id


class TestClaimStale:
    def test_claims_messages_from_dead_consumer(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        queue = RedisStreamsQueue(redis_client, queue_config)
        queue.enqueue({"batch_id": 1})
        abandoned = queue.read(block_ms=100)[0]

        rescuer = RedisStreamsQueue(
            redis_client,
            QueueConfig(
                stream_key=queue_config.stream_key,
                consumer_group=queue_config.consumer_group,
                consumer_name=f"{queue_config.consumer_name}-rescuer",
            ),
        )
        claimed = QueueConsumer(rescuer, block_ms=100).recover_stale(min_idle_ms=0)

        assert [m.id for m in claimed] == [abandoned.id]


def test_errors_surface_as_queue_error(queue_config: QueueConfig) -> None:
    broken = Redis.from_url("redis://127.0.0.1:1/0", socket_connect_timeout=0.1)
    with pytest.raises(QueueError):
        RedisStreamsQueue(broken, queue_config)


class TestRedisCache:
    def test_put_get_and_add(self, redis_client: Redis, queue_config: QueueConfig) -> None:
        cache = RedisCache(redis_client, prefix=queue_config.stream_key)

        cache.put("progress:e1", {"checkpoints": [[0, 1.0]]}, ttl_s=5)
        assert cache.get("progress:e1") == {"checkpoints": [[0, 1.0]]}
        assert cache.add("notify:e1", 1, ttl_s=5) is True
        assert cache.add("notify:e1", 1, ttl_s=5) is False

        cache.forget("progress:e1")
        cache.forget("notify:e1")
        assert cache.get("progress:e1", "missing") == "missing"
