from __future__ import annotations

import threading
import time

import pytest

from bulkline.errors import QueueError
from bulkline.queue import LocalQueue, QueueMessage


class Ticker:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def ticker() -> Ticker:
    return Ticker()


@pytest.fixture
def queue(ticker: Ticker) -> LocalQueue:
    return LocalQueue("batches", clock=ticker)


class TestEnqueueAndRead:
    def test_read_returns_messages_in_order(self, queue: LocalQueue) -> None:
        for i in range(3):
            queue.enqueue({"index": i})

        messages = queue.read(block_ms=10, count=10)

        assert [m.payload for m in messages] == [{"index": 0}, {"index": 1}, {"index": 2}]
        assert all(isinstance(m, QueueMessage) for m in messages)
        assert {m.stream for m in messages} == {"batches"}
        assert len({m.id for m in messages}) == 3

    def test_read_respects_count(self, queue: LocalQueue) -> None:
        for i in range(5):
            queue.enqueue({"index": i})

        assert len(queue.read(block_ms=10, count=2)) == 2
        assert len(queue) == 3

    def test_read_empty_returns_after_block(self, queue: LocalQueue) -> None:
        start = time.monotonic()
        assert queue.read(block_ms=50) == []
        assert time.monotonic() - start >= 0.04

    def test_read_rejects_non_positive_block(self, queue: LocalQueue) -> None:
        with pytest.raises(QueueError):
            queue.read(block_ms=0)

    def test_blocked_reader_wakes_on_enqueue(self, queue: LocalQueue) -> None:
        received: list = []
        reader = threading.Thread(target=lambda: received.extend(queue.read(block_ms=2_000)))
        reader.start()
        time.sleep(0.05)
        queue.enqueue({"late": True})
        reader.join(timeout=2)

        assert [m.payload for m in received] == [{"late": True}]

    def test_payload_is_copied(self, queue: LocalQueue) -> None:
        payload = {"batch_id": 1}
        queue.enqueue(payload)
        payload["batch_id"] = 2

        assert queue.read(block_ms=10)[0].payload == {"batch_id": 1}


class TestDelayedDelivery:
    def test_not_readable_before_due(self, queue: LocalQueue, ticker: Ticker) -> None:
        queue.enqueue({"retry": 1}, delay_s=30)

        assert queue.read(block_ms=10) == []
        ticker.now += 29
        assert queue.read(block_ms=10) == []

    def test_readable_once_due(self, queue: LocalQueue, ticker: Ticker) -> None:
        queue.enqueue({"retry": 1}, delay_s=30)
        ticker.now += 30

        assert [m.payload for m in queue.read(block_ms=10)] == [{"retry": 1}]

    def test_due_messages_follow_ready_ones(self, queue: LocalQueue, ticker: Ticker) -> None:
        queue.enqueue({"n": "late"}, delay_s=5)
        queue.enqueue({"n": "now"})
        ticker.now += 10

        assert [m.payload["n"] for m in queue.read(block_ms=10, count=5)] == ["now", "late"]


class TestPendingAndAck:
    def test_read_message_is_pending_until_ack(self, queue: LocalQueue) -> None:
        queue.enqueue({"a": 1})
        msg = queue.read(block_ms=10)[0]
        assert queue.pending_count() == 1

        queue.ack(msg)

        assert queue.pending_count() == 0

    def test_ack_is_idempotent(self, queue: LocalQueue) -> None:
        queue.enqueue({"a": 1})
        msg = queue.read(block_ms=10)[0]
        queue.ack(msg)
        queue.ack(msg)
        assert queue.pending_count() == 0


class TestClaimStale:
    def test_claims_only_idle_messages(self, queue: LocalQueue, ticker: Ticker) -> None:
        queue.enqueue({"a": 1})
        msg = queue.read(block_ms=10)[0]

        assert queue.claim_stale(min_idle_ms=60_000) == []
        ticker.now += 61

        claimed = queue.claim_stale(min_idle_ms=60_000)
        assert [m.id for m in claimed] == [msg.id]
        assert claimed[0].delivery_count == 2

    def test_claim_resets_idle_time(self, queue: LocalQueue, ticker: Ticker) -> None:
        queue.enqueue({"a": 1})
        queue.read(block_ms=10)
        ticker.now += 61
        assert len(queue.claim_stale(min_idle_ms=60_000)) == 1
        assert queue.claim_stale(min_idle_ms=60_000) == []


class TestDeadLetter:
    def test_dead_letter_records_reason_and_acks(self, queue: LocalQueue) -> None:
        queue.enqueue({"batch_id": 7})
        msg = queue.read(block_ms=10)[0]

        assert queue.dead_letter(msg, "retries exhausted") == msg.id

        assert queue.pending_count() == 0
        assert [(m.payload, reason) for m, reason in queue.dead_letters] == [
            ({"batch_id": 7}, "retries exhausted")
        ]
