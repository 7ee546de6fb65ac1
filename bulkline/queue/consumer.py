from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from typing import Optional

from redis import Redis

from ..config import QueueConfig
from ..errors import QueueError
from .models import QueueMessage, WorkQueue
from .redis_streams import RedisStreamsQueue


class QueueConsumer:
    """
    Control-flow wrapper for pulling batch messages off a work queue.

    It coordinates message retrieval, shutdown, and delivery to a handler.
    Retries are NOT its job: the batch worker decides whether a failed batch
    is re-enqueued with backoff or dead-lettered, and acks the original
    either way. A handler that raises leaves the message pending, to be
    reclaimed by ``recover_stale`` on some worker later.

    Usage:
        consumer = QueueConsumer.from_redis(redis_client, config)

        # Option 1: Manual control
        while True:
            msg = consumer.next()
            if msg is None:
                continue
            worker.handle(msg)
            consumer.ack(msg)

        # Option 2: Template method
        consumer.run(handler=worker.handle)

        # Option 3: Drain whatever is queued (tests, cron-style workers)
        consumer.drain(handler=worker.handle)
    """

    def __init__(self, queue: WorkQueue, *, block_ms: int = 5_000, claim_idle_ms: int = 60_000) -> None:
        if not isinstance(block_ms, int) or block_ms <= 0:
            raise QueueError("block_ms must be a positive integer (> 0)")
        self.queue = queue
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self._stopping = threading.Event()

    @classmethod
    def from_redis(cls, redis: Redis, config: QueueConfig) -> "QueueConsumer":
        return cls(
            RedisStreamsQueue(redis, config),
            block_ms=config.block_ms,
            claim_idle_ms=config.claim_idle_ms,
        )

    def next(self, block_ms: Optional[int] = None) -> Optional[QueueMessage]:
        """
        Fetch at most one message from the queue.

        Returns None if stopped or if nothing arrived within the blocking
        period. Backend errors propagate as QueueError.
        """
        if self._stopping.is_set():
            return None

        actual_block_ms = block_ms if block_ms is not None else self.block_ms
        if not isinstance(actual_block_ms, int) or actual_block_ms <= 0:
            raise QueueError("block_ms must be a positive integer (> 0)")

        messages = self.queue.read(block_ms=actual_block_ms, count=1)
        if not messages:
            return None
        return messages[0]

    def iter_messages(self) -> Iterator[QueueMessage]:
        """
        Yield messages until ``stop()`` is observed. Does not busy-loop when idle.
        """
        while not self._stopping.is_set():
            msg = self.next(block_ms=self.block_ms)
            if msg is None:
                continue
            yield msg

    def ack(self, msg: QueueMessage) -> None:
        """
        Explicitly acknowledge a message. Never automatic outside ``run``/``drain``.
        """
        self.queue.ack(msg)

    def stop(self) -> None:
        """
        Signal graceful shutdown. In-flight messages stay pending.
        """
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def _deliver(self, msg: QueueMessage, handler: Callable[[QueueMessage], None]) -> None:
        # handler exceptions propagate; the message stays pending
        handler(msg)
        self.ack(msg)

    def run(self, *, handler: Callable[[QueueMessage], None], recover_every: int = 100) -> None:
        """
        Template-method runner: fetch -> handler(msg) -> ack, until stopped.

        Every ``recover_every`` idle polls the consumer also reclaims one
        stale message abandoned by a dead worker.

        - Does not retry
        - Does not swallow handler exceptions (re-raises)
        - Does not ack a message whose handler raised
        """
        idle_polls = 0
        while not self._stopping.is_set():
            msg = self.next(block_ms=self.block_ms)
            if msg is None:
                idle_polls += 1
                if recover_every and idle_polls % recover_every == 0:
                    for stale in self.recover_stale():
                        self._deliver(stale, handler)
                continue
            self._deliver(msg, handler)

    def drain(
        self,
        *,
        handler: Callable[[QueueMessage], None],
        block_ms: int = 50,
        max_messages: Optional[int] = None,
    ) -> int:
        """
        Process messages until the queue stays empty for ``block_ms``.

        Returns the number of messages handled.
        """
        handled = 0
        while max_messages is None or handled < max_messages:
            msg = self.next(block_ms=block_ms)
            if msg is None:
                break
            self._deliver(msg, handler)
            handled += 1
        return handled

    def recover_stale(self, min_idle_ms: Optional[int] = None, count: int = 1) -> list[QueueMessage]:
        """
        Claim messages that have been pending longer than ``min_idle_ms``.

        Best-effort recovery, not part of the hot path. Returns the claimed
        messages; the caller must handle and ack them.
        """
        actual_min_idle_ms = min_idle_ms if min_idle_ms is not None else self.claim_idle_ms
        return self.queue.claim_stale(min_idle_ms=actual_min_idle_ms, count=count)
