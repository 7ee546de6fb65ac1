from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any, Mapping, Optional

from ..errors import QueueError
from ..metrics.registry import (
    QUEUE_MESSAGES_ACK_TOTAL,
    QUEUE_MESSAGES_CLAIMED_TOTAL,
    QUEUE_MESSAGES_DEAD_LETTERED_TOTAL,
    QUEUE_MESSAGES_READ_TOTAL,
)
from .models import QueueMessage


class LocalQueue:
    """
    In-process work queue with the same contract as ``RedisStreamsQueue``.

    Intended for single-process deployments and tests: pending tracking,
    explicit ack, delayed delivery, stale reclaim and a dead-letter list all
    behave like the Redis backend, but nothing survives the process.

    ``clock`` returns seconds (defaults to ``time.time``) and drives delayed
    delivery and idle times, so tests can advance time without sleeping.
    """

    def __init__(
        self,
        name: str = "bulkline",
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.group = "local"
        self._clock = clock
        self._ready: deque[tuple[str, dict]] = deque()
        self._delayed: list[tuple[float, int, str, dict]] = []
        self._pending: dict[str, tuple[dict, float, int]] = {}
        self.dead_letters: list[tuple[QueueMessage, str]] = []
        self._ids = itertools.count(1)
        self._cond = threading.Condition()

    def _next_id(self) -> str:
        return f"{int(self._clock() * 1000)}-{next(self._ids)}"

    def enqueue(self, payload: Mapping[str, Any], delay_s: float = 0) -> str:
        entry_id = self._next_id()
        body = dict(payload)
        with self._cond:
            if delay_s and delay_s > 0:
                heapq.heappush(self._delayed, (self._clock() + delay_s, next(self._ids), entry_id, body))
            else:
                self._ready.append((entry_id, body))
                self._cond.notify()
        return entry_id

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, entry_id, body = heapq.heappop(self._delayed)
            self._ready.append((entry_id, body))

    def read(self, block_ms: int, count: int = 1) -> list[QueueMessage]:
        if block_ms <= 0:
            raise QueueError("block_ms must be a positive integer (> 0)")
        deadline = time.monotonic() + block_ms / 1000.0
        with self._cond:
            self._promote_due()
            while not self._ready:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []
                self._cond.wait(timeout=min(remaining, 0.05))
                self._promote_due()

            messages = []
            while self._ready and len(messages) < count:
                entry_id, body = self._ready.popleft()
                self._pending[entry_id] = (body, self._clock(), 1)
                messages.append(self._to_message(entry_id, body, 1))

        QUEUE_MESSAGES_READ_TOTAL.labels(stream=self.name).inc(len(messages))
        return messages

    def ack(self, msg: QueueMessage) -> None:
        with self._cond:
            self._pending.pop(msg.id, None)
        QUEUE_MESSAGES_ACK_TOTAL.labels(stream=self.name).inc()

    def claim_stale(self, min_idle_ms: int, count: int = 1) -> list[QueueMessage]:
        now = self._clock()
        claimed = []
        with self._cond:
            for entry_id, (body, delivered_at, deliveries) in list(self._pending.items()):
                if len(claimed) >= count:
                    break
                if (now - delivered_at) * 1000 < min_idle_ms:
                    continue
                self._pending[entry_id] = (body, now, deliveries + 1)
                claimed.append(self._to_message(entry_id, body, deliveries + 1))
        if claimed:
            QUEUE_MESSAGES_CLAIMED_TOTAL.labels(stream=self.name).inc(len(claimed))
        return claimed

    def dead_letter(self, msg: QueueMessage, reason: str) -> Optional[str]:
        with self._cond:
            self.dead_letters.append((msg, reason))
        QUEUE_MESSAGES_DEAD_LETTERED_TOTAL.labels(stream=self.name).inc()
        self.ack(msg)
        return msg.id

    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)

    def _to_message(self, entry_id: str, body: dict, deliveries: int) -> QueueMessage:
        return QueueMessage(
            stream=self.name,
            group=self.group,
            id=entry_id,
            payload=dict(body),
            delivery_count=deliveries,
        )
