from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol


@dataclass
class QueueMessage:
    """
    One delivered message.

    ``id`` is the backend entry id (Redis stream id, or a local sequence id)
    and is what ``ack`` needs. ``payload`` is the decoded JSON body.
    """

    stream: str
    group: str
    id: str
    payload: dict[str, Any] = field(default_factory=dict)
    delivery_count: int = 1


class WorkQueue(Protocol):
    """
    The queue surface the engine relies on: enqueue (optionally delayed),
    blocking read, explicit ack, stale reclaim and dead-lettering.
    """

    def enqueue(self, payload: Mapping[str, Any], delay_s: float = 0) -> str:
        ...

    def read(self, block_ms: int, count: int = 1) -> list[QueueMessage]:
        ...

    def ack(self, msg: QueueMessage) -> None:
        ...

    def claim_stale(self, min_idle_ms: int, count: int = 1) -> list[QueueMessage]:
        ...

    def dead_letter(self, msg: QueueMessage, reason: str) -> Optional[str]:
        ...
