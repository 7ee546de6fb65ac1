from __future__ import annotations

from ..config import QueueConfig
from .consumer import QueueConsumer
from .local import LocalQueue
from .models import QueueMessage, WorkQueue
from .redis_streams import RedisStreamsQueue

__all__ = [
    "QueueConfig",
    "QueueConsumer",
    "QueueMessage",
    "WorkQueue",
    "LocalQueue",
    "RedisStreamsQueue",
]
