"""
Adaptive batch sizing under memory pressure.

The reader reports (used_bytes, limit_bytes). By default it reads the current
resident set size of this process and compares it against
``EngineConfig.memory_limit_bytes``; without a limit the guard never shrinks.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Optional

import psutil

from .config import EngineConfig

logger = logging.getLogger(__name__)

MemoryReader = Callable[[], tuple[int, Optional[int]]]


def rss_reader(limit_bytes: Optional[int]) -> MemoryReader:
    def _read() -> tuple[int, Optional[int]]:
        return psutil.Process().memory_info().rss, limit_bytes

    return _read


class MemoryGuard:
    def __init__(self, config: EngineConfig, reader: Optional[MemoryReader] = None) -> None:
        self.config = config
        self.reader = reader or rss_reader(config.memory_limit_bytes)

    def usage_ratio(self) -> Optional[float]:
        used, limit = self.reader()
        if not limit:
            return None
        return used / limit

    def under_pressure(self) -> bool:
        ratio = self.usage_ratio()
        return ratio is not None and ratio >= self.config.memory_threshold

    def adjust(self, batch_size: int) -> int:
        """
        Clamp ``batch_size`` to the configured bounds, halving it (down to the
        minimum) while memory use is above the threshold.
        """
        size = self.config.clamp_batch_size(batch_size)
        if not self.config.auto_adjust_batch_size or not self.under_pressure():
            return size
        shrunk = self.config.clamp_batch_size(size // 2)
        if shrunk != size:
            logger.warning("memory pressure: shrinking batch size %d -> %d", size, shrunk)
        return shrunk
