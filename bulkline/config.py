from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional


@dataclass
class DbConfig:
    url: str
    echo: bool = False
    busy_timeout_s: int = 30

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("url must not be empty")
        if self.busy_timeout_s < 0:
            raise ValueError("busy_timeout_s must be >= 0")


@dataclass
class QueueConfig:
    stream_key: str
    consumer_group: str
    consumer_name: str
    claim_idle_ms: int = 60_000
    block_ms: int = 5_000
    max_read_count: int = 1

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.block_ms <= 0:
            raise ValueError(
                "block_ms must be > 0; Redis interprets 0 as infinite blocking"
            )
        if self.max_read_count <= 0:
            raise ValueError("max_read_count must be > 0")

    @property
    def delayed_key(self) -> str:
        return f"{self.stream_key}:delayed"

    @property
    def dead_letter_key(self) -> str:
        return f"{self.stream_key}:dead"


@dataclass
class EngineConfig:
    """
    Tunables for the execution engine.

    Defaults are production settings:
    500-record batches, three retries with 30s linear backoff, seven-day
    undo window, five concurrent executions per actor.
    """

    # batching
    batch_size: int = 500
    min_batch_size: int = 10
    max_batch_size: int = 10_000
    auto_adjust_batch_size: bool = True
    memory_threshold: float = 0.8
    memory_limit_bytes: Optional[int] = None

    # retry
    max_retries: int = 3
    retry_backoff_s: float = 30.0
    max_backoff_s: float = 600.0
    batch_timeout_s: float = 3600.0

    # failure policy
    stop_on_record_error: bool = False
    max_failure_ratio: float = 0.5

    # undo
    undo_expiry_days: int = 7
    max_undo_expiry_days: int = 90
    compress_snapshots: bool = True

    # rate limiting
    rate_limiting_enabled: bool = True
    max_concurrent_actions: int = 5
    max_records_per_action: int = 100_000
    cooldown_seconds: int = 60
    large_operation_threshold: int = 10_000

    # progress
    checkpoint_history: int = 10
    notify_throttle_ms: int = 500
    progress_cache_ttl_s: int = 86_400

    # scheduling / preview / retention
    max_schedule_days_ahead: int = 365
    preview_limit: int = 100
    execution_retention_days: int = 30

    def __post_init__(self) -> None:
        if self.min_batch_size <= 0:
            raise ValueError("min_batch_size must be > 0")
        if self.max_batch_size < self.min_batch_size:
            raise ValueError("max_batch_size must be >= min_batch_size")
        if not self.min_batch_size <= self.batch_size <= self.max_batch_size:
            raise ValueError(
                f"batch_size must be within [{self.min_batch_size}, {self.max_batch_size}]"
            )
        if not 0 < self.memory_threshold <= 1:
            raise ValueError("memory_threshold must be in (0, 1]")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_backoff_s < 0 or self.max_backoff_s < 0:
            raise ValueError("backoff values must be >= 0")
        if self.batch_timeout_s <= 0:
            raise ValueError("batch_timeout_s must be > 0")
        if not 0 <= self.max_failure_ratio <= 1:
            raise ValueError("max_failure_ratio must be in [0, 1]")
        if not 0 < self.undo_expiry_days <= self.max_undo_expiry_days:
            raise ValueError("undo_expiry_days must be in (0, max_undo_expiry_days]")
        if self.max_concurrent_actions <= 0:
            raise ValueError("max_concurrent_actions must be > 0")
        if self.checkpoint_history < 2:
            raise ValueError("checkpoint_history must be >= 2 to derive a rate")
        if self.preview_limit <= 0:
            raise ValueError("preview_limit must be > 0")

    def clamp_batch_size(self, size: int) -> int:
        return max(self.min_batch_size, min(size, self.max_batch_size))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "EngineConfig":
        """
        Build a config from ``BULKLINE_*`` environment variables.

        Only the commonly tuned settings are read; everything else keeps its
        default unless passed in ``overrides``.
        """
        environ = os.environ if environ is None else environ
        values: dict = {}
        for name, attr, cast in _ENV_SETTINGS:
            raw = environ.get(name)
            if raw is None or raw == "":
                continue
            values[attr] = cast(raw)
        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **changes) -> "EngineConfig":
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown EngineConfig settings: {sorted(unknown)}")
        return replace(self, **changes)


def _env_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


_ENV_SETTINGS = (
    ("BULKLINE_BATCH_SIZE", "batch_size", int),
    ("BULKLINE_UNDO_EXPIRY_DAYS", "undo_expiry_days", int),
    ("BULKLINE_MAX_CONCURRENT_ACTIONS", "max_concurrent_actions", int),
    ("BULKLINE_COOLDOWN_SECONDS", "cooldown_seconds", int),
    ("BULKLINE_MAX_RETRIES", "max_retries", int),
    ("BULKLINE_RATE_LIMITING_ENABLED", "rate_limiting_enabled", _env_bool),
)
