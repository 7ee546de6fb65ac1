from __future__ import annotations

import os
import uuid
from collections.abc import Iterator

import pytest
from redis import Redis

from bulkline.config import QueueConfig

REDIS_URL_ENV = "BULKLINE_TEST_REDIS_URL"


@pytest.fixture(scope="session")
def redis_client() -> Iterator[Redis]:
    """
    Client for the `redis`-marked batch queue tests (default: local db 15).

    An unreachable server fails the run with the URL it tried instead of
    erroring in every test.
    """
    url = os.environ.get(REDIS_URL_ENV, "redis://127.0.0.1:6379/15")
    client = Redis.from_url(url, decode_responses=False)
    try:
        client.ping()
    except Exception as exc:  # pragma: no cover
        pytest.fail(f"cannot reach Redis at {url!r} ({REDIS_URL_ENV}): {exc}", pytrace=False)

    yield client

    client.close()


@pytest.fixture
def queue_config(redis_client: Redis, request: pytest.FixtureRequest) -> Iterator[QueueConfig]:
    """
    A batch-message stream private to one test.

    The stream, its delayed-retry sorted set and its dead-letter stream are
    deleted afterwards.
    """
    suffix = uuid.uuid4().hex[:8]
    name = request.node.name[:24]
    config = QueueConfig(
        stream_key=f"bulkline:test:{name}:{suffix}:batches",
        consumer_group=f"bulkline-workers-{suffix}",
        consumer_name=f"worker-{name}-{suffix}",
        block_ms=1_000,
        claim_idle_ms=60_000,
    )

    yield config

    redis_client.delete(config.stream_key, config.delayed_key, config.dead_letter_key)
