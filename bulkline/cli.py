"""
Command line entry point.

    bulkline --db-url sqlite:///bulk.db --entity users=users:deleted_at init-db
    bulkline --db-url ... --redis-url redis://localhost:6379/0 --entity ... worker
    bulkline --db-url ... --redis-url ... process-scheduled
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import socket
import sys
from typing import Optional, Sequence

from redis import Redis

from .actions.builtin import default_registry
from .cache import RedisCache
from .config import DbConfig, EngineConfig, QueueConfig
from .db.engine import create_db_engine
from .db.schema import create_schema
from .engine import BulkActionEngine
from .queue.consumer import QueueConsumer
from .queue.redis_streams import RedisStreamsQueue
from .records import EntityRegistry, EntityType

logger = logging.getLogger(__name__)


def parse_entity(raw: str) -> EntityType:
    """``name=table[:soft_delete_column]``"""
    name, sep, rest = raw.partition("=")
    if not sep or not name or not rest:
        raise argparse.ArgumentTypeError(f"invalid entity {raw!r}; expected name=table[:soft_delete_column]")
    table, _, soft_col = rest.partition(":")
    try:
        return EntityType(name, table, soft_delete_column=soft_col or None)
    except (TypeError, ValueError) as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bulkline", description="Bulk action execution engine")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("BULKLINE_DB_URL"),
        help="SQLAlchemy database URL (default: $BULKLINE_DB_URL)",
    )
    parser.add_argument(
        "--redis-url",
        default=os.environ.get("BULKLINE_REDIS_URL"),
        help="Redis URL for the work queue and cache (default: $BULKLINE_REDIS_URL)",
    )
    parser.add_argument(
        "--stream",
        default=os.environ.get("BULKLINE_STREAM", "bulkline:batches"),
        help="Redis stream holding batch messages",
    )
    parser.add_argument("--group", default="bulkline-workers", help="Redis consumer group")
    parser.add_argument(
        "--entity",
        action="append",
        type=parse_entity,
        default=[],
        help="Target entity as name=table[:soft_delete_column]; repeatable",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create the ledger tables")
    worker = sub.add_parser("worker", help="Consume and process batch messages")
    worker.add_argument("--once", action="store_true", help="Drain the queue and exit")
    worker.add_argument("--consumer-name", default=None, help="Consumer name (default: host-pid)")
    sub.add_parser("process-scheduled", help="Promote and dispatch due scheduled executions")
    sub.add_parser("cleanup", help="Purge expired snapshots and old finished executions")
    sub.add_parser("list-actions", help="List registered actions")
    return parser


def _engine(args: argparse.Namespace, consumer_name: Optional[str] = None) -> BulkActionEngine:
    db_engine = create_db_engine(DbConfig(url=args.db_url))
    kwargs: dict = {"config": EngineConfig.from_env()}
    if args.redis_url:
        redis = Redis.from_url(args.redis_url)
        queue_config = QueueConfig(
            stream_key=args.stream,
            consumer_group=args.group,
            consumer_name=consumer_name or f"{socket.gethostname()}-{os.getpid()}",
        )
        kwargs["queue"] = RedisStreamsQueue(redis, queue_config)
        kwargs["cache"] = RedisCache(redis)
    return BulkActionEngine(db_engine, EntityRegistry(*args.entity), **kwargs)


def _run_worker(args: argparse.Namespace) -> int:
    bulk = _engine(args, args.consumer_name)
    if not args.redis_url and not args.once:
        logger.error("a long-running worker needs --redis-url; use --once with the in-process queue")
        return 2
    if isinstance(bulk.queue, RedisStreamsQueue):
        consumer = QueueConsumer(
            bulk.queue,
            block_ms=bulk.queue.config.block_ms,
            claim_idle_ms=bulk.queue.config.claim_idle_ms,
        )
    else:
        consumer = bulk.consumer()

    if args.once:
        handled = consumer.drain(handler=bulk.worker.handle)
        logger.info("drained %d batch messages", handled)
        return 0

    def _stop(signum, frame) -> None:
        logger.info("signal %s received; stopping after the current batch", signum)
        consumer.stop()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    logger.info("worker consuming %s", args.stream)
    consumer.run(handler=bulk.worker.handle)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "list-actions":
        print(json.dumps(default_registry().describe(), indent=2))
        return 0

    if not args.db_url:
        parser.error("--db-url (or BULKLINE_DB_URL) is required")

    if args.command == "init-db":
        create_schema(create_db_engine(DbConfig(url=args.db_url)))
        logger.info("ledger tables created")
        return 0
    if args.command == "worker":
        return _run_worker(args)
    if args.command == "process-scheduled":
        promoted = _engine(args).process_due()
        print(json.dumps({"promoted": promoted}))
        return 0
    if args.command == "cleanup":
        print(json.dumps(_engine(args).cleanup()))
        return 0
    parser.error(f"unknown command {args.command!r}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
