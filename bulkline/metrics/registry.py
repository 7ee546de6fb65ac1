"""Prometheus metrics for bulkline. Labels stay low-cardinality: never ids."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

DB_WRITE_TOTAL = Counter(
    "bulkline_db_write_total",
    "DB write statements by table, operation and outcome.",
    ["table", "op_type", "status"],
)
DB_WRITE_LATENCY_SECONDS = Histogram(
    "bulkline_db_write_latency_seconds",
    "Latency of DB write statements.",
    ["table", "op_type"],
)

QUEUE_MESSAGES_READ_TOTAL = Counter(
    "bulkline_queue_messages_read_total",
    "Messages read from the work queue.",
    ["stream"],
)
QUEUE_MESSAGES_ACK_TOTAL = Counter(
    "bulkline_queue_messages_ack_total",
    "Messages acknowledged on the work queue.",
    ["stream"],
)
QUEUE_MESSAGES_CLAIMED_TOTAL = Counter(
    "bulkline_queue_messages_claimed_total",
    "Stale messages reclaimed from other consumers.",
    ["stream"],
)
QUEUE_MESSAGES_DEAD_LETTERED_TOTAL = Counter(
    "bulkline_queue_messages_dead_lettered_total",
    "Messages moved to the dead-letter stream.",
    ["stream"],
)
QUEUE_READ_LATENCY_SECONDS = Histogram(
    "bulkline_queue_read_latency_seconds",
    "Latency of queue reads that returned messages.",
    ["stream"],
)

RECORDS_TOTAL = Counter(
    "bulkline_records_total",
    "Target records handled by workers, by action and outcome.",
    ["action", "outcome"],
)
BATCHES_TOTAL = Counter(
    "bulkline_batches_total",
    "Batches reaching a terminal status.",
    ["action", "status"],
)
BATCH_RETRIES_TOTAL = Counter(
    "bulkline_batch_retries_total",
    "Batches re-queued after a transient failure.",
    ["action"],
)
BATCH_DURATION_SECONDS = Histogram(
    "bulkline_batch_duration_seconds",
    "Wall time of one batch attempt.",
    ["action"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900, 3600),
)
GATE_DENIALS_TOTAL = Counter(
    "bulkline_gate_denials_total",
    "Submissions rejected by the rate/concurrency gate.",
    ["reason"],
)
UNDO_RECORDS_TOTAL = Counter(
    "bulkline_undo_records_total",
    "Snapshot restorations by outcome.",
    ["outcome"],
)

REGISTRY_METRICS = (
    DB_WRITE_TOTAL,
    DB_WRITE_LATENCY_SECONDS,
    QUEUE_MESSAGES_READ_TOTAL,
    QUEUE_MESSAGES_ACK_TOTAL,
    QUEUE_MESSAGES_CLAIMED_TOTAL,
    QUEUE_MESSAGES_DEAD_LETTERED_TOTAL,
    QUEUE_READ_LATENCY_SECONDS,
    RECORDS_TOTAL,
    BATCHES_TOTAL,
    BATCH_RETRIES_TOTAL,
    BATCH_DURATION_SECONDS,
    GATE_DENIALS_TOTAL,
    UNDO_RECORDS_TOTAL,
)
