"""Custom Prometheus metrics for the Support Pipeline.

Exposed by each Celery worker process on METRICS_PORT and scraped by
Prometheus. Alert rules should be configured for:
- dlq_entries_total (any increase requires review)
- job_failures_total{retryable="false"} (permanent failures)
- ingestion_errors_total (mailbox outages per shop)
- credit_reservations_total{result="denied"} (owners out of credit)
"""

from prometheus_client import Counter, Gauge, Histogram

# === Job Queue Metrics ===

jobs_enqueued_total = Counter(
    "jobs_enqueued_total",
    "Total jobs enqueued by job type",
    ["job_type"],
)

jobs_processed_total = Counter(
    "jobs_processed_total",
    "Total jobs processed by the queue worker by final job status",
    ["status"],
)
"""
Jobs processed counter.

Labels:
- status: completed, retried, dead_letter, released
"""

job_failures_total = Counter(
    "job_failures_total",
    "Total failed job attempts by error type and retryability",
    ["error_type", "retryable"],
)
"""
Failed attempts by error type.

Labels:
- error_type: rate_limit, timeout, network_error, invalid_data, spam, auth_error, ...
- retryable: true, false

Alert thresholds:
- WARN: rate of retryable=false > 5% of processed jobs
"""

dlq_entries_total = Counter(
    "dlq_entries_total",
    "Total jobs moved to the dead-letter state by error type",
    ["reason"],
)
"""
DLQ entries counter by failure reason.

Alert thresholds:
- WARN: any DLQ entry (transient ones are retried by the janitor within 24h)
- CRITICAL: DLQ entry rate > 1% of processed jobs
"""

job_processing_seconds = Histogram(
    "job_processing_seconds",
    "Time spent processing one job",
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0],
)

# === Pipeline Metrics ===

pipeline_outcomes_total = Counter(
    "pipeline_outcomes_total",
    "Message processing outcomes",
    ["outcome"],
)
"""
Outcome of each processing attempt.

Labels:
- outcome: replied, data_requested, escalated, acknowledged, spam, rejected,
  loop_detected, pending_credits, already_handled
"""

category_distribution_total = Counter(
    "category_distribution_total",
    "Classified messages by category",
    ["category"],
)

# === Ingestion Metrics ===

ingested_messages_total = Counter(
    "ingested_messages_total",
    "Inbound messages persisted by the ingestion worker",
)

ingestion_duplicates_total = Counter(
    "ingestion_duplicates_total",
    "Fetched emails skipped because their message id was already stored",
)

ingestion_errors_total = Counter(
    "ingestion_errors_total",
    "Mailbox fetch failures by error kind",
    ["kind"],
)

# === Admission Metrics ===

credit_reservations_total = Counter(
    "credit_reservations_total",
    "Credit reservation attempts by result",
    ["result"],
)
"""
Labels:
- result: reserved, denied
"""

credit_warnings_sent_total = Counter(
    "credit_warnings_sent_total",
    "Owner warning emails sent for exhausted credits",
)

extra_package_charges_total = Counter(
    "extra_package_charges_total",
    "Extra package billing triggers by outcome",
    ["outcome"],
)

# === Janitor Metrics ===

janitor_actions_total = Counter(
    "janitor_actions_total",
    "Rows touched by janitor sweeps",
    ["sweep"],
)
"""
Labels:
- sweep: stuck_messages, stuck_jobs, orphans, transient_dlq, dlq_pruned, credit_recovery
"""

# === LLM Metrics ===

llm_latency_seconds = Histogram(
    "llm_latency_seconds",
    "LLM provider request latency",
    ["operation", "success"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0],
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Tokens consumed by operation and direction",
    ["operation", "token_type"],
)
"""
Labels:
- operation: classify, reply, data_request, human_fallback
- token_type: input, output
"""

# === Cache Metrics ===

image_cache_entries = Gauge(
    "image_cache_entries",
    "Entries currently held in the in-process image cache",
)
