"""Monitoring and metrics instrumentation for the Support Pipeline.

Exports custom Prometheus metrics for operational monitoring and alerting.
"""

from support_pipeline.monitoring.metrics import (
    credit_reservations_total,
    dlq_entries_total,
    job_failures_total,
    jobs_processed_total,
    llm_latency_seconds,
    llm_tokens_total,
    pipeline_outcomes_total,
)

__all__ = [
    "jobs_processed_total",
    "job_failures_total",
    "dlq_entries_total",
    "pipeline_outcomes_total",
    "credit_reservations_total",
    "llm_latency_seconds",
    "llm_tokens_total",
]
