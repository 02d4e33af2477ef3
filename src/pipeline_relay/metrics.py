"""
Prometheus metrics for the pipeline relay.

This module defines the metrics collected while receiving webhooks, keeping
the registration store in sync and creating pipeline runs.
"""

from prometheus_client import Counter, Histogram
import time


# Webhook reception metrics
webhooks_received_total = Counter(
    "pipeline_relay_webhooks_received_total",
    "Total number of webhooks received",
    ["event_type"],
)

webhook_classifications_total = Counter(
    "pipeline_relay_webhook_classifications_total",
    "Outcome of classifying received webhooks",
    ["event_type", "outcome"],  # outcome = mapped|ignored|malformed
)

webhook_processing_errors_total = Counter(
    "pipeline_relay_webhook_processing_errors_total",
    "Total number of webhook processing errors",
    ["event_type", "error_type"],
)

# Pipeline run metrics
pipeline_run_build_duration_seconds = Histogram(
    "pipeline_relay_pipeline_run_build_duration_seconds",
    "Time spent creating the resources of a pipeline run",
    ["namespace"],
)

pipeline_run_errors_total = Counter(
    "pipeline_relay_pipeline_run_errors_total",
    "Total number of pipeline runs that could not be created",
    ["namespace", "error_type"],
)

pipeline_runs_created_total = Counter(
    "pipeline_relay_pipeline_runs_created_total",
    "Total number of PipelineRuns created",
    ["namespace"],
)

compensations_total = Counter(
    "pipeline_relay_compensations_total",
    "Total number of created objects removed after a later step failed",
    ["namespace", "outcome"],  # outcome = deleted|failed
)

# Registry metrics
registrations_total = Counter(
    "pipeline_relay_registrations_total",
    "Total number of repositories registered",
    ["namespace"],
)

registry_reconciliation_duration_seconds = Histogram(
    "pipeline_relay_registry_reconciliation_duration_seconds",
    "Time spent reconciling GitHubSources with the registration store",
)


class MetricsContext:
    """Context manager for timing operations and handling errors with metrics."""

    def __init__(self, histogram, error_counter, labels=None, error_labels=None):
        self.histogram = histogram
        self.error_counter = error_counter
        self.labels = labels or []
        self.error_labels = error_labels or []
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.time() - self.start_time
            self.histogram.labels(*self.labels).observe(duration)

        if exc_type is not None:
            error_type = exc_type.__name__
            self.error_counter.labels(*self.error_labels, error_type).inc()

        return False  # Don't suppress exceptions


def track_pipeline_run(namespace: str):
    """Context manager for tracking pipeline run creation metrics."""
    return MetricsContext(
        pipeline_run_build_duration_seconds,
        pipeline_run_errors_total,
        labels=[namespace],
        error_labels=[namespace],
    )
