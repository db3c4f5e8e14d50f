"""
Monitoring and observability for sitestack.

Provides Prometheus metrics for control plane operations and runs.

Usage:
    from sitestack.monitoring import track_operation

    with track_operation("s3_bucket", "create"):
        await handler.create(attributes, token)
"""

from sitestack.monitoring.metrics import (
    DRIFT_DETECTED_TOTAL,
    OPERATION_DURATION,
    OPERATIONS_TOTAL,
    RESOURCES_MANAGED,
    RETRIES_TOTAL,
    RUNS_TOTAL,
    record_drift,
    record_retry,
    set_resources_managed,
    track_operation,
    track_run,
    write_metrics,
)

__all__ = [
    "DRIFT_DETECTED_TOTAL",
    "OPERATION_DURATION",
    "OPERATIONS_TOTAL",
    "RESOURCES_MANAGED",
    "RETRIES_TOTAL",
    "RUNS_TOTAL",
    "record_drift",
    "record_retry",
    "set_resources_managed",
    "track_operation",
    "track_run",
    "write_metrics",
]
