"""
Prometheus metrics for sitestack runs.

Provides standardized metrics for control plane operations and whole
reconciliation runs. A CLI run can dump them to a node-exporter textfile.

Usage:
    from sitestack.monitoring.metrics import track_operation

    with track_operation("s3_bucket", "create"):
        await handler.create(attributes, token)

    # Or manually
    OPERATION_DURATION.labels(resource_type="s3_bucket", action="create").observe(duration)
"""

import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, write_to_textfile


# =============================================================================
# Metric Definitions
# =============================================================================

OPERATIONS_TOTAL = Counter(
    "sitestack_operations_total",
    "Total control plane operations applied",
    ["resource_type", "action", "status"],
)

OPERATION_DURATION = Histogram(
    "sitestack_operation_duration_seconds",
    "Duration of applying one planned operation",
    ["resource_type", "action"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0],
)

RETRIES_TOTAL = Counter(
    "sitestack_retries_total",
    "Retries of transient control plane failures",
    ["resource_type"],
)

DRIFT_DETECTED_TOTAL = Counter(
    "sitestack_drift_detected_total",
    "Remote conflicts detected before update",
    ["resource_type"],
)

RUNS_TOTAL = Counter(
    "sitestack_runs_total",
    "Total CLI runs",
    ["command", "status"],
)

RUN_DURATION = Histogram(
    "sitestack_run_duration_seconds",
    "Duration of a CLI run",
    ["command"],
    buckets=[1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0],
)

RESOURCES_MANAGED = Gauge(
    "sitestack_resources_managed",
    "Resources recorded in the state snapshot",
)


# =============================================================================
# Tracking Context Managers
# =============================================================================


@contextmanager
def track_operation(resource_type: str, action: str) -> Generator[None, None, None]:
    """
    Context manager to track one planned operation.

    Usage:
        with track_operation("cloudfront_distribution", "update"):
            await executor.run(op)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        OPERATIONS_TOTAL.labels(
            resource_type=resource_type,
            action=action,
            status=status,
        ).inc()
        OPERATION_DURATION.labels(
            resource_type=resource_type,
            action=action,
        ).observe(duration)


@contextmanager
def track_run(command: str) -> Generator[None, None, None]:
    """
    Context manager to track a whole CLI command.

    Usage:
        with track_run("apply"):
            await reconciler.reconcile(document)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        RUN_DURATION.labels(command=command).observe(time.perf_counter() - start_time)
        RUNS_TOTAL.labels(command=command, status=status).inc()


def record_retry(resource_type: str) -> None:
    RETRIES_TOTAL.labels(resource_type=resource_type).inc()


def record_drift(resource_type: str) -> None:
    DRIFT_DETECTED_TOTAL.labels(resource_type=resource_type).inc()


def set_resources_managed(count: int) -> None:
    RESOURCES_MANAGED.set(count)


def write_metrics(path: Path) -> None:
    """Write the default registry in textfile-collector format."""
    path.parent.mkdir(parents=True, exist_ok=True)
    write_to_textfile(str(path), REGISTRY)
