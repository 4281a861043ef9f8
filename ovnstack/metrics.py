"""Prometheus metrics for the ovnstack orchestrator.

Bring-up runs are short-lived, so these are mostly useful when the
orchestrator is embedded in a longer-running host tool that exposes
the default registry, or to inspect a run from tests.
"""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

SERVICE_LAUNCHES: Final[Counter] = Counter(
    "ovnstack_service_launches_total",
    "Total daemon launch attempts, labeled by service and outcome.",
    labelnames=("service", "outcome"),
)

READINESS_WAIT: Final[Histogram] = Histogram(
    "ovnstack_readiness_wait_seconds",
    "Time spent waiting for a daemon readiness signal, labeled by service.",
    labelnames=("service",),
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

READINESS_TIMEOUTS: Final[Counter] = Counter(
    "ovnstack_readiness_timeouts_total",
    "Total readiness checks that timed out, labeled by service.",
    labelnames=("service",),
)

STORES_CREATED: Final[Counter] = Counter(
    "ovnstack_stores_created_total",
    "Total backing store files created from schema, labeled by store.",
    labelnames=("store",),
)

TEARDOWN_FAILURES: Final[Counter] = Counter(
    "ovnstack_teardown_failures_total",
    "Total stop commands that failed during teardown, labeled by service.",
    labelnames=("service",),
)
