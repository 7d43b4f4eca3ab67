"""Prometheus metrics for botfleet.

Exposes fleet allocation, host provisioning and pipeline timings. The
/metrics endpoint serves these in Prometheus exposition format.
"""
from __future__ import annotations

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


pipeline_phase_duration = Histogram(
    "botfleet_pipeline_phase_seconds",
    "Duration of deployment pipeline phases",
    ["phase", "status"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

host_provision_total = Counter(
    "botfleet_host_provision_total",
    "Shared host provisioning outcomes",
    ["purpose", "result"],
)

port_allocations_total = Counter(
    "botfleet_port_allocations_total",
    "Port allocation and release calls",
    ["operation", "result"],
)

readiness_attempts_total = Counter(
    "botfleet_readiness_attempts_total",
    "Host readiness verification attempts",
    ["result"],
)

remote_command_failures_total = Counter(
    "botfleet_remote_command_failures_total",
    "Remote commands that exited non-zero or timed out",
    ["kind"],
)

hosts_by_status = Gauge(
    "botfleet_hosts",
    "Shared hosts known to this process by status",
    ["status"],
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output.

    Returns:
        Tuple of (metrics_bytes, content_type)
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
