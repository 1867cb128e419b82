"""Prometheus metrics for azconverge.

All collectors live on the default registry.  ``start_metrics_server`` is
optional; a one-shot CLI run usually leaves it disabled.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

resource_operations_total = Counter(
    "azconverge_resource_operations_total",
    "Terminal resource operations by type and outcome",
    ["type", "operation"],
)

provider_retries_total = Counter(
    "azconverge_provider_retries_total",
    "Transient provider errors that were retried",
    ["type"],
)

resource_duration_seconds = Histogram(
    "azconverge_resource_duration_seconds",
    "Wall-clock time spent converging one resource",
    ["type"],
    buckets=(0.1, 0.5, 1, 5, 15, 60, 300, 900, 1800, 3600),
)

credential_fetches_total = Counter(
    "azconverge_credential_fetches_total",
    "Credential fetches by kind and outcome",
    ["kind", "outcome"],
)


def start_metrics_server(port: int) -> None:
    """Expose /metrics on ``port``.  A port of 0 disables the exporter."""
    if port > 0:
        start_http_server(port)
