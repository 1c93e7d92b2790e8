"""Prometheus metrics for broker traffic and pending device requests."""

from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

bellbot_publish_total: Final = Counter(  # type: ignore[assignment]
    "bellbot_publish_total",
    "Total outbound device publishes",
    ["command", "outcome"],
)

bellbot_inbound_messages_total: Final = Counter(  # type: ignore[assignment]
    "bellbot_inbound_messages_total",
    "Total inbound device messages handled by the dispatcher",
    ["message_class", "outcome"],
)

bellbot_correlation_total: Final = Counter(  # type: ignore[assignment]
    "bellbot_correlation_total",
    "Completed device requests by outcome",
    ["request_class", "outcome"],
)

bellbot_round_trip_seconds: Final = Histogram(  # type: ignore[assignment]
    "bellbot_round_trip_seconds",
    "Device request round-trip latency in seconds",
    ["request_class"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 15.0),
)

bellbot_operation_seconds: Final = Histogram(  # type: ignore[assignment]
    "bellbot_operation_seconds",
    "Duration of timed controller operations in seconds",
    ["operation"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0),
)

bellbot_dispatch_queue_depth: Final = Gauge(  # type: ignore[assignment]
    "bellbot_dispatch_queue_depth",
    "Inbound messages waiting for the dispatcher",
)

bellbot_pending_correlations: Final = Gauge(  # type: ignore[assignment]
    "bellbot_pending_correlations",
    "Device requests currently awaiting a reply",
)


def record_publish(command: str, outcome: str) -> None:
    bellbot_publish_total.labels(command=command, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_inbound(message_class: str, outcome: str) -> None:
    bellbot_inbound_messages_total.labels(message_class=message_class, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_correlation(request_class: str, outcome: str, elapsed_seconds: float | None = None) -> None:
    bellbot_correlation_total.labels(request_class=request_class, outcome=outcome).inc()  # type: ignore[no-untyped-call]
    if elapsed_seconds is not None:
        bellbot_round_trip_seconds.labels(request_class=request_class).observe(elapsed_seconds)  # type: ignore[no-untyped-call]


def observe_operation(operation: str, seconds: float) -> None:
    bellbot_operation_seconds.labels(operation=operation).observe(seconds)  # type: ignore[no-untyped-call]


def set_queue_depth(depth: int) -> None:
    bellbot_dispatch_queue_depth.set(depth)  # type: ignore[no-untyped-call]


def set_pending_correlations(count: int) -> None:
    bellbot_pending_correlations.set(count)  # type: ignore[no-untyped-call]


def start_metrics_server(port: int) -> None:
    """Expose /metrics over HTTP on the given port (background thread)."""
    start_http_server(port)  # type: ignore[no-untyped-call]
