"""Observability helpers: logging, metrics, and health checks."""

from .logging_config import configure_logging, ensure_request_id
from .metrics import (
    increment_counter,
    set_gauge,
    observe_latency,
    record_event,
    get_metrics_snapshot,
    reset_metrics,
    get_counter_value,
)
from .health import check_database_health, check_vendor_health

__all__ = [
    "configure_logging",
    "ensure_request_id",
    "increment_counter",
    "set_gauge",
    "observe_latency",
    "record_event",
    "get_metrics_snapshot",
    "reset_metrics",
    "get_counter_value",
    "check_database_health",
    "check_vendor_health",
]
