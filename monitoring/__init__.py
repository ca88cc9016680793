"""monitoring package"""
from .logger import (
    logger,
    metrics,
    timed,
    start_metrics_server,
    get_logger,
    LIFECYCLE_OPERATIONS,
    PRICING_LATENCY,
    LEDGER_ENTRIES,
    PAYMENT_FAILURES,
)

__all__ = [
    "logger", "metrics", "timed", "start_metrics_server", "get_logger",
    "LIFECYCLE_OPERATIONS", "PRICING_LATENCY", "LEDGER_ENTRIES", "PAYMENT_FAILURES",
]
