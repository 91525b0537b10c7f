"""
Monitoring and metrics infrastructure for RiftSettle.

This package provides:
- Settlement and HTTP metrics (counters, gauges, histograms)
- Structured logging with JSON output and secret redaction
- Request timing middleware

Usage:
    from monitoring import metrics, get_logger

    metrics.record_claim("settled", 1.25)
    metrics.increment("reset_requests_total")

    logger = get_logger(__name__)
    logger.info("Run finished", extra={"recorded": 3})
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import counted, setup_request_logging, timed

__all__ = [
    "MetricsCollector",
    "metrics",
    "get_logger",
    "configure_logging",
    "LoggingContext",
    "setup_request_logging",
    "timed",
    "counted",
]
