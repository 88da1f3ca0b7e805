"""Prometheus-format metrics."""

from courier.metrics.collector import MetricsCollector

__all__ = ["MetricsCollector"]
