"""Prometheus metrics for the autonomous workflow scheduler."""

from repo_autopilot.monitoring.metrics import MetricsCollector, measure_api_call

__all__ = ["MetricsCollector", "measure_api_call"]
