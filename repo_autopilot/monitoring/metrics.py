"""
Metrics collection for monitoring scheduler behavior.
Integrates with Prometheus for metrics export.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import Any

import structlog
from prometheus_client import Counter, Gauge, Histogram, generate_latest

log = structlog.get_logger(__name__)

# Workflow metrics
state_transitions = Counter(
    "autopilot_state_transitions_total",
    "Applied workflow state transitions",
    ["from_state", "to_state", "event"],
)

workflow_outcomes = Counter(
    "autopilot_workflow_outcomes_total",
    "Workflows that reached a terminal state",
    ["outcome"],
)

active_workflows = Gauge("autopilot_active_workflows", "Number of running coordination loops")

# Recovery metrics
recovery_attempts = Counter(
    "autopilot_recovery_attempts_total",
    "Recovery strategy executions",
    ["strategy", "success"],
)

recovery_duration = Histogram(
    "autopilot_recovery_duration_seconds",
    "Recovery strategy execution duration",
    ["strategy"],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300, 1800),
)

# Host API metrics
api_calls = Counter("autopilot_api_calls_total", "Host API calls", ["provider", "method", "status"])

api_call_duration = Histogram(
    "autopilot_api_call_duration_seconds",
    "Host API call duration",
    ["provider", "method"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30),
)


class MetricsCollector:
    """Collect and export metrics."""

    @staticmethod
    def record_transition(from_state: str | None, to_state: str | None, event: str) -> None:
        state_transitions.labels(from_state=from_state or "None", to_state=to_state or "None", event=event).inc()

    @staticmethod
    def record_outcome(outcome: str) -> None:
        workflow_outcomes.labels(outcome=outcome).inc()
        log.debug("metric_recorded", metric="workflow_outcome", outcome=outcome)

    @staticmethod
    def record_recovery_attempt(strategy: str, success: bool, duration_seconds: float) -> None:
        recovery_attempts.labels(strategy=strategy, success=str(success)).inc()
        recovery_duration.labels(strategy=strategy).observe(duration_seconds)

    @staticmethod
    def workflow_started() -> None:
        active_workflows.inc()

    @staticmethod
    def workflow_stopped() -> None:
        active_workflows.dec()

    @staticmethod
    def record_api_call(provider: str, method: str, status: str) -> None:
        api_calls.labels(provider=provider, method=method, status=status).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest()


def measure_api_call(provider: str, method: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator to measure host API call duration and outcome."""

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.time()
            status = "success"

            try:
                return await func(*args, **kwargs)
            except Exception:
                status = "error"
                raise
            finally:
                api_call_duration.labels(provider=provider, method=method).observe(time.time() - start)
                MetricsCollector.record_api_call(provider, method, status)

        return wrapper

    return decorator
