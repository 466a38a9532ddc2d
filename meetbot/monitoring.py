"""
Monitoring and metrics collection using Prometheus.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, REGISTRY
from typing import Callable
import time
import functools


api_requests_total = Counter(
    'meetbot_api_requests_total',
    'Total number of outbound API requests made',
    ['platform', 'endpoint', 'status']
)

api_request_duration = Histogram(
    'meetbot_api_request_duration_seconds',
    'Duration of outbound API requests',
    ['platform', 'endpoint']
)

bots_created_total = Counter(
    'meetbot_bots_created_total',
    'Bot creation requests by outcome',
    ['status']
)

bots_timed_out_total = Counter(
    'meetbot_bots_timed_out_total',
    'Scheduled bots reclaimed because they never joined'
)

webhook_events_total = Counter(
    'meetbot_webhook_events_total',
    'Webhook events received by kind and outcome',
    ['kind', 'outcome']
)

bot_transitions_total = Counter(
    'meetbot_bot_transitions_total',
    'Persisted bot state transitions',
    ['state']
)

evaluation_dispatches_total = Counter(
    'meetbot_evaluation_dispatches_total',
    'Evaluation dispatch attempts by outcome',
    ['outcome']
)

scheduler_runs_total = Counter(
    'meetbot_scheduler_runs_total',
    'Total number of scheduler passes',
    ['action', 'status']
)

scheduler_run_duration = Histogram(
    'meetbot_scheduler_run_duration_seconds',
    'Duration of scheduler passes',
    ['action']
)

live_transcripts_gauge = Gauge(
    'meetbot_live_transcripts',
    'Number of bots with a live transcript in memory'
)

errors_total = Counter(
    'meetbot_errors_total',
    'Total number of errors by type',
    ['error_type', 'component']
)


evaluation_job_duration = Histogram(
    'meetbot_evaluation_job_duration_seconds',
    'Duration of post-meeting evaluation jobs, transcript wait included',
    buckets=(5, 15, 30, 60, 120, 300, 600)
)


def track_time(metric: Histogram, **labels):
    """
    Decorator observing how long a coroutine takes, failures included.

    Args:
        metric: Prometheus Histogram metric
        labels: Label values, if the histogram has labels
    """
    target = metric.labels(**labels) if labels else metric

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.monotonic()
            try:
                return await func(*args, **kwargs)
            finally:
                target.observe(time.monotonic() - started)
        return wrapper

    return decorator


def get_metrics() -> bytes:
    """Current metrics in Prometheus text format."""
    return generate_latest(REGISTRY)


def record_error(error_type: str, component: str):
    """
    Count an error.

    Args:
        error_type: Exception class name (e.g. 'CalendarAuthError')
        component: Where it happened (e.g. 'calendar_service', 'webhook')
    """
    errors_total.labels(error_type=error_type, component=component).inc()
