"""
Prometheus metrics for stages, providers, the event bus and the worker.
"""
from prometheus_client import Counter, Histogram, generate_latest, REGISTRY
from typing import Callable
import time
import functools


# Metrics
stage_invocations_total = Counter(
    'pipeline_stage_invocations_total',
    'Total number of stage invocations by outcome',
    ['stage', 'outcome']
)

stage_duration = Histogram(
    'pipeline_stage_duration_seconds',
    'Time spent inside a stage handler',
    ['stage']
)

provider_requests_total = Counter(
    'pipeline_provider_requests_total',
    'Total number of provider API requests made',
    ['provider', 'operation', 'status']
)

provider_request_duration = Histogram(
    'pipeline_provider_request_duration_seconds',
    'Duration of provider API requests',
    ['provider', 'operation']
)

throttle_deferrals_total = Counter(
    'pipeline_throttle_deferrals_total',
    'Work re-queued because a provider was throttling',
    ['stage', 'reason']
)

tasks_extracted_total = Counter(
    'pipeline_tasks_extracted_total',
    'Total number of tasks extracted from transcripts',
    ['method']
)

tracker_operations_total = Counter(
    'pipeline_tracker_operations_total',
    'Issue tracker create/update operations',
    ['operation', 'status']
)

events_published_total = Counter(
    'pipeline_events_published_total',
    'Events published to the bus',
    ['detail_type']
)

events_dead_lettered_total = Counter(
    'pipeline_events_dead_lettered_total',
    'Events moved to the dead letter state',
    ['detail_type']
)

worker_batch_duration = Histogram(
    'pipeline_worker_batch_duration_seconds',
    'Duration of one worker poll-and-dispatch cycle'
)

errors_total = Counter(
    'pipeline_errors_total',
    'Total number of errors by type',
    ['error_type', 'component']
)


def track_time(metric: Histogram, **labels):
    """Observe the wall time of an async callable on ``metric``."""
    target = metric.labels(**labels) if labels else metric

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                target.observe(time.perf_counter() - started)
        return wrapper

    return decorator


def get_metrics() -> bytes:
    return generate_latest(REGISTRY)


def record_error(error_type: str, component: str):
    # component is a stage name, a provider name, or "worker"/"dispatcher"
    errors_total.labels(error_type=error_type, component=component).inc()
