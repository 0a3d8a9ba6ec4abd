"""
Prometheus metrics endpoint.

Exposes queue, webhook, hook and scheduler metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Job Queue Metrics
# ============================================

jobs_queued = Counter(
    'jobs_queued_total',
    'Total jobs queued',
    ['queue', 'backend']
)

jobs_completed = Counter(
    'jobs_completed_total',
    'Total jobs completed successfully',
    ['queue']
)

jobs_failed = Counter(
    'jobs_failed_total',
    'Total jobs dropped after their last attempt',
    ['queue']
)

jobs_retry_total = Counter(
    'jobs_retry_total',
    'Total job retry attempts',
    ['queue']
)

jobs_unrouted = Counter(
    'jobs_unrouted_total',
    'Total jobs discarded at enqueue because no consumer serves the queue',
    ['queue', 'backend']
)

job_queue_depth = Gauge(
    'job_queue_waiting_count',
    'Current number of waiting jobs',
    ['queue']
)

# ============================================
# Webhook Metrics
# ============================================

webhooks_sent = Counter(
    'webhooks_sent_total',
    'Total webhook delivery attempts',
    ['topic', 'status']
)

webhook_delivery_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Outbound webhook request duration in seconds',
    ['topic'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# ============================================
# Plugin Metrics
# ============================================

hook_failures = Counter(
    'hook_callback_failures_total',
    'Total hook callbacks that raised',
    ['hook_name', 'plugin_id']
)

scheduled_runs = Counter(
    'scheduled_task_runs_total',
    'Total scheduled task executions',
    ['plugin_id', 'schedule_id', 'status']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_job_queued(queue: str, backend: str):
    """Record a job being queued."""
    jobs_queued.labels(queue=queue, backend=backend).inc()


def track_job_unrouted(queue: str, backend: str):
    """Record a job discarded at enqueue for lack of a consumer."""
    jobs_unrouted.labels(queue=queue, backend=backend).inc()


def track_job_completed(queue: str):
    """Record a job completing successfully."""
    jobs_completed.labels(queue=queue).inc()


def track_job_failed(queue: str):
    """Record a job being dropped after its last attempt."""
    jobs_failed.labels(queue=queue).inc()


def track_job_retry(queue: str):
    """Record a job retry attempt."""
    jobs_retry_total.labels(queue=queue).inc()


def update_queue_depth(queue: str, depth: int):
    """Update waiting job count."""
    job_queue_depth.labels(queue=queue).set(depth)


def track_webhook_sent(topic: str, status: str, duration_seconds: float | None = None):
    """Record a webhook delivery attempt."""
    webhooks_sent.labels(topic=topic, status=status).inc()
    if duration_seconds is not None:
        webhook_delivery_duration.labels(topic=topic).observe(duration_seconds)


def track_hook_failure(hook_name: str, plugin_id: str):
    """Record a hook callback failure."""
    hook_failures.labels(hook_name=hook_name, plugin_id=plugin_id).inc()


def track_scheduled_run(plugin_id: str, schedule_id: str, status: str):
    """Record a scheduled task execution."""
    scheduled_runs.labels(plugin_id=plugin_id, schedule_id=schedule_id, status=status).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
