"""
Job queue tests.

Covers the in-memory backend (FIFO order, retries with backoff, attempt
cap, missing consumers), backend selection, and the durable backend's
retry deferral and disconnect policy.
"""
import asyncio
from datetime import datetime

import pytest
from arq import Retry
from arq.connections import RedisSettings
from redis.exceptions import ConnectionError as RedisConnectionError

from commerce_core.exceptions import QueueUnavailableError
from commerce_core.services import job_queue as job_queue_module
from commerce_core.services.job_queue import (
    BACKEND_MEMORY,
    QUEUE_EMAIL,
    QUEUE_ORDER,
    QUEUE_WEBHOOK,
    Job,
    JobOptions,
    JobQueue,
    RedisBackend,
)


async def test_empty_redis_url_selects_memory_backend(job_queue):
    assert job_queue.backend_name == BACKEND_MEMORY
    assert job_queue.is_durable is False
    assert job_queue.connected is False


async def test_unreachable_broker_falls_back_to_memory(settings):
    settings.REDIS_URL = "redis://127.0.0.1:1"
    queue = JobQueue(settings)
    await queue.initialize()
    try:
        assert queue.backend_name == BACKEND_MEMORY
    finally:
        await queue.shutdown()


async def test_enqueue_before_initialize_raises(settings):
    queue = JobQueue(settings)
    with pytest.raises(RuntimeError):
        await queue.enqueue(QUEUE_EMAIL, {"to": "a@example.com"})


async def test_stats_shape(job_queue):
    job_queue.register_consumer(QUEUE_EMAIL, lambda job: asyncio.sleep(0))
    await job_queue.enqueue(QUEUE_EMAIL, {"to": "a@example.com"})

    stats = await job_queue.stats()

    assert stats["backend"] == "memory"
    assert stats["connected"] is False
    assert set(stats["queues"]) >= {QUEUE_WEBHOOK, QUEUE_EMAIL, QUEUE_ORDER}
    assert stats["queues"][QUEUE_EMAIL] == {"waiting": 1}
    assert stats["queues"][QUEUE_WEBHOOK] == {"waiting": 0}


async def test_memory_jobs_run_in_fifo_order(job_queue):
    seen = []

    async def handler(job):
        seen.append(job.payload["n"])

    job_queue.register_consumer(QUEUE_ORDER, handler)
    for n in range(5):
        await job_queue.enqueue(QUEUE_ORDER, {"n": n})

    executed = await job_queue.backend.drain()

    assert executed == 5
    assert seen == [0, 1, 2, 3, 4]
    assert await job_queue.backend.waiting_count(QUEUE_ORDER) == 0


async def test_job_without_consumer_is_dropped(job_queue, monkeypatch):
    queued, unrouted = [], []
    monkeypatch.setattr(job_queue_module, "track_job_queued", lambda queue, backend: queued.append(queue))
    monkeypatch.setattr(job_queue_module, "track_job_unrouted", lambda queue, backend: unrouted.append(queue))

    accepted = await job_queue.enqueue(QUEUE_WEBHOOK, {"delivery_id": "x"})

    assert accepted is False
    assert queued == []
    assert unrouted == [QUEUE_WEBHOOK]

    assert await job_queue.backend.waiting_count(QUEUE_WEBHOOK) == 0
    assert await job_queue.backend.drain() == 0


async def test_failed_job_is_retried_until_success(job_queue):
    attempts = []

    async def handler(job):
        attempts.append(job.attempt)
        if job.attempt < 3:
            raise RuntimeError("try again")

    job_queue.register_consumer(QUEUE_EMAIL, handler)
    await job_queue.enqueue(QUEUE_EMAIL, {"to": "a@example.com"}, JobOptions(attempts=3, backoff_ms=0))

    for _ in range(3):
        await job_queue.backend.drain()

    assert attempts == [1, 2, 3]
    assert await job_queue.backend.waiting_count(QUEUE_EMAIL) == 0


async def test_failed_job_is_dropped_after_attempt_cap(job_queue):
    calls = []

    async def handler(job):
        calls.append(job.attempt)
        raise RuntimeError("always fails")

    job_queue.register_consumer(QUEUE_EMAIL, handler)
    await job_queue.enqueue(QUEUE_EMAIL, {"to": "a@example.com"}, JobOptions(attempts=2, backoff_ms=0))

    await job_queue.backend.drain()
    await job_queue.backend.drain()
    executed = await job_queue.backend.drain()

    assert calls == [1, 2]
    assert executed == 0
    assert await job_queue.backend.waiting_count(QUEUE_EMAIL) == 0


async def test_retry_waits_for_backoff(job_queue):
    calls = []

    async def handler(job):
        calls.append(job.attempt)
        raise RuntimeError("fail")

    job_queue.register_consumer(QUEUE_ORDER, handler)
    await job_queue.enqueue(QUEUE_ORDER, {"order_id": 1}, JobOptions(attempts=3, backoff_ms=60_000))

    await job_queue.backend.drain()
    executed = await job_queue.backend.drain()

    assert calls == [1]
    assert executed == 0
    assert await job_queue.backend.waiting_count(QUEUE_ORDER) == 1


async def test_started_memory_queue_consumes_on_its_own(job_queue):
    done = asyncio.Event()

    async def handler(job):
        done.set()

    job_queue.register_consumer(QUEUE_WEBHOOK, handler)
    await job_queue.start()
    await job_queue.enqueue(QUEUE_WEBHOOK, {"delivery_id": "abc", "webhook_id": 1})

    await asyncio.wait_for(done.wait(), timeout=2)


async def test_queue_order_processing_payload(job_queue):
    payloads = []

    async def handler(job):
        payloads.append(job.payload)

    job_queue.register_consumer(QUEUE_ORDER, handler)

    accepted = await job_queue.queue_order_processing(7, "status_changed", "pending", "processing")
    await job_queue.backend.drain()

    assert accepted is True
    assert payloads == [{
        "order_id": 7,
        "type": "status_changed",
        "old_status": "pending",
        "new_status": "processing",
    }]


class BrokenPool:
    """Stand-in for an arq pool whose broker went away."""

    def __init__(self):
        self.reachable = False
        self.enqueued = []

    async def enqueue_job(self, *args, **kwargs):
        if not self.reachable:
            raise RedisConnectionError("connection reset")
        self.enqueued.append((args, kwargs))

    async def ping(self):
        if not self.reachable:
            raise RedisConnectionError("connection refused")
        return True


def make_redis_backend(pool):
    backend = RedisBackend({QUEUE_ORDER: lambda job: asyncio.sleep(0)}, RedisSettings(), {})
    backend._pool = pool
    backend._connected = True
    return backend


async def test_lost_broker_raises_queue_unavailable_and_reconnects():
    pool = BrokenPool()
    backend = make_redis_backend(pool)
    with pytest.raises(QueueUnavailableError):
        await backend.enqueue(_job(QUEUE_ORDER))
    assert backend.connected is False

    with pytest.raises(QueueUnavailableError):
        await backend.enqueue(_job(QUEUE_ORDER))

    pool.reachable = True
    await backend.enqueue(_job(QUEUE_ORDER))
    assert backend.connected is True
    assert len(pool.enqueued) == 1


async def test_queue_order_processing_reports_lost_broker(settings):
    queue = JobQueue(settings)
    queue._backend = make_redis_backend(BrokenPool())

    accepted = await queue.queue_order_processing(1, "created")

    assert accepted is False


async def test_other_producers_raise_on_lost_broker(settings):
    queue = JobQueue(settings)
    queue._backend = make_redis_backend(BrokenPool())

    with pytest.raises(QueueUnavailableError):
        await queue.queue_email("order_notification", {"to": "a@example.com"})


def _job(queue_name):
    return Job(queue_name=queue_name, payload={"order_id": 1})


async def test_queue_order_processing_without_consumer_is_not_accepted(job_queue):
    assert await job_queue.queue_order_processing(3, "created") is False


class HandlerFailed(Exception):
    pass


def failing_redis_backend():
    async def handler(job):
        raise HandlerFailed("handler failed")

    return RedisBackend({QUEUE_EMAIL: handler}, RedisSettings(), {})


@pytest.mark.parametrize("attempt, defer_ms", [(1, 200), (2, 400), (3, 800)])
async def test_durable_failure_defers_retry_exponentially(attempt, defer_ms, monkeypatch):
    retries = []
    monkeypatch.setattr(job_queue_module, "track_job_retry", retries.append)
    backend = failing_redis_backend()

    with pytest.raises(Retry) as excinfo:
        await backend._execute(Job(QUEUE_EMAIL, {}, attempts=4, backoff_ms=200, attempt=attempt))

    assert excinfo.value.defer_score == defer_ms
    assert retries == [QUEUE_EMAIL]


async def test_durable_last_attempt_reraises_and_counts_failure(monkeypatch):
    failed, retries = [], []
    monkeypatch.setattr(job_queue_module, "track_job_failed", failed.append)
    monkeypatch.setattr(job_queue_module, "track_job_retry", retries.append)
    backend = failing_redis_backend()

    with pytest.raises(HandlerFailed):
        await backend._execute(Job(QUEUE_EMAIL, {}, attempts=3, backoff_ms=200, attempt=3))

    assert failed == [QUEUE_EMAIL]
    assert retries == []


async def test_durable_success_counts_completion(monkeypatch):
    completed = []
    monkeypatch.setattr(job_queue_module, "track_job_completed", completed.append)
    backend = RedisBackend({QUEUE_EMAIL: lambda job: asyncio.sleep(0)}, RedisSettings(), {})

    await backend._execute(Job(QUEUE_EMAIL, {}))

    assert completed == [QUEUE_EMAIL]


async def test_run_job_maps_arq_try_onto_attempt():
    seen = []

    async def handler(job):
        seen.append(job)

    backend = RedisBackend({QUEUE_EMAIL: handler}, RedisSettings(), {})
    created = datetime(2026, 10, 1, 12, 30)

    await backend.run_job(
        {"job_try": 3, "job_id": "job-1"},
        QUEUE_EMAIL,
        {"to": "a@example.com"},
        5,
        250,
        created.isoformat(),
    )

    job = seen[0]
    assert (job.attempt, job.attempts, job.backoff_ms) == (3, 5, 250)
    assert job.job_id == "job-1"
    assert job.created_at == created
    assert job.payload == {"to": "a@example.com"}


async def test_run_job_retries_from_arq_try():
    backend = failing_redis_backend()

    with pytest.raises(Retry) as excinfo:
        await backend.run_job({"job_try": 2}, QUEUE_EMAIL, {}, 3, 100, datetime(2026, 10, 1).isoformat())

    assert excinfo.value.defer_score == 200
