"""
Job Queue

Redis-backed job queue (arq) with an in-process fallback.

The backend is picked once in initialize(): arq when REDIS_URL is set and
the broker answers, otherwise an in-memory FIFO drained by a short tick.
In-memory jobs are lost when the process dies.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.worker import Worker, func
from redis.exceptions import RedisError

from commerce_core.config import Settings
from commerce_core.exceptions import QueueUnavailableError
from commerce_core.models.base import utcnow
from commerce_core.routes.metrics import (
    track_job_completed,
    track_job_failed,
    track_job_queued,
    track_job_retry,
    track_job_unrouted,
    update_queue_depth,
)
from commerce_core.sentry_config import capture_exception

logger = structlog.get_logger()


# Queue names
QUEUE_WEBHOOK = "webhook-delivery"
QUEUE_EMAIL = "email"
QUEUE_ORDER = "order-processing"
QUEUE_NAMES = (QUEUE_WEBHOOK, QUEUE_EMAIL, QUEUE_ORDER)

BACKEND_REDIS = "redis"
BACKEND_MEMORY = "memory"

# arq checks its own try counter before ours; keep it out of the way.
ARQ_MAX_TRIES = 100
ARQ_FUNCTION_NAME = "run_job"


@dataclass
class JobOptions:
    """Retry policy for one enqueue call."""
    attempts: int = 3
    backoff_ms: int = 1000


@dataclass
class Job:
    """A unit of work on one named queue."""
    queue_name: str
    payload: dict[str, Any]
    attempts: int = 3
    backoff_ms: int = 1000
    attempt: int = 1
    created_at: datetime = field(default_factory=utcnow)
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    run_at: float = 0.0

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.attempts

    def backoff_delay(self) -> float:
        """Exponential delay in seconds before the next attempt."""
        return self.backoff_ms * (2 ** (self.attempt - 1)) / 1000


JobHandler = Callable[[Job], Awaitable[None]]


class MemoryBackend:
    """
    In-process fallback queue.

    A single cooperative tick drains every queue in FIFO order, one job at
    a time. Failed jobs are re-appended with a not-before time until they
    run out of attempts.
    """

    name = BACKEND_MEMORY

    def __init__(self, handlers: dict[str, JobHandler], tick_ms: int = 100):
        self._handlers = handlers
        self._tick_seconds = tick_ms / 1000
        self._queues: dict[str, list[Job]] = {name: [] for name in QUEUE_NAMES}
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def connected(self) -> bool:
        return False

    async def enqueue(self, job: Job) -> bool:
        """Append a job; returns False when no consumer serves its queue."""
        if job.queue_name not in self._handlers:
            logger.warning("memory_queue_no_consumer", queue=job.queue_name)
            return False
        self._queues.setdefault(job.queue_name, []).append(job)
        return True

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("memory_queue_started", tick_ms=int(self._tick_seconds * 1000), persistence=False)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None

    async def waiting_count(self, queue_name: str) -> int:
        return len(self._queues.get(queue_name, []))

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.drain()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._tick_seconds)
            except asyncio.TimeoutError:
                pass

    async def drain(self) -> int:
        """Run every due job once. Returns the number of jobs executed."""
        executed = 0
        for queue_name, jobs in list(self._queues.items()):
            if not jobs:
                continue
            pending, jobs[:] = list(jobs), []
            deferred: list[Job] = []
            for job in pending:
                if job.run_at > time.monotonic():
                    deferred.append(job)
                    continue
                executed += 1
                await self._execute(job, deferred)
            # jobs appended while draining stay behind the deferred ones
            jobs[:0] = deferred
        return executed

    async def _execute(self, job: Job, deferred: list[Job]) -> None:
        handler = self._handlers.get(job.queue_name)
        if handler is None:
            logger.warning("memory_queue_no_consumer", queue=job.queue_name, job_id=job.job_id)
            return
        try:
            await handler(job)
            track_job_completed(job.queue_name)
        except Exception as e:
            if job.is_last_attempt:
                logger.error(
                    "job_dropped",
                    queue=job.queue_name,
                    job_id=job.job_id,
                    attempt=job.attempt,
                    error=str(e),
                )
                track_job_failed(job.queue_name)
                capture_exception(e)
                return
            delay = job.backoff_delay()
            logger.warning(
                "job_retry_scheduled",
                queue=job.queue_name,
                job_id=job.job_id,
                attempt=job.attempt,
                delay_seconds=delay,
                error=str(e),
            )
            track_job_retry(job.queue_name)
            job.attempt += 1
            job.run_at = time.monotonic() + delay
            deferred.append(job)


class RedisBackend:
    """
    Durable backend on arq.

    One arq Worker per registered queue, each with its own connection pool
    and its own max_jobs limit. Retries use arq.Retry with exponential
    deferral until the job's attempt cap.
    """

    name = BACKEND_REDIS

    def __init__(
        self,
        handlers: dict[str, JobHandler],
        redis_settings: RedisSettings,
        concurrency: dict[str, int],
        job_timeout: int = 300,
    ):
        self._handlers = handlers
        self._concurrency = concurrency
        self._redis_settings = redis_settings
        self._job_timeout = job_timeout
        self._pool: ArqRedis | None = None
        self._connected = False
        self._workers: dict[str, Worker] = {}
        self._worker_tasks: dict[str, asyncio.Task] = {}

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Open the producer pool; raises if the broker is unreachable."""
        self._pool = await create_pool(self._redis_settings)
        self._connected = True

    async def enqueue(self, job: Job) -> bool:
        if self._pool is None:
            raise QueueUnavailableError(job.queue_name, "backend not connected")
        if not self._connected and not await self._ping():
            raise QueueUnavailableError(job.queue_name, "broker connection lost")
        try:
            await self._pool.enqueue_job(
                ARQ_FUNCTION_NAME,
                job.queue_name,
                job.payload,
                job.attempts,
                job.backoff_ms,
                job.created_at.isoformat(),
                _job_id=job.job_id,
                _queue_name=job.queue_name,
            )
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self._connected = False
            logger.error("redis_enqueue_failed", queue=job.queue_name, error=str(e))
            raise QueueUnavailableError(job.queue_name, str(e)) from e
        return True

    async def _ping(self) -> bool:
        try:
            await self._pool.ping()
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False
        logger.info("redis_reconnected")
        self._connected = True
        return True

    async def start(self) -> None:
        for queue_name in self._handlers:
            if queue_name not in self._workers:
                self.start_worker(queue_name)

    def start_worker(self, queue_name: str) -> None:
        concurrency = self._concurrency.get(queue_name, 10)
        worker = Worker(
            functions=[func(self.run_job, name=ARQ_FUNCTION_NAME)],
            queue_name=queue_name,
            redis_settings=self._redis_settings,
            max_jobs=concurrency,
            max_tries=ARQ_MAX_TRIES,
            job_timeout=self._job_timeout,
            handle_signals=False,
        )
        self._workers[queue_name] = worker
        self._worker_tasks[queue_name] = asyncio.create_task(worker.async_run())
        logger.info("redis_worker_started", queue=queue_name, concurrency=concurrency)

    async def run_job(
        self,
        ctx: dict,
        queue: str,
        payload: dict,
        attempts: int,
        backoff_ms: int,
        created_at: str,
    ) -> None:
        """arq entry point; arq's job_try is the job's 1-based attempt number."""
        job = Job(
            queue_name=queue,
            payload=payload,
            attempts=attempts,
            backoff_ms=backoff_ms,
            attempt=ctx.get("job_try", 1),
            created_at=datetime.fromisoformat(created_at),
            job_id=ctx.get("job_id") or str(uuid.uuid4()),
        )
        await self._execute(job)

    async def _execute(self, job: Job) -> None:
        handler = self._handlers[job.queue_name]
        try:
            await handler(job)
        except Exception as e:
            if job.is_last_attempt:
                logger.error(
                    "job_dropped",
                    queue=job.queue_name,
                    job_id=job.job_id,
                    attempt=job.attempt,
                    error=str(e),
                )
                track_job_failed(job.queue_name)
                capture_exception(e)
                raise
            delay = job.backoff_delay()
            logger.warning(
                "job_retry_scheduled",
                queue=job.queue_name,
                job_id=job.job_id,
                attempt=job.attempt,
                delay_seconds=delay,
                error=str(e),
            )
            track_job_retry(job.queue_name)
            raise Retry(defer=delay) from e
        track_job_completed(job.queue_name)

    async def waiting_count(self, queue_name: str) -> int:
        if self._pool is None or not self._connected:
            return 0
        try:
            return await self._pool.zcard(queue_name)
        except (RedisError, OSError) as e:
            logger.warning("redis_stats_failed", queue=queue_name, error=str(e))
            return 0

    async def stop(self) -> None:
        for queue_name, worker in self._workers.items():
            await worker.close()
            task = self._worker_tasks.get(queue_name)
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            logger.info("redis_worker_stopped", queue=queue_name)
        self._workers.clear()
        self._worker_tasks.clear()
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._connected = False


class JobQueue:
    """
    Backend-agnostic job queue.

    Callers use enqueue() and register_consumer() only; which backend
    serves them is decided once by initialize().
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._handlers: dict[str, JobHandler] = {}
        self._concurrency: dict[str, int] = {}
        self._backend: MemoryBackend | RedisBackend | None = None
        self._started = False

    @property
    def backend(self) -> MemoryBackend | RedisBackend | None:
        return self._backend

    @property
    def backend_name(self) -> str | None:
        return self._backend.name if self._backend else None

    @property
    def is_durable(self) -> bool:
        return isinstance(self._backend, RedisBackend)

    @property
    def connected(self) -> bool:
        return self._backend.connected if self._backend else False

    async def initialize(self) -> None:
        """Pick the backend: Redis if configured and reachable, else memory."""
        if self._backend is not None:
            return

        redis_url = self._settings.REDIS_URL
        if not redis_url:
            logger.info("queue_backend_selected", backend=BACKEND_MEMORY, reason="no broker configured")
            self._use_memory()
            return

        redis_settings = RedisSettings.from_dsn(redis_url)
        redis_settings.conn_timeout = self._settings.REDIS_CONN_TIMEOUT
        redis_settings.conn_retries = self._settings.REDIS_CONN_RETRIES
        backend = RedisBackend(
            self._handlers,
            redis_settings,
            self._concurrency,
            job_timeout=self._settings.JOB_TIMEOUT_SECONDS)
        try:
            await backend.connect()
        except Exception as e:
            logger.warning("redis_unavailable", backend=BACKEND_MEMORY, error=str(e))
            self._use_memory()
            return

        self._backend = backend
        logger.info("queue_backend_selected", backend=BACKEND_REDIS)

    def _use_memory(self) -> None:
        self._backend = MemoryBackend(self._handlers, tick_ms=self._settings.MEMORY_QUEUE_TICK_MS)

    def register_consumer(self, queue_name: str, handler: JobHandler, concurrency: int | None = None) -> None:
        """Bind a handler to a queue; works against either backend."""
        self._handlers[queue_name] = handler
        if concurrency is not None:
            self._concurrency[queue_name] = concurrency
        if self._started and isinstance(self._backend, RedisBackend):
            self._backend.start_worker(queue_name)

    async def enqueue(self, queue_name: str, payload: dict[str, Any], options: JobOptions | None = None) -> bool:
        """
        Add a job to a queue.

        Returns False when the in-memory backend discards the job because
        no consumer serves the queue.

        Raises:
            QueueUnavailableError: the durable backend lost its broker
        """
        if self._backend is None:
            raise RuntimeError("JobQueue.initialize() must be called before enqueue()")
        options = options or JobOptions()
        job = Job(
            queue_name=queue_name,
            payload=payload,
            attempts=max(options.attempts, 1),
            backoff_ms=options.backoff_ms,
        )
        if not await self._backend.enqueue(job):
            track_job_unrouted(queue_name, self._backend.name)
            return False
        track_job_queued(queue_name, self._backend.name)
        return True

    async def start(self) -> None:
        """Start consuming registered queues."""
        if self._backend is None:
            await self.initialize()
        await self._backend.start()
        self._started = True

    async def stats(self) -> dict[str, Any]:
        """Backend, connection flag and per-queue waiting counts."""
        queues = {}
        names = set(QUEUE_NAMES) | set(self._handlers)
        for name in sorted(names):
            waiting = await self._backend.waiting_count(name) if self._backend else 0
            update_queue_depth(name, waiting)
            queues[name] = {"waiting": waiting}
        return {
            "backend": self.backend_name,
            "connected": self.connected,
            "queues": queues,
        }

    async def shutdown(self) -> None:
        """Stop consumers and close broker connections."""
        logger.info("queue_shutdown_started")
        if self._backend is not None:
            await self._backend.stop()
        self._started = False
        logger.info("queue_shutdown_complete")

    # ============================================
    # Producers
    # ============================================

    async def queue_webhook_delivery(self, delivery_id: str, webhook_id: int) -> None:
        await self.enqueue(
            QUEUE_WEBHOOK,
            {"delivery_id": delivery_id, "webhook_id": webhook_id},
            JobOptions(self._settings.WEBHOOK_JOB_ATTEMPTS, self._settings.WEBHOOK_JOB_BACKOFF_MS),
        )

    async def queue_email(self, email_type: str, data: dict[str, Any]) -> None:
        await self.enqueue(
            QUEUE_EMAIL,
            {"type": email_type, **data},
            JobOptions(self._settings.EMAIL_JOB_ATTEMPTS, self._settings.EMAIL_JOB_BACKOFF_MS),
        )

    async def queue_order_processing(
        self,
        order_id: int,
        job_type: str,
        old_status: str | None = None,
        new_status: str | None = None,
    ) -> bool:
        """
        Queue an order job from business code.

        Fire-and-forget: a lost broker is logged and reported, not raised.
        Returns True when the job was accepted.
        """
        payload = {
            "order_id": order_id,
            "type": job_type,
            "old_status": old_status,
            "new_status": new_status,
        }
        try:
            return await self.enqueue(
                QUEUE_ORDER,
                payload,
                JobOptions(self._settings.ORDER_JOB_ATTEMPTS, self._settings.ORDER_JOB_BACKOFF_MS),
            )
        except QueueUnavailableError as e:
            logger.error("order_job_not_queued", order_id=order_id, type=job_type, error=str(e))
            capture_exception(e)
            return False
