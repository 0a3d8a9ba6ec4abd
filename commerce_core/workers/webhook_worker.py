"""
Webhook delivery worker.

Consumes the webhook-delivery queue. A failed delivery raises so the job
queue's retry policy re-attempts it.
"""
import structlog

from commerce_core.exceptions import WebhookDeliveryError
from commerce_core.services.job_queue import QUEUE_WEBHOOK, Job, JobQueue
from commerce_core.services.rate_limiter import RateLimiter
from commerce_core.services.webhook_service import WebhookDispatcher

logger = structlog.get_logger()


class WebhookWorker:
    """Delivers one webhook per job."""

    queue_name = QUEUE_WEBHOOK

    def __init__(self, dispatcher: WebhookDispatcher, rate_limiter: RateLimiter | None = None):
        self.dispatcher = dispatcher
        self.rate_limiter = rate_limiter

    async def handle(self, job: Job) -> None:
        delivery_id = job.payload["delivery_id"]

        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        success = await self.dispatcher.deliver(delivery_id, attempt=job.attempt)
        if not success:
            raise WebhookDeliveryError(delivery_id)

        logger.info("webhook_job_completed", delivery_id=delivery_id, attempt=job.attempt)

    def register(self, job_queue: JobQueue, concurrency: int) -> None:
        job_queue.register_consumer(self.queue_name, self.handle, concurrency)
