"""
Email worker.

Consumes the email queue. Sending is delegated to an injectable sender;
the default one only logs the message.
"""
from typing import Any, Awaitable, Callable

import structlog

from commerce_core.services.job_queue import QUEUE_EMAIL, Job, JobQueue

logger = structlog.get_logger()

EmailSender = Callable[[dict[str, Any]], Awaitable[None]]


async def log_email(message: dict[str, Any]) -> None:
    """Default sender: record the email instead of sending it."""
    logger.info(
        "email_sent",
        type=message.get("type"),
        to=message.get("to"),
        subject=message.get("subject"),
        template=message.get("template"),
        simulated=True,
    )


class EmailWorker:
    """Sends one email per job."""

    queue_name = QUEUE_EMAIL

    def __init__(self, sender: EmailSender | None = None):
        self.sender = sender or log_email

    async def handle(self, job: Job) -> None:
        message = job.payload
        if not message.get("to"):
            logger.warning("email_missing_recipient", type=message.get("type"), job_id=job.job_id)
            return
        await self.sender(message)

    def register(self, job_queue: JobQueue, concurrency: int) -> None:
        job_queue.register_consumer(self.queue_name, self.handle, concurrency)
