"""Email and webhook worker behaviour outside the order flow."""
import pytest

from commerce_core.exceptions import WebhookDeliveryError
from commerce_core.services.job_queue import QUEUE_EMAIL, Job
from commerce_core.services.rate_limiter import RateLimiter
from commerce_core.workers.email_worker import EmailWorker
from commerce_core.workers.webhook_worker import WebhookWorker


class FakeDispatcher:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def deliver(self, delivery_id, attempt=1):
        self.calls.append((delivery_id, attempt))
        return self.result


class CountingLimiter:
    def __init__(self):
        self.acquired = 0

    async def acquire(self):
        self.acquired += 1


async def test_webhook_worker_passes_attempt_number():
    dispatcher = FakeDispatcher(True)
    limiter = CountingLimiter()
    worker = WebhookWorker(dispatcher, limiter)

    await worker.handle(Job("webhook-delivery", {"delivery_id": "d-1", "webhook_id": 1}, attempt=2))

    assert dispatcher.calls == [("d-1", 2)]
    assert limiter.acquired == 1


async def test_webhook_worker_raises_on_failed_delivery():
    worker = WebhookWorker(FakeDispatcher(False))

    with pytest.raises(WebhookDeliveryError):
        await worker.handle(Job("webhook-delivery", {"delivery_id": "d-2", "webhook_id": 1}))


async def test_email_worker_sends_through_sender():
    sent = []

    async def sender(message):
        sent.append(message)

    worker = EmailWorker(sender)
    await worker.handle(Job(QUEUE_EMAIL, {"type": "order_notification", "to": "a@example.com"}))

    assert sent == [{"type": "order_notification", "to": "a@example.com"}]


async def test_email_worker_skips_missing_recipient():
    sent = []

    async def sender(message):
        sent.append(message)

    await EmailWorker(sender).handle(Job(QUEUE_EMAIL, {"type": "order_notification"}))

    assert sent == []


async def test_default_sender_only_logs():
    await EmailWorker().handle(Job(QUEUE_EMAIL, {"type": "welcome", "to": "a@example.com", "subject": "Hi"}))


async def test_rate_limiter_fails_open_without_redis():
    limiter = RateLimiter("redis://127.0.0.1:1", limit=1, window=1.0)
    try:
        assert await limiter.is_allowed() == (True, 0.0)
        await limiter.acquire()
        assert await limiter.get_current_count() == 0
    finally:
        await limiter.close()
