"""
Webhook dispatcher tests.

Deliveries go through httpx.MockTransport; jobs run on the in-memory queue.
"""
import base64
import hashlib
import hmac

import httpx
from sqlalchemy import select

from commerce_core.models.webhook import Webhook, WebhookDelivery
from commerce_core.services.hook_manager import HOOKS, HookManager
from commerce_core.services.job_queue import QUEUE_WEBHOOK
from commerce_core.services.webhook_service import (
    WebhookDispatcher,
    generate_webhook_signature,
    serialize_payload,
)
from commerce_core.workers.webhook_worker import WebhookWorker


def expected_signature(body: str, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body.encode(), hashlib.sha256).digest()).decode()


async def add_webhook(session_factory, topic="order.created", url="https://example.com/hook", secret="abc", **kwargs):
    resource, event = topic.split(".", 1)
    async with session_factory() as db:
        webhook = Webhook(
            name=topic,
            topic=topic,
            resource=resource,
            event=event,
            delivery_url=url,
            secret=secret,
            **kwargs,
        )
        db.add(webhook)
        await db.commit()
        return webhook


async def get_delivery(session_factory, delivery_id):
    async with session_factory() as db:
        result = await db.execute(select(WebhookDelivery).where(WebhookDelivery.delivery_id == delivery_id))
        return result.scalar_one()


def test_signature_matches_hmac_sha256_base64():
    body = serialize_payload({"id": 1, "status": "pending"})

    assert generate_webhook_signature(body, "abc") == expected_signature(body, "abc")
    assert generate_webhook_signature(body, "abc") != generate_webhook_signature(body, "abd")


def test_serialize_payload_is_compact():
    assert serialize_payload({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'


async def test_no_subscribers_creates_nothing(settings, session_factory, job_queue, transport):
    dispatcher = WebhookDispatcher(session_factory, job_queue, settings, client_factory=transport.client_factory())
    WebhookWorker(dispatcher).register(job_queue, 1)

    ids = await dispatcher.dispatch("order.created", "order", "created", {"id": 1})

    assert ids == []
    assert await job_queue.backend.waiting_count(QUEUE_WEBHOOK) == 0
    async with session_factory() as db:
        assert (await db.execute(select(WebhookDelivery))).scalars().all() == []


async def test_inactive_and_deleted_subscriptions_are_skipped(settings, session_factory, job_queue, transport):
    await add_webhook(session_factory, status="paused")
    await add_webhook(session_factory, is_deleted=True)
    await add_webhook(session_factory, topic="order.updated")
    dispatcher = WebhookDispatcher(session_factory, job_queue, settings, client_factory=transport.client_factory())

    assert await dispatcher.dispatch("order.created", "order", "created", {"id": 1}) == []


async def test_dispatch_then_deliver(settings, session_factory, job_queue, transport):
    webhook = await add_webhook(session_factory, secret="abc")
    dispatcher = WebhookDispatcher(session_factory, job_queue, settings, client_factory=transport.client_factory())
    WebhookWorker(dispatcher).register(job_queue, 1)
    payload = {"id": 1, "status": "pending", "total": "19.99"}

    ids = await dispatcher.dispatch("order.created", "order", "created", payload)

    assert len(ids) == 1
    pending = await get_delivery(session_factory, ids[0])
    assert pending.status == "pending"
    assert pending.retry_count == 0
    assert pending.request_body == serialize_payload(payload)
    headers = pending.request_headers
    assert headers["X-WC-Webhook-Topic"] == "order.created"
    assert headers["X-WC-Webhook-Resource"] == "order"
    assert headers["X-WC-Webhook-Event"] == "created"
    assert headers["X-WC-Webhook-ID"] == str(webhook.id)
    assert headers["X-WC-Webhook-Delivery-ID"] == ids[0]
    assert headers["X-WC-Webhook-Source"] == settings.WEBHOOK_SOURCE
    assert headers["X-WC-Webhook-Signature"] == expected_signature(pending.request_body, "abc")
    assert await job_queue.backend.waiting_count(QUEUE_WEBHOOK) == 1

    await job_queue.backend.drain()

    delivered = await get_delivery(session_factory, ids[0])
    assert delivered.status == "delivered"
    assert delivered.response_code == 200
    assert delivered.retry_count == 0
    assert delivered.completed_at is not None
    assert len(transport.requests) == 1
    request = transport.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://example.com/hook"
    assert request.content.decode() == delivered.request_body
    assert request.headers["X-WC-Webhook-Signature"] == expected_signature(request.content.decode(), "abc")


async def test_one_delivery_per_subscriber(settings, session_factory, job_queue, transport):
    await add_webhook(session_factory, url="https://one.example.com/")
    await add_webhook(session_factory, url="https://two.example.com/", secret="other")
    dispatcher = WebhookDispatcher(session_factory, job_queue, settings, client_factory=transport.client_factory())
    WebhookWorker(dispatcher).register(job_queue, 1)

    ids = await dispatcher.dispatch("order.created", "order", "created", {"id": 3})

    assert len(set(ids)) == 2
    first = await get_delivery(session_factory, ids[0])
    second = await get_delivery(session_factory, ids[1])
    assert first.request_headers["X-WC-Webhook-Signature"] != second.request_headers["X-WC-Webhook-Signature"]


async def test_non_2xx_marks_failed_with_attempt_as_retry_count(settings, session_factory, job_queue, transport):
    transport.status_code = 500
    await add_webhook(session_factory)
    dispatcher = WebhookDispatcher(session_factory, job_queue, settings, client_factory=transport.client_factory())
    WebhookWorker(dispatcher).register(job_queue, 1)
    [delivery_id] = await dispatcher.dispatch("order.created", "order", "created", {"id": 1})

    assert await dispatcher.deliver(delivery_id, attempt=1) is False
    failed = await get_delivery(session_factory, delivery_id)
    assert failed.status == "failed"
    assert failed.response_code == 500
    assert failed.error_message == "HTTP 500"
    assert failed.retry_count == 1

    transport.status_code = 204
    assert await dispatcher.deliver(delivery_id, attempt=2) is True
    recovered = await get_delivery(session_factory, delivery_id)
    assert recovered.status == "delivered"
    assert recovered.retry_count == 1
    assert recovered.error_message is None


async def test_transport_error_is_recorded(settings, session_factory, job_queue):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    await add_webhook(session_factory)
    dispatcher = WebhookDispatcher(
        session_factory, job_queue, settings,
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
    )
    WebhookWorker(dispatcher).register(job_queue, 1)
    [delivery_id] = await dispatcher.dispatch("order.created", "order", "created", {"id": 1})

    assert await dispatcher.deliver(delivery_id, attempt=3) is False
    failed = await get_delivery(session_factory, delivery_id)
    assert failed.status == "failed"
    assert failed.response_code is None
    assert "connection refused" in failed.error_message
    assert failed.retry_count == 3


async def test_unknown_delivery_returns_false(settings, session_factory, job_queue, transport):
    dispatcher = WebhookDispatcher(session_factory, job_queue, settings, client_factory=transport.client_factory())

    assert await dispatcher.deliver("missing") is False
    assert transport.requests == []


async def test_delivery_outcome_hooks(settings, session_factory, job_queue, transport):
    hooks = HookManager()
    dispatched, delivered = [], []
    hooks.register(HOOKS.WEBHOOK_DISPATCH, "observer", lambda value, ctx: dispatched.append(value))
    hooks.register(HOOKS.WEBHOOK_DELIVERED, "observer", lambda value, ctx: delivered.append(value))
    await add_webhook(session_factory)
    dispatcher = WebhookDispatcher(
        session_factory, job_queue, settings,
        hook_manager=hooks, client_factory=transport.client_factory(),
    )
    WebhookWorker(dispatcher).register(job_queue, 1)

    [delivery_id] = await dispatcher.dispatch("order.created", "order", "created", {"id": 9})
    await job_queue.backend.drain()

    assert dispatched[0]["topic"] == "order.created"
    assert dispatched[0]["payload"] == {"id": 9}
    assert delivered[0]["delivery_id"] == delivery_id
    assert delivered[0]["success"] is True
    assert delivered[0]["status_code"] == 200


async def test_failed_job_is_retried_by_the_queue(settings, session_factory, job_queue, transport):
    transport.status_code = 503
    settings.WEBHOOK_JOB_BACKOFF_MS = 0
    await add_webhook(session_factory)
    dispatcher = WebhookDispatcher(session_factory, job_queue, settings, client_factory=transport.client_factory())
    WebhookWorker(dispatcher).register(job_queue, 1)
    [delivery_id] = await dispatcher.dispatch("order.created", "order", "created", {"id": 1})

    for _ in range(settings.WEBHOOK_JOB_ATTEMPTS + 1):
        await job_queue.backend.drain()

    assert len(transport.requests) == settings.WEBHOOK_JOB_ATTEMPTS
    final = await get_delivery(session_factory, delivery_id)
    assert final.status == "failed"
    assert final.retry_count == settings.WEBHOOK_JOB_ATTEMPTS
