"""
Webhook Service

Outbound webhook fan-out and delivery.

dispatch() creates one signed delivery row per active subscriber and
queues a delivery job for each. deliver() is called by the webhook worker;
it performs one POST and reports success. Retrying is left to the job
queue.
"""
import asyncio
import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_core.config import Settings
from commerce_core.models.base import utcnow
from commerce_core.models.webhook import DeliveryStatus, Webhook, WebhookDelivery, WebhookStatus
from commerce_core.routes.metrics import track_webhook_sent
from commerce_core.services.hook_manager import HOOKS, HookManager
from commerce_core.services.job_queue import JobQueue

logger = structlog.get_logger()


def generate_webhook_signature(payload: str, secret: str) -> str:
    """Base64 HMAC-SHA256 signature of the payload."""
    digest = hmac.new(
        secret.encode(),
        payload.encode(),
        hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode()


def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_payload(data: Any) -> str:
    """Compact JSON body; the exact string that is signed and sent."""
    return json.dumps(data, separators=(",", ":"), default=_json_default)


class WebhookDispatcher:
    """Fans events out to subscribers and delivers them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_queue: JobQueue,
        settings: Settings,
        hook_manager: HookManager | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        self._session_factory = session_factory
        self._job_queue = job_queue
        self._settings = settings
        self._hook_manager = hook_manager
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
        )

    async def get_webhooks_for_topic(self, topic: str) -> list[Webhook]:
        """Active, non-deleted subscriptions for a topic."""
        async with self._session_factory() as db:
            stmt = select(Webhook).where(
                Webhook.topic == topic,
                Webhook.status == WebhookStatus.ACTIVE.value,
                Webhook.is_deleted.is_(False),
            ).order_by(Webhook.id)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    def build_headers(self, webhook: Webhook, topic: str, resource: str, event: str, signature: str, delivery_id: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-WC-Webhook-Source": self._settings.WEBHOOK_SOURCE,
            "X-WC-Webhook-Topic": topic,
            "X-WC-Webhook-Resource": resource,
            "X-WC-Webhook-Event": event,
            "X-WC-Webhook-Signature": signature,
            "X-WC-Webhook-ID": str(webhook.id),
            "X-WC-Webhook-Delivery-ID": delivery_id,
        }

    async def dispatch(self, topic: str, resource: str, event: str, data: dict[str, Any]) -> list[str]:
        """
        Create a pending delivery per subscriber and queue it.

        Returns the delivery ids; an empty list when nobody subscribes.

        Raises:
            QueueUnavailableError: the durable queue lost its broker
        """
        subscribers = await self.get_webhooks_for_topic(topic)

        if not subscribers:
            logger.debug("webhook_no_subscribers", topic=topic)
            return []

        logger.info("webhook_dispatching", topic=topic, subscribers=len(subscribers))

        body = serialize_payload(data)
        deliveries: list[WebhookDelivery] = []

        async with self._session_factory() as db:
            for webhook in subscribers:
                delivery_id = str(uuid.uuid4())
                signature = generate_webhook_signature(body, webhook.secret)
                delivery = WebhookDelivery(
                    webhook_id=webhook.id,
                    delivery_id=delivery_id,
                    status=DeliveryStatus.PENDING.value,
                    request_body=body,
                    request_headers=self.build_headers(webhook, topic, resource, event, signature, delivery_id),
                    retry_count=0,
                )
                db.add(delivery)
                deliveries.append(delivery)
            await db.commit()

        if self._hook_manager is not None:
            for webhook in subscribers:
                await self._hook_manager.do_action(HOOKS.WEBHOOK_DISPATCH, {
                    "webhook_id": webhook.id,
                    "topic": topic,
                    "url": webhook.delivery_url,
                    "payload": data,
                })

        await asyncio.gather(*(
            self._job_queue.queue_webhook_delivery(d.delivery_id, d.webhook_id)
            for d in deliveries
        ))

        return [d.delivery_id for d in deliveries]

    async def deliver(self, delivery_id: str, attempt: int = 1) -> bool:
        """
        POST one delivery to its subscriber.

        Args:
            delivery_id: Delivery correlation id
            attempt: 1-based attempt number from the job queue

        Returns:
            True on a 2xx response, False otherwise
        """
        async with self._session_factory() as db:
            stmt = select(WebhookDelivery).where(WebhookDelivery.delivery_id == delivery_id)
            result = await db.execute(stmt)
            delivery = result.scalar_one_or_none()

            if not delivery:
                logger.error("webhook_delivery_not_found", delivery_id=delivery_id)
                return False

            webhook = await db.get(Webhook, delivery.webhook_id)

            if not webhook:
                logger.error("webhook_not_found", delivery_id=delivery_id, webhook_id=delivery.webhook_id)
                return False

            logger.info("webhook_delivering", delivery_id=delivery_id, webhook_id=webhook.id, attempt=attempt)

            started = time.perf_counter()
            success = False
            try:
                async with self._client_factory() as client:
                    response = await client.post(
                        webhook.delivery_url,
                        content=delivery.request_body,
                        headers=delivery.request_headers,
                    )
                success = 200 <= response.status_code < 300
                delivery.response_code = response.status_code
                delivery.response_body = response.text
                delivery.error_message = None if success else f"HTTP {response.status_code}"
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                delivery.error_message = str(e) or e.__class__.__name__

            duration = time.perf_counter() - started
            delivery.status = DeliveryStatus.DELIVERED.value if success else DeliveryStatus.FAILED.value
            delivery.retry_count = attempt - 1 if success else attempt
            delivery.duration_ms = int(duration * 1000)
            delivery.completed_at = utcnow()
            await db.commit()

            outcome = {
                "webhook_id": webhook.id,
                "delivery_id": delivery_id,
                "topic": webhook.topic,
                "success": success,
                "status_code": delivery.response_code,
                "error": delivery.error_message,
                "duration_ms": delivery.duration_ms,
            }

        track_webhook_sent(webhook.topic, delivery.status, duration)

        if success:
            logger.info("webhook_delivered", delivery_id=delivery_id, status_code=outcome["status_code"])
        else:
            logger.warning(
                "webhook_delivery_failed",
                delivery_id=delivery_id,
                status_code=outcome["status_code"],
                error=outcome["error"],
                attempt=attempt,
            )

        if self._hook_manager is not None:
            hook_name = HOOKS.WEBHOOK_DELIVERED if success else HOOKS.WEBHOOK_FAILED
            await self._hook_manager.do_action(hook_name, outcome)

        return success
