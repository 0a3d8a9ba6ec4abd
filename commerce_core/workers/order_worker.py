"""
Order processing worker.

Consumes the order-processing queue and applies the side effects of an
order event: inventory, coupon usage, customer flags, webhooks and
notification emails.

Branch table:

    created                      reduce stock, coupons, customer, order.created, email
    status_changed -> completed  order.updated, email
    status_changed -> cancelled  restore stock, order.updated, email
    status_changed -> refunded   restore stock, order.updated, email
    status_changed -> processing order.updated, email
    status_changed -> on-hold    email
    cancelled / refunded         restore stock, order.updated, email
    updated                      order.updated
"""
from typing import Any

import structlog

from commerce_core.services.job_queue import QUEUE_ORDER, Job, JobQueue
from commerce_core.services.resource_service import ResourceService
from commerce_core.services.webhook_service import WebhookDispatcher

logger = structlog.get_logger()

EMAIL_SUBJECTS = {
    "created": "Order #{id} Received",
    "completed": "Order #{id} Completed",
    "cancelled": "Order #{id} Cancelled",
    "refunded": "Order #{id} Refunded",
    "on-hold": "Order #{id} On Hold",
    "processing": "Order #{id} Processing",
}


class OrderWorker:
    """Applies order side effects for one job."""

    queue_name = QUEUE_ORDER

    def __init__(self, resources: ResourceService, dispatcher: WebhookDispatcher, job_queue: JobQueue):
        self.resources = resources
        self.dispatcher = dispatcher
        self.job_queue = job_queue

    async def handle(self, job: Job) -> None:
        await self.process(job.payload)

    def register(self, job_queue: JobQueue, concurrency: int) -> None:
        job_queue.register_consumer(self.queue_name, self.handle, concurrency)

    async def process(self, payload: dict[str, Any]) -> None:
        order_id = payload["order_id"]
        job_type = payload["type"]
        new_status = payload.get("new_status")

        logger.info("order_job_processing", order_id=order_id, type=job_type, new_status=new_status)

        if job_type == "created":
            await self.reduce_inventory(order_id)
            await self.increment_coupon_usage(order_id)
            await self.update_customer_stats(order_id)
            await self.dispatch_order_webhook(order_id, "created")
            await self.queue_order_email(order_id, "created")

        elif job_type == "status_changed":
            if new_status == "completed":
                await self.dispatch_order_webhook(order_id, "updated")
                await self.queue_order_email(order_id, "completed")
            elif new_status in ("cancelled", "refunded"):
                await self.restore_inventory(order_id)
                await self.dispatch_order_webhook(order_id, "updated")
                await self.queue_order_email(order_id, new_status)
            elif new_status == "processing":
                await self.dispatch_order_webhook(order_id, "updated")
                await self.queue_order_email(order_id, "processing")
            elif new_status == "on-hold":
                await self.queue_order_email(order_id, "on-hold")

        elif job_type in ("cancelled", "refunded"):
            await self.restore_inventory(order_id)
            await self.dispatch_order_webhook(order_id, "updated")
            await self.queue_order_email(order_id, job_type)

        elif job_type == "updated":
            await self.dispatch_order_webhook(order_id, "updated")

        else:
            logger.warning("order_job_unknown_type", order_id=order_id, type=job_type)

    async def reduce_inventory(self, order_id: int) -> None:
        for item in await self.resources.get_order_items(order_id):
            if item["product_id"]:
                await self.resources.adjust_stock(item["product_id"], -item["quantity"])
                logger.info("stock_reduced", order_id=order_id, product_id=item["product_id"], quantity=item["quantity"])

    async def restore_inventory(self, order_id: int) -> None:
        for item in await self.resources.get_order_items(order_id):
            if item["product_id"]:
                await self.resources.adjust_stock(item["product_id"], item["quantity"])
                logger.info("stock_restored", order_id=order_id, product_id=item["product_id"], quantity=item["quantity"])

    async def increment_coupon_usage(self, order_id: int) -> None:
        for code in await self.resources.get_order_coupon_codes(order_id):
            await self.resources.increment_coupon_usage(code)
            logger.info("coupon_usage_incremented", order_id=order_id, code=code)

    async def update_customer_stats(self, order_id: int) -> None:
        order = await self.resources.get_order(order_id)
        if not order or not order["customer_id"]:
            return
        await self.resources.mark_customer_paying(order["customer_id"])
        logger.info("customer_marked_paying", order_id=order_id, customer_id=order["customer_id"])

    async def dispatch_order_webhook(self, order_id: int, event: str) -> None:
        order = await self.resources.get_order(order_id)
        if not order:
            return
        data = {**order, "line_items": await self.resources.get_order_items(order_id)}
        await self.dispatcher.dispatch(f"order.{event}", "order", event, data)

    async def queue_order_email(self, order_id: int, email_type: str) -> None:
        order = await self.resources.get_order(order_id)
        if not order:
            return

        customer = None
        if order["customer_id"]:
            customer = await self.resources.get_customer(order["customer_id"])
        billing = order.get("billing") or {}
        to = (customer or {}).get("email") or billing.get("email")

        if not to:
            logger.warning("order_email_no_recipient", order_id=order_id, type=email_type)
            return

        subject = EMAIL_SUBJECTS.get(email_type, EMAIL_SUBJECTS["created"])
        await self.job_queue.queue_email("order_notification", {
            "to": to,
            "subject": subject.format(id=order["id"]),
            "template": f"order-{email_type}",
            "data": {"order_id": order_id, "order": order},
        })
        logger.info("order_email_queued", order_id=order_id, type=email_type)
