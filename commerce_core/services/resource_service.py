"""
Resource Service

The slice of the product/order/customer/coupon services the background
core depends on. Records cross this boundary as plain dicts.

Order writes publish to the order-processing queue the same way the
full order service does: created, status_changed and cancelled jobs.
"""
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_core.models.base import Base
from commerce_core.models.store import (
    Coupon,
    Customer,
    Order,
    OrderCouponLine,
    OrderItem,
    Product,
)
from commerce_core.services.hook_manager import HOOKS, HookManager
from commerce_core.services.job_queue import JobQueue

logger = structlog.get_logger()

DEFAULT_PER_PAGE = 10
MAX_PER_PAGE = 100


def to_dict(record: Base) -> dict[str, Any]:
    """Column values of an ORM row."""
    return {column.key: getattr(record, column.key) for column in record.__table__.columns}


def _assign(record: Base, data: dict[str, Any]) -> None:
    columns = {column.key for column in record.__table__.columns}
    for key, value in data.items():
        if key in columns and key != "id":
            setattr(record, key, value)


class ResourceService:
    """Store resources backed by the SQL tables in models.store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_queue: JobQueue | None = None,
        hook_manager: HookManager | None = None,
    ):
        self._session_factory = session_factory
        self._job_queue = job_queue
        self._hook_manager = hook_manager

    # ============================================
    # Generic helpers
    # ============================================

    async def _get(self, model: type[Base], record_id: int) -> dict[str, Any] | None:
        async with self._session_factory() as db:
            record = await db.get(model, record_id)
            return to_dict(record) if record else None

    async def _list(
        self,
        model: type[Base],
        filters: dict[str, Any],
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> dict[str, Any]:
        per_page = max(1, min(per_page, MAX_PER_PAGE))
        page = max(page, 1)
        conditions = [getattr(model, key) == value for key, value in filters.items() if value is not None]

        async with self._session_factory() as db:
            total = await db.scalar(select(func.count()).select_from(model).where(*conditions))
            stmt = (
                select(model)
                .where(*conditions)
                .order_by(model.id)
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
            result = await db.execute(stmt)
            items = [to_dict(r) for r in result.scalars().all()]

        return {"items": items, "total": total or 0, "page": page, "per_page": per_page}

    async def _create(self, model: type[Base], data: dict[str, Any]) -> dict[str, Any]:
        async with self._session_factory() as db:
            record = model()
            _assign(record, data)
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return to_dict(record)

    async def _update(self, model: type[Base], record_id: int, data: dict[str, Any]) -> dict[str, Any] | None:
        async with self._session_factory() as db:
            record = await db.get(model, record_id)
            if record is None:
                return None
            _assign(record, data)
            await db.commit()
            await db.refresh(record)
            return to_dict(record)

    async def _delete(self, model: type[Base], record_id: int) -> dict[str, Any] | None:
        async with self._session_factory() as db:
            record = await db.get(model, record_id)
            if record is None:
                return None
            snapshot = to_dict(record)
            await db.delete(record)
            await db.commit()
            return snapshot

    # ============================================
    # Products
    # ============================================

    async def get_product(self, product_id: int) -> dict[str, Any] | None:
        return await self._get(Product, product_id)

    async def list_products(self, status: str | None = None, page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> dict[str, Any]:
        return await self._list(Product, {"status": status}, page, per_page)

    async def create_product(self, data: dict[str, Any]) -> dict[str, Any]:
        return await self._create(Product, data)

    async def update_product(self, product_id: int, data: dict[str, Any]) -> dict[str, Any] | None:
        return await self._update(Product, product_id, data)

    async def delete_product(self, product_id: int) -> dict[str, Any] | None:
        return await self._delete(Product, product_id)

    async def adjust_stock(self, product_id: int, delta: int) -> None:
        """
        Move a product's stock by delta and its total_sales the other way.

        Products without managed stock (NULL quantity) only get total_sales
        moved.
        """
        async with self._session_factory() as db:
            await db.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(
                    stock_quantity=Product.stock_quantity + delta,
                    total_sales=Product.total_sales - delta,
                )
            )
            await db.commit()

    # ============================================
    # Customers
    # ============================================

    async def get_customer(self, customer_id: int) -> dict[str, Any] | None:
        return await self._get(Customer, customer_id)

    async def get_customer_by_email(self, email: str) -> dict[str, Any] | None:
        async with self._session_factory() as db:
            result = await db.execute(select(Customer).where(Customer.email == email))
            customer = result.scalar_one_or_none()
            return to_dict(customer) if customer else None

    async def list_customers(self, email: str | None = None, page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> dict[str, Any]:
        return await self._list(Customer, {"email": email}, page, per_page)

    async def create_customer(self, data: dict[str, Any]) -> dict[str, Any]:
        return await self._create(Customer, data)

    async def update_customer(self, customer_id: int, data: dict[str, Any]) -> dict[str, Any] | None:
        return await self._update(Customer, customer_id, data)

    async def delete_customer(self, customer_id: int) -> dict[str, Any] | None:
        return await self._delete(Customer, customer_id)

    async def mark_customer_paying(self, customer_id: int) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(Customer)
                .where(Customer.id == customer_id)
                .values(is_paying_customer=True)
            )
            await db.commit()

    # ============================================
    # Coupons
    # ============================================

    async def increment_coupon_usage(self, code: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(Coupon)
                .where(Coupon.code == code)
                .values(usage_count=Coupon.usage_count + 1)
            )
            await db.commit()

    # ============================================
    # Orders
    # ============================================

    async def get_order(self, order_id: int) -> dict[str, Any] | None:
        return await self._get(Order, order_id)

    async def get_order_items(self, order_id: int) -> list[dict[str, Any]]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
            )
            return [to_dict(item) for item in result.scalars().all()]

    async def get_order_coupon_codes(self, order_id: int) -> list[str]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderCouponLine.code).where(OrderCouponLine.order_id == order_id).order_by(OrderCouponLine.id)
            )
            return list(result.scalars().all())

    async def list_orders(
        self,
        status: str | None = None,
        customer_id: int | None = None,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> dict[str, Any]:
        return await self._list(Order, {"status": status, "customer_id": customer_id}, page, per_page)

    async def create_order(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create an order with its line items and coupon lines.

        Args:
            data: Order columns plus optional "line_items"
                ([{"product_id", "name", "quantity"}]) and "coupon_lines"
                ([{"code"}])

        Returns:
            The created order
        """
        async with self._session_factory() as db:
            order = Order()
            _assign(order, data)
            db.add(order)
            await db.flush()

            for item in data.get("line_items", []):
                db.add(OrderItem(
                    order_id=order.id,
                    product_id=item.get("product_id"),
                    name=item.get("name", ""),
                    quantity=item.get("quantity", 1),
                ))
            for line in data.get("coupon_lines", []):
                db.add(OrderCouponLine(order_id=order.id, code=line["code"]))

            await db.commit()
            await db.refresh(order)
            created = to_dict(order)

        logger.info("order_created", order_id=created["id"], status=created["status"])

        if self._hook_manager is not None:
            await self._hook_manager.do_action(HOOKS.ORDER_CREATED, {"order": created})
        if self._job_queue is not None:
            await self._job_queue.queue_order_processing(created["id"], "created")

        return created

    async def update_order(self, order_id: int, data: dict[str, Any]) -> dict[str, Any] | None:
        """Update an order; a status change queues a status_changed job."""
        async with self._session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None:
                return None
            old_status = order.status
            _assign(order, data)
            await db.commit()
            await db.refresh(order)
            updated = to_dict(order)

        new_status = updated["status"]
        if new_status != old_status:
            logger.info("order_status_changed", order_id=order_id, old_status=old_status, new_status=new_status)
            if self._hook_manager is not None:
                await self._hook_manager.do_action(HOOKS.ORDER_STATUS_CHANGED, {
                    "order": updated,
                    "old_status": old_status,
                    "new_status": new_status,
                })
            if self._job_queue is not None:
                await self._job_queue.queue_order_processing(order_id, "status_changed", old_status, new_status)
        elif self._hook_manager is not None:
            await self._hook_manager.do_action(HOOKS.ORDER_UPDATED, {"order": updated})

        return updated

    async def delete_order(self, order_id: int, force: bool = False) -> dict[str, Any] | None:
        """
        Trash an order, or remove it with force=True.

        Trashing queues a cancelled job so inventory is restored.
        """
        if force:
            async with self._session_factory() as db:
                await db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
                await db.execute(delete(OrderCouponLine).where(OrderCouponLine.order_id == order_id))
                await db.commit()
            deleted = await self._delete(Order, order_id)
        else:
            existing = await self.get_order(order_id)
            if existing is None:
                return None
            deleted = await self._update(Order, order_id, {"status": "trash"})
            if self._job_queue is not None:
                await self._job_queue.queue_order_processing(order_id, "cancelled", existing["status"], "trash")

        if deleted is not None and self._hook_manager is not None:
            await self._hook_manager.do_action(HOOKS.ORDER_DELETED, {"order": deleted})
        return deleted
