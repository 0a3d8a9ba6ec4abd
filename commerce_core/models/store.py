"""
Store resource models.

Only the columns the background core reads or writes are modelled here;
the full resource surface lives with the resource CRUD services.
"""
from decimal import Decimal
from sqlalchemy import Boolean, ForeignKey, Integer, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from commerce_core.models.base import Base, TimestampMixin


class Product(Base, TimestampMixin):
    """Product with inventory counters."""
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="publish")
    price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    stock_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_sales: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta_data: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self):
        return f"<Product(id={self.id}, name={self.name}, stock={self.stock_quantity})>"


class Customer(Base, TimestampMixin):
    """Customer with aggregate flags."""
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_paying_customer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    meta_data: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self):
        return f"<Customer(id={self.id}, email={self.email})>"


class Coupon(Base, TimestampMixin):
    """Coupon with a usage counter."""
    __tablename__ = "coupons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<Coupon(code={self.code}, usage_count={self.usage_count})>"


class Order(Base, TimestampMixin):
    """Order header."""
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    customer_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    billing: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    meta_data: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status})>"


class OrderItem(Base):
    """Order line item."""
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class OrderCouponLine(Base):
    """Coupon code applied to an order."""
    __tablename__ = "order_coupon_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(100), nullable=False)
