"""initial schema - webhooks, plugins, schedules and store tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    ]


def upgrade() -> None:
    # Webhook subscriptions (status as VARCHAR, not enum)
    op.create_table(
        'webhooks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False, server_default=''),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('topic', sa.String(50), nullable=False, index=True),
        sa.Column('resource', sa.String(50), nullable=False),
        sa.Column('event', sa.String(50), nullable=False),
        sa.Column('delivery_url', sa.String(500), nullable=False),
        sa.Column('secret', sa.String(100), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    # One row per delivery attempt chain
    op.create_table(
        'webhook_deliveries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('webhook_id', sa.Integer(), nullable=False, index=True),
        sa.Column('delivery_id', sa.String(36), nullable=False, unique=True, index=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('request_body', sa.Text(), nullable=False),
        sa.Column('request_headers', sa.JSON(), nullable=False),
        sa.Column('response_code', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )

    # Plugins
    op.create_table(
        'plugins',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('version', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('author', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='installed'),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('manifest', sa.JSON(), nullable=False),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('date_installed', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
        sa.Column('date_activated', sa.DateTime(), nullable=True),
        sa.Column('date_modified', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    )

    # Plugin logs (no FK: install callbacks log before the plugin row exists)
    op.create_table(
        'plugin_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('plugin_id', sa.String(100), nullable=False, index=True),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    )

    # Scheduled tasks
    op.create_table(
        'plugin_schedules',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('plugin_id', sa.String(100), nullable=False, index=True),
        sa.Column('schedule_id', sa.String(100), nullable=False),
        sa.Column('cron_expression', sa.String(100), nullable=True),
        sa.Column('interval_ms', sa.BigInteger(), nullable=True),
        sa.Column('next_run', sa.DateTime(), nullable=True),
        sa.Column('last_run', sa.DateTime(), nullable=True),
        sa.Column('is_running', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('plugin_id', 'schedule_id', name='uq_plugin_schedules_plugin_schedule'),
    )

    # Store tables used by the order worker
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('sku', sa.String(100), nullable=True, unique=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='publish'),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), nullable=True),
        sa.Column('total_sales', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('meta_data', sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(255), nullable=True),
        sa.Column('last_name', sa.String(255), nullable=True),
        sa.Column('is_paying_customer', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('meta_data', sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('code', sa.String(100), nullable=False, unique=True, index=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending', index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('billing', sa.JSON(), nullable=False),
        sa.Column('meta_data', sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(255), nullable=False, server_default=''),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
    )

    op.create_table(
        'order_coupon_lines',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('code', sa.String(100), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('order_coupon_lines')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('coupons')
    op.drop_table('customers')
    op.drop_table('products')
    op.drop_table('plugin_schedules')
    op.drop_table('plugin_logs')
    op.drop_table('plugins')
    op.drop_table('webhook_deliveries')
    op.drop_table('webhooks')
