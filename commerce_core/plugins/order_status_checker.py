"""
Order Status Checker plugin.

Moves pending orders to processing once a payment gateway has flagged
them through order metadata (for example `order_complete: true` set by a
gateway callback). Orders younger than the check interval are left alone.
"""
from datetime import timedelta
from typing import Any

from commerce_core.models.base import utcnow
from commerce_core.plugins.context import PluginContext
from commerce_core.plugins.types import Plugin, PluginManifest, PluginSchedule
from commerce_core.services.hook_manager import HOOKS

PLUGIN_ID = "order-status-checker"
SCHEDULE_ID = "check-pending-orders"

manifest = PluginManifest(
    id=PLUGIN_ID,
    name="Order Status Checker",
    version="1.0.0",
    description="Automatically moves pending orders to processing when order_complete metadata is set",
    author="Commerce Core",
    hooks=[HOOKS.ORDER_CREATED],
    schedules=[
        PluginSchedule(
            id=SCHEDULE_ID,
            schedule="15m",
            description="Check pending orders for order_complete metadata",
        ),
    ],
    default_config={
        "check_interval_minutes": 15,
        "target_metadata_key": "order_complete",
        "target_metadata_value": True,
        "from_status": "pending",
        "to_status": "processing",
    },
)


async def install(context: PluginContext) -> None:
    await context.log("info", "Order Status Checker plugin installed")


async def activate(context: PluginContext) -> None:
    await context.log("info", "Order Status Checker plugin activated", {"config": await context.get_config()})


async def deactivate(context: PluginContext) -> None:
    await context.log("info", "Order Status Checker plugin deactivated")


async def uninstall(context: PluginContext) -> None:
    await context.log("info", "Order Status Checker plugin uninstalled")


async def on_order_created(data: dict[str, Any], context: PluginContext) -> dict[str, Any]:
    order = data["order"]
    await context.log("debug", "Order created, will check on next schedule run", {
        "order_id": order["id"],
        "status": order["status"],
    })
    return data


def _metadata_value(order: dict[str, Any], key: str) -> Any:
    for entry in order.get("meta_data") or []:
        if entry.get("key") == key:
            return entry.get("value")
    return None


async def check_pending_orders(context: PluginContext) -> dict[str, int]:
    """Promote old enough, flagged orders. Returns counters for the run."""
    config = await context.get_config()
    interval_minutes = config.get("check_interval_minutes", 15)
    metadata_key = config.get("target_metadata_key", "order_complete")
    metadata_value = config.get("target_metadata_value", True)
    from_status = config.get("from_status", "pending")
    to_status = config.get("to_status", "processing")

    result = await context.services.list_orders(status=from_status, per_page=100)
    orders = result["items"]
    cutoff = utcnow() - timedelta(minutes=interval_minutes)

    updated = skipped = 0
    for order in orders:
        if order["created_at"] > cutoff:
            skipped += 1
            continue
        if _metadata_value(order, metadata_key) != metadata_value:
            continue
        await context.services.update_order(order["id"], {"status": to_status})
        await context.log("info", f"Updated order {order['id']} from {from_status} to {to_status}", {
            "order_id": order["id"],
        })
        updated += 1

    await context.log("info", "Pending order check complete", {
        "total_checked": len(orders),
        "updated": updated,
        "skipped": skipped,
    })
    return {"checked": len(orders), "updated": updated, "skipped": skipped}


plugin = Plugin(
    manifest=manifest,
    install=install,
    activate=activate,
    deactivate=deactivate,
    uninstall=uninstall,
    hooks={HOOKS.ORDER_CREATED: on_order_created},
    schedules={SCHEDULE_ID: check_pending_orders},
)
