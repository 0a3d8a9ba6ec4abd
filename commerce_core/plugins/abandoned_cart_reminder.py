"""
Abandoned Cart Reminder plugin.

Finds orders left in a pending status longer than a configured number of
hours and reports each one through the plugin log and, optionally, an
`order.abandoned` webhook so an external system can send recovery emails.
"""
from decimal import Decimal
from typing import Any

from commerce_core.models.base import utcnow
from commerce_core.plugins.context import PluginContext
from commerce_core.plugins.types import Plugin, PluginManifest, PluginSchedule
from commerce_core.services.hook_manager import HOOKS

PLUGIN_ID = "abandoned-cart-reminder"
SCHEDULE_ID = "check-abandoned-carts"

# more abandoned orders than this in one run gets a warning
HIGH_ABANDONMENT_COUNT = 10

manifest = PluginManifest(
    id=PLUGIN_ID,
    name="Abandoned Cart Reminder",
    version="1.0.0",
    description="Monitors pending orders and identifies abandoned carts for follow-up",
    author="Commerce Core",
    hooks=[HOOKS.ORDER_CREATED],
    schedules=[
        PluginSchedule(
            id=SCHEDULE_ID,
            schedule="1h",
            description="Check for orders pending too long",
        ),
    ],
    default_config={
        "abandoned_after_hours": 24,
        "check_statuses": ["pending"],
        "max_orders_per_run": 100,
        "dispatch_webhook": True,
        "webhook_event": "order.abandoned",
        "minimum_order_value": "0.00",
    },
)


async def install(context: PluginContext) -> None:
    await context.log("info", "Abandoned Cart Reminder plugin installed", {
        "default_config": manifest.default_config,
    })


async def activate(context: PluginContext) -> None:
    await context.log("info", "Abandoned Cart Reminder plugin activated", {"config": await context.get_config()})


async def deactivate(context: PluginContext) -> None:
    await context.log("info", "Abandoned Cart Reminder plugin deactivated")


async def uninstall(context: PluginContext) -> None:
    await context.log("info", "Abandoned Cart Reminder plugin uninstalled")


async def on_order_created(data: dict[str, Any], context: PluginContext) -> dict[str, Any]:
    order = data["order"]
    hours = await context.get_config_value("abandoned_after_hours", 24)
    await context.log("debug", "New order created, will monitor for abandonment", {
        "order_id": order["id"],
        "status": order["status"],
        "total": str(order.get("total", "0")),
        "will_check_after": f"{hours} hours",
    })
    return data


async def _candidate_orders(context: PluginContext, statuses: list[str], limit: int) -> list[dict[str, Any]]:
    orders: list[dict[str, Any]] = []
    for status in statuses:
        if len(orders) >= limit:
            break
        result = await context.services.list_orders(status=status, per_page=limit - len(orders))
        orders.extend(result["items"])
    return orders


async def check_abandoned_carts(context: PluginContext) -> dict[str, Any]:
    """
    Report orders pending longer than the threshold.

    Orders below minimum_order_value are ignored. A webhook that fails to
    dispatch is logged and the run continues with the next order.

    Returns:
        {"checked", "abandoned", "total_value"} for the run
    """
    config = await context.get_config()
    hours = config.get("abandoned_after_hours", 24)
    statuses = config.get("check_statuses", ["pending"])
    max_orders = config.get("max_orders_per_run", 100)
    dispatch_webhook = config.get("dispatch_webhook", True)
    webhook_event = config.get("webhook_event", "order.abandoned")
    minimum_value = Decimal(str(config.get("minimum_order_value", "0.00")))

    await context.log("info", "Starting abandoned cart check", {
        "abandoned_after_hours": hours,
        "check_statuses": statuses,
        "max_orders_per_run": max_orders,
        "minimum_order_value": str(minimum_value),
    })

    now = utcnow()
    orders = await _candidate_orders(context, statuses, max_orders)

    abandoned: list[dict[str, Any]] = []
    for order in orders:
        age = now - order["created_at"]
        if age.total_seconds() < hours * 3600:
            continue
        total = Decimal(str(order.get("total") or 0))
        if total < minimum_value:
            continue

        hours_pending = round(age.total_seconds() / 3600)
        billing = order.get("billing") or {}
        email = billing.get("email", "")
        line_items = await context.services.get_order_items(order["id"])
        abandoned.append({"id": order["id"], "total": total})

        await context.log("info", "Found abandoned order", {
            "order_id": order["id"],
            "status": order["status"],
            "total": str(total),
            "email": email,
            "hours_pending": hours_pending,
            "item_count": len(line_items),
        })

        if not dispatch_webhook:
            continue
        try:
            await context.services.dispatch_webhook(webhook_event, {
                "order": {
                    "id": order["id"],
                    "status": order["status"],
                    "total": str(total),
                    "email": email,
                    "hours_pending": hours_pending,
                    "billing": billing,
                    "line_items": line_items,
                },
                "timestamp": now.isoformat(),
            })
        except Exception as e:
            await context.log("error", "Failed to dispatch abandoned order webhook", {
                "order_id": order["id"],
                "error": str(e),
            })

    total_value = sum((o["total"] for o in abandoned), Decimal("0"))
    await context.log("info", "Abandoned cart check complete", {
        "total_checked": len(orders),
        "abandoned_found": len(abandoned),
        "total_value": f"{total_value:.2f}",
    })
    if len(abandoned) > HIGH_ABANDONMENT_COUNT:
        await context.log("warning", "High number of abandoned orders detected", {
            "count": len(abandoned),
            "recommendation": "Consider reviewing checkout process or sending bulk recovery emails",
        })

    return {"checked": len(orders), "abandoned": len(abandoned), "total_value": f"{total_value:.2f}"}


plugin = Plugin(
    manifest=manifest,
    install=install,
    activate=activate,
    deactivate=deactivate,
    uninstall=uninstall,
    hooks={HOOKS.ORDER_CREATED: on_order_created},
    schedules={SCHEDULE_ID: check_abandoned_carts},
)
