"""Built-in order status checker plugin."""
from datetime import timedelta

import pytest_asyncio

from commerce_core.models.base import utcnow
from commerce_core.plugins import order_status_checker
from commerce_core.runtime import Runtime


@pytest_asyncio.fixture
async def runtime(settings, session_factory):
    runtime = Runtime(settings, session_factory, plugins=[])
    await runtime.job_queue.initialize()
    await runtime.plugin_manager.install(order_status_checker.plugin)
    yield runtime
    await runtime.plugin_manager.shutdown()
    await runtime.job_queue.shutdown()


async def test_promotes_flagged_orders_older_than_the_interval(runtime):
    resources = runtime.resources
    old = utcnow() - timedelta(hours=1)
    flagged = await resources.create_order({
        "status": "pending",
        "created_at": old,
        "meta_data": [{"key": "order_complete", "value": True}],
    })
    unflagged = await resources.create_order({"status": "pending", "created_at": old})
    recent = await resources.create_order({
        "status": "pending",
        "meta_data": [{"key": "order_complete", "value": True}],
    })
    context = runtime.plugin_manager.create_context(order_status_checker.PLUGIN_ID)

    result = await order_status_checker.check_pending_orders(context)

    assert result == {"checked": 3, "updated": 1, "skipped": 1}
    assert (await resources.get_order(flagged["id"]))["status"] == "processing"
    assert (await resources.get_order(unflagged["id"]))["status"] == "pending"
    assert (await resources.get_order(recent["id"]))["status"] == "pending"


async def test_uses_configured_statuses(runtime):
    resources = runtime.resources
    manager = runtime.plugin_manager
    config = await manager.get_plugin_config(order_status_checker.PLUGIN_ID)
    config.update({"from_status": "on-hold", "to_status": "completed", "target_metadata_key": "paid"})
    await manager.update_plugin_config(order_status_checker.PLUGIN_ID, config)
    order = await resources.create_order({
        "status": "on-hold",
        "created_at": utcnow() - timedelta(days=1),
        "meta_data": [{"key": "paid", "value": True}],
    })

    result = await order_status_checker.check_pending_orders(manager.create_context(order_status_checker.PLUGIN_ID))

    assert result["updated"] == 1
    assert (await resources.get_order(order["id"]))["status"] == "completed"


async def test_order_created_hook_logs_when_active(runtime):
    manager = runtime.plugin_manager
    await manager.activate(order_status_checker.PLUGIN_ID)

    order = await runtime.resources.create_order({"status": "pending"})

    logs = await manager.get_plugin_logs(order_status_checker.PLUGIN_ID)
    assert logs[0]["message"] == "Order created, will check on next schedule run"
    assert logs[0]["data"] == {"order_id": order["id"], "status": "pending"}


async def test_activation_registers_fifteen_minute_schedule(runtime):
    await runtime.plugin_manager.activate(order_status_checker.PLUGIN_ID)

    task = runtime.scheduler.get_task(order_status_checker.PLUGIN_ID, order_status_checker.SCHEDULE_ID)

    assert task.interval_ms == 15 * 60 * 1000
    assert runtime.scheduler.uses_dedicated_trigger(task) is False
