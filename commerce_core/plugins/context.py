"""
Plugin context.

The handle a plugin gets in every callback: its own config and log, plus
pass-through access to store resources, webhooks and the job queue.
"""
from typing import TYPE_CHECKING, Any

from commerce_core.logging_config import get_logger
from commerce_core.services.job_queue import JobOptions, JobQueue
from commerce_core.services.resource_service import ResourceService
from commerce_core.services.webhook_service import WebhookDispatcher

if TYPE_CHECKING:
    from commerce_core.services.plugin_manager import PluginManager


class PluginServices:
    """Core services exposed to plugins."""

    def __init__(self, resources: ResourceService, dispatcher: WebhookDispatcher, job_queue: JobQueue):
        self._resources = resources
        self._dispatcher = dispatcher
        self._job_queue = job_queue

    # Products
    async def get_product(self, product_id: int):
        return await self._resources.get_product(product_id)

    async def list_products(self, **params):
        return await self._resources.list_products(**params)

    async def create_product(self, data: dict[str, Any]):
        return await self._resources.create_product(data)

    async def update_product(self, product_id: int, data: dict[str, Any]):
        return await self._resources.update_product(product_id, data)

    async def delete_product(self, product_id: int):
        return await self._resources.delete_product(product_id)

    # Orders
    async def get_order(self, order_id: int):
        return await self._resources.get_order(order_id)

    async def get_order_items(self, order_id: int):
        return await self._resources.get_order_items(order_id)

    async def list_orders(self, **params):
        return await self._resources.list_orders(**params)

    async def create_order(self, data: dict[str, Any]):
        return await self._resources.create_order(data)

    async def update_order(self, order_id: int, data: dict[str, Any]):
        return await self._resources.update_order(order_id, data)

    async def delete_order(self, order_id: int, force: bool = False):
        return await self._resources.delete_order(order_id, force)

    # Customers
    async def get_customer(self, customer_id: int):
        return await self._resources.get_customer(customer_id)

    async def get_customer_by_email(self, email: str):
        return await self._resources.get_customer_by_email(email)

    async def list_customers(self, **params):
        return await self._resources.list_customers(**params)

    async def create_customer(self, data: dict[str, Any]):
        return await self._resources.create_customer(data)

    async def update_customer(self, customer_id: int, data: dict[str, Any]):
        return await self._resources.update_customer(customer_id, data)

    async def delete_customer(self, customer_id: int):
        return await self._resources.delete_customer(customer_id)

    # Webhooks and jobs
    async def dispatch_webhook(self, topic: str, data: dict[str, Any]) -> list[str]:
        """Dispatch a custom topic; "resource.event" is split for the headers."""
        resource, _, event = topic.partition(".")
        return await self._dispatcher.dispatch(topic, resource, event or resource, data)

    async def add_job(self, queue_name: str, data: dict[str, Any], options: JobOptions | None = None) -> None:
        await self._job_queue.enqueue(queue_name, data, options)


class PluginContext:
    """Everything one plugin may touch, scoped to its id."""

    def __init__(self, plugin_id: str, manager: "PluginManager", services: PluginServices):
        self.plugin_id = plugin_id
        self.services = services
        self._manager = manager
        self.logger = get_logger(plugin_id=plugin_id)

    async def get_config(self) -> dict[str, Any]:
        return await self._manager.get_plugin_config(self.plugin_id)

    async def set_config(self, config: dict[str, Any]) -> None:
        await self._manager.update_plugin_config(self.plugin_id, config)

    async def get_config_value(self, key: str, default: Any = None) -> Any:
        config = await self.get_config()
        value = config.get(key)
        return default if value is None else value

    async def set_config_value(self, key: str, value: Any) -> None:
        config = await self.get_config()
        config[key] = value
        await self.set_config(config)

    async def log(self, level: str, message: str, data: dict[str, Any] | None = None) -> None:
        """Write a plugin_logs row and the matching structlog event."""
        await self._manager.write_log(self.plugin_id, level, message, data)
        log_method = getattr(self.logger, level, self.logger.info)
        log_method("plugin_log", message=message, data=data)
