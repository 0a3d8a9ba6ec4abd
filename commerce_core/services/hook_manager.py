"""
Hook Manager

In-process publish/subscribe for plugins.

Filters pass a value through every callback registered for a hook name,
in ascending priority order; actions call the same callbacks for their
side effects. A callback that raises is logged and skipped; the chain
always runs to the end.
"""
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog

from commerce_core.models.base import utcnow
from commerce_core.routes.metrics import track_hook_failure

logger = structlog.get_logger()


DEFAULT_PRIORITY = 10


class HOOKS:
    """Well-known hook names."""
    # Order hooks
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_DELETED = "order.deleted"
    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_REFUNDED = "order.refunded"

    # Product hooks
    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"

    # Customer hooks
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_DELETED = "customer.deleted"

    # Coupon hooks
    COUPON_CREATED = "coupon.created"
    COUPON_UPDATED = "coupon.updated"
    COUPON_DELETED = "coupon.deleted"

    # Webhook hooks
    WEBHOOK_DISPATCH = "webhook.dispatch"
    WEBHOOK_DELIVERED = "webhook.delivered"
    WEBHOOK_FAILED = "webhook.failed"

    # Plugin hooks
    PLUGIN_INSTALLED = "plugin.installed"
    PLUGIN_ACTIVATED = "plugin.activated"
    PLUGIN_DEACTIVATED = "plugin.deactivated"
    PLUGIN_UNINSTALLED = "plugin.uninstalled"


@dataclass
class HookContext:
    """Passed to every callback alongside the value."""
    plugin_id: str
    hook_name: str
    timestamp: datetime = field(default_factory=utcnow)


HookCallback = Callable[[Any, HookContext], Any | Awaitable[Any]]


@dataclass
class HookRegistration:
    hook_name: str
    plugin_id: str
    callback: HookCallback
    priority: int = DEFAULT_PRIORITY


@dataclass
class HookFailure:
    """A callback that raised during a filter or action run."""
    hook_name: str
    plugin_id: str
    error: Exception


async def _call(callback: HookCallback, value: Any, context: HookContext) -> Any:
    result = callback(value, context)
    if inspect.isawaitable(result):
        result = await result
    return result


class HookManager:
    """Registration table plus filter/action execution."""

    def __init__(self):
        self._hooks: dict[str, list[HookRegistration]] = {}

    def register(
        self,
        hook_name: str,
        plugin_id: str,
        callback: HookCallback,
        priority: int = DEFAULT_PRIORITY,
    ) -> HookRegistration:
        """Add a callback; lower priority runs earlier, ties keep insertion order."""
        registration = HookRegistration(hook_name, plugin_id, callback, priority)
        registrations = self._hooks.setdefault(hook_name, [])
        registrations.append(registration)
        # list.sort is stable
        registrations.sort(key=lambda r: r.priority)
        return registration

    def unregister(self, hook_name: str, plugin_id: str) -> None:
        """Remove one plugin's callbacks for one hook."""
        registrations = self._hooks.get(hook_name)
        if registrations is None:
            return
        self._hooks[hook_name] = [r for r in registrations if r.plugin_id != plugin_id]

    def unregister_plugin(self, plugin_id: str) -> None:
        """Remove every callback a plugin registered."""
        for hook_name, registrations in self._hooks.items():
            self._hooks[hook_name] = [r for r in registrations if r.plugin_id != plugin_id]

    async def _run_isolated(
        self,
        hook_name: str,
        value: Any,
        chain: bool,
    ) -> tuple[Any, list[HookFailure]]:
        """
        Run every callback for a hook, isolating failures.

        With chain=True each non-None return value replaces the value passed
        to the next callback.
        """
        failures: list[HookFailure] = []
        current = value

        # iterate over a snapshot so callbacks may (un)register hooks
        for registration in list(self._hooks.get(hook_name, ())):
            context = HookContext(plugin_id=registration.plugin_id, hook_name=hook_name)
            try:
                result = await _call(registration.callback, current, context)
            except Exception as e:
                failures.append(HookFailure(hook_name, registration.plugin_id, e))
                continue
            if chain and result is not None:
                current = result

        for failure in failures:
            logger.error(
                "hook_callback_failed",
                hook_name=failure.hook_name,
                plugin_id=failure.plugin_id,
                error=str(failure.error),
            )
            track_hook_failure(failure.hook_name, failure.plugin_id)

        return current, failures

    async def apply_filter(self, hook_name: str, value: Any) -> Any:
        """Pass a value through the hook's callbacks and return the result."""
        result, _ = await self._run_isolated(hook_name, value, chain=True)
        return result

    async def do_action(self, hook_name: str, value: Any) -> list[HookFailure]:
        """Notify the hook's callbacks; return values are ignored."""
        _, failures = await self._run_isolated(hook_name, value, chain=False)
        return failures

    def has_hooks(self, hook_name: str) -> bool:
        return bool(self._hooks.get(hook_name))

    def get_plugin_hooks(self, plugin_id: str) -> list[str]:
        """Hook names the plugin currently has callbacks on."""
        return [
            hook_name
            for hook_name, registrations in self._hooks.items()
            if any(r.plugin_id == plugin_id for r in registrations)
        ]

    def get_registrations(self, hook_name: str | None = None) -> list[HookRegistration]:
        """Registrations for one hook, or all of them, in execution order."""
        if hook_name is not None:
            return list(self._hooks.get(hook_name, ()))
        return [r for registrations in self._hooks.values() for r in registrations]

    def clear(self) -> None:
        self._hooks.clear()
