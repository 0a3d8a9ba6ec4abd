"""
Plugin Manager

Owns plugin lifecycle: install, activate, deactivate, uninstall.

Activation wires a plugin's hook handlers into the HookManager and its
schedules into the Scheduler; a failed activation is rolled back and the
plugin lands in the error state. Deactivation always tears the wiring
down, even when the plugin's own callback raises.

States: installed -> active <-> inactive, any failure -> error.
Uninstall hard-deletes every persisted row of the plugin. Transitions of
one plugin run one at a time under a per-plugin lock.
"""
import asyncio
import inspect
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_core.exceptions import (
    PluginActivationError,
    PluginDeactivationError,
    PluginInstallError,
    PluginNotFoundError,
    PluginStateError,
    PluginUninstallError,
)
from commerce_core.models.base import utcnow
from commerce_core.models.plugin import PluginLog, PluginRecord, PluginStatus
from commerce_core.plugins.context import PluginContext, PluginServices
from commerce_core.plugins.types import HookHandler, Plugin
from commerce_core.services.hook_manager import HOOKS, HookContext, HookManager
from commerce_core.services.scheduler import Scheduler

logger = structlog.get_logger()

ACTIVATABLE = (PluginStatus.INSTALLED.value, PluginStatus.INACTIVE.value, PluginStatus.ERROR.value)


def _state(record: PluginRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "version": record.version,
        "description": record.description or "",
        "author": record.author or "",
        "status": record.status,
        "is_system": record.is_system,
        "config": dict(record.config or {}),
        "date_installed": record.date_installed,
        "date_activated": record.date_activated,
        "last_error": record.last_error,
    }


def _hook_callback(handler: HookHandler, context: PluginContext):
    """Adapt a plugin hook handler to the HookManager callback signature."""
    async def callback(value: Any, hook_context: HookContext) -> Any:
        result = handler(value, context)
        if inspect.isawaitable(result):
            result = await result
        return result
    return callback


class PluginManager:
    """Plugin registry and lifecycle state machine."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hook_manager: HookManager,
        scheduler: Scheduler,
        services: PluginServices,
    ):
        self._session_factory = session_factory
        self.hook_manager = hook_manager
        self.scheduler = scheduler
        self.services = services
        self._registry: dict[str, Plugin] = {}
        # every plugin ever registered; survives uninstall so it can be reinstalled by id
        self._catalog: dict[str, Plugin] = {}
        # serializes lifecycle transitions per plugin id
        self._locks: dict[str, asyncio.Lock] = {}

    # ============================================
    # Registry
    # ============================================

    def register_plugin(self, plugin: Plugin) -> None:
        """Make a plugin known to the manager (does not install it)."""
        self._registry[plugin.id] = plugin
        self._catalog[plugin.id] = plugin
        logger.debug("plugin_registered", plugin_id=plugin.id)

    def find_plugin(self, plugin_id: str) -> Plugin | None:
        """A registered plugin, or one that was registered before an uninstall."""
        return self._registry.get(plugin_id) or self._catalog.get(plugin_id)

    def unregister_plugin(self, plugin_id: str) -> None:
        self._registry.pop(plugin_id, None)
        logger.debug("plugin_unregistered", plugin_id=plugin_id)

    def get_registered(self, plugin_id: str) -> Plugin | None:
        return self._registry.get(plugin_id)

    def list_registered(self) -> list[Plugin]:
        return list(self._registry.values())

    def create_context(self, plugin_id: str) -> PluginContext:
        return PluginContext(plugin_id, self, self.services)

    def _lock(self, plugin_id: str) -> asyncio.Lock:
        return self._locks.setdefault(plugin_id, asyncio.Lock())

    # ============================================
    # Startup / shutdown
    # ============================================

    async def initialize(self) -> None:
        """
        Start the scheduler and re-wire plugins persisted as active.

        Activate callbacks are not re-run; only hooks and schedules are
        restored.
        """
        logger.info("plugin_system_initializing")
        await self.scheduler.start()

        async with self._session_factory() as db:
            result = await db.execute(
                select(PluginRecord).where(PluginRecord.status == PluginStatus.ACTIVE.value)
            )
            active_ids = [record.id for record in result.scalars().all()]

        logger.info("active_plugins_found", count=len(active_ids))

        for plugin_id in active_ids:
            plugin = self._registry.get(plugin_id)
            if plugin is None:
                logger.warning("active_plugin_not_registered", plugin_id=plugin_id)
                continue
            async with self._lock(plugin_id):
                try:
                    await self._wire(plugin, self.create_context(plugin_id))
                except Exception as e:
                    await self._unwire(plugin_id)
                    await self._set_status(plugin_id, PluginStatus.ERROR.value, last_error=str(e))
                    logger.error("plugin_restore_failed", plugin_id=plugin_id, error=str(e))

        logger.info("plugin_system_initialized")

    async def shutdown(self) -> None:
        """Unwire every plugin and stop the scheduler; persisted states stay as they are."""
        logger.info("plugin_system_shutting_down")
        for plugin_id in self._registry:
            self.hook_manager.unregister_plugin(plugin_id)
        await self.scheduler.stop()
        logger.info("plugin_system_shut_down")

    # ============================================
    # Lifecycle
    # ============================================

    async def install(self, plugin: Plugin) -> dict[str, Any]:
        """
        Install a plugin and persist it as installed.

        Raises:
            PluginStateError: already installed
            PluginInstallError: the install callback raised
        """
        async with self._lock(plugin.id):
            return await self._install(plugin)

    async def _install(self, plugin: Plugin) -> dict[str, Any]:
        plugin_id = plugin.id
        if await self.get_plugin_state(plugin_id) is not None:
            raise PluginStateError(plugin_id, f"Plugin {plugin_id} is already installed")

        self.register_plugin(plugin)
        context = self.create_context(plugin_id)

        if plugin.install is not None:
            try:
                await plugin.install(context)
            except Exception as e:
                self.unregister_plugin(plugin_id)
                logger.error("plugin_install_failed", plugin_id=plugin_id, error=str(e))
                raise PluginInstallError(plugin_id, f"Failed to install plugin {plugin_id}: {e}") from e

        manifest = plugin.manifest
        now = utcnow()
        async with self._session_factory() as db:
            db.add(PluginRecord(
                id=plugin_id,
                name=manifest.name,
                version=manifest.version,
                description=manifest.description,
                author=manifest.author,
                status=PluginStatus.INSTALLED.value,
                is_system=False,
                manifest=manifest.to_dict(),
                config=dict(manifest.default_config),
                date_installed=now,
                date_modified=now,
            ))
            await db.commit()

        logger.info("plugin_installed", plugin_id=plugin_id, version=manifest.version)
        await self.hook_manager.do_action(HOOKS.PLUGIN_INSTALLED, {"plugin_id": plugin_id})
        return await self.get_plugin_state(plugin_id)

    async def activate(self, plugin_id: str) -> dict[str, Any]:
        """
        Run the activate callback, wire hooks and schedules, mark active.

        Activation from the error state is allowed so an operator can
        retry. Any failure rolls back the wiring and leaves the plugin in
        the error state.

        Raises:
            PluginNotFoundError: not registered or not installed
            PluginStateError: already active
            PluginActivationError: callback or wiring failed
        """
        async with self._lock(plugin_id):
            return await self._activate(plugin_id)

    async def _activate(self, plugin_id: str) -> dict[str, Any]:
        plugin = self._registry.get(plugin_id)
        if plugin is None:
            raise PluginNotFoundError(plugin_id, f"Plugin {plugin_id} is not registered")

        state = await self.get_plugin_state(plugin_id)
        if state is None:
            raise PluginNotFoundError(plugin_id, f"Plugin {plugin_id} is not installed")
        if state["status"] not in ACTIVATABLE:
            raise PluginStateError(plugin_id, f"Plugin {plugin_id} is already active")

        context = self.create_context(plugin_id)
        try:
            if plugin.activate is not None:
                await plugin.activate(context)
            await self._wire(plugin, context)
        except Exception as e:
            await self._unwire(plugin_id)
            await self._set_status(plugin_id, PluginStatus.ERROR.value, last_error=str(e))
            logger.error("plugin_activation_failed", plugin_id=plugin_id, error=str(e))
            raise PluginActivationError(plugin_id, f"Failed to activate plugin {plugin_id}: {e}") from e

        await self._set_status(
            plugin_id,
            PluginStatus.ACTIVE.value,
            last_error=None,
            date_activated=utcnow(),
        )
        logger.info("plugin_activated", plugin_id=plugin_id)
        await self.hook_manager.do_action(HOOKS.PLUGIN_ACTIVATED, {"plugin_id": plugin_id})
        return await self.get_plugin_state(plugin_id)

    async def deactivate(self, plugin_id: str) -> dict[str, Any]:
        """
        Run the deactivate callback, unwire, mark inactive.

        Hooks and schedules are removed even when the callback raises; the
        plugin then lands in the error state.

        Raises:
            PluginNotFoundError: not installed
            PluginStateError: not active
            PluginDeactivationError: the deactivate callback raised
        """
        async with self._lock(plugin_id):
            return await self._deactivate(plugin_id)

    async def _deactivate(self, plugin_id: str) -> dict[str, Any]:
        state = await self.get_plugin_state(plugin_id)
        if state is None:
            raise PluginNotFoundError(plugin_id, f"Plugin {plugin_id} is not installed")
        if state["status"] != PluginStatus.ACTIVE.value:
            raise PluginStateError(plugin_id, f"Plugin {plugin_id} is not active")

        plugin = self._registry.get(plugin_id)
        error: Exception | None = None
        try:
            if plugin is not None and plugin.deactivate is not None:
                await plugin.deactivate(self.create_context(plugin_id))
        except Exception as e:
            error = e
        finally:
            await self._unwire(plugin_id)

        if error is not None:
            await self._set_status(plugin_id, PluginStatus.ERROR.value, last_error=str(error))
            logger.error("plugin_deactivation_failed", plugin_id=plugin_id, error=str(error))
            raise PluginDeactivationError(
                plugin_id, f"Failed to deactivate plugin {plugin_id}: {error}"
            ) from error

        await self._set_status(plugin_id, PluginStatus.INACTIVE.value)
        logger.info("plugin_deactivated", plugin_id=plugin_id)
        await self.hook_manager.do_action(HOOKS.PLUGIN_DEACTIVATED, {"plugin_id": plugin_id})
        return await self.get_plugin_state(plugin_id)

    async def uninstall(self, plugin_id: str) -> None:
        """
        Deactivate if needed, run the uninstall callback, delete all rows.

        A failing deactivate callback does not block uninstalling; the
        wiring is already gone at that point.

        Raises:
            PluginNotFoundError: not installed
            PluginUninstallError: the uninstall callback raised
        """
        async with self._lock(plugin_id):
            await self._uninstall(plugin_id)

    async def _uninstall(self, plugin_id: str) -> None:
        state = await self.get_plugin_state(plugin_id)
        if state is None:
            raise PluginNotFoundError(plugin_id, f"Plugin {plugin_id} is not installed")

        if state["status"] == PluginStatus.ACTIVE.value:
            try:
                await self._deactivate(plugin_id)
            except PluginDeactivationError as e:
                logger.warning("plugin_uninstall_deactivation_failed", plugin_id=plugin_id, error=str(e))

        plugin = self._registry.get(plugin_id)
        if plugin is not None and plugin.uninstall is not None:
            try:
                await plugin.uninstall(self.create_context(plugin_id))
            except Exception as e:
                logger.error("plugin_uninstall_failed", plugin_id=plugin_id, error=str(e))
                raise PluginUninstallError(plugin_id, f"Failed to uninstall plugin {plugin_id}: {e}") from e

        await self._unwire(plugin_id)
        self.unregister_plugin(plugin_id)

        async with self._session_factory() as db:
            await db.execute(delete(PluginLog).where(PluginLog.plugin_id == plugin_id))
            await db.execute(delete(PluginRecord).where(PluginRecord.id == plugin_id))
            await db.commit()

        logger.info("plugin_uninstalled", plugin_id=plugin_id)
        await self.hook_manager.do_action(HOOKS.PLUGIN_UNINSTALLED, {"plugin_id": plugin_id})

    # ============================================
    # Wiring
    # ============================================

    async def _wire(self, plugin: Plugin, context: PluginContext) -> None:
        priority = plugin.manifest.hook_priority
        for hook_name, handler in plugin.hooks.items():
            self.hook_manager.register(hook_name, plugin.id, _hook_callback(handler, context), priority)

        for definition in plugin.manifest.schedules:
            handler = plugin.schedules.get(definition.id)
            if handler is None:
                logger.warning("plugin_schedule_without_handler", plugin_id=plugin.id, schedule_id=definition.id)
                continue
            await self.scheduler.register(plugin.id, definition.id, definition.schedule, handler, context)

    async def _unwire(self, plugin_id: str) -> None:
        self.hook_manager.unregister_plugin(plugin_id)
        try:
            await self.scheduler.unregister_plugin(plugin_id)
        except Exception as e:
            logger.error("plugin_schedule_cleanup_failed", plugin_id=plugin_id, error=str(e))

    async def _set_status(self, plugin_id: str, status: str, **values) -> None:
        async with self._session_factory() as db:
            record = await db.get(PluginRecord, plugin_id)
            if record is None:
                return
            record.status = status
            for key, value in values.items():
                setattr(record, key, value)
            await db.commit()

    # ============================================
    # Reads, config and logs
    # ============================================

    async def get_plugin_state(self, plugin_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as db:
            record = await db.get(PluginRecord, plugin_id)
            return _state(record) if record else None

    async def list_plugins(self) -> list[dict[str, Any]]:
        async with self._session_factory() as db:
            result = await db.execute(select(PluginRecord).order_by(PluginRecord.id))
            return [_state(record) for record in result.scalars().all()]

    async def get_plugin_config(self, plugin_id: str) -> dict[str, Any]:
        """Stored config, or {} for a plugin that is not installed."""
        async with self._session_factory() as db:
            record = await db.get(PluginRecord, plugin_id)
            return dict(record.config or {}) if record else {}

    async def update_plugin_config(self, plugin_id: str, config: dict[str, Any]) -> dict[str, Any]:
        """
        Replace a plugin's config.

        Raises:
            PluginNotFoundError: not installed
        """
        async with self._session_factory() as db:
            record = await db.get(PluginRecord, plugin_id)
            if record is None:
                raise PluginNotFoundError(plugin_id, f"Plugin {plugin_id} is not installed")
            record.config = dict(config)
            await db.commit()
            return dict(record.config)

    async def write_log(self, plugin_id: str, level: str, message: str, data: dict[str, Any] | None = None) -> None:
        async with self._session_factory() as db:
            db.add(PluginLog(plugin_id=plugin_id, level=level, message=message, data=data))
            await db.commit()

    async def get_plugin_logs(self, plugin_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent log lines first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(PluginLog)
                .where(PluginLog.plugin_id == plugin_id)
                .order_by(PluginLog.timestamp.desc(), PluginLog.id.desc())
                .limit(limit)
            )
            return [
                {
                    "id": log.id,
                    "plugin_id": log.plugin_id,
                    "level": log.level,
                    "message": log.message,
                    "data": log.data,
                    "timestamp": log.timestamp,
                }
                for log in result.scalars().all()
            ]
