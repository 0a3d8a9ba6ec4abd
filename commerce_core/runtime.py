"""
Composition root.

Builds every background component once and wires them together: job
queue, hook manager, webhook dispatcher, resource service, scheduler,
plugin manager and the three workers. start() and shutdown() bring them
up and down in dependency order.
"""
from typing import Any, Callable

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_core.config import Settings
from commerce_core.plugins import abandoned_cart_reminder, order_status_checker
from commerce_core.plugins.context import PluginServices
from commerce_core.plugins.types import Plugin
from commerce_core.services.hook_manager import HookManager
from commerce_core.services.job_queue import JobQueue
from commerce_core.services.plugin_manager import PluginManager
from commerce_core.services.rate_limiter import RateLimiter
from commerce_core.services.resource_service import ResourceService
from commerce_core.services.scheduler import Scheduler
from commerce_core.services.webhook_service import WebhookDispatcher
from commerce_core.workers.email_worker import EmailSender, EmailWorker
from commerce_core.workers.order_worker import OrderWorker
from commerce_core.workers.webhook_worker import WebhookWorker

logger = structlog.get_logger()

BUILTIN_PLUGINS: list[Plugin] = [
    order_status_checker.plugin,
    abandoned_cart_reminder.plugin,
]


class Runtime:
    """Process-wide background components."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
        email_sender: EmailSender | None = None,
        plugins: list[Plugin] | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.plugins = BUILTIN_PLUGINS if plugins is None else plugins

        self.job_queue = JobQueue(settings)
        self.hook_manager = HookManager()
        self.dispatcher = WebhookDispatcher(
            session_factory,
            self.job_queue,
            settings,
            hook_manager=self.hook_manager,
            client_factory=http_client_factory,
        )
        self.resources = ResourceService(session_factory, self.job_queue, self.hook_manager)
        self.scheduler = Scheduler(session_factory, settings)
        self.plugin_manager = PluginManager(
            session_factory,
            self.hook_manager,
            self.scheduler,
            PluginServices(self.resources, self.dispatcher, self.job_queue),
        )

        self.webhook_worker = WebhookWorker(self.dispatcher)
        self.email_worker = EmailWorker(email_sender)
        self.order_worker = OrderWorker(self.resources, self.dispatcher, self.job_queue)
        self.rate_limiter: RateLimiter | None = None
        self._started = False

    async def start(self) -> None:
        """Pick the queue backend, start workers, then restore plugins."""
        if self._started:
            return
        await self.job_queue.initialize()

        if self.job_queue.is_durable:
            self.rate_limiter = RateLimiter(
                self.settings.REDIS_URL,
                limit=self.settings.WEBHOOK_RATE_LIMIT,
                window=self.settings.WEBHOOK_RATE_WINDOW_SECONDS,
            )
            self.webhook_worker.rate_limiter = self.rate_limiter

        self.webhook_worker.register(self.job_queue, self.settings.WEBHOOK_WORKER_CONCURRENCY)
        self.email_worker.register(self.job_queue, self.settings.EMAIL_WORKER_CONCURRENCY)
        self.order_worker.register(self.job_queue, self.settings.ORDER_WORKER_CONCURRENCY)
        await self.job_queue.start()

        for plugin in self.plugins:
            self.plugin_manager.register_plugin(plugin)
        await self.plugin_manager.initialize()

        self._started = True
        logger.info("runtime_started", queue_backend=self.job_queue.backend_name)

    async def shutdown(self) -> None:
        """Stop plugins and the scheduler, then workers and connections."""
        if not self._started:
            return
        await self.plugin_manager.shutdown()
        await self.job_queue.shutdown()
        if self.rate_limiter is not None:
            await self.rate_limiter.close()
            self.rate_limiter = None
        self._started = False
        logger.info("runtime_stopped")

    async def health(self) -> dict[str, Any]:
        stats = await self.job_queue.stats()
        return {
            "status": "healthy",
            "queue": stats,
            "scheduler": {
                "running": self.scheduler.running,
                "tasks": len(self.scheduler.get_all_schedules()),
            },
        }
