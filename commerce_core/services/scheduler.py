"""
Scheduler

Runs plugin tasks on a fixed interval or a cron expression.

Intervals shorter than SCHEDULER_SHORT_INTERVAL_MS get their own asyncio
trigger; everything else is driven by one shared tick that runs every
due task in turn. Task state lives in plugin_schedules so a restart
resumes from the persisted next_run instead of replaying missed ticks.
"""
import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce_core.config import Settings
from commerce_core.models.base import utcnow
from commerce_core.models.plugin import PluginSchedule
from commerce_core.routes.metrics import track_scheduled_run
from commerce_core.sentry_config import capture_exception
from commerce_core.services.cron import next_cron_run

logger = structlog.get_logger()

INTERVAL_PATTERN = re.compile(r"^(\d+)(s|m|h|d)$")
UNIT_MS = {
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
}

ScheduleHandler = Callable[[Any], Awaitable[None]]


def parse_schedule(schedule: str) -> tuple[str | None, int | None]:
    """
    Split a schedule string into (cron_expression, interval_ms).

    "30s", "5m", "1h" and "2d" are intervals; anything else is taken as a
    cron expression.
    """
    match = INTERVAL_PATTERN.match(schedule.strip())
    if match:
        value, unit = match.groups()
        return None, int(value) * UNIT_MS[unit]
    return schedule.strip(), None


@dataclass
class ScheduledTask:
    """In-memory side of a plugin_schedules row."""
    plugin_id: str
    schedule_id: str
    handler: ScheduleHandler
    context: Any
    cron_expression: str | None = None
    interval_ms: int | None = None
    next_run: datetime | None = None
    last_run: datetime | None = None
    is_running: bool = False
    is_enabled: bool = True
    trigger: asyncio.Task | None = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return f"{self.plugin_id}:{self.schedule_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "plugin_id": self.plugin_id,
            "schedule_id": self.schedule_id,
            "cron_expression": self.cron_expression,
            "interval_ms": self.interval_ms,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "is_running": self.is_running,
            "is_enabled": self.is_enabled,
        }


class Scheduler:
    """Interval and cron task runner for plugins."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self._session_factory = session_factory
        self._settings = settings
        self._tasks: dict[str, ScheduledTask] = {}
        self._tick_task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def uses_dedicated_trigger(self, task: ScheduledTask) -> bool:
        return bool(task.interval_ms) and task.interval_ms < self._settings.SCHEDULER_SHORT_INTERVAL_MS

    def calculate_next_run(self, cron_expression: str | None, interval_ms: int | None, now: datetime | None = None) -> datetime:
        now = now or utcnow()
        if interval_ms:
            return now + timedelta(milliseconds=interval_ms)
        if cron_expression:
            return next_cron_run(cron_expression, now, self._settings.CRON_SEARCH_MINUTES)
        return now + timedelta(minutes=1)

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """Start the shared tick and any dedicated interval triggers."""
        if self._running:
            return
        self._running = True
        self._tick_task = asyncio.create_task(self._tick_loop())
        for task in self._tasks.values():
            if self.uses_dedicated_trigger(task):
                self._start_trigger(task)
        logger.info("scheduler_started", tasks=len(self._tasks))

    async def stop(self) -> None:
        """
        Cancel every timer and forget in-memory tasks.

        Persisted rows are kept so the next start resumes from them.
        """
        if not self._running:
            return
        self._running = False

        timers = [t.trigger for t in self._tasks.values() if t.trigger is not None]
        if self._tick_task is not None:
            timers.append(self._tick_task)
        for timer in timers:
            timer.cancel()
        for timer in timers:
            await _wait_cancelled(timer)

        self._tick_task = None
        self._tasks.clear()
        logger.info("scheduler_stopped")

    shutdown = stop

    async def _tick_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error("scheduler_tick_failed", error=str(e))
                capture_exception(e)
            await asyncio.sleep(self._settings.SCHEDULER_TICK_SECONDS)

    def _start_trigger(self, task: ScheduledTask) -> None:
        if task.trigger is None:
            task.trigger = asyncio.create_task(self._interval_loop(task))

    async def _interval_loop(self, task: ScheduledTask) -> None:
        """
        Fire every interval_ms against fixed deadlines.

        Runs are started without waiting for them, so a slow handler does
        not stretch the period; execute() skips a fire that overlaps a run
        still in flight.
        """
        loop = asyncio.get_running_loop()
        interval = task.interval_ms / 1000
        deadline = loop.time()
        runs: set[asyncio.Task] = set()
        try:
            while True:
                deadline += interval
                await asyncio.sleep(max(deadline - loop.time(), 0))
                if not task.is_enabled:
                    continue
                run = asyncio.create_task(self._fire(task))
                runs.add(run)
                run.add_done_callback(runs.discard)
        finally:
            for run in runs:
                run.cancel()

    async def _fire(self, task: ScheduledTask) -> None:
        try:
            await self.execute(task)
        except Exception as e:
            logger.error("scheduled_trigger_failed", task_id=task.id, error=str(e))
            capture_exception(e)

    async def _cancel_trigger(self, task: ScheduledTask) -> None:
        trigger, task.trigger = task.trigger, None
        if trigger is None or trigger is asyncio.current_task():
            return
        trigger.cancel()
        await _wait_cancelled(trigger)

    # ============================================
    # Registration
    # ============================================

    async def register(
        self,
        plugin_id: str,
        schedule_id: str,
        schedule: str,
        handler: ScheduleHandler,
        context: Any = None,
    ) -> ScheduledTask:
        """
        Register (or re-register) a plugin task and persist it.

        A persisted next_run that is still in the future is kept, so a
        restart does not shift the schedule; otherwise the next run is
        computed from now.
        """
        task_id = f"{plugin_id}:{schedule_id}"
        existing = self._tasks.pop(task_id, None)
        if existing is not None:
            await self._cancel_trigger(existing)

        cron_expression, interval_ms = parse_schedule(schedule)
        now = utcnow()
        next_run = self.calculate_next_run(cron_expression, interval_ms, now)

        async with self._session_factory() as db:
            stmt = select(PluginSchedule).where(
                PluginSchedule.plugin_id == plugin_id,
                PluginSchedule.schedule_id == schedule_id,
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()

            if row is None:
                row = PluginSchedule(plugin_id=plugin_id, schedule_id=schedule_id)
                db.add(row)
            elif (
                row.next_run is not None
                and row.next_run > now
                and row.cron_expression == cron_expression
                and row.interval_ms == interval_ms
            ):
                next_run = row.next_run

            row.cron_expression = cron_expression
            row.interval_ms = interval_ms
            row.next_run = next_run
            row.is_running = False
            row.is_enabled = True
            last_run = row.last_run
            await db.commit()

        task = ScheduledTask(
            plugin_id=plugin_id,
            schedule_id=schedule_id,
            handler=handler,
            context=context,
            cron_expression=cron_expression,
            interval_ms=interval_ms,
            next_run=next_run,
            last_run=last_run,
        )
        self._tasks[task_id] = task

        if self._running and self.uses_dedicated_trigger(task):
            self._start_trigger(task)

        logger.info(
            "schedule_registered",
            task_id=task_id,
            schedule=schedule,
            dedicated=self.uses_dedicated_trigger(task),
            next_run=next_run.isoformat(),
        )
        return task

    async def unregister(self, plugin_id: str, schedule_id: str) -> None:
        """Stop one task and delete its row."""
        task = self._tasks.pop(f"{plugin_id}:{schedule_id}", None)
        if task is not None:
            await self._cancel_trigger(task)

        async with self._session_factory() as db:
            await db.execute(
                delete(PluginSchedule).where(
                    PluginSchedule.plugin_id == plugin_id,
                    PluginSchedule.schedule_id == schedule_id,
                )
            )
            await db.commit()

        logger.info("schedule_unregistered", task_id=f"{plugin_id}:{schedule_id}")

    async def unregister_plugin(self, plugin_id: str) -> None:
        """Stop every task a plugin owns and delete their rows."""
        owned = [t for t in self._tasks.values() if t.plugin_id == plugin_id]
        for task in owned:
            del self._tasks[task.id]
            await self._cancel_trigger(task)

        async with self._session_factory() as db:
            await db.execute(delete(PluginSchedule).where(PluginSchedule.plugin_id == plugin_id))
            await db.commit()

        logger.info("plugin_schedules_unregistered", plugin_id=plugin_id, count=len(owned))

    async def set_enabled(self, plugin_id: str, schedule_id: str, enabled: bool) -> bool:
        """Pause or resume a task. Returns False for an unknown task."""
        task = self._tasks.get(f"{plugin_id}:{schedule_id}")
        if task is None:
            return False
        task.is_enabled = enabled
        await self._update_row(task, is_enabled=enabled)
        return True

    # ============================================
    # Execution
    # ============================================

    async def tick(self, now: datetime | None = None) -> list[str]:
        """
        Run every enabled shared-tick task that is due.

        Tasks run one after another. Returns the ids of tasks that ran.
        """
        now = now or utcnow()
        ran = []
        for task in list(self._tasks.values()):
            if not task.is_enabled or task.next_run is None:
                continue
            if self.uses_dedicated_trigger(task):
                continue
            if task.next_run <= now and await self.execute(task):
                ran.append(task.id)
        return ran

    async def execute(self, task: ScheduledTask) -> bool:
        """
        Run a task's handler once.

        Returns False without calling the handler when a previous run of
        the same task is still in flight.
        """
        if task.is_running:
            logger.warning("scheduled_task_still_running", task_id=task.id)
            track_scheduled_run(task.plugin_id, task.schedule_id, "skipped")
            return False

        task.is_running = True
        await self._update_row(task, is_running=True)
        logger.info("scheduled_task_started", task_id=task.id)

        status = "success"
        try:
            await task.handler(task.context)
        except Exception as e:
            status = "failed"
            logger.error("scheduled_task_failed", task_id=task.id, error=str(e))
            capture_exception(e)
        finally:
            task.is_running = False
            task.last_run = utcnow()
            task.next_run = self.calculate_next_run(task.cron_expression, task.interval_ms, task.last_run)
            await self._update_row(
                task,
                is_running=False,
                last_run=task.last_run,
                next_run=task.next_run,
            )

        track_scheduled_run(task.plugin_id, task.schedule_id, status)
        logger.info("scheduled_task_finished", task_id=task.id, status=status, next_run=task.next_run.isoformat())
        return True

    async def run_now(self, plugin_id: str, schedule_id: str) -> bool:
        """Run a task immediately. Returns False for an unknown or busy task."""
        task = self._tasks.get(f"{plugin_id}:{schedule_id}")
        if task is None:
            return False
        return await self.execute(task)

    async def _update_row(self, task: ScheduledTask, **values) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(PluginSchedule)
                .where(
                    PluginSchedule.plugin_id == task.plugin_id,
                    PluginSchedule.schedule_id == task.schedule_id,
                )
                .values(**values)
            )
            await db.commit()

    # ============================================
    # Introspection
    # ============================================

    def get_task(self, plugin_id: str, schedule_id: str) -> ScheduledTask | None:
        return self._tasks.get(f"{plugin_id}:{schedule_id}")

    def get_plugin_schedules(self, plugin_id: str) -> list[ScheduledTask]:
        return [t for t in self._tasks.values() if t.plugin_id == plugin_id]

    def get_all_schedules(self) -> list[ScheduledTask]:
        return list(self._tasks.values())


async def _wait_cancelled(task: asyncio.Task) -> None:
    try:
        await task
    except asyncio.CancelledError:
        pass
