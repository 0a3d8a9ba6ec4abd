"""
Plugin definition types.

A plugin is plain data: a manifest plus optional lifecycle callbacks, hook
handlers keyed by hook name and schedule handlers keyed by schedule id.
"""
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from commerce_core.plugins.context import PluginContext

LifecycleCallback = Callable[["PluginContext"], Awaitable[None]]
HookHandler = Callable[[Any, "PluginContext"], Any]
ScheduleHandler = Callable[["PluginContext"], Awaitable[None]]


@dataclass
class PluginSchedule:
    """A recurring task declared by a plugin ("15m", "0 3 * * *", ...)."""
    id: str
    schedule: str
    description: str = ""


@dataclass
class PluginManifest:
    id: str
    name: str
    version: str
    description: str = ""
    author: str = ""
    hooks: list[str] = field(default_factory=list)
    schedules: list[PluginSchedule] = field(default_factory=list)
    default_config: dict[str, Any] = field(default_factory=dict)
    hook_priority: int = 10

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Plugin:
    manifest: PluginManifest
    install: LifecycleCallback | None = None
    activate: LifecycleCallback | None = None
    deactivate: LifecycleCallback | None = None
    uninstall: LifecycleCallback | None = None
    hooks: dict[str, HookHandler] = field(default_factory=dict)
    schedules: dict[str, ScheduleHandler] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.manifest.id
