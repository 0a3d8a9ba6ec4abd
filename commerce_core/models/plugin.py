"""
Plugin models.

The plugin manager is the only writer of these tables; the scheduler owns
the plugin_schedules rows.
"""
import enum
from datetime import datetime
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from commerce_core.models.base import Base, utcnow


class PluginStatus(str, enum.Enum):
    """Plugin lifecycle status."""
    INSTALLED = "installed"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class PluginRecord(Base):
    """Installed plugin state."""
    __tablename__ = "plugins"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    author: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PluginStatus.INSTALLED.value)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manifest: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_installed: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    date_activated: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    date_modified: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self):
        return f"<PluginRecord(id={self.id}, version={self.version}, status={self.status})>"


class PluginLog(Base):
    """Log line written by a plugin through its context."""
    __tablename__ = "plugin_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class PluginSchedule(Base):
    """Persisted state of one scheduled task, keyed by (plugin_id, schedule_id)."""
    __tablename__ = "plugin_schedules"
    __table_args__ = (
        UniqueConstraint("plugin_id", "schedule_id", name="uq_plugin_schedules_plugin_schedule"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    schedule_id: Mapped[str] = mapped_column(String(100), nullable=False)
    cron_expression: Mapped[str | None] = mapped_column(String(100), nullable=True)
    interval_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    next_run: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_run: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_running: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<PluginSchedule(plugin_id={self.plugin_id}, schedule_id={self.schedule_id})>"
