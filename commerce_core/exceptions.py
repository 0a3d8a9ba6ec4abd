"""
Exceptions raised by the commerce core.

Infrastructure and job-level errors are recovered where they happen;
plugin lifecycle errors are raised to the operator that asked for the
transition.
"""


class CommerceCoreError(Exception):
    """Base exception for the commerce core."""
    pass


class QueueUnavailableError(CommerceCoreError):
    """The durable queue backend lost its broker connection."""

    def __init__(self, queue_name: str, reason: str):
        self.queue_name = queue_name
        self.reason = reason
        super().__init__(f"Queue '{queue_name}' unavailable: {reason}")


class CronParseError(CommerceCoreError):
    """Malformed cron expression."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression '{expression}': {reason}")


class PluginError(CommerceCoreError):
    """Base exception for plugin lifecycle failures."""

    def __init__(self, plugin_id: str, message: str):
        self.plugin_id = plugin_id
        super().__init__(message)


class PluginNotFoundError(PluginError):
    """Plugin is neither registered nor installed."""
    pass


class PluginStateError(PluginError):
    """Requested transition is not allowed from the current state."""
    pass


class PluginInstallError(PluginError):
    pass


class PluginActivationError(PluginError):
    pass


class PluginDeactivationError(PluginError):
    pass


class PluginUninstallError(PluginError):
    pass


class WebhookDeliveryError(CommerceCoreError):
    """A delivery attempt failed; raised so the job queue retries it."""

    def __init__(self, delivery_id: str):
        self.delivery_id = delivery_id
        super().__init__(f"Webhook delivery {delivery_id} failed")
