"""
5-field cron support on top of croniter.

Fields are minute, hour, day of month, month and weekday (0 = Sunday).
Day of month and weekday must both match. Expressions with a seconds or
year field are rejected.
"""
from datetime import datetime, timedelta

from croniter import croniter

from commerce_core.exceptions import CronParseError

FIELD_COUNT = 5
DEFAULT_SEARCH_MINUTES = 1000


class CronExpression:
    """A validated cron expression."""

    def __init__(self, expression: str):
        self.expression = " ".join(expression.split())
        fields = self.expression.split(" ") if self.expression else []
        if len(fields) != FIELD_COUNT:
            raise CronParseError(expression, f"expected {FIELD_COUNT} fields, got {len(fields)}")
        try:
            croniter(self.expression, day_or=False)
        except (KeyError, ValueError) as e:
            raise CronParseError(expression, str(e)) from e

    def matches(self, moment: datetime) -> bool:
        """True when every field matches the minute containing `moment`."""
        return croniter.match(self.expression, moment.replace(second=0, microsecond=0), day_or=False)

    def next_after(self, moment: datetime, search_minutes: int = DEFAULT_SEARCH_MINUTES) -> datetime | None:
        """First matching whole minute strictly after `moment`, within the window."""
        start = moment.replace(second=0, microsecond=0)
        try:
            candidate = croniter(self.expression, start, day_or=False).get_next(datetime)
        except (KeyError, ValueError):
            # no date satisfies the expression (e.g. 31 February)
            return None
        if candidate - start > timedelta(minutes=search_minutes):
            return None
        return candidate

    def __repr__(self):
        return f"<CronExpression({self.expression!r})>"


def next_cron_run(
    expression: str,
    now: datetime,
    search_minutes: int = DEFAULT_SEARCH_MINUTES,
) -> datetime:
    """
    Next run time for a cron expression.

    Falls back to one minute from now when the expression is malformed or
    nothing matches inside the search window.
    """
    fallback = now + timedelta(minutes=1)
    try:
        cron = CronExpression(expression)
    except CronParseError:
        return fallback
    return cron.next_after(now, search_minutes) or fallback
