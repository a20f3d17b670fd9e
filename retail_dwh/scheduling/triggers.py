"""
Cron + timezone triggers for root tasks.

Accepted schedule forms: "<5-field cron> <timezone>", optionally prefixed
with "USING CRON", e.g. "USING CRON 0 2 * * * America/New_York".
"""

from datetime import datetime
from typing import Optional

import pytz
from croniter import croniter

from retail_dwh.common.exceptions import TaskGraphError

_PREFIX = 'USING CRON'


class CronTrigger:
    def __init__(self, expression: str, timezone: str = 'UTC'):
        if not croniter.is_valid(expression):
            raise TaskGraphError(f"Invalid cron expression: {expression!r}")
        try:
            self.tz = pytz.timezone(timezone)
        except pytz.UnknownTimeZoneError:
            raise TaskGraphError(f"Unknown timezone: {timezone!r}")
        self.expression = expression
        self.timezone = timezone

    @classmethod
    def parse(cls, schedule: str) -> 'CronTrigger':
        text = schedule.strip()
        if text.upper().startswith(_PREFIX):
            text = text[len(_PREFIX):].strip()
        parts = text.split()
        if len(parts) == 6:
            return cls(' '.join(parts[:5]), parts[5])
        if len(parts) == 5:
            return cls(' '.join(parts))
        raise TaskGraphError(f"Schedule must be '<cron> <timezone>', got {schedule!r}")

    def _localize(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = pytz.utc.localize(moment)
        return moment.astimezone(self.tz)

    def next_fire_after(self, moment: datetime) -> datetime:
        """First fire time strictly after moment, as an aware UTC datetime."""
        local = self._localize(moment)
        fire = croniter(self.expression, local).get_next(datetime)
        return fire.astimezone(pytz.utc)

    def local_date(self, moment: datetime):
        """Calendar date of moment in the trigger's timezone."""
        return self._localize(moment).date()

    def __repr__(self) -> str:
        return f"CronTrigger({self.expression!r}, {self.timezone!r})"


def parse_schedule(schedule: Optional[str]) -> Optional[CronTrigger]:
    if not schedule:
        return None
    return CronTrigger.parse(schedule)
