# clock.py
import datetime

import pytz

from config import REMINDER_TIMEZONE


class Clock:
    """Wall-clock in the reminders' local timezone, returned as naive local time."""

    def __init__(self, timezone=REMINDER_TIMEZONE):
        self.tz = pytz.timezone(timezone) if isinstance(timezone, str) else timezone

    def now(self) -> datetime.datetime:
        return datetime.datetime.now(pytz.UTC).astimezone(self.tz).replace(tzinfo=None)

    def today(self) -> datetime.date:
        return self.now().date()
