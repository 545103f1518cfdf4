# recurrence.py
import calendar
import datetime

from models import Frequency


def occurs_on(reminder, day: datetime.date) -> bool:
    """Whether the reminder has an occurrence on the given local date.

    Weekly reminders repeat on the weekday they were created, monthly ones on
    the same day of the month (clamped to the month's last day).
    """
    anchor = reminder.created_at.date()
    if reminder.frequency == Frequency.DAILY:
        return True
    if reminder.frequency == Frequency.WEEKLY:
        return day.weekday() == anchor.weekday()
    if reminder.frequency == Frequency.MONTHLY:
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.day == min(anchor.day, last_day)
    return False


def scheduled_for(reminder, day: datetime.date) -> datetime.datetime:
    return datetime.datetime.combine(day, reminder.time)


def next_occurrence(reminder, now: datetime.datetime, horizon_days=62):
    """First scheduled instant at or after ``now``, or None past the horizon."""
    for offset in range(horizon_days + 1):
        day = now.date() + datetime.timedelta(days=offset)
        if not occurs_on(reminder, day):
            continue
        when = scheduled_for(reminder, day)
        if when >= now:
            return when
    return None
