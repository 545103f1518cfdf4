# scheduler.py
import asyncio
import datetime
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from clock import Clock
from config import SchedulerConfig
from errors import AlertDeliveryFailure, PersistenceError, ValidationError
from models import Frequency, Reminder, format_time_of_day
from recurrence import occurs_on, scheduled_for

logger = logging.getLogger(__name__)

TICK_JOB_ID = "reminder_tick"
UPCOMING_JOB_ID = "reminder_upcoming"
ALARM_TITLE = "Medicine Reminder"

EDITABLE_FIELDS = {"medicine_name", "time_of_day", "notes", "frequency", "notification_enabled"}


@dataclass
class AlertEffect:
    kind: str  # "play_alarm" or "notify"
    title: str = ""
    body: str = ""
    reminder_id: Optional[str] = None


@dataclass
class TickResult:
    reminders: List[Reminder]
    effects: List[AlertEffect] = field(default_factory=list)
    fired: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def _todays_occurrence(reminder, now):
    if not occurs_on(reminder, now.date()):
        return None
    return scheduled_for(reminder, now.date())


def _due_occurrence(reminder, now, due_window):
    """Scheduled instant that should fire now, or None."""
    if not reminder.notification_enabled or reminder.alarm_active:
        return None
    scheduled = _todays_occurrence(reminder, now)
    if scheduled is None or reminder.last_fired_for == scheduled:
        return None
    # occurrences from before the reminder existed, or before its last
    # reschedule, are not missed doses
    armed = max(reminder.created_at, reminder.armed_at or reminder.created_at)
    if scheduled < armed.replace(second=0, microsecond=0):
        return None
    if (scheduled - now).total_seconds() > due_window:
        return None
    return scheduled


def evaluate_tick(reminders, now, due_window=60) -> TickResult:
    """One pass over the reminders: which alarms start now.

    A reminder fires from ``due_window`` seconds before its scheduled instant
    until the end of that day, once per occurrence. An alarm that is already
    sounding is left alone until it is acknowledged.
    """
    result = TickResult(reminders=[])
    for reminder in reminders:
        try:
            scheduled = _due_occurrence(reminder, now, due_window)
        except (TypeError, ValueError, AttributeError, ValidationError) as e:
            logger.error(f"Skipping malformed reminder {getattr(reminder, 'id', '?')}: {e}")
            result.reminders.append(reminder)
            result.skipped.append(getattr(reminder, "id", None))
            continue
        if scheduled is None:
            result.reminders.append(reminder)
            continue
        result.reminders.append(reminder.copy(alarm_active=True, last_fired_for=scheduled))
        result.fired.append(reminder.id)
        result.effects.append(AlertEffect("play_alarm", reminder_id=reminder.id))
        result.effects.append(AlertEffect(
            "notify",
            title=ALARM_TITLE,
            body=f"Time to take {reminder.medicine_name}",
            reminder_id=reminder.id,
        ))
    return result


def find_upcoming(reminders, now, window=300) -> Optional[Reminder]:
    """First reminder due within the next ``window`` seconds that has not fired."""
    for reminder in reminders:
        try:
            scheduled = _todays_occurrence(reminder, now)
        except (TypeError, ValueError, AttributeError, ValidationError) as e:
            logger.error(f"Skipping malformed reminder {getattr(reminder, 'id', '?')}: {e}")
            continue
        if scheduled is None or reminder.last_fired_for == scheduled:
            continue
        delta = (scheduled - now).total_seconds()
        if 0 < delta <= window:
            return reminder
    return None


def build_digest(reminders, day: datetime.date) -> str:
    todays = []
    for reminder in reminders:
        try:
            if occurs_on(reminder, day):
                todays.append(reminder)
        except (TypeError, ValueError, AttributeError, ValidationError):
            continue
    if not todays:
        return "No medications scheduled today."
    lines = ["Today's medications:"]
    for r in sorted(todays, key=lambda r: r.time_of_day):
        line = f"- {r.time_of_day} {r.medicine_name}"
        if r.notes:
            line += f" ({r.notes})"
        lines.append(line)
    return "\n".join(lines)


def _validated_fields(medicine_name, time_of_day, frequency):
    if not isinstance(medicine_name, str) or not medicine_name.strip():
        raise ValidationError("Medicine name is required")
    return medicine_name.strip(), format_time_of_day(time_of_day), Frequency.parse(frequency)


class ReminderScheduler:
    """Owns the reminder collection, its persistence and the alarm lifecycle.

    Every mutating operation holds one asyncio lock across the in-memory change
    and the store write, so ticks and user actions never interleave.
    """

    def __init__(self, store, alert_sink, clock=None, config=None, jobs=None, on_upcoming=None):
        self.store = store
        self.alert_sink = alert_sink
        self.clock = clock or Clock()
        self.config = config or SchedulerConfig()
        self.jobs = jobs
        self.on_upcoming = on_upcoming
        self._reminders: List[Reminder] = store.load()
        self._lock = asyncio.Lock()
        self._dirty = False
        self._undelivered = set()
        self._current_upcoming: Optional[Reminder] = None
        self._announced = set()
        logger.info(f"Loaded {len(self._reminders)} reminders")

    # --- queries ---

    def all(self) -> List[Reminder]:
        return list(self._reminders)

    def get(self, reminder_id) -> Optional[Reminder]:
        for r in self._reminders:
            if r.id == reminder_id:
                return r
        return None

    def active_alarms(self) -> List[Reminder]:
        return [r for r in self._reminders if r.alarm_active]

    def upcoming(self, now=None) -> Optional[Reminder]:
        now = now or self.clock.now()
        return find_upcoming(self._reminders, now, self.config.upcoming_window)

    @property
    def current_upcoming(self) -> Optional[Reminder]:
        return self._current_upcoming

    # --- mutations ---

    async def add(self, medicine_name, time_of_day, notes="", frequency="daily",
                  notification_enabled=True) -> Reminder:
        name, time_str, freq = _validated_fields(medicine_name, time_of_day, frequency)
        reminder = Reminder(
            medicine_name=name,
            time_of_day=time_str,
            notes=(notes or "").strip(),
            frequency=freq,
            notification_enabled=bool(notification_enabled),
            created_at=self.clock.now(),
        )
        async with self._lock:
            self._reminders.append(reminder)
            await self._persist()
        logger.info(f"Added reminder {reminder.id}: {name} at {time_str} ({freq.value})")
        return reminder

    async def update(self, reminder_id, **changes) -> Optional[Reminder]:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot edit fields: {', '.join(sorted(unknown))}")
        async with self._lock:
            current = self.get(reminder_id)
            if current is None:
                return None
            name, time_str, freq = _validated_fields(
                changes.get("medicine_name", current.medicine_name),
                changes.get("time_of_day", current.time_of_day),
                changes.get("frequency", current.frequency),
            )
            updated = current.copy(
                medicine_name=name,
                time_of_day=time_str,
                frequency=freq,
                notes=(changes.get("notes", current.notes) or "").strip(),
                notification_enabled=bool(changes.get("notification_enabled", current.notification_enabled)),
            )
            if (time_str, freq) != (current.time_of_day, current.frequency):
                updated.last_fired_for = None
                updated.armed_at = self.clock.now()
            self._replace(updated)
            await self._persist()
        return updated

    async def remove(self, reminder_id) -> bool:
        async with self._lock:
            before = len(self._reminders)
            self._reminders = [r for r in self._reminders if r.id != reminder_id]
            removed = len(self._reminders) != before
            self._undelivered.discard(reminder_id)
            await self._persist()
            if removed and not self.active_alarms():
                await self._call_sink(self.alert_sink.stop_alarm())
        if removed:
            logger.info(f"Removed reminder {reminder_id}")
        return removed

    async def toggle_notification(self, reminder_id) -> Optional[Reminder]:
        async with self._lock:
            current = self.get(reminder_id)
            if current is None:
                return None
            enabled = not current.notification_enabled
            updated = current.copy(
                notification_enabled=enabled,
                alarm_active=current.alarm_active and enabled,
            )
            self._replace(updated)
            await self._persist()
            if current.alarm_active and not self.active_alarms():
                await self._call_sink(self.alert_sink.stop_alarm())
        return updated

    async def mark_taken(self, reminder_id) -> Optional[Reminder]:
        async with self._lock:
            current = self.get(reminder_id)
            if current is None:
                logger.warning(f"mark_taken: no reminder {reminder_id}")
                return None
            updated = current.copy(last_taken_at=self.clock.now(), alarm_active=False)
            self._replace(updated)
            self._undelivered.discard(reminder_id)
            await self._persist()
            if not self.active_alarms():
                await self._call_sink(self.alert_sink.stop_alarm())
        logger.info(f"Dose taken: {updated.medicine_name}")
        return updated

    async def tick(self, now=None) -> TickResult:
        async with self._lock:
            now = now or self.clock.now()
            result = evaluate_tick(self._reminders, now, self.config.due_window)
            self._reminders = result.reminders
            if result.fired or self._dirty:
                await self._persist()
            for reminder_id in result.fired:
                logger.info(f"Alarm started for reminder {reminder_id}")
            await self._dispatch(result.effects)
            await self._retry_undelivered(set(result.fired))
            self._current_upcoming = find_upcoming(self._reminders, now, self.config.upcoming_window)
        return result

    async def refresh_upcoming(self, now=None) -> Optional[Reminder]:
        now = now or self.clock.now()
        upcoming = self.upcoming(now)
        self._current_upcoming = upcoming
        self._announced = {key for key in self._announced if key[1].date() >= now.date()}
        if upcoming is not None and self.on_upcoming is not None:
            key = (upcoming.id, scheduled_for(upcoming, now.date()))
            if key not in self._announced:
                self._announced.add(key)
                try:
                    await self.on_upcoming(upcoming)
                except Exception as e:
                    logger.error(f"Upcoming listener failed: {e}")
        return upcoming

    # --- lifecycle ---

    def start(self):
        if self.jobs is None:
            self.jobs = AsyncIOScheduler(timezone=self.clock.tz)
        self.jobs.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.config.tick_interval),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.datetime.now(self.clock.tz),
        )
        self.jobs.add_job(
            self.refresh_upcoming,
            trigger=IntervalTrigger(seconds=self.config.upcoming_interval),
            id=UPCOMING_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.datetime.now(self.clock.tz),
        )
        if not self.jobs.running:
            self.jobs.start()
        logger.info("Reminder scheduler started")

    async def stop(self):
        if self.jobs is not None:
            for job_id in (TICK_JOB_ID, UPCOMING_JOB_ID):
                if self.jobs.get_job(job_id) is not None:
                    self.jobs.remove_job(job_id)
        await self._call_sink(self.alert_sink.stop_alarm())
        logger.info("Reminder scheduler stopped")

    # --- internals ---

    def _replace(self, updated):
        self._reminders = [updated if r.id == updated.id else r for r in self._reminders]

    async def _persist(self):
        snapshot = list(self._reminders)
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, self.store.save, snapshot),
                timeout=self.config.io_timeout,
            )
        except (PersistenceError, asyncio.TimeoutError) as e:
            self._dirty = True
            logger.error(f"Saving reminders failed, will retry on next change: {e!r}")
            return False
        self._dirty = False
        return True

    async def _call_sink(self, coro):
        try:
            await asyncio.wait_for(coro, timeout=self.config.io_timeout)
        except (AlertDeliveryFailure, asyncio.TimeoutError) as e:
            logger.warning(f"Alert delivery failed: {e!r}")
            return False
        return True

    async def _dispatch(self, effects):
        for effect in effects:
            if effect.kind == "play_alarm":
                ok = await self._call_sink(self.alert_sink.play_alarm())
            else:
                ok = await self._call_sink(
                    self.alert_sink.notify(effect.title, effect.body, reminder_id=effect.reminder_id)
                )
            if not ok and effect.reminder_id:
                self._undelivered.add(effect.reminder_id)

    async def _retry_undelivered(self, exclude):
        for reminder_id in list(self._undelivered - exclude):
            reminder = self.get(reminder_id)
            if reminder is None or not reminder.alarm_active:
                self._undelivered.discard(reminder_id)
                continue
            self._undelivered.discard(reminder_id)
            await self._dispatch([
                AlertEffect("play_alarm", reminder_id=reminder_id),
                AlertEffect("notify", title=ALARM_TITLE,
                            body=f"Time to take {reminder.medicine_name}", reminder_id=reminder_id),
            ])
