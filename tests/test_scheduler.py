import datetime

import pytest

from errors import PersistenceError, ValidationError
from models import Frequency, Reminder
from scheduler import (
    TICK_JOB_ID, UPCOMING_JOB_ID, build_digest, evaluate_tick, find_upcoming
)


class FlakyStore:
    def __init__(self, inner):
        self.inner = inner
        self.fail = False
        self.saves = 0

    def load(self):
        return self.inner.load()

    def save(self, reminders):
        self.saves += 1
        if self.fail:
            raise PersistenceError("disk full")
        self.inner.save(reminders)


def test_aspirin_scenario(make_scheduler, clock, sink, reminder_store, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00", frequency="daily", notification_enabled=True)

        clock.set(2024, 3, 4, 8, 56)
        assert s.upcoming().id == r.id
        await s.tick()
        assert not s.get(r.id).alarm_active

        clock.set(2024, 3, 4, 9, 0, 30)
        result = await s.tick()
        assert result.fired == [r.id]
        assert s.get(r.id).alarm_active
        assert sink.count("play_alarm") == 1
        assert ("notify", "Medicine Reminder", "Time to take Aspirin") in sink.calls

        taken = await s.mark_taken(r.id)
        assert taken.alarm_active is False
        assert taken.last_taken_at == datetime.datetime(2024, 3, 4, 9, 0, 30)
        assert sink.calls[-1] == ("stop_alarm",)
        stored = reminder_store.load()[0]
        assert stored.alarm_active is False
        assert stored.last_taken_at == taken.last_taken_at

    run(scenario())


def test_repeated_ticks_fire_once_per_occurrence(make_scheduler, clock, sink, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        fired = []
        for second in (0, 10, 20, 30, 40, 50):
            clock.set(2024, 3, 4, 9, 0, second)
            fired += (await s.tick()).fired
            if second == 20:
                # acknowledging inside the window must not re-arm the same occurrence
                await s.mark_taken(r.id)
        assert fired == [r.id]
        assert sink.count("play_alarm") == 1

    run(scenario())


def test_fires_up_to_one_window_early(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 8, 58, 59)
        assert (await s.tick()).fired == []
        clock.set(2024, 3, 4, 8, 59, 30)
        assert (await s.tick()).fired == [r.id]

    run(scenario())


def test_late_tick_still_fires_missed_dose(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 9, 20)
        assert (await s.tick()).fired == [r.id]

    run(scenario())


def test_occurrence_before_creation_does_not_fire(make_scheduler, clock, run):
    async def scenario():
        clock.set(2024, 3, 4, 10, 0)
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 10, 0, 30)
        assert (await s.tick()).fired == []
        clock.set(2024, 3, 5, 9, 0, 10)
        assert (await s.tick()).fired == [r.id]

    run(scenario())


def test_two_reminders_fire_and_acknowledge_independently(make_scheduler, clock, sink, run):
    async def scenario():
        s = make_scheduler()
        a = await s.add("Aspirin", "09:00")
        b = await s.add("Metformin", "09:00")
        clock.set(2024, 3, 4, 9, 0, 5)
        result = await s.tick()
        assert sorted(result.fired) == sorted([a.id, b.id])

        await s.mark_taken(a.id)
        assert not s.get(a.id).alarm_active
        assert s.get(b.id).alarm_active
        assert sink.count("stop_alarm") == 0

        await s.mark_taken(b.id)
        assert sink.count("stop_alarm") == 1

    run(scenario())


def test_disabled_reminder_never_fires(make_scheduler, clock, sink, run):
    async def scenario():
        s = make_scheduler()
        await s.add("Aspirin", "09:00", notification_enabled=False)
        clock.set(2024, 3, 4, 9, 0, 10)
        assert (await s.tick()).fired == []
        assert sink.calls == []

    run(scenario())


def test_unacknowledged_alarm_stays_active_across_days(make_scheduler, clock, sink, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 9, 0, 10)
        await s.tick()
        clock.set(2024, 3, 5, 9, 0, 10)
        assert (await s.tick()).fired == []
        assert s.get(r.id).alarm_active
        assert sink.count("play_alarm") == 1

    run(scenario())


def test_daily_rearms_after_acknowledgement(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 9, 0, 10)
        await s.tick()
        await s.mark_taken(r.id)
        clock.set(2024, 3, 5, 9, 0, 10)
        assert (await s.tick()).fired == [r.id]

    run(scenario())


def test_weekly_only_fires_on_its_weekday(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Vitamin D", "09:00", frequency="weekly")
        clock.set(2024, 3, 5, 9, 0, 10)
        assert (await s.tick()).fired == []
        clock.set(2024, 3, 11, 9, 0, 10)
        assert (await s.tick()).fired == [r.id]

    run(scenario())


def test_mark_taken_without_alarm_records_timestamp(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "21:00")
        taken = await s.mark_taken(r.id)
        assert taken.alarm_active is False
        assert taken.last_taken_at == clock.now()
        assert await s.mark_taken("missing") is None

    run(scenario())


@pytest.mark.parametrize("name,time_of_day,frequency", [
    ("", "09:00", "daily"),
    ("   ", "09:00", "daily"),
    ("Aspirin", "25:00", "daily"),
    ("Aspirin", "9am", "daily"),
    ("Aspirin", "09:00", "hourly"),
])
def test_add_rejects_invalid_input_without_persisting(
        make_scheduler, reminder_store, run, name, time_of_day, frequency):
    async def scenario():
        s = make_scheduler()
        with pytest.raises(ValidationError):
            await s.add(name, time_of_day, frequency=frequency)
        assert s.all() == []

    run(scenario())
    assert reminder_store.load() == []


def test_add_then_load_yields_identical_reminder(make_scheduler, reminder_store, run):
    async def scenario():
        s = make_scheduler()
        first = await s.add("Aspirin", "9:00", notes=" after food ", frequency="Monthly")
        second = await s.add("Aspirin", "09:00")
        return first, second

    first, second = run(scenario())
    assert first.id != second.id
    assert first.time_of_day == "09:00"
    assert first.notes == "after food"
    assert first.frequency is Frequency.MONTHLY
    loaded = {r.id: r for r in reminder_store.load()}
    assert loaded[first.id] == first
    assert loaded[second.id] == second


def test_remove(make_scheduler, reminder_store, run):
    async def scenario():
        s = make_scheduler()
        a = await s.add("Aspirin", "09:00")
        b = await s.add("Ibuprofen", "18:00")
        assert await s.remove(a.id) is True
        assert await s.remove(a.id) is False
        assert await s.remove("does-not-exist") is False
        return a, b

    a, b = run(scenario())
    ids = [r.id for r in reminder_store.load()]
    assert a.id not in ids
    assert ids == [b.id]


def test_removing_ringing_reminder_stops_alarm(make_scheduler, clock, sink, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 9, 0, 10)
        await s.tick()
        await s.remove(r.id)
        assert sink.calls[-1] == ("stop_alarm",)

    run(scenario())


def test_toggle_notification_persists_and_silences(make_scheduler, clock, sink, reminder_store, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 9, 0, 10)
        await s.tick()
        off = await s.toggle_notification(r.id)
        assert off.notification_enabled is False
        assert off.alarm_active is False
        assert sink.calls[-1] == ("stop_alarm",)
        assert reminder_store.load()[0].notification_enabled is False
        on = await s.toggle_notification(r.id)
        assert on.notification_enabled is True
        # same occurrence already fired
        assert (await s.tick()).fired == []
        assert await s.toggle_notification("missing") is None

    run(scenario())


def test_update_edits_fields_and_rearms(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 9, 0, 10)
        await s.tick()
        await s.mark_taken(r.id)
        updated = await s.update(r.id, time_of_day="09:30", notes="with water")
        assert updated.id == r.id
        assert updated.time_of_day == "09:30"
        assert updated.notes == "with water"
        assert updated.last_fired_for is None
        clock.set(2024, 3, 4, 9, 30, 5)
        assert (await s.tick()).fired == [r.id]
        with pytest.raises(ValidationError):
            await s.update(r.id, medicine_name="")
        with pytest.raises(ValidationError):
            await s.update(r.id, alarm_active=False)
        assert await s.update("missing", notes="x") is None

    run(scenario())


def test_rescheduling_to_a_past_time_does_not_ring_until_next_day(make_scheduler, clock, sink, reminder_store, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "20:00")
        clock.set(2024, 3, 5, 15, 0)
        updated = await s.update(r.id, time_of_day="08:00")
        assert updated.armed_at == datetime.datetime(2024, 3, 5, 15, 0)
        clock.set(2024, 3, 5, 15, 0, 10)
        assert (await s.tick()).fired == []
        assert sink.count("play_alarm") == 0
        clock.set(2024, 3, 6, 8, 0, 10)
        assert (await s.tick()).fired == [r.id]

    run(scenario())
    assert reminder_store.load()[0].armed_at == datetime.datetime(2024, 3, 5, 15, 0)


def test_editing_notes_keeps_todays_occurrence_armed(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 9, 30)
        updated = await s.update(r.id, notes="with water")
        assert updated.armed_at is None
        # the 09:00 dose was scheduled before the edit, so it is still a missed dose
        assert (await s.tick()).fired == [r.id]

    run(scenario())


def test_announced_upcoming_keys_are_pruned_after_the_day(make_scheduler, clock, run):
    async def listener(reminder):
        pass

    async def scenario():
        s = make_scheduler()
        s.on_upcoming = listener
        await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 8, 56)
        await s.refresh_upcoming()
        assert len(s._announced) == 1
        clock.set(2024, 3, 5, 12, 0)
        await s.refresh_upcoming()
        assert s._announced == set()

    run(scenario())


def test_upcoming_window_bounds(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        assert s.upcoming(datetime.datetime(2024, 3, 4, 8, 54, 59)) is None
        assert s.upcoming(datetime.datetime(2024, 3, 4, 8, 55)).id == r.id
        assert s.upcoming(datetime.datetime(2024, 3, 4, 8, 59, 59)).id == r.id
        assert s.upcoming(datetime.datetime(2024, 3, 4, 9, 0)) is None

    run(scenario())


def test_upcoming_includes_muted_but_not_fired(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        muted = await s.add("Aspirin", "09:00", notification_enabled=False)
        assert s.upcoming(datetime.datetime(2024, 3, 4, 8, 57)).id == muted.id
        loud = await s.add("Metformin", "09:01")
        await s.remove(muted.id)
        clock.set(2024, 3, 4, 9, 0, 30)
        await s.tick()
        assert s.get(loud.id).alarm_active
        assert s.upcoming() is None
        assert s.current_upcoming is None

    run(scenario())


def test_refresh_upcoming_announces_once(make_scheduler, clock, run):
    announced = []

    async def listener(reminder):
        announced.append(reminder.medicine_name)

    async def scenario():
        s = make_scheduler()
        s.on_upcoming = listener
        await s.add("Aspirin", "09:00")
        clock.set(2024, 3, 4, 8, 56)
        await s.refresh_upcoming()
        clock.set(2024, 3, 4, 8, 57)
        await s.refresh_upcoming()
        assert s.current_upcoming.medicine_name == "Aspirin"

    run(scenario())
    assert announced == ["Aspirin"]


def test_malformed_reminder_is_skipped_not_fatal(make_scheduler, clock, run):
    async def scenario():
        s = make_scheduler()
        good = await s.add("Aspirin", "09:00")
        bad = Reminder(medicine_name="Broken", time_of_day="99:99", created_at=clock.now())
        s._reminders.append(bad)
        clock.set(2024, 3, 4, 9, 0, 10)
        result = await s.tick()
        assert result.fired == [good.id]
        assert result.skipped == [bad.id]

    run(scenario())


def test_failed_save_is_retried_on_next_operation(make_scheduler, reminder_store, clock, run):
    flaky = FlakyStore(reminder_store)

    async def scenario():
        s = make_scheduler(store=flaky)
        flaky.fail = True
        r = await s.add("Aspirin", "09:00")
        assert s.get(r.id) is not None
        assert reminder_store.load() == []
        flaky.fail = False
        await s.tick()
        return r

    r = run(scenario())
    assert [x.id for x in reminder_store.load()] == [r.id]


def test_alert_failure_keeps_alarm_active_and_retries(make_scheduler, clock, sink, run):
    async def scenario():
        s = make_scheduler()
        r = await s.add("Aspirin", "09:00")
        sink.fail = True
        clock.set(2024, 3, 4, 9, 0, 10)
        result = await s.tick()
        assert result.fired == [r.id]
        assert s.get(r.id).alarm_active
        sink.fail = False
        clock.set(2024, 3, 4, 9, 0, 40)
        assert (await s.tick()).fired == []
        assert sink.count("play_alarm") == 2
        assert sink.count("notify") == 2
        assert sink.playing
        clock.set(2024, 3, 4, 9, 1, 10)
        await s.tick()
        assert sink.count("play_alarm") == 2

    run(scenario())


def test_start_and_stop_manage_polling_jobs(make_scheduler, sink, run):
    async def scenario():
        s = make_scheduler(tick_interval=1, upcoming_interval=1)
        s.start()
        try:
            assert s.jobs.get_job(TICK_JOB_ID) is not None
            assert s.jobs.get_job(UPCOMING_JOB_ID) is not None
            await s.stop()
            assert s.jobs.get_job(TICK_JOB_ID) is None
            assert s.jobs.get_job(UPCOMING_JOB_ID) is None
            assert ("stop_alarm",) in sink.calls
        finally:
            s.jobs.shutdown(wait=False)

    run(scenario())


def test_evaluate_tick_does_not_mutate_input():
    r = Reminder(medicine_name="Aspirin", time_of_day="09:00",
                 created_at=datetime.datetime(2024, 3, 4, 8, 0))
    result = evaluate_tick([r], datetime.datetime(2024, 3, 4, 9, 0), due_window=60)
    assert r.alarm_active is False
    assert result.reminders[0].alarm_active is True
    assert result.reminders[0].last_fired_for == datetime.datetime(2024, 3, 4, 9, 0)
    assert [e.kind for e in result.effects] == ["play_alarm", "notify"]


def test_find_upcoming_returns_first_in_collection_order():
    created = datetime.datetime(2024, 3, 4, 8, 0)
    later = Reminder(medicine_name="B", time_of_day="09:04", created_at=created)
    sooner = Reminder(medicine_name="A", time_of_day="09:01", created_at=created)
    assert find_upcoming([later, sooner], datetime.datetime(2024, 3, 4, 9, 0)) is later


def test_build_digest_lists_todays_reminders_by_time():
    created = datetime.datetime(2024, 3, 4, 8, 0)
    reminders = [
        Reminder(medicine_name="Metformin", time_of_day="20:00", created_at=created),
        Reminder(medicine_name="Aspirin", time_of_day="09:00", notes="after food", created_at=created),
        Reminder(medicine_name="Vitamin D", time_of_day="10:00", frequency=Frequency.WEEKLY,
                 created_at=created),
    ]
    assert build_digest(reminders, datetime.date(2024, 3, 5)) == (
        "Today's medications:\n- 09:00 Aspirin (after food)\n- 20:00 Metformin"
    )
    assert build_digest([], datetime.date(2024, 3, 5)) == "No medications scheduled today."
