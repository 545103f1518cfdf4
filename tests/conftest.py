import asyncio
import datetime

import pytest
import pytz
from sqlalchemy.orm import sessionmaker

from config import SchedulerConfig
from database import init_db, make_engine
from errors import AlertDeliveryFailure
from scheduler import ReminderScheduler
from store import KeyValueStore, ReminderStore, SettingsStore


class FakeClock:
    tz = pytz.UTC

    def __init__(self, now):
        self.current = now

    def now(self):
        return self.current

    def today(self):
        return self.current.date()

    def set(self, *args):
        self.current = datetime.datetime(*args)


class RecordingAlertSink:
    def __init__(self):
        self.calls = []
        self.fail = False
        self.playing = False

    async def play_alarm(self):
        self.calls.append(("play_alarm",))
        if self.fail:
            raise AlertDeliveryFailure("audio blocked")
        self.playing = True

    async def stop_alarm(self):
        self.calls.append(("stop_alarm",))
        self.playing = False

    async def notify(self, title, body, reminder_id=None):
        self.calls.append(("notify", title, body))
        if self.fail:
            raise AlertDeliveryFailure("permission denied")

    def count(self, kind):
        return sum(1 for call in self.calls if call[0] == kind)


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'reminders-test.db'}")
    init_db(bind=engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def kv(session_factory):
    return KeyValueStore(session_factory)


@pytest.fixture
def reminder_store(kv):
    return ReminderStore(kv)


@pytest.fixture
def settings_store(kv):
    return SettingsStore(kv)


@pytest.fixture
def clock():
    return FakeClock(datetime.datetime(2024, 3, 4, 8, 0, 0))


@pytest.fixture
def sink():
    return RecordingAlertSink()


@pytest.fixture
def make_scheduler(reminder_store, sink, clock):
    def _make(store=None, **config):
        return ReminderScheduler(
            store or reminder_store, sink, clock=clock, config=SchedulerConfig(**config)
        )
    return _make


@pytest.fixture
def run():
    return asyncio.run
