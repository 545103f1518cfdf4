# store.py
import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from config import REMINDERS_KEY, SETTINGS_KEY
from database import SessionLocal
from errors import PersistenceError, ValidationError
from models import NotificationSettings, Reminder, StoredValue

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Durable key -> JSON blob storage. Each key is read and written whole."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def get(self, key):
        try:
            with self.session_factory() as db:
                row = db.get(StoredValue, key)
                raw = row.value if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read {key!r}: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Stored value for {key!r} is not valid JSON") from e

    def set(self, key, value):
        raw = json.dumps(value)
        try:
            with self.session_factory() as db:
                row = db.get(StoredValue, key)
                if row is None:
                    db.add(StoredValue(key=key, value=raw))
                else:
                    row.value = raw
                db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to write {key!r}: {e}") from e


class ReminderStore:
    """Loads and saves the whole reminder collection under one key."""

    def __init__(self, kv=None, key=REMINDERS_KEY):
        self.kv = kv or KeyValueStore()
        self.key = key

    def load(self):
        try:
            data = self.kv.get(self.key)
        except PersistenceError as e:
            logger.error(f"Could not load reminders, starting empty: {e}")
            return []
        if not isinstance(data, list):
            if data is not None:
                logger.error(f"Stored reminders under {self.key!r} are not a list, ignoring")
            return []
        reminders = []
        seen = set()
        for item in data:
            try:
                reminder = Reminder.from_dict(item)
            except (KeyError, TypeError, ValueError, AttributeError, ValidationError) as e:
                logger.warning(f"Skipping corrupt stored reminder {item!r}: {e}")
                continue
            if reminder.id in seen:
                logger.warning(f"Skipping duplicate reminder id {reminder.id}")
                continue
            seen.add(reminder.id)
            reminders.append(reminder)
        return reminders

    def save(self, reminders):
        self.kv.set(self.key, [r.to_dict() for r in reminders])


class SettingsStore:
    """Notification settings blob."""

    def __init__(self, kv=None, key=SETTINGS_KEY):
        self.kv = kv or KeyValueStore()
        self.key = key

    def load(self):
        try:
            data = self.kv.get(self.key)
            if isinstance(data, dict):
                return NotificationSettings.from_dict(data)
        except (PersistenceError, TypeError, ValueError, ValidationError) as e:
            logger.error(f"Could not load notification settings: {e}")
        return NotificationSettings()

    def save(self, settings):
        self.kv.set(self.key, settings.to_dict())
