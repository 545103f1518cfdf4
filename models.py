# models.py
import datetime
import enum
import re
import uuid
from dataclasses import dataclass, field, replace
from typing import Optional

from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func

from database import Base
from errors import ValidationError

TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


class StoredValue(Base):
    """One JSON blob per well-known key."""

    __tablename__ = "stored_values"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Frequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown frequency: {value!r}") from None


def parse_time_of_day(value):
    """Parse "HH:MM" (24h) into a datetime.time, raising ValidationError."""
    if isinstance(value, datetime.time):
        return value.replace(second=0, microsecond=0)
    m = TIME_RE.match(value or "")
    if not m:
        raise ValidationError(f"Time must look like HH:MM, got {value!r}")
    hour, minute = int(m.group(1)), int(m.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValidationError(f"Time out of range: {value!r}")
    return datetime.time(hour, minute)


def format_time_of_day(value):
    return parse_time_of_day(value).strftime("%H:%M")


def _dt_to_str(value):
    return value.isoformat() if value is not None else None


def _dt_from_str(value):
    if value in (None, ""):
        return None
    return datetime.datetime.fromisoformat(value)


@dataclass
class Reminder:
    medicine_name: str
    time_of_day: str
    frequency: Frequency = Frequency.DAILY
    notes: str = ""
    notification_enabled: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    last_taken_at: Optional[datetime.datetime] = None
    alarm_active: bool = False
    last_fired_for: Optional[datetime.datetime] = None
    armed_at: Optional[datetime.datetime] = None

    @property
    def time(self) -> datetime.time:
        return parse_time_of_day(self.time_of_day)

    def copy(self, **changes) -> "Reminder":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "medicineName": self.medicine_name,
            "timeOfDay": self.time_of_day,
            "notes": self.notes,
            "frequency": self.frequency.value,
            "notificationEnabled": self.notification_enabled,
            "lastTakenAt": _dt_to_str(self.last_taken_at),
            "alarmActive": self.alarm_active,
            "createdAt": _dt_to_str(self.created_at),
            "lastFiredFor": _dt_to_str(self.last_fired_for),
            "armedAt": _dt_to_str(self.armed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Reminder":
        name = data["medicineName"]
        if not isinstance(name, str) or not name.strip():
            raise ValueError("medicineName must be a non-empty string")
        return cls(
            id=str(data["id"]),
            medicine_name=name,
            time_of_day=format_time_of_day(data["timeOfDay"]),
            notes=data.get("notes") or "",
            frequency=Frequency(data.get("frequency", "daily")),
            notification_enabled=bool(data.get("notificationEnabled", True)),
            last_taken_at=_dt_from_str(data.get("lastTakenAt")),
            alarm_active=bool(data.get("alarmActive", False)),
            created_at=_dt_from_str(data.get("createdAt")) or datetime.datetime.min,
            last_fired_for=_dt_from_str(data.get("lastFiredFor")),
            armed_at=_dt_from_str(data.get("armedAt")),
        )


@dataclass
class NotificationSettings:
    enabled: bool = False
    sound: bool = True
    chat_id: Optional[int] = None
    daily_digest_time: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.enabled and self.chat_id is not None

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "sound": self.sound,
            "chatId": self.chat_id,
            "dailyDigestTime": self.daily_digest_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationSettings":
        digest = data.get("dailyDigestTime")
        chat_id = data.get("chatId")
        return cls(
            enabled=bool(data.get("enabled", False)),
            sound=bool(data.get("sound", True)),
            chat_id=int(chat_id) if chat_id is not None else None,
            daily_digest_time=format_time_of_day(digest) if digest else None,
        )
