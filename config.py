# config.py
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")

DB_URL = os.getenv("DB_URL", "sqlite:///reminders.db")
REMINDER_TIMEZONE = os.getenv("REMINDER_TIMEZONE", "UTC")

REMINDERS_KEY = os.getenv("REMINDERS_KEY", "medicalReminders")
SETTINGS_KEY = os.getenv("SETTINGS_KEY", "notificationSettings")


def _int_env(name, default):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class SchedulerConfig:
    """Polling cadence and window sizes, all in seconds."""

    tick_interval: int = 30
    upcoming_interval: int = 30
    due_window: int = 60
    upcoming_window: int = 300
    alarm_repeat: int = 60
    io_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        return cls(
            tick_interval=_int_env("TICK_INTERVAL_SECONDS", 30),
            upcoming_interval=_int_env("UPCOMING_INTERVAL_SECONDS", 30),
            due_window=_int_env("DUE_WINDOW_SECONDS", 60),
            upcoming_window=_int_env("UPCOMING_WINDOW_SECONDS", 300),
            alarm_repeat=_int_env("ALARM_REPEAT_SECONDS", 60),
            io_timeout=float(_int_env("IO_TIMEOUT_SECONDS", 5)),
        )
