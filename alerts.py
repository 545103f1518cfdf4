# alerts.py
import logging

from apscheduler.triggers.interval import IntervalTrigger
from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import Forbidden, TelegramError

from errors import AlertDeliveryFailure

logger = logging.getLogger(__name__)

ALARM_JOB_ID = "alarm_loop"


class AlertSink:
    """Audible alarm plus user-visible notification."""

    async def play_alarm(self):
        raise NotImplementedError

    async def stop_alarm(self):
        raise NotImplementedError

    async def notify(self, title, body, reminder_id=None):
        raise NotImplementedError


class TelegramAlertSink(AlertSink):
    """Alerts delivered to the owner's Telegram chat.

    The "looping" alarm is an interval job that keeps posting an alarm message
    until stop_alarm() removes it. Nothing is sent unless the user granted
    notifications with /notify on (settings.granted).
    """

    def __init__(self, bot, scheduler, settings_provider, repeat_seconds=60):
        self.bot = bot
        self.scheduler = scheduler
        self.settings_provider = settings_provider
        self.repeat_seconds = repeat_seconds

    @property
    def playing(self):
        return self.scheduler.get_job(ALARM_JOB_ID) is not None

    async def play_alarm(self):
        if self.playing:
            return
        self.scheduler.add_job(
            self._ring,
            trigger=IntervalTrigger(seconds=self.repeat_seconds),
            id=ALARM_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        await self._ring()

    async def stop_alarm(self):
        if self.scheduler.get_job(ALARM_JOB_ID) is not None:
            self.scheduler.remove_job(ALARM_JOB_ID)

    async def notify(self, title, body, reminder_id=None):
        settings = self.settings_provider()
        if not settings.granted:
            logger.info(f"Notifications not granted, dropping: {title}")
            return
        markup = None
        if reminder_id:
            markup = InlineKeyboardMarkup([[
                InlineKeyboardButton("Taken ✅", callback_data=f"take|{reminder_id}")
            ]])
        await self._send(
            settings.chat_id,
            f"💊 {title}\n{body}",
            reply_markup=markup,
            disable_notification=not settings.sound,
        )

    async def _ring(self):
        settings = self.settings_provider()
        if not settings.granted:
            return
        try:
            await self._send(
                settings.chat_id,
                "⏰ Medication alarm! Tap Taken on the reminder or send /take to silence it.",
                disable_notification=not settings.sound,
            )
        except AlertDeliveryFailure as e:
            logger.warning(f"Alarm ring failed: {e}")

    async def _send(self, chat_id, text, **kwargs):
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, **kwargs)
        except Forbidden as e:
            raise AlertDeliveryFailure(f"Bot blocked by chat {chat_id}: {e}") from e
        except TelegramError as e:
            raise AlertDeliveryFailure(f"Telegram send failed: {e}") from e
