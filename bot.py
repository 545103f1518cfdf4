import logging
from functools import wraps

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from telegram import (
    Update, InlineKeyboardButton, InlineKeyboardMarkup
)
from telegram.ext import (
    Application, CommandHandler, MessageHandler, CallbackQueryHandler,
    ContextTypes, filters
)

import gpt_parser
from alerts import TelegramAlertSink
from clock import Clock
from config import TELEGRAM_BOT_TOKEN, SchedulerConfig
from database import init_db
from errors import AlertDeliveryFailure, PersistenceError, ValidationError
from models import Frequency, format_time_of_day, parse_time_of_day
from scheduler import ReminderScheduler, build_digest
from store import KeyValueStore, ReminderStore, SettingsStore

# --- Logging ---
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

DIGEST_JOB_ID = "daily_digest"
SHORT_ID_LEN = 6

HELP_TEXT = (
    "Medication reminders:\n"
    "/add 09:00 Aspirin [daily|weekly|monthly] [; notes]\n"
    "  or just write e.g. 'Aspirin 100mg every day at 9am after breakfast'\n"
    "/list - your reminders\n"
    "/take [id|name] - mark a dose as taken (silences the alarm)\n"
    "/toggle <id|name> - turn a reminder's alarm on or off\n"
    "/edit <id|name> [HH:MM] [medicine] [frequency] [; notes] - change a reminder\n"
    "/delete <id|name> - delete a reminder\n"
    "/upcoming - reminders due in the next few minutes\n"
    "/notify on|off - allow this chat to receive alarms\n"
    "/sound on|off - alarm messages with or without sound\n"
    "/digest HH:MM|off - daily summary of today's medications\n"
    "/test - send a test notification"
)


# --- Helpers ---

def short_id(reminder):
    return reminder.id[:SHORT_ID_LEN]


def parse_add_args(args):
    """'/add 09:00 Aspirin 100mg weekly ; after food' -> add() kwargs."""
    text = " ".join(args).strip()
    notes = ""
    if ";" in text:
        text, notes = (part.strip() for part in text.split(";", 1))
    tokens = text.split()
    if len(tokens) < 2:
        raise ValidationError("Usage: /add HH:MM medicine [daily|weekly|monthly] [; notes]")
    time_of_day = format_time_of_day(tokens[0])
    frequency = Frequency.DAILY.value
    if tokens[-1].lower() in {f.value for f in Frequency}:
        frequency = tokens.pop().lower()
    return {
        "medicine_name": " ".join(tokens[1:]),
        "time_of_day": time_of_day,
        "frequency": frequency,
        "notes": notes,
    }


def parse_edit_args(args):
    """'/edit a1b2c3 21:00 Aspirin 75mg weekly ; with dinner' -> (token, update() kwargs).

    Every part after the reminder id/name is optional; only what is given changes.
    """
    text = " ".join(args).strip()
    notes = None
    if ";" in text:
        text, notes = (part.strip() for part in text.split(";", 1))
    tokens = text.split()
    if not tokens:
        raise ValidationError("Usage: /edit <id|name> [HH:MM] [medicine] [daily|weekly|monthly] [; notes]")
    token = tokens.pop(0)
    changes = {}
    if tokens:
        try:
            changes["time_of_day"] = format_time_of_day(tokens[0])
            tokens.pop(0)
        except ValidationError:
            pass
    if tokens and tokens[-1].lower() in {f.value for f in Frequency}:
        changes["frequency"] = tokens.pop().lower()
    if tokens:
        changes["medicine_name"] = " ".join(tokens)
    if notes is not None:
        changes["notes"] = notes
    if not changes:
        raise ValidationError("Nothing to change. Give a new time, name, frequency or '; notes'.")
    return token, changes


def resolve_reminder(reminders, token):
    """Find a reminder by id prefix, else by medicine name (case-insensitive)."""
    token = (token or "").strip().lower()
    if not token:
        return None
    for r in reminders:
        if r.id.startswith(token):
            return r
    for r in reminders:
        if r.medicine_name.lower() == token:
            return r
    for r in reminders:
        if token in r.medicine_name.lower():
            return r
    return None


def format_reminder(reminder):
    bell = "🔔" if reminder.notification_enabled else "🔕"
    text = (
        f"💊 {reminder.medicine_name} [{short_id(reminder)}]\n"
        f"   🕒 {reminder.time_of_day}  📅 {reminder.frequency.value.capitalize()}  {bell}"
    )
    if reminder.alarm_active:
        text += "\n   ⏰ Alarm ringing!"
    if reminder.notes:
        text += f"\n   {reminder.notes}"
    if reminder.last_taken_at:
        text += f"\n   Last taken: {reminder.last_taken_at.strftime('%b %d, %Y %H:%M')}"
    return text


def reminder_keyboard(reminder):
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("Taken ✅", callback_data=f"take|{reminder.id}"),
        InlineKeyboardButton("Bell 🔔" if not reminder.notification_enabled else "Mute 🔕",
                             callback_data=f"toggle|{reminder.id}"),
        InlineKeyboardButton("Delete 🗑", callback_data=f"delete|{reminder.id}"),
    ]])


def get_scheduler(context) -> ReminderScheduler:
    return context.application.bot_data["scheduler"]


def get_settings(context):
    return context.application.bot_data["settings"]


def save_settings(context, settings):
    context.application.bot_data["settings"] = settings
    try:
        context.application.bot_data["settings_store"].save(settings)
    except PersistenceError as e:
        logger.error(f"Could not save notification settings: {e}")


# --- Telegram Bot Handlers ---

def user_only(func):
    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        if update.effective_user is None or update.effective_chat is None:
            return
        owner = get_settings(context).chat_id
        if owner is not None and update.effective_chat.id != owner:
            logger.warning(f"Ignoring update from foreign chat {update.effective_chat.id}")
            return
        return await func(update, context)
    return wrapper


@user_only
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    settings = get_settings(context)
    if settings.chat_id is None:
        settings.chat_id = update.effective_chat.id
        save_settings(context, settings)
    await update.message.reply_text(
        "Hi! I'm your medication reminder bot.\n"
        "Send /notify on so I can ring alarms in this chat.\n\n" + HELP_TEXT
    )


@user_only
async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(HELP_TEXT)


@user_only
async def add_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    try:
        fields = parse_add_args(context.args or [])
        reminder = await get_scheduler(context).add(**fields)
    except ValidationError as e:
        await update.message.reply_text(f"❌ {e}")
        return
    await reply_added(update, context, reminder)


async def reply_added(update, context, reminder):
    text = f"Reminder set:\n{format_reminder(reminder)}"
    if reminder.notification_enabled and not get_settings(context).granted:
        text += "\n\nNotifications are off. Send /notify on to receive alarms."
    await update.message.reply_text(text, reply_markup=reminder_keyboard(reminder))


@user_only
async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = update.message.text.strip()
    await update.message.reply_chat_action("typing")
    parsed = await gpt_parser.parse(text)
    if "error" in parsed:
        if parsed["error"] == "no_time":
            await update.message.reply_text("Sorry, I couldn't find a time. Please say when to take it.")
        elif parsed["error"] == "not_reminder":
            await update.message.reply_text("That doesn't look like a medication reminder. See /help.")
        else:
            await update.message.reply_text("Sorry, I couldn't understand. Try /add 09:00 Aspirin.")
        return
    try:
        reminder = await get_scheduler(context).add(**parsed)
    except ValidationError as e:
        await update.message.reply_text(f"❌ {e}")
        return
    await reply_added(update, context, reminder)


@user_only
async def list_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    reminders = get_scheduler(context).all()
    if not reminders:
        await update.message.reply_text("No reminders set yet.")
        return
    for reminder in reminders:
        await update.message.reply_text(format_reminder(reminder), reply_markup=reminder_keyboard(reminder))


async def _lookup(update, context):
    scheduler = get_scheduler(context)
    token = " ".join(context.args or [])
    reminder = resolve_reminder(scheduler.all(), token)
    if reminder is None:
        await update.message.reply_text("Reminder not found. Use /list to see ids.")
    return reminder


@user_only
async def take_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    scheduler = get_scheduler(context)
    if not context.args:
        ringing = scheduler.active_alarms()
        if not ringing:
            await update.message.reply_text("No alarm is ringing. Use /take <id|name> to log a dose.")
            return
        for reminder in ringing:
            await scheduler.mark_taken(reminder.id)
        names = ", ".join(r.medicine_name for r in ringing)
        await update.message.reply_text(f"✅ Logged: {names}")
        return
    reminder = await _lookup(update, context)
    if reminder:
        await scheduler.mark_taken(reminder.id)
        await update.message.reply_text(f"✅ Logged: {reminder.medicine_name}")


@user_only
async def toggle_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    reminder = await _lookup(update, context)
    if reminder:
        updated = await get_scheduler(context).toggle_notification(reminder.id)
        state = "on" if updated.notification_enabled else "off"
        await update.message.reply_text(f"Alarm for {updated.medicine_name} is {state}.")


@user_only
async def edit_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    scheduler = get_scheduler(context)
    try:
        token, changes = parse_edit_args(context.args or [])
        reminder = resolve_reminder(scheduler.all(), token)
        if reminder is None:
            await update.message.reply_text("Reminder not found. Use /list to see ids.")
            return
        updated = await scheduler.update(reminder.id, **changes)
    except ValidationError as e:
        await update.message.reply_text(f"❌ {e}")
        return
    if updated is None:
        await update.message.reply_text("Reminder no longer exists.")
        return
    await update.message.reply_text(
        f"Reminder updated:\n{format_reminder(updated)}", reply_markup=reminder_keyboard(updated)
    )


@user_only
async def delete_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    reminder = await _lookup(update, context)
    if reminder:
        await get_scheduler(context).remove(reminder.id)
        await update.message.reply_text(f"Deleted reminder: {reminder.medicine_name}")


@user_only
async def upcoming_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    upcoming = get_scheduler(context).upcoming()
    if upcoming is None:
        await update.message.reply_text("Nothing due in the next few minutes.")
        return
    await update.message.reply_text(
        f"⚠️ Upcoming Medication\nRemember to take {upcoming.medicine_name} at {upcoming.time_of_day}"
    )


def _on_off(context):
    value = (context.args[0].lower() if context.args else "")
    if value not in ("on", "off"):
        return None
    return value == "on"


@user_only
async def notify_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    enabled = _on_off(context)
    settings = get_settings(context)
    if enabled is None:
        state = "on" if settings.granted else "off"
        await update.message.reply_text(f"Notifications are {state}. Use /notify on|off.")
        return
    settings.enabled = enabled
    settings.chat_id = update.effective_chat.id
    save_settings(context, settings)
    await update.message.reply_text(f"Notifications {'enabled' if enabled else 'disabled'}.")


@user_only
async def sound_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    sound = _on_off(context)
    if sound is None:
        await update.message.reply_text("Use /sound on|off.")
        return
    settings = get_settings(context)
    settings.sound = sound
    save_settings(context, settings)
    await update.message.reply_text(f"Alarm sound {'on' if sound else 'off'}.")


@user_only
async def digest_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    settings = get_settings(context)
    arg = context.args[0] if context.args else ""
    if arg.lower() == "off":
        settings.daily_digest_time = None
        save_settings(context, settings)
        await update.message.reply_text("Daily summary turned off.")
        return
    try:
        settings.daily_digest_time = format_time_of_day(arg)
    except ValidationError as e:
        await update.message.reply_text(f"❌ {e}")
        return
    save_settings(context, settings)
    await update.message.reply_text(f"Daily summary at {settings.daily_digest_time}.")


@user_only
async def test_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not get_settings(context).granted:
        await update.message.reply_text("Notifications are off. Send /notify on first.")
        return
    try:
        await context.application.bot_data["alert_sink"].notify(
            "Test Notification", "Notifications are working."
        )
    except AlertDeliveryFailure as e:
        logger.warning(f"Test notification failed: {e}")
        await update.message.reply_text("Sorry, the test notification could not be delivered.")


@user_only
async def button_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()
    data = (query.data or "").split("|")
    if len(data) != 2:
        await query.edit_message_text("Invalid action.")
        return
    action, reminder_id = data
    scheduler = get_scheduler(context)
    if action == "take":
        reminder = await scheduler.mark_taken(reminder_id)
    elif action == "toggle":
        reminder = await scheduler.toggle_notification(reminder_id)
    elif action == "delete":
        reminder = scheduler.get(reminder_id)
        await scheduler.remove(reminder_id)
        if reminder:
            await query.edit_message_text(f"Deleted reminder: {reminder.medicine_name}")
            return
    else:
        await query.edit_message_text("Invalid action.")
        return
    if reminder is None:
        await query.edit_message_text("Reminder no longer exists.")
        return
    await query.edit_message_text(format_reminder(reminder), reply_markup=reminder_keyboard(reminder))


# --- Scheduled jobs ---

async def digest_job(application: Application):
    settings = application.bot_data["settings"]
    if not settings.granted or not settings.daily_digest_time:
        return
    scheduler = application.bot_data["scheduler"]
    now = scheduler.clock.now()
    if now.time() < parse_time_of_day(settings.daily_digest_time):
        return
    if application.bot_data.get("last_digest") == now.date():
        return
    application.bot_data["last_digest"] = now.date()
    try:
        await application.bot_data["alert_sink"].notify(
            "Daily medication summary", build_digest(scheduler.all(), now.date())
        )
    except AlertDeliveryFailure as e:
        logger.warning(f"Daily summary not delivered: {e}")


# --- Main Application Setup ---

async def on_startup(application: Application):
    init_db()
    config = SchedulerConfig.from_env()
    clock = Clock()
    kv = KeyValueStore()
    settings_store = SettingsStore(kv)
    application.bot_data["settings_store"] = settings_store
    application.bot_data["settings"] = settings_store.load()

    jobs = AsyncIOScheduler(timezone=clock.tz)
    sink = TelegramAlertSink(
        application.bot, jobs, lambda: application.bot_data["settings"],
        repeat_seconds=config.alarm_repeat,
    )

    async def announce_upcoming(reminder):
        await sink.notify(
            "Upcoming Medication",
            f"Remember to take {reminder.medicine_name} at {reminder.time_of_day}",
        )

    scheduler = ReminderScheduler(
        ReminderStore(kv), sink, clock=clock, config=config, jobs=jobs,
        on_upcoming=announce_upcoming,
    )
    application.bot_data["alert_sink"] = sink
    application.bot_data["scheduler"] = scheduler

    jobs.add_job(
        digest_job, trigger=IntervalTrigger(seconds=60), args=[application],
        id=DIGEST_JOB_ID, replace_existing=True, max_instances=1, coalesce=True,
    )
    scheduler.start()
    logger.info("Bot started.")


async def on_shutdown(application: Application):
    scheduler = application.bot_data.get("scheduler")
    if scheduler is None:
        return
    await scheduler.stop()
    if scheduler.jobs is not None and scheduler.jobs.running:
        scheduler.jobs.shutdown(wait=False)


def build_application(token=TELEGRAM_BOT_TOKEN):
    application = (
        Application.builder()
        .token(token)
        .post_init(on_startup)
        .post_shutdown(on_shutdown)
        .build()
    )
    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("add", add_command))
    application.add_handler(CommandHandler("list", list_command))
    application.add_handler(CommandHandler("take", take_command))
    application.add_handler(CommandHandler("toggle", toggle_command))
    application.add_handler(CommandHandler("edit", edit_command))
    application.add_handler(CommandHandler("delete", delete_command))
    application.add_handler(CommandHandler("upcoming", upcoming_command))
    application.add_handler(CommandHandler("notify", notify_command))
    application.add_handler(CommandHandler("sound", sound_command))
    application.add_handler(CommandHandler("digest", digest_command))
    application.add_handler(CommandHandler("test", test_command))
    application.add_handler(CallbackQueryHandler(button_callback))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))
    return application


def main():
    if not TELEGRAM_BOT_TOKEN:
        raise SystemExit("TELEGRAM_BOT_TOKEN is not set")
    application = build_application()
    try:
        application.run_polling(allowed_updates=Update.ALL_TYPES)
    except KeyboardInterrupt:
        logger.info("Bot stopped by user.")


if __name__ == "__main__":
    main()
