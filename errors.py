# errors.py


class ReminderError(Exception):
    """Base class for reminder scheduler failures."""


class ValidationError(ReminderError):
    """Invalid input to a reminder operation; state is left unchanged."""


class PersistenceError(ReminderError):
    """The store could not load or save a value."""


class AlertDeliveryFailure(ReminderError):
    """The alert sink could not play the alarm or deliver a notification."""
