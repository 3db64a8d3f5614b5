# medreminder/errors.py
from typing import Optional


class MedReminderError(Exception):
    """Base class. ``retryable`` tells the offline queue whether a replay may succeed later."""

    retryable = True


class ConfigurationError(MedReminderError):
    retryable = False


class RemoteUnavailable(MedReminderError):
    """Network error, timeout or a server-side failure. Safe to retry."""


class RemoteRejected(MedReminderError):
    retryable = False

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class IdempotentConflict(RemoteRejected):
    """The remote already holds the effect this mutation asked for."""


class MedicationNotFound(MedReminderError):
    retryable = False


class SlotNotScheduled(MedReminderError):
    retryable = False


class DoseAlreadyTaken(MedReminderError):
    retryable = False
