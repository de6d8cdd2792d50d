"""Error taxonomy for the scheduling engine."""


class ReminderEngineError(Exception):
    pass


class InvalidRecurrenceConfig(ReminderEngineError, ValueError):
    """A recurrence field failed validation. Surfaced to the caller for correction."""


class TriggerSinkError(ReminderEngineError):
    """Raised by a Trigger Sink when the OS refuses or fails a call. Retryable."""


class TriggerRegistrationFailed(ReminderEngineError):
    def __init__(self, trigger_id: int, reason: str) -> None:
        super().__init__(f"trigger {trigger_id}: {reason}")
        self.trigger_id = trigger_id
        self.reason = reason


class ExactAlarmPermissionMissing(TriggerRegistrationFailed):
    """The platform gates exact scheduling behind a permission the user revoked."""

    def __init__(self, trigger_id: int = 0) -> None:
        super().__init__(trigger_id, "exact-alarm permission not granted")


class StoreUnavailable(ReminderEngineError):
    """Transient failure reading or writing persisted reminders."""
