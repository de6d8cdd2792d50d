"""Scheduling: recurrence, occurrences, the store and trigger registration."""

from voice_remind.scheduling.handler import FiredTriggerHandler
from voice_remind.scheduling.occurrences import next_occurrence, next_occurrences
from voice_remind.scheduling.reconcile import ReconcileContext, run_reconcile
from voice_remind.scheduling.recurrence import (
    CustomRepeatConfig,
    ReminderStatus,
    RepeatType,
)
from voice_remind.scheduling.reminders import Reminder, TimeSlot
from voice_remind.scheduling.scheduler import ScheduleOutcome, TriggerScheduler
from voice_remind.scheduling.sink import APSchedulerSink
from voice_remind.scheduling.store import ReminderStore

__all__ = [
    "APSchedulerSink",
    "CustomRepeatConfig",
    "FiredTriggerHandler",
    "ReconcileContext",
    "Reminder",
    "ReminderStatus",
    "ReminderStore",
    "RepeatType",
    "ScheduleOutcome",
    "TimeSlot",
    "TriggerScheduler",
    "next_occurrence",
    "next_occurrences",
    "run_reconcile",
]
