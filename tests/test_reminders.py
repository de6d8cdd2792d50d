"""Tests for reminders.py: Reminder and TimeSlot validation."""

from dataclasses import replace
from datetime import datetime, time

import pytest

from voice_remind.config import TZ
from voice_remind.errors import InvalidRecurrenceConfig
from voice_remind.scheduling.recurrence import (
    CustomRepeatConfig,
    ReminderStatus,
    RepeatType,
)
from voice_remind.scheduling.reminders import Reminder, TimeSlot


def _at(*args) -> datetime:
    return datetime(*args, tzinfo=TZ)


def test_reminder_new_localizes_naive_time():
    reminder = Reminder.new("  Take pills ", scheduled_time=datetime(2024, 1, 1, 9, 0))

    assert reminder.title == "Take pills"
    assert reminder.scheduled_time.tzinfo is TZ
    assert reminder.status is ReminderStatus.PENDING
    assert reminder.is_notification_enabled
    assert len(reminder.id) == 32
    assert reminder.created_at == reminder.updated_at


def test_reminder_new_blank_description_is_none():
    reminder = Reminder.new("x", scheduled_time=_at(2024, 1, 1, 9), description="   ")

    assert reminder.description is None


def test_naive_scheduled_time_rejected():
    with pytest.raises(ValueError, match="timezone-aware"):
        Reminder(id="r", title="x", scheduled_time=datetime(2024, 1, 1, 9))


def test_custom_without_config_rejected():
    with pytest.raises(InvalidRecurrenceConfig):
        Reminder.new("x", scheduled_time=_at(2024, 1, 1), repeat_type=RepeatType.CUSTOM)


def test_config_on_standard_repeat_rejected():
    with pytest.raises(InvalidRecurrenceConfig):
        Reminder.new(
            "x",
            scheduled_time=_at(2024, 1, 1),
            repeat_type=RepeatType.DAILY,
            custom_repeat_config=CustomRepeatConfig(days=2),
        )


def test_duplicate_slot_ids_rejected():
    slots = [TimeSlot("a", time(8)), TimeSlot("a", time(20))]

    with pytest.raises(ValueError, match="unique"):
        Reminder.new("x", scheduled_time=_at(2024, 1, 1), time_slots=slots)


def test_slots_with_sub_day_interval_rejected():
    with pytest.raises(InvalidRecurrenceConfig, match="whole-day"):
        Reminder.new(
            "x",
            scheduled_time=_at(2024, 1, 1),
            repeat_type=RepeatType.CUSTOM,
            custom_repeat_config=CustomRepeatConfig(hours=6),
            time_slots=[TimeSlot.new(time(8))],
        )


def test_snoozed_slot_must_exist():
    reminder = Reminder.new("x", scheduled_time=_at(2024, 1, 1), time_slots=[TimeSlot("a", time(8))])

    with pytest.raises(ValueError, match="not a slot"):
        replace(reminder, snoozed_until=_at(2024, 1, 1, 9), snoozed_slot_id="b")


def test_time_slot_cannot_be_overdue():
    with pytest.raises(ValueError):
        TimeSlot("a", time(8), status=ReminderStatus.OVERDUE)


def test_time_slot_new_truncates_seconds():
    slot = TimeSlot.new(time(8, 30, 45), description="with breakfast")

    assert slot.time == time(8, 30)
    assert slot.formatted_time == "08:30"
    assert slot.description == "with breakfast"
    assert slot.is_pending


def test_time_slot_drops_seconds():
    slot = TimeSlot("a", time(20, 15, 59, 500))

    assert slot.time == time(20, 15)
    assert slot == TimeSlot("a", time(20, 15))


def test_time_slots_coerced_to_tuple():
    reminder = Reminder(id="r", title="x", scheduled_time=_at(2024, 1, 1), time_slots=[TimeSlot("a", time(8))])

    assert isinstance(reminder.time_slots, tuple)
    assert reminder.is_multi_time
    assert reminder.slot("a").time == time(8)
    assert reminder.slot("missing") is None


def test_is_overdue_only_for_past_one_shots():
    one_shot = Reminder.new("x", scheduled_time=_at(2024, 1, 1, 9))
    daily = Reminder.new("x", scheduled_time=_at(2024, 1, 1, 9), repeat_type=RepeatType.DAILY)
    now = _at(2024, 1, 2)

    assert one_shot.is_overdue(now)
    assert not one_shot.is_overdue(_at(2024, 1, 1, 8))
    assert not daily.is_overdue(now)


def test_touch_bumps_updated_at():
    reminder = Reminder.new("x", scheduled_time=_at(2024, 1, 1, 9))
    now = _at(2030, 1, 1)

    touched = reminder.touch(now, title="y")

    assert touched.title == "y"
    assert touched.updated_at == now
    assert touched.created_at == reminder.created_at
