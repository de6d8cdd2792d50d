"""Reminder data model.

A reminder fires once at scheduled_time, or, when it has time slots, once per
slot at that slot's time of day on the current cycle date (scheduled_time's
date). Repeating reminders advance scheduled_time to the next occurrence after
each cycle. Slot status only tracks the current cycle.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, time
from uuid import uuid4

from voice_remind.config import TZ
from voice_remind.errors import InvalidRecurrenceConfig
from voice_remind.scheduling.recurrence import (
    CustomRepeatConfig,
    ReminderStatus,
    RepeatType,
)


@dataclass(frozen=True, slots=True)
class TimeSlot:
    id: str
    time: time
    status: ReminderStatus = ReminderStatus.PENDING
    description: str | None = None

    def __post_init__(self) -> None:
        if self.status is ReminderStatus.OVERDUE:
            raise ValueError("time slot status must be pending or completed")
        # Slots are stored as "HH:MM"
        object.__setattr__(self, "time", self.time.replace(second=0, microsecond=0))

    @property
    def is_pending(self) -> bool:
        return self.status is ReminderStatus.PENDING

    @property
    def formatted_time(self) -> str:
        return self.time.strftime("%H:%M")

    @staticmethod
    def new(at: time, *, description: str | None = None) -> TimeSlot:
        return TimeSlot(id=uuid4().hex[:8], time=at, description=description)


@dataclass(frozen=True, slots=True)
class Reminder:
    id: str
    title: str
    scheduled_time: datetime
    description: str | None = None
    status: ReminderStatus = ReminderStatus.PENDING
    repeat_type: RepeatType = RepeatType.NONE
    custom_repeat_config: CustomRepeatConfig | None = None
    time_slots: tuple[TimeSlot, ...] = ()
    is_notification_enabled: bool = True
    snoozed_until: datetime | None = None
    snoozed_slot_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.scheduled_time.tzinfo is None:
            raise ValueError("scheduled_time must be timezone-aware")
        if self.snoozed_until is not None and self.snoozed_until.tzinfo is None:
            raise ValueError("snoozed_until must be timezone-aware")
        if not isinstance(self.time_slots, tuple):
            object.__setattr__(self, "time_slots", tuple(self.time_slots))

        if self.repeat_type is RepeatType.CUSTOM and self.custom_repeat_config is None:
            raise InvalidRecurrenceConfig("repeat type 'custom' requires a custom repeat config")
        if self.repeat_type is not RepeatType.CUSTOM and self.custom_repeat_config is not None:
            raise InvalidRecurrenceConfig(
                f"custom repeat config given for repeat type {self.repeat_type.value!r}"
            )

        slot_ids = [s.id for s in self.time_slots]
        if len(set(slot_ids)) != len(slot_ids):
            raise ValueError("time slot ids must be unique within a reminder")
        if self.snoozed_slot_id is not None and self.snoozed_slot_id not in slot_ids:
            raise ValueError(f"snoozed slot {self.snoozed_slot_id!r} is not a slot of this reminder")
        config = self.custom_repeat_config
        if self.time_slots and config is not None and config.is_sub_day:
            raise InvalidRecurrenceConfig("time slots need a whole-day repeat cadence")

    @property
    def is_multi_time(self) -> bool:
        return bool(self.time_slots)

    @property
    def is_pending(self) -> bool:
        return self.status is ReminderStatus.PENDING

    @property
    def is_repeating(self) -> bool:
        return self.repeat_type.is_repeating

    def slot(self, slot_id: str) -> TimeSlot | None:
        for s in self.time_slots:
            if s.id == slot_id:
                return s
        return None

    def is_overdue(self, now: datetime) -> bool:
        """Display state only: pending, not repeating, and its time has passed."""
        if self.status is ReminderStatus.OVERDUE:
            return True
        return self.is_pending and not self.is_repeating and self.scheduled_time <= now

    def touch(self, now: datetime | None = None, **changes: object) -> Reminder:
        """Copy with changes applied and updated_at bumped."""
        return replace(self, updated_at=now or datetime.now(TZ), **changes)

    @staticmethod
    def new(
        title: str,
        *,
        scheduled_time: datetime,
        description: str | None = None,
        repeat_type: RepeatType = RepeatType.NONE,
        custom_repeat_config: CustomRepeatConfig | None = None,
        time_slots: list[TimeSlot] | tuple[TimeSlot, ...] = (),
        is_notification_enabled: bool = True,
    ) -> Reminder:
        """Create a pending reminder. Naive times are read as local wall-clock in TZ."""
        if scheduled_time.tzinfo is None:
            scheduled_time = scheduled_time.replace(tzinfo=TZ)
        description = description.strip() if description else None
        now = datetime.now(TZ)
        return Reminder(
            id=uuid4().hex,
            title=title.strip(),
            scheduled_time=scheduled_time,
            description=description or None,
            repeat_type=repeat_type,
            custom_repeat_config=custom_repeat_config,
            time_slots=tuple(time_slots),
            is_notification_enabled=is_notification_enabled,
            created_at=now,
            updated_at=now,
        )
