"""Fired-trigger handling and snooze.

The sink emits a FiredTrigger; handle() updates the reminder's state for that
occurrence, persists it, schedules whatever comes next and hands the payload
back to the sink to surface. State changes live in the pure functions
apply_firing() and apply_snooze() so they can be tested without a sink.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum

from voice_remind.errors import ReminderEngineError, StoreUnavailable
from voice_remind.scheduling.occurrences import (
    next_cycle_date,
    next_occurrences,
    occurrence_after,
)
from voice_remind.scheduling.recurrence import ReminderStatus
from voice_remind.scheduling.reminders import Reminder
from voice_remind.scheduling.scheduler import (
    ScheduleResult,
    TriggerScheduler,
    is_schedulable,
)
from voice_remind.scheduling.store import ENGINE_ORIGIN, ReminderStore
from voice_remind.scheduling.triggers import (
    FiredTrigger,
    TriggerPayload,
    TriggerSink,
    trigger_ids_for,
)
from voice_remind.storage import TZ

DEFAULT_SNOOZE_MINUTES = 10

log = logging.getLogger(__name__)


class FiredOutcome(Enum):
    PRESENTED = "presented"
    DEGRADED = "degraded"  # store unreadable, surfaced from the payload alone
    GHOST = "ghost"  # reminder no longer exists
    IGNORED = "ignored"  # completed or notifications off
    STALE = "stale"  # the reminder already moved past this occurrence


@dataclass(frozen=True, slots=True)
class FiredResult:
    outcome: FiredOutcome
    reminder: Reminder | None = None
    schedule: ScheduleResult | None = None


def _with_cycle(reminder: Reminder, day: date, now: datetime) -> Reminder:
    """Move the cycle to `day` (keeping the time of day) with every slot pending again."""
    slots = tuple(replace(s, status=ReminderStatus.PENDING) for s in reminder.time_slots)
    scheduled = datetime.combine(day, reminder.scheduled_time.timetz())
    return reminder.touch(now, scheduled_time=scheduled, time_slots=slots)


def _complete(reminder: Reminder, now: datetime) -> Reminder:
    return reminder.touch(now, status=ReminderStatus.COMPLETED)


def _fire_day(reminder: Reminder, payload: TriggerPayload) -> date:
    return payload.fire_at.astimezone(reminder.scheduled_time.tzinfo).date()


def is_stale(reminder: Reminder, payload: TriggerPayload) -> bool:
    """A normal firing for an instant the reminder has already moved past."""
    if payload.snoozed:
        return False
    if reminder.time_slots:
        return _fire_day(reminder, payload) < reminder.scheduled_time.date()
    return payload.fire_at < reminder.scheduled_time


def apply_firing(reminder: Reminder, payload: TriggerPayload, now: datetime) -> Reminder:
    """Reminder state after the occurrence described by `payload` fired. Pure.

    Single-time: repeating reminders advance scheduled_time to the next
    occurrence, one-shots complete. Multi-time: the fired slot completes; a
    repeating reminder whose slots are all done starts its next cycle. A
    snooze firing only clears the snooze. Whatever has nothing left to fire
    ends up completed.
    """
    ref = max(now, payload.fire_at)
    r = reminder

    if payload.snoozed:
        r = r.touch(now, snoozed_until=None, snoozed_slot_id=None)
    elif not r.time_slots:
        if r.is_repeating:
            following = occurrence_after(r, ref)
            if following is None:
                return _complete(r, now)
            r = r.touch(now, scheduled_time=following)
        else:
            return _complete(r, now)

    if r.time_slots and payload.slot_id is not None:
        fire_day = _fire_day(r, payload)
        if not payload.snoozed and r.is_repeating and fire_day > r.scheduled_time.date():
            r = _with_cycle(r, fire_day, now)
        slots = tuple(
            replace(s, status=ReminderStatus.COMPLETED) if s.id == payload.slot_id else s
            for s in r.time_slots
        )
        r = r.touch(now, time_slots=slots)
        if r.is_repeating and not any(s.is_pending for s in r.time_slots):
            following_day = next_cycle_date(r, r.scheduled_time.date())
            if following_day is None:
                return _complete(r, now)
            r = _with_cycle(r, following_day, now)

    if not next_occurrences(r, ref):
        return _complete(r, now)
    return r


def apply_snooze(
    reminder: Reminder,
    until: datetime,
    now: datetime,
    *,
    slot_id: str | None = None,
) -> Reminder:
    """Fire once more at `until`. A completed reminder goes back to pending for it."""
    if until.tzinfo is None:
        until = until.replace(tzinfo=TZ)
    if until <= now:
        raise ValueError("snooze time must be in the future")
    if slot_id is not None and reminder.slot(slot_id) is None:
        raise ValueError(f"reminder {reminder.id} has no slot {slot_id!r}")
    return reminder.touch(
        now,
        status=ReminderStatus.PENDING,
        snoozed_until=until,
        snoozed_slot_id=slot_id,
    )


class FiredTriggerHandler:
    def __init__(self, store: ReminderStore, scheduler: TriggerScheduler, sink: TriggerSink) -> None:
        self.store = store
        self.scheduler = scheduler
        self.sink = sink

    async def _cancel_owned(self, reminder: Reminder) -> None:
        ids = trigger_ids_for(reminder.id, (s.id for s in reminder.time_slots))
        _, errors = await self.scheduler.cancel_ids(ids)
        for e in errors:
            log.warning("Could not cancel trigger for %s: %s", reminder.id, e)

    async def _present(self, payload: TriggerPayload) -> None:
        try:
            await self.sink.present(payload)
        except Exception:
            log.exception("Could not present reminder %s", payload.reminder_id)

    async def handle(self, event: FiredTrigger, now: datetime | None = None) -> FiredResult:
        now = now or datetime.now(TZ)
        payload = event.payload
        try:
            reminder = await self.store.get(payload.reminder_id)
        except StoreUnavailable as e:
            log.warning("Store unavailable, presenting %s from its payload: %s", payload.reminder_id, e)
            await self._present(payload)
            return FiredResult(FiredOutcome.DEGRADED)

        if reminder is None:
            log.info("Trigger %d fired for deleted reminder %s", event.trigger_id, payload.reminder_id)
            try:
                await self.scheduler.cancel_ids([event.trigger_id])
            except ReminderEngineError as e:
                log.warning("Could not cancel ghost trigger %d: %s", event.trigger_id, e)
            return FiredResult(FiredOutcome.GHOST)

        if not is_schedulable(reminder):
            log.info("Ignoring trigger for reminder %s (status %s)", reminder.id, reminder.status.value)
            await self._cancel_owned(reminder)
            return FiredResult(FiredOutcome.IGNORED, reminder)

        if is_stale(reminder, payload):
            log.info("Ignoring stale trigger for reminder %s at %s", reminder.id, payload.fire_at)
            schedule = await self.scheduler.schedule_next(reminder, now)
            return FiredResult(FiredOutcome.STALE, reminder, schedule)

        updated = apply_firing(reminder, payload, now)
        try:
            await self.store.save(updated, origin=ENGINE_ORIGIN)
        except StoreUnavailable as e:
            log.error("Could not persist firing of %s: %s", reminder.id, e)
            await self._present(payload)
            return FiredResult(FiredOutcome.DEGRADED, reminder)

        schedule = await self.scheduler.schedule_next(updated, now)
        await self._present(replace(payload, title=updated.title))
        log.debug("Handled trigger %d for %s -> %s", event.trigger_id, reminder.id, updated.status.value)
        return FiredResult(FiredOutcome.PRESENTED, updated, schedule)

    async def snooze(
        self,
        reminder_id: str,
        *,
        until: datetime | None = None,
        minutes: int | None = None,
        slot_id: str | None = None,
        now: datetime | None = None,
    ) -> tuple[Reminder, ScheduleResult]:
        """Raises KeyError for an unknown reminder and ValueError for a bad time."""
        now = now or datetime.now(TZ)
        if until is None:
            until = now + timedelta(minutes=minutes or DEFAULT_SNOOZE_MINUTES)
        reminder = await self.store.get(reminder_id)
        if reminder is None:
            raise KeyError(reminder_id)
        snoozed = apply_snooze(reminder, until, now, slot_id=slot_id)
        await self.store.save(snoozed, origin=ENGINE_ORIGIN)
        log.info("Snoozed %s until %s", reminder_id, snoozed.snoozed_until)
        return snoozed, await self.scheduler.schedule_next(snoozed, now)
