"""Next-occurrence calculation.

Pure functions of (reminder, now). Repeating kinds step from the anchor
(scheduled_time) by k whole periods, so month arithmetic clamps per step from
the anchor instead of compounding: Jan 31 monthly gives Feb 29, Mar 31, Apr 30.
Day, week and interval steps are wall-clock steps in the anchor's zone.

"No further occurrences" is returned as None / an empty list, never raised.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from dateutil.relativedelta import relativedelta

from voice_remind.errors import InvalidRecurrenceConfig
from voice_remind.scheduling.recurrence import CustomRepeatConfig, RepeatType
from voice_remind.scheduling.reminders import Reminder, TimeSlot

_ONE_MICRO = timedelta(microseconds=1)
_MAX_JUMPS = 10


@dataclass(frozen=True, slots=True)
class Occurrence:
    """One concrete firing: a slot (or the whole reminder when slot_id is None) at fire_at."""

    slot_id: str | None
    fire_at: datetime
    snoozed: bool = False


def _custom_config(reminder: Reminder) -> CustomRepeatConfig:
    config = reminder.custom_repeat_config
    if config is None:
        raise InvalidRecurrenceConfig(f"reminder {reminder.id}: repeat type 'custom' has no config")
    return config


def _first_after(step: Callable[[int], datetime], after: datetime, estimate: int) -> datetime:
    """Smallest step(k), k >= 0, strictly after `after`. step must be increasing in k."""
    k = max(0, estimate)
    while k > 0 and step(k - 1) > after:
        k -= 1
    while step(k) <= after:
        k += 1
    return step(k)


def _periodic_after(anchor: datetime, repeat: RepeatType, after: datetime) -> datetime:
    elapsed = after - anchor
    if repeat is RepeatType.DAILY:
        return _first_after(lambda k: anchor + relativedelta(days=k), after, elapsed.days)
    if repeat is RepeatType.WEEKLY:
        return _first_after(lambda k: anchor + relativedelta(weeks=k), after, elapsed.days // 7)
    if repeat is RepeatType.MONTHLY:
        months = (after.year - anchor.year) * 12 + after.month - anchor.month - 1
        return _first_after(lambda k: anchor + relativedelta(months=k), after, months)
    if repeat is RepeatType.YEARLY:
        return _first_after(lambda k: anchor + relativedelta(years=k), after, after.year - anchor.year - 1)
    raise InvalidRecurrenceConfig(f"not a periodic repeat type: {repeat.value!r}")


def _interval_after(anchor: datetime, interval: timedelta, after: datetime) -> datetime:
    estimate = (after - anchor) // interval if after > anchor else 0
    return _first_after(lambda k: anchor + k * interval, after, estimate)


def _weekday_spacing_ok(day: date, anchor_day: date, spacing_days: int) -> bool:
    if spacing_days <= 1:
        return True
    if spacing_days % 7 == 0:
        # "every N weeks on Mon, Wed": count whole weeks between the Mondays
        week_start = day - timedelta(days=day.weekday())
        anchor_week = anchor_day - timedelta(days=anchor_day.weekday())
        return ((week_start - anchor_week).days // 7) % (spacing_days // 7) == 0
    return (day - anchor_day).days % spacing_days == 0


def _weekday_after(anchor: datetime, config: CustomRepeatConfig, after: datetime) -> datetime | None:
    """Day-by-day scan for a permitted weekday at the anchor's time of day."""
    days = config.specific_days or frozenset(range(1, 8))
    anchor_day = anchor.date()
    day = max(anchor_day, after.date())
    limit = 7 * max(config.days, 1) + 7
    for _ in range(limit):
        candidate = datetime.combine(day, anchor.timetz())
        if (
            candidate > after
            and day.isoweekday() in days
            and _weekday_spacing_ok(day, anchor_day, config.days)
        ):
            return candidate
        day += timedelta(days=1)
    return None


def _sub_day_weekday_after(anchor: datetime, config: CustomRepeatConfig, after: datetime) -> datetime | None:
    """Interval steps under a day, restricted to permitted weekdays."""
    days = config.specific_days or frozenset(range(1, 8))
    candidate = _interval_after(anchor, config.interval, after)
    for _ in range(_MAX_JUMPS):
        if candidate.isoweekday() in days:
            return candidate
        next_midnight = datetime.combine(candidate.date() + timedelta(days=1), time(0), tzinfo=anchor.tzinfo)
        candidate = _interval_after(anchor, config.interval, next_midnight - _ONE_MICRO)
    return None


def occurrence_after(reminder: Reminder, after: datetime, *, anchor: datetime | None = None) -> datetime | None:
    """First instant of the repeat rule strictly after `after`. Ignores slots, status and snooze."""
    anchor = anchor or reminder.scheduled_time
    repeat = reminder.repeat_type

    if repeat is RepeatType.NONE:
        return anchor if anchor > after else None
    if repeat is not RepeatType.CUSTOM:
        return _periodic_after(anchor, repeat, after)

    config = _custom_config(reminder)
    if config.specific_days is None:
        result: datetime | None = _interval_after(anchor, config.interval, after)
    elif config.is_sub_day:
        result = _sub_day_weekday_after(anchor, config, after)
    else:
        result = _weekday_after(anchor, config, after)

    if result is not None and config.end_date is not None and result > config.end_date:
        return None
    return result


def _midnight(day: date, reminder: Reminder) -> datetime:
    return datetime.combine(day, time(0), tzinfo=reminder.scheduled_time.tzinfo)


def _slot_instant(day: date, slot: TimeSlot, reminder: Reminder) -> datetime:
    return datetime.combine(day, slot.time, tzinfo=reminder.scheduled_time.tzinfo)


def occurrence_date_on_or_after(reminder: Reminder, day: date) -> date | None:
    """First occurrence date >= day, stepping from the current cycle date."""
    anchor = _midnight(reminder.scheduled_time.date(), reminder)
    found = occurrence_after(reminder, _midnight(day, reminder) - _ONE_MICRO, anchor=anchor)
    return found.date() if found is not None else None


def next_cycle_date(reminder: Reminder, after_day: date) -> date | None:
    """The occurrence date following after_day, or None for one-shot / ended reminders."""
    if not reminder.is_repeating:
        return None
    return occurrence_date_on_or_after(reminder, after_day + timedelta(days=1))


def _within_end(reminder: Reminder, instant: datetime) -> bool:
    config = reminder.custom_repeat_config
    return config is None or config.end_date is None or instant <= config.end_date


def _next_slot_instant(reminder: Reminder, slot: TimeSlot, now: datetime) -> datetime | None:
    cycle = reminder.scheduled_time.date()
    cycle_allowed = not reminder.is_repeating or occurrence_date_on_or_after(reminder, cycle) == cycle
    if slot.is_pending and cycle_allowed:
        instant = _slot_instant(cycle, slot, reminder)
        if instant > now:
            return instant if _within_end(reminder, instant) else None
    if not reminder.is_repeating:
        return None

    day = occurrence_date_on_or_after(reminder, max(cycle + timedelta(days=1), now.date()))
    for _ in range(2):
        if day is None:
            return None
        instant = _slot_instant(day, slot, reminder)
        if instant > now:
            return instant if _within_end(reminder, instant) else None
        day = occurrence_date_on_or_after(reminder, day + timedelta(days=1))
    return None


def _formula_occurrences(reminder: Reminder, now: datetime) -> list[Occurrence]:
    if not reminder.time_slots:
        instant = occurrence_after(reminder, now)
        return [Occurrence(None, instant)] if instant is not None else []
    result = []
    for slot in reminder.time_slots:
        instant = _next_slot_instant(reminder, slot, now)
        if instant is not None:
            result.append(Occurrence(slot.id, instant))
    return result


def next_occurrences(reminder: Reminder, now: datetime) -> list[Occurrence]:
    """One occurrence per trigger (each slot, or the reminder itself), sorted by time.

    A future snoozed_until replaces the snoozed trigger's normal occurrence.
    """
    if reminder.repeat_type is RepeatType.CUSTOM:
        _custom_config(reminder)

    occurrences = _formula_occurrences(reminder, now)
    snoozed = reminder.snoozed_until
    if snoozed is not None and snoozed > now:
        slot_id = reminder.snoozed_slot_id if reminder.time_slots else None
        occurrences = [o for o in occurrences if o.slot_id != slot_id]
        occurrences.append(Occurrence(slot_id, snoozed, snoozed=True))
    return sorted(occurrences, key=lambda o: o.fire_at)


def next_occurrence(reminder: Reminder, now: datetime) -> datetime | None:
    """Next trigger instant strictly after now, or None when nothing is left to fire."""
    snoozed = reminder.snoozed_until
    if snoozed is not None and snoozed > now:
        return snoozed
    occurrences = next_occurrences(reminder, now)
    return occurrences[0].fire_at if occurrences else None
