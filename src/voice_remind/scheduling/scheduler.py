"""Trigger scheduler: turns reminders into Trigger Sink registrations.

Maintains, per reminder: one registered trigger per upcoming slot/occurrence
while the reminder is pending and notification-enabled, none otherwise. Every
sink call is bounded by a timeout and a fixed number of attempts; a failure
costs that one registration, never the caller's whole batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TypeVar

from voice_remind import config
from voice_remind.errors import (
    ExactAlarmPermissionMissing,
    TriggerRegistrationFailed,
    TriggerSinkError,
)
from voice_remind.scheduling.occurrences import next_occurrences
from voice_remind.scheduling.reminders import Reminder
from voice_remind.scheduling.triggers import (
    Delivery,
    TriggerPayload,
    TriggerRegistration,
    TriggerSink,
    trigger_id,
    trigger_ids_for,
)
from voice_remind.storage import TZ

T = TypeVar("T")
log = logging.getLogger(__name__)

_RETRY_BACKOFF = 0.1  # seconds, doubled per attempt


class ScheduleOutcome(Enum):
    SCHEDULED = "scheduled"
    PARTIAL = "partial"  # some slots registered, some failed
    NOT_SCHEDULABLE = "not_schedulable"  # not pending, or notifications off
    NO_FURTHER_OCCURRENCES = "no_further_occurrences"
    PERMISSION_MISSING = "permission_missing"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ScheduleResult:
    reminder_id: str
    outcome: ScheduleOutcome
    registrations: tuple[TriggerRegistration, ...] = ()
    cancelled: tuple[int, ...] = ()
    errors: tuple[TriggerRegistrationFailed, ...] = ()

    @property
    def is_scheduled(self) -> bool:
        """Every upcoming trigger is registered as an exact trigger."""
        return self.outcome is ScheduleOutcome.SCHEDULED

    @property
    def next_fire_at(self) -> datetime | None:
        return min((r.fire_at for r in self.registrations), default=None)


def is_schedulable(reminder: Reminder) -> bool:
    return reminder.is_pending and reminder.is_notification_enabled


class TriggerScheduler:
    def __init__(
        self,
        sink: TriggerSink,
        *,
        timeout: float | None = None,
        attempts: int | None = None,
        delivery: Delivery | None = None,
    ) -> None:
        self.sink = sink
        self.timeout = timeout if timeout is not None else config.SINK_TIMEOUT
        self.attempts = max(1, attempts if attempts is not None else config.SINK_RETRIES)
        if delivery is None:
            delivery = Delivery.ALARM if config.USE_ALARM else Delivery.NOTIFICATION
        self.delivery = delivery

    def plan(self, reminder: Reminder, now: datetime) -> list[TriggerRegistration]:
        """Registrations this reminder should have right now. Pure."""
        if not is_schedulable(reminder):
            return []
        result = []
        for occ in next_occurrences(reminder, now):
            description = reminder.description
            if occ.slot_id is not None:
                slot = reminder.slot(occ.slot_id)
                if slot is not None and slot.description:
                    description = slot.description
            payload = TriggerPayload(
                reminder_id=reminder.id,
                slot_id=occ.slot_id,
                title=reminder.title,
                description=description,
                fire_at=occ.fire_at,
                snoozed=occ.snoozed,
                delivery=self.delivery,
            )
            result.append(TriggerRegistration(payload.trigger_id, occ.fire_at, payload))
        return result

    async def _call(self, tid: int, what: str, op: Callable[[], Awaitable[T]]) -> T:
        last: BaseException | None = None
        for attempt in range(self.attempts):
            try:
                async with asyncio.timeout(self.timeout):
                    return await op()
            except (TriggerSinkError, TimeoutError) as e:
                last = e
                log.warning(
                    "Sink %s for trigger %d failed (attempt %d/%d): %s",
                    what, tid, attempt + 1, self.attempts, str(e) or type(e).__name__,
                )
                if attempt + 1 < self.attempts:
                    await asyncio.sleep(_RETRY_BACKOFF * 2**attempt)
        raise TriggerRegistrationFailed(tid, f"{what} failed: {str(last) or type(last).__name__}")

    async def can_schedule_exact(self) -> bool:
        return await self._call(0, "permission check", self.sink.can_schedule_exact)

    async def registered(self) -> dict[int, TriggerRegistration]:
        return await self._call(0, "list", self.sink.registered)

    async def _cancel(self, tid: int) -> None:
        await self._call(tid, "cancel", lambda: self.sink.cancel(tid))

    async def cancel_ids(
        self,
        ids: Iterable[int],
        registered: dict[int, TriggerRegistration] | None = None,
    ) -> tuple[list[int], list[TriggerRegistrationFailed]]:
        """Cancel each id, collecting failures. Ids absent from `registered` are skipped."""
        cancelled, errors = [], []
        for tid in sorted(ids):
            if registered is not None and tid not in registered:
                continue
            try:
                await self._cancel(tid)
            except TriggerRegistrationFailed as e:
                errors.append(e)
                continue
            cancelled.append(tid)
        return cancelled, errors

    async def schedule_next(
        self,
        reminder: Reminder,
        now: datetime | None = None,
        *,
        registered: dict[int, TriggerRegistration] | None = None,
    ) -> ScheduleResult:
        """Register (or replace) triggers for the reminder's next occurrences.

        `registered`, when given, is the sink's current registrations; identical
        ones are left alone and only triggers known to exist are cancelled.
        Idempotent: trigger ids are derived from (reminder, slot), so a repeat
        call replaces rather than duplicates.
        """
        now = now or datetime.now(TZ)
        owned = trigger_ids_for(reminder.id, (s.id for s in reminder.time_slots))
        if registered is not None:
            owned |= {tid for tid, reg in registered.items() if reg.reminder_id == reminder.id}

        if not is_schedulable(reminder):
            cancelled, errors = await self.cancel_ids(owned, registered)
            return ScheduleResult(
                reminder.id, ScheduleOutcome.NOT_SCHEDULABLE,
                cancelled=tuple(cancelled), errors=tuple(errors),
            )

        plan = self.plan(reminder, now)
        if not plan:
            cancelled, errors = await self.cancel_ids(owned, registered)
            log.info("Reminder %s has no further occurrences", reminder.id)
            return ScheduleResult(
                reminder.id, ScheduleOutcome.NO_FURTHER_OCCURRENCES,
                cancelled=tuple(cancelled), errors=tuple(errors),
            )

        try:
            exact = await self.can_schedule_exact()
        except TriggerRegistrationFailed as e:
            return ScheduleResult(reminder.id, ScheduleOutcome.FAILED, errors=(e,))
        if not exact:
            log.warning("Exact-alarm permission missing; reminder %s not scheduled", reminder.id)
            return ScheduleResult(
                reminder.id, ScheduleOutcome.PERMISSION_MISSING,
                errors=(ExactAlarmPermissionMissing(plan[0].trigger_id),),
            )

        done: list[TriggerRegistration] = []
        errors: list[TriggerRegistrationFailed] = []
        for reg in plan:
            if registered is not None and registered.get(reg.trigger_id) == reg:
                done.append(reg)
                continue
            try:
                await self._call(
                    reg.trigger_id, "register",
                    lambda reg=reg: self.sink.register(reg.trigger_id, reg.fire_at, reg.payload),
                )
            except TriggerRegistrationFailed as e:
                errors.append(e)
                continue
            done.append(reg)
            log.debug("Registered trigger %d for %s at %s", reg.trigger_id, reminder.id, reg.fire_at)

        stale = owned - {reg.trigger_id for reg in plan}
        cancelled, cancel_errors = await self.cancel_ids(stale, registered)
        errors.extend(cancel_errors)

        if not errors:
            outcome = ScheduleOutcome.SCHEDULED
        elif done:
            outcome = ScheduleOutcome.PARTIAL
        else:
            outcome = ScheduleOutcome.FAILED
        return ScheduleResult(
            reminder.id, outcome,
            registrations=tuple(done), cancelled=tuple(cancelled), errors=tuple(errors),
        )

    async def cancel_all(self, reminder_id: str, slot_ids: Iterable[str] = ()) -> list[int]:
        """Cancel every trigger this reminder owns. Raises TriggerRegistrationFailed.

        Covers slot ids the caller no longer knows about by also sweeping the
        sink's registrations for this reminder id.
        """
        ids = trigger_ids_for(reminder_id, slot_ids)
        try:
            registered = await self.registered()
        except TriggerRegistrationFailed:
            log.warning("Could not list registrations; cancelling known ids for %s only", reminder_id)
        else:
            ids |= {tid for tid, reg in registered.items() if reg.reminder_id == reminder_id}

        cancelled, errors = await self.cancel_ids(ids, None)
        if errors:
            raise errors[0]
        return cancelled

    async def cancel_trigger(self, reminder_id: str, slot_id: str | None = None) -> None:
        await self._cancel(trigger_id(reminder_id, slot_id))
