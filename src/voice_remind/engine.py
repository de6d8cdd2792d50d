"""ReminderEngine: wires the store, scheduler, reconciliation and handler.

The application shell talks to this object only. Mutations go through the
store and are scheduled before the call returns; fired triggers arrive from
the sink's event stream; writes made by other components are picked up from
the store's change feed, with a slow interval poll as a safety net for
writes from another process.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from voice_remind import config
from voice_remind.scheduling.handler import FiredTriggerHandler
from voice_remind.scheduling.reconcile import (
    BOOT,
    STARTUP,
    ReconcileContext,
    ReconcileReport,
    run_reconcile,
)
from voice_remind.scheduling.reminders import Reminder
from voice_remind.scheduling.scheduler import (
    ScheduleOutcome,
    ScheduleResult,
    TriggerScheduler,
)
from voice_remind.scheduling.sink import APSchedulerSink
from voice_remind.scheduling.store import ENGINE_ORIGIN, ReminderStore, StoreChange
from voice_remind.scheduling.triggers import TriggerSink, trigger_ids_for
from voice_remind.storage import TZ

POLL = "poll"

log = logging.getLogger(__name__)

_REASONS = {
    ScheduleOutcome.NO_FURTHER_OCCURRENCES: "no future occurrence",
    ScheduleOutcome.PERMISSION_MISSING: "exact-alarm permission missing",
}


@dataclass(frozen=True, slots=True)
class SaveResult:
    """Outcome of a user-initiated change: saved, and whether it will fire."""

    reminder: Reminder
    schedule: ScheduleResult

    @property
    def scheduled(self) -> bool:
        return self.schedule.is_scheduled

    @property
    def reason(self) -> str | None:
        """Why the reminder is not (fully) scheduled, or None when it is."""
        outcome = self.schedule.outcome
        if outcome is ScheduleOutcome.SCHEDULED:
            return None
        if outcome is ScheduleOutcome.NOT_SCHEDULABLE:
            if not self.reminder.is_notification_enabled:
                return "notifications disabled"
            return f"reminder is {self.reminder.status.value}"
        if outcome in _REASONS:
            return _REASONS[outcome]
        if self.schedule.errors:
            return str(self.schedule.errors[0])
        return outcome.value


class ReminderEngine:
    def __init__(
        self,
        sink: TriggerSink | None = None,
        *,
        store: ReminderStore | None = None,
        scheduler: TriggerScheduler | None = None,
        poll_seconds: int | None = None,
        boot_id: Callable[[], str] | None = None,
    ) -> None:
        self._owns_sink = sink is None
        self.sink: TriggerSink = sink if sink is not None else APSchedulerSink()
        self.store = store or ReminderStore()
        self.scheduler = scheduler or TriggerScheduler(self.sink)
        self.handler = FiredTriggerHandler(self.store, self.scheduler, self.sink)
        self.reconcile_context = ReconcileContext(self.store, self.scheduler)
        if boot_id is not None:
            self.reconcile_context.boot_id = boot_id
        self.poll_seconds = poll_seconds or config.POLL_SECONDS
        self._tasks: list[asyncio.Task] = []
        self._changes: asyncio.Queue[StoreChange] | None = None
        self._poller: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # --- Lifecycle ---

    async def start(self) -> ReconcileReport:
        """Reconcile, then follow fired triggers, store changes and the freshness poll."""
        if self.running:
            raise RuntimeError("engine already started")
        if self._owns_sink and isinstance(self.sink, APSchedulerSink):
            self.sink.start()
        report = await run_reconcile(self.reconcile_context, reason=STARTUP)

        self._changes = self.store.subscribe()
        self._tasks = [
            asyncio.create_task(self._consume_events(), name="voice-remind-events"),
            asyncio.create_task(self._watch_store(self._changes), name="voice-remind-store"),
        ]

        self._poller = AsyncIOScheduler(timezone=TZ)

        @self._poller.scheduled_job(IntervalTrigger(seconds=self.poll_seconds), id="store_poll", coalesce=True)
        async def poll_store() -> None:
            await self.poll_once()

        self._poller.start()
        log.info("Reminder engine started (poll every %ds)", self.poll_seconds)
        return report

    async def stop(self) -> None:
        if self._poller is not None:
            self._poller.shutdown(wait=False)
            self._poller = None
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._changes is not None:
            self.store.unsubscribe(self._changes)
            self._changes = None
        if self._owns_sink and isinstance(self.sink, APSchedulerSink):
            self.sink.shutdown()
        log.info("Reminder engine stopped")

    async def on_boot_signal(self) -> ReconcileReport:
        return await run_reconcile(self.reconcile_context, reason=BOOT)

    async def poll_once(self) -> ReconcileReport | None:
        """Reconcile when another process changed the store file since we last saw it."""
        if not self.store.changed_externally():
            return None
        log.info("Store changed outside this process, reconciling")
        return await run_reconcile(self.reconcile_context, reason=POLL)

    # --- Mutations ---

    async def save_reminder(self, reminder: Reminder) -> SaveResult:
        """Persist, then schedule. The result says whether it will actually fire."""
        previous = await self.store.get(reminder.id)
        await self.store.save(reminder, origin=ENGINE_ORIGIN)

        if previous is not None:
            dropped = trigger_ids_for(previous.id, (s.id for s in previous.time_slots)) - trigger_ids_for(
                reminder.id, (s.id for s in reminder.time_slots)
            )
            _, errors = await self.scheduler.cancel_ids(dropped)
            for e in errors:
                log.warning("Could not cancel trigger of removed slot: %s", e)

        schedule = await self.scheduler.schedule_next(reminder, datetime.now(TZ))
        result = SaveResult(reminder, schedule)
        if not result.scheduled:
            log.warning("Reminder %s saved but not scheduled: %s", reminder.id, result.reason)
        return result

    async def delete_reminder(self, reminder_id: str) -> bool:
        """Cancel every trigger, then delete.

        Raises TriggerRegistrationFailed, keeping the record, when a trigger
        cannot be cancelled.
        """
        reminder = await self.store.get(reminder_id)
        slot_ids = [s.id for s in reminder.time_slots] if reminder else []
        await self.scheduler.cancel_all(reminder_id, slot_ids)
        return await self.store.delete(reminder_id, origin=ENGINE_ORIGIN)

    async def set_notifications_enabled(self, reminder_id: str, enabled: bool) -> SaveResult:
        """Turning notifications off cancels the triggers before anything is saved."""
        reminder = await self.store.get(reminder_id)
        if reminder is None:
            raise KeyError(reminder_id)
        if not enabled:
            await self.scheduler.cancel_all(reminder.id, [s.id for s in reminder.time_slots])
        updated = reminder.touch(is_notification_enabled=enabled)
        await self.store.save(updated, origin=ENGINE_ORIGIN)
        return SaveResult(updated, await self.scheduler.schedule_next(updated, datetime.now(TZ)))

    async def snooze(
        self,
        reminder_id: str,
        *,
        until: datetime | None = None,
        minutes: int | None = None,
        slot_id: str | None = None,
    ) -> SaveResult:
        reminder, schedule = await self.handler.snooze(
            reminder_id, until=until, minutes=minutes, slot_id=slot_id
        )
        return SaveResult(reminder, schedule)

    # --- Background tasks ---

    async def _consume_events(self) -> None:
        async for event in self.sink.events():
            try:
                await self.handler.handle(event)
            except Exception:
                log.exception("Failed to handle trigger %d", event.trigger_id)

    async def apply_change(self, change: StoreChange) -> None:
        """Bring triggers in line with a write made outside the engine."""
        if change.kind == "deleted":
            await self.scheduler.cancel_all(change.reminder_id)
            return
        reminder = await self.store.get(change.reminder_id)
        if reminder is not None:
            await self.scheduler.schedule_next(reminder, datetime.now(TZ))

    async def _watch_store(self, changes: asyncio.Queue[StoreChange]) -> None:
        while True:
            change = await changes.get()
            if change.origin == ENGINE_ORIGIN:
                continue
            try:
                await self.apply_change(change)
            except Exception:
                log.exception("Failed to apply store change for %s", change.reminder_id)
