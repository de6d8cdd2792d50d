"""In-process Trigger Sink backed by APScheduler.

Each registration is a one-shot DateTrigger job whose id is the deterministic
trigger id, so re-registering replaces the job. When a job fires, the sink
emits a FiredTrigger message onto a queue; the handler consumes it from
events() rather than being called from inside the scheduler job.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from voice_remind.errors import TriggerSinkError
from voice_remind.scheduling.triggers import (
    FiredTrigger,
    TriggerPayload,
    TriggerRegistration,
)
from voice_remind.storage import TZ

log = logging.getLogger(__name__)

Presenter = Callable[[TriggerPayload], Awaitable[None]]


def _job_id(tid: int) -> str:
    return f"trigger_{tid}"


class APSchedulerSink:
    def __init__(
        self,
        scheduler: AsyncIOScheduler | None = None,
        *,
        presenter: Presenter | None = None,
        exact_permission: bool = True,
    ) -> None:
        self.scheduler = scheduler or AsyncIOScheduler(timezone=TZ)
        self._presenter = presenter
        self._exact_permission = exact_permission
        self._registrations: dict[int, TriggerRegistration] = {}
        self._queue: asyncio.Queue[FiredTrigger] = asyncio.Queue()

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def set_exact_permission(self, granted: bool) -> None:
        self._exact_permission = granted

    def clear(self) -> None:
        """Drop every registration, as the OS does on reboot."""
        for tid in list(self._registrations):
            self._remove_job(tid)
        self._registrations.clear()

    def _remove_job(self, tid: int) -> None:
        try:
            self.scheduler.remove_job(_job_id(tid))
        except JobLookupError:
            pass

    async def register(self, trigger_id: int, fire_at: datetime, payload: TriggerPayload) -> None:
        self._remove_job(trigger_id)
        try:
            self.scheduler.add_job(
                self._fire,
                DateTrigger(run_date=fire_at),
                args=[trigger_id],
                id=_job_id(trigger_id),
                replace_existing=True,
                misfire_grace_time=None,
            )
        except (ValueError, TypeError) as e:
            raise TriggerSinkError(f"cannot register trigger {trigger_id}: {e}") from e
        self._registrations[trigger_id] = TriggerRegistration(trigger_id, fire_at, payload)

    async def cancel(self, trigger_id: int) -> None:
        self._remove_job(trigger_id)
        self._registrations.pop(trigger_id, None)

    async def registered(self) -> dict[int, TriggerRegistration]:
        return dict(self._registrations)

    async def can_schedule_exact(self) -> bool:
        return self._exact_permission

    async def present(self, payload: TriggerPayload) -> None:
        if self._presenter is not None:
            await self._presenter(payload)
            return
        log.info("Reminder due (%s): %s", payload.delivery.value, payload.title)

    async def _fire(self, trigger_id: int) -> None:
        reg = self._registrations.pop(trigger_id, None)
        if reg is None:
            return
        await self._queue.put(FiredTrigger(trigger_id, reg.payload, datetime.now(TZ)))

    async def events(self) -> AsyncIterator[FiredTrigger]:
        while True:
            yield await self._queue.get()
