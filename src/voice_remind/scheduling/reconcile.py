"""Boot recovery: rebuild the trigger set from the store.

Runs at process start-up and whenever the OS reports a reboot (which wipes
every registered trigger). A pass loads all reminders, reschedules the ones
that still have something to fire, marks ended repeating reminders completed,
and cancels registrations no live reminder owns. Trigger ids are
deterministic, so a pass that is repeated or cut short by its time budget
never leaves duplicates behind.

Boot signals can arrive several times per reboot. A "done this boot" marker
in STATE_DIR records the boot id of the last complete pass; a boot-signal run
is skipped when it matches. Start-up runs always go through.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from voice_remind import config
from voice_remind.errors import ReminderEngineError, StoreUnavailable
from voice_remind.scheduling.occurrences import next_occurrence
from voice_remind.scheduling.recurrence import ReminderStatus
from voice_remind.scheduling.reminders import Reminder
from voice_remind.scheduling.scheduler import (
    ScheduleOutcome,
    TriggerScheduler,
    is_schedulable,
)
from voice_remind.scheduling.store import ENGINE_ORIGIN, ReminderStore
from voice_remind.scheduling.triggers import TriggerRegistration
from voice_remind.storage import (
    STATE_DIR,
    TZ,
    acquire_pid_file,
    read_json,
    release_pid_file,
    write_json,
)

BOOT_MARKER_FILE = STATE_DIR / "boot_reconcile.json"
RUN_LOCK_FILE = STATE_DIR / "reconcile.lock"
_BOOT_ID_FILE = Path("/proc/sys/kernel/random/boot_id")
_BOOTED_AT_PREFIX = "booted-at-"
_BOOT_TIME_TOLERANCE = 60  # seconds

STARTUP = "startup"
BOOT = "boot"

log = logging.getLogger(__name__)


def current_boot_id() -> str:
    """Kernel boot id where available, else the derived boot time in seconds."""
    try:
        boot_id = _BOOT_ID_FILE.read_text().strip()
    except OSError:
        boot_id = ""
    if boot_id:
        return boot_id
    booted_at = time.time() - time.monotonic()
    return f"{_BOOTED_AT_PREFIX}{int(booted_at)}"


def _booted_at(boot_id: str) -> int | None:
    if not boot_id.startswith(_BOOTED_AT_PREFIX):
        return None
    try:
        return int(boot_id[len(_BOOTED_AT_PREFIX) :])
    except ValueError:
        return None


def same_boot(a: str | None, b: str) -> bool:
    """Kernel ids must match exactly; derived boot times match within a tolerance."""
    if a is None:
        return False
    if a == b:
        return True
    first, second = _booted_at(a), _booted_at(b)
    if first is None or second is None:
        return False
    return abs(first - second) <= _BOOT_TIME_TOLERANCE


def should_reschedule(reminder: Reminder, now: datetime) -> bool:
    """Repeating reminders always; one-shots only while their time is still ahead."""
    if not is_schedulable(reminder):
        return False
    if reminder.is_repeating:
        return True
    return next_occurrence(reminder, now) is not None


@dataclass
class ReconcileContext:
    store: ReminderStore
    scheduler: TriggerScheduler
    budget: float = field(default_factory=lambda: config.RECONCILE_BUDGET)
    boot_id: Callable[[], str] = current_boot_id
    marker_file: Path | None = None
    lock_file: Path | None = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @property
    def marker_path(self) -> Path:
        return self.marker_file or BOOT_MARKER_FILE

    @property
    def lock_path(self) -> Path:
        return self.lock_file or RUN_LOCK_FILE

    def marked_boot_id(self) -> str | None:
        try:
            data = read_json(self.marker_path)
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable boot marker %s: %s", self.marker_path, e)
            return None
        if not isinstance(data, dict) or not isinstance(data.get("bootId"), str):
            return None
        return data["bootId"]

    def mark_done(self, boot_id: str, now: datetime) -> None:
        write_json(self.marker_path, {"bootId": boot_id, "completedAt": now.isoformat()})


@dataclass
class ReconcileReport:
    reason: str
    rescheduled: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    timed_out: bool = False
    skipped_reason: str | None = None  # set when the pass did not run at all

    @property
    def ran(self) -> bool:
        return self.skipped_reason is None


async def _reschedule_one(
    ctx: ReconcileContext,
    reminder: Reminder,
    now: datetime,
    registered: dict[int, TriggerRegistration] | None,
    report: ReconcileReport,
) -> None:
    if not should_reschedule(reminder, now):
        report.skipped.append(reminder.id)
        return

    result = await ctx.scheduler.schedule_next(reminder, now, registered=registered)
    report.cancelled.extend(result.cancelled)
    if result.outcome is ScheduleOutcome.NO_FURTHER_OCCURRENCES:
        await ctx.store.save(
            reminder.touch(now, status=ReminderStatus.COMPLETED, snoozed_until=None, snoozed_slot_id=None),
            origin=ENGINE_ORIGIN,
        )
        report.completed.append(reminder.id)
        return
    if result.registrations:
        report.rescheduled.append(reminder.id)
    if result.errors:
        report.errors[reminder.id] = str(result.errors[0])
        log.warning("Reminder %s not fully rescheduled: %s", reminder.id, result.errors[0])


async def _run_pass(ctx: ReconcileContext, report: ReconcileReport, now: datetime) -> bool:
    """One pass over the store. False when the store could not be read."""
    try:
        reminders = await ctx.store.list()
    except StoreUnavailable as e:
        log.error("Reconcile aborted, store unavailable: %s", e)
        report.errors["*"] = str(e)
        return False

    try:
        registered: dict[int, TriggerRegistration] | None = await ctx.scheduler.registered()
    except ReminderEngineError as e:
        log.warning("Could not list registered triggers, re-registering everything: %s", e)
        registered = None

    for reminder in reminders:
        try:
            await _reschedule_one(ctx, reminder, now, registered, report)
        except (ReminderEngineError, ValueError) as e:
            log.warning("Reconcile failed for reminder %s: %s", reminder.id, e)
            report.errors[reminder.id] = str(e)

    if registered is not None:
        keep = {r.id for r in reminders if is_schedulable(r)} | set(ctx.store.quarantined())
        orphans = {tid for tid, reg in registered.items() if reg.reminder_id not in keep}
        cancelled, errors = await ctx.scheduler.cancel_ids(orphans)
        report.cancelled.extend(cancelled)
        for e in errors:
            report.errors[f"trigger:{e.trigger_id}"] = str(e)
    return True


async def run_reconcile(
    ctx: ReconcileContext,
    *,
    reason: str = STARTUP,
    now: datetime | None = None,
) -> ReconcileReport:
    """Run one reconciliation pass unless one is running or this boot is done."""
    if ctx._lock.locked():
        log.info("Reconcile (%s) skipped: already running", reason)
        return ReconcileReport(reason, skipped_reason="in_progress")

    async with ctx._lock:
        boot_id = ctx.boot_id()
        if reason == BOOT and same_boot(ctx.marked_boot_id(), boot_id):
            log.info("Reconcile (boot) skipped: already done for boot %s", boot_id)
            return ReconcileReport(reason, skipped_reason="already_done")
        if not acquire_pid_file(ctx.lock_path):
            log.info("Reconcile (%s) skipped: another process holds %s", reason, ctx.lock_path)
            return ReconcileReport(reason, skipped_reason="in_progress")

        now = now or datetime.now(TZ)
        report = ReconcileReport(reason)
        try:
            async with asyncio.timeout(ctx.budget):
                complete = await _run_pass(ctx, report, now)
        except TimeoutError:
            report.timed_out = True
            complete = False
            log.warning("Reconcile (%s) stopped after its %.1fs budget", reason, ctx.budget)
        finally:
            release_pid_file(ctx.lock_path)

        if complete:
            try:
                ctx.mark_done(boot_id, now)
            except OSError as e:
                log.warning("Could not persist boot marker: %s", e)

    log.info(
        "Reconcile (%s): %d rescheduled, %d skipped, %d completed, %d cancelled, %d failed",
        reason,
        len(report.rescheduled),
        len(report.skipped),
        len(report.completed),
        len(report.cancelled),
        len(report.errors),
    )
    return report
