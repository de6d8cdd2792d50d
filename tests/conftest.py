"""Shared fixtures for voice-remind tests."""

import asyncio
import os

os.environ["VOICE_REMIND_TIMEZONE"] = "America/Los_Angeles"

import pytest

from voice_remind.errors import TriggerSinkError
from voice_remind.scheduling.triggers import (
    FiredTrigger,
    TriggerPayload,
    TriggerRegistration,
)


class FakeSink:
    """In-memory Trigger Sink with failure injection."""

    def __init__(self, *, exact: bool = True) -> None:
        self.exact = exact
        self.triggers: dict[int, TriggerRegistration] = {}
        self.presented: list[TriggerPayload] = []
        self.register_calls = 0
        self.fail_register: set[int] = set()
        self.fail_cancel: set[int] = set()
        self.fail_next = 0
        self.hang = False
        self._events: asyncio.Queue[FiredTrigger] = asyncio.Queue()

    async def register(self, trigger_id, fire_at, payload):
        self.register_calls += 1
        await asyncio.sleep(0)
        if self.hang:
            await asyncio.sleep(3600)
        if trigger_id in self.fail_register:
            raise TriggerSinkError("refused")
        if self.fail_next:
            self.fail_next -= 1
            raise TriggerSinkError("busy")
        self.triggers[trigger_id] = TriggerRegistration(trigger_id, fire_at, payload)

    async def cancel(self, trigger_id):
        if trigger_id in self.fail_cancel:
            raise TriggerSinkError("cannot cancel")
        self.triggers.pop(trigger_id, None)

    async def registered(self):
        return dict(self.triggers)

    async def can_schedule_exact(self):
        return self.exact

    async def present(self, payload):
        self.presented.append(payload)

    async def events(self):
        while True:
            yield await self._events.get()

    def fire(self, trigger_id, fired_at=None) -> FiredTrigger:
        """Pop a registration as the OS would when its instant is reached."""
        reg = self.triggers.pop(trigger_id)
        return FiredTrigger(trigger_id, reg.payload, fired_at or reg.fire_at)

    def emit(self, event: FiredTrigger) -> None:
        self._events.put_nowait(event)

    def clear(self) -> None:
        """Simulate a reboot wiping every registration."""
        self.triggers.clear()


@pytest.fixture()
def data_dir(tmp_path, monkeypatch):
    """Redirect all data file paths to a temp directory."""
    import voice_remind.scheduling.reconcile as reconcile_mod
    import voice_remind.scheduling.store as store_mod
    import voice_remind.storage as storage_mod

    state_dir = tmp_path / "state"
    monkeypatch.setattr(storage_mod, "DATA_DIR", tmp_path)
    monkeypatch.setattr(storage_mod, "STATE_DIR", state_dir)
    monkeypatch.setattr(store_mod, "REMINDERS_FILE", tmp_path / "reminders.json")
    monkeypatch.setattr(reconcile_mod, "BOOT_MARKER_FILE", state_dir / "boot_reconcile.json")
    monkeypatch.setattr(reconcile_mod, "RUN_LOCK_FILE", state_dir / "reconcile.lock")
    return tmp_path


@pytest.fixture()
def sink():
    return FakeSink()


@pytest.fixture()
def store(data_dir):
    from voice_remind.scheduling.store import ReminderStore

    return ReminderStore()
