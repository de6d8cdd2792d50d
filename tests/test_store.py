"""Tests for store.py: persisted reminders, quarantine and change feed."""

import asyncio
import json
from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

import voice_remind.scheduling.store as store_mod
from voice_remind.config import TZ
from voice_remind.errors import StoreUnavailable
from voice_remind.scheduling.occurrences import next_occurrence
from voice_remind.scheduling.recurrence import (
    CustomRepeatConfig,
    ReminderStatus,
    RepeatType,
)
from voice_remind.scheduling.reminders import Reminder, TimeSlot
from voice_remind.scheduling.store import (
    InvalidRecord,
    StoreChange,
    record_to_reminder,
    reminder_to_record,
)


def _run(coro):
    return asyncio.run(coro)


def _at(*args) -> datetime:
    return datetime(*args, tzinfo=TZ)


def _reminder(title="Water plants", **kwargs) -> Reminder:
    kwargs.setdefault("scheduled_time", _at(2024, 1, 1, 9))
    return Reminder.new(title, **kwargs)


def _record(**overrides) -> dict:
    record = {
        "id": "abc",
        "title": "Call mom",
        "scheduledTime": "2024-01-01T09:00:00-08:00",
    }
    record.update(overrides)
    return record


def test_save_and_get(store):
    reminder = _reminder(
        repeat_type=RepeatType.CUSTOM,
        custom_repeat_config=CustomRepeatConfig(days=2, specific_days=frozenset({1, 3})),
        time_slots=[TimeSlot("am", time(8), description="with food")],
    )

    _run(store.save(reminder))

    assert _run(store.get(reminder.id)) == reminder
    assert _run(store.get("missing")) is None


def test_list_sorted_by_scheduled_time(store):
    later = _reminder("later", scheduled_time=_at(2024, 1, 2))
    sooner = _reminder("sooner", scheduled_time=_at(2024, 1, 1))
    _run(store.save(later))
    _run(store.save(sooner))

    assert [r.title for r in _run(store.list())] == ["sooner", "later"]


def test_list_empty_when_file_missing(store):
    assert _run(store.list()) == []


def test_file_is_object_keyed_by_id(store, data_dir):
    reminder = _reminder()
    _run(store.save(reminder))

    data = json.loads((data_dir / "reminders.json").read_text())

    assert list(data) == [reminder.id]
    assert data[reminder.id]["scheduledTime"] == "2024-01-01T09:00:00-08:00"
    assert data[reminder.id]["isNotificationEnabled"] is True
    assert data[reminder.id]["repeatType"] == "none"


def test_delete(store):
    reminder = _reminder()
    _run(store.save(reminder))

    assert _run(store.delete(reminder.id)) is True
    assert _run(store.get(reminder.id)) is None
    assert _run(store.delete(reminder.id)) is False


def test_concurrent_saves_all_land(store):
    reminders = [_reminder(f"r{i}") for i in range(10)]

    async def save_all():
        await asyncio.gather(*(store.save(r) for r in reminders))
        return await store.list()

    assert {r.id for r in _run(save_all())} == {r.id for r in reminders}


def test_invalid_record_quarantined_and_preserved(store, data_dir):
    good = reminder_to_record(_reminder())
    bad = {"id": "bad", "title": "no time"}
    (data_dir / "reminders.json").write_text(json.dumps({good["id"]: good, "bad": bad}))

    reminders = _run(store.list())

    assert [r.id for r in reminders] == [good["id"]]
    assert store.quarantined() == {"bad": bad}

    _run(store.save(_reminder("another")))
    data = json.loads((data_dir / "reminders.json").read_text())
    assert data["bad"] == bad
    assert len(data) == 3


def test_invalid_custom_config_quarantined(store, data_dir):
    record = _record(repeatType="custom", customRepeatConfig={"minutes": 2})
    (data_dir / "reminders.json").write_text(json.dumps({"abc": record}))

    assert _run(store.list()) == []
    assert "abc" in store.quarantined()


def test_record_to_reminder_fails_closed():
    with pytest.raises(InvalidRecord):
        record_to_reminder(_record(status="snoozed"))
    with pytest.raises(InvalidRecord):
        record_to_reminder(_record(timeSlots=[{"id": "a", "time": "25:00"}]))
    with pytest.raises(InvalidRecord):
        record_to_reminder(_record(repeatType="custom"))
    with pytest.raises(InvalidRecord):
        record_to_reminder(["not", "an", "object"])
    with pytest.raises(InvalidRecord):
        record_to_reminder(_record(timeZone="Nowhere/Special"))


def test_legacy_epoch_millis_accepted():
    reminder = record_to_reminder(_record(scheduledTime=1704099600000))

    assert reminder.scheduled_time == datetime(2024, 1, 1, 9, tzinfo=timezone.utc)
    assert reminder.scheduled_time.tzinfo is TZ
    assert reminder.status is ReminderStatus.PENDING
    assert reminder.is_notification_enabled


def test_first_release_record_with_enum_indexes_loads(store, data_dir):
    record = {
        "id": "abc",
        "title": "Call mom",
        "description": None,
        "scheduledTime": 1893456000000,
        "status": 0,
        "repeatType": 1,
        "createdAt": 1704099600000,
        "updatedAt": 1704099600000,
        "isNotificationEnabled": True,
    }
    (data_dir / "reminders.json").write_text(json.dumps([record, dict(record, id="old", status=1, repeatType=3)]))

    reminders = {r.id: r for r in _run(store.list())}

    assert store.quarantined() == {}
    assert reminders["abc"].status is ReminderStatus.PENDING
    assert reminders["abc"].repeat_type is RepeatType.DAILY
    assert reminders["abc"].scheduled_time == datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert reminders["old"].status is ReminderStatus.COMPLETED
    assert reminders["old"].repeat_type is RepeatType.MONTHLY


def test_unknown_enum_index_quarantined():
    with pytest.raises(InvalidRecord):
        record_to_reminder(_record(repeatType=7))


def test_foreign_time_zone_survives_round_trip(store):
    berlin = ZoneInfo("Europe/Berlin")
    reminder = _reminder(scheduled_time=datetime(2024, 3, 30, 9, tzinfo=berlin), repeat_type=RepeatType.DAILY)

    _run(store.save(reminder))
    loaded = _run(store.get(reminder.id))

    assert reminder_to_record(reminder)["timeZone"] == "Europe/Berlin"
    assert loaded.scheduled_time.tzinfo == berlin
    assert next_occurrence(loaded, loaded.scheduled_time) == datetime(2024, 3, 31, 9, tzinfo=berlin)


def test_slot_time_survives_round_trip(store):
    reminder = _reminder(time_slots=[TimeSlot("am", time(8, 15, 30))])

    _run(store.save(reminder))

    assert _run(store.get(reminder.id)) == reminder


def test_legacy_list_layout_accepted(store, data_dir):
    (data_dir / "reminders.json").write_text(json.dumps([_record()]))

    assert [r.id for r in _run(store.list())] == ["abc"]


def test_unreadable_file_without_snapshot_raises(store, data_dir):
    (data_dir / "reminders.json").write_text("{not json")

    with pytest.raises(StoreUnavailable):
        _run(store.list())


def test_unreadable_file_falls_back_to_snapshot(store, data_dir):
    reminder = _reminder()
    _run(store.save(reminder))
    (data_dir / "reminders.json").write_text("{not json")

    assert _run(store.get(reminder.id)) == reminder


def test_write_retries_then_succeeds(store, monkeypatch):
    real_write = store_mod.write_json
    calls = []

    def flaky_write(path, data):
        calls.append(path)
        if len(calls) == 1:
            raise OSError("disk busy")
        real_write(path, data)

    monkeypatch.setattr(store_mod, "write_json", flaky_write)
    monkeypatch.setattr(store_mod, "_WRITE_BACKOFF", 0)
    reminder = _reminder()

    _run(store.save(reminder))

    assert len(calls) == 2
    assert _run(store.get(reminder.id)) == reminder


def test_write_gives_up_with_store_unavailable(store, monkeypatch):
    def broken_write(path, data):
        raise OSError("read-only file system")

    monkeypatch.setattr(store_mod, "write_json", broken_write)
    monkeypatch.setattr(store_mod, "_WRITE_BACKOFF", 0)

    with pytest.raises(StoreUnavailable, match="read-only"):
        _run(store.save(_reminder()))


def test_subscribers_receive_changes(store):
    reminder = _reminder()

    async def scenario():
        queue = store.subscribe()
        await store.save(reminder, origin="ui")
        await store.delete(reminder.id)
        store.unsubscribe(queue)
        await store.save(reminder)
        return [queue.get_nowait() for _ in range(queue.qsize())]

    assert _run(scenario()) == [
        StoreChange("saved", reminder.id, "ui"),
        StoreChange("deleted", reminder.id, None),
    ]


def test_changed_externally(store, data_dir):
    assert not store.changed_externally()
    _run(store.save(_reminder()))
    assert not store.changed_externally()

    (data_dir / "reminders.json").write_text("{}")

    assert store.changed_externally()
    _run(store.list())
    assert not store.changed_externally()
