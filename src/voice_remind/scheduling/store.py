"""Durable reminder store: one JSON object keyed by reminder id.

Writes are serialized by an asyncio.Lock and land atomically (temp file +
rename), so readers in this or another process never see a half-written file.
Every record is schema-checked on read; a record that fails is quarantined
(logged, hidden from list(), preserved verbatim on the next write) instead of
aborting the whole read.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, time, timezone, tzinfo
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar
from zoneinfo import ZoneInfo

from jsonschema import Draft7Validator

from voice_remind.errors import StoreUnavailable
from voice_remind.scheduling.recurrence import (
    CustomRepeatConfig,
    ReminderStatus,
    RepeatType,
)
from voice_remind.scheduling.reminders import Reminder, TimeSlot
from voice_remind.storage import DATA_DIR, TZ, file_revision, read_json, write_json

REMINDERS_FILE = DATA_DIR / "reminders.json"
E = TypeVar("E", bound=Enum)
_WRITE_ATTEMPTS = 3
_WRITE_BACKOFF = 0.05  # seconds, doubled per attempt
ENGINE_ORIGIN = "engine"  # origin tag on writes made by the engine itself

log = logging.getLogger(__name__)

_INSTANT: dict[str, Any] = {"type": ["string", "integer"]}
_OPTIONAL_INSTANT: dict[str, Any] = {"type": ["string", "integer", "null"]}

# Enum order of records written by the first app release, which stored indexes
_LEGACY_STATUS = (ReminderStatus.PENDING, ReminderStatus.COMPLETED, ReminderStatus.OVERDUE)
_LEGACY_REPEAT = (RepeatType.NONE, RepeatType.DAILY, RepeatType.WEEKLY, RepeatType.MONTHLY)

REMINDER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "title", "scheduledTime"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "title": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "scheduledTime": _INSTANT,
        "status": {"enum": [s.value for s in ReminderStatus] + list(range(len(_LEGACY_STATUS)))},
        "repeatType": {"enum": [r.value for r in RepeatType] + list(range(len(_LEGACY_REPEAT)))},
        "timeZone": {"type": ["string", "null"]},
        "customRepeatConfig": {
            "type": ["object", "null"],
            "properties": {
                "minutes": {"type": "integer", "minimum": 0},
                "hours": {"type": "integer", "minimum": 0},
                "days": {"type": "integer", "minimum": 0},
                "specificDays": {
                    "type": ["array", "null"],
                    "items": {"type": "integer", "minimum": 1, "maximum": 7},
                },
                "endDate": _OPTIONAL_INSTANT,
            },
        },
        "timeSlots": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "time"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "time": {"type": "string", "pattern": r"^([01]\d|2[0-3]):[0-5]\d$"},
                    "status": {"enum": ["pending", "completed"]},
                    "description": {"type": ["string", "null"]},
                },
            },
        },
        "isNotificationEnabled": {"type": "boolean"},
        "snoozedUntil": _OPTIONAL_INSTANT,
        "snoozedSlotId": {"type": ["string", "null"]},
        "createdAt": _OPTIONAL_INSTANT,
        "updatedAt": _OPTIONAL_INSTANT,
    },
}

_validator = Draft7Validator(REMINDER_SCHEMA)


class InvalidRecord(ValueError):
    pass


def _decode_instant(value: str | int | None, zone: tzinfo = TZ) -> datetime | None:
    """ISO 8601 strings (naive read as wall-clock in zone) or legacy epoch milliseconds."""
    if value is None:
        return None
    if isinstance(value, int):
        return datetime.fromtimestamp(value / 1000, zone)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)


def _encode_instant(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _zone_name(value: datetime) -> str | None:
    """IANA name of the zone recurrences step in. Fixed offsets other than UTC have none."""
    if isinstance(value.tzinfo, ZoneInfo):
        return value.tzinfo.key
    if value.tzinfo is timezone.utc:
        return "UTC"
    return None


def _decode_enum(value: str | int | None, enum: type[E], legacy: tuple[E, ...], default: E) -> E:
    if value is None:
        return default
    if isinstance(value, int):
        return legacy[value]
    return enum(value)


def reminder_to_record(reminder: Reminder) -> dict[str, Any]:
    config = reminder.custom_repeat_config
    return {
        "id": reminder.id,
        "title": reminder.title,
        "description": reminder.description,
        "scheduledTime": _encode_instant(reminder.scheduled_time),
        "status": reminder.status.value,
        "repeatType": reminder.repeat_type.value,
        "timeZone": _zone_name(reminder.scheduled_time),
        "customRepeatConfig": config.to_dict() if config else None,
        "timeSlots": [
            {
                "id": s.id,
                "time": s.formatted_time,
                "status": s.status.value,
                "description": s.description,
            }
            for s in reminder.time_slots
        ],
        "isNotificationEnabled": reminder.is_notification_enabled,
        "snoozedUntil": _encode_instant(reminder.snoozed_until),
        "snoozedSlotId": reminder.snoozed_slot_id,
        "createdAt": _encode_instant(reminder.created_at),
        "updatedAt": _encode_instant(reminder.updated_at),
    }


def record_to_reminder(record: Any) -> Reminder:
    """Schema-validate then build. Raises InvalidRecord, never a bare KeyError mid-batch."""
    errors = [err.message for err in _validator.iter_errors(record)]
    if errors:
        raise InvalidRecord("; ".join(errors))
    try:
        zone_name = record.get("timeZone")
        zone = ZoneInfo(zone_name) if zone_name else TZ
        config_data = record.get("customRepeatConfig")
        config = None
        if config_data is not None:
            config = CustomRepeatConfig.from_dict(
                config_data, end_date=_decode_instant(config_data.get("endDate"), zone)
            )
        slots = tuple(
            TimeSlot(
                id=s["id"],
                time=time.fromisoformat(s["time"]),
                status=ReminderStatus(s.get("status", "pending")),
                description=s.get("description"),
            )
            for s in record.get("timeSlots", [])
        )
        return Reminder(
            id=record["id"],
            title=record["title"],
            description=record.get("description"),
            scheduled_time=_decode_instant(record["scheduledTime"], zone),  # type: ignore[arg-type]
            status=_decode_enum(record.get("status"), ReminderStatus, _LEGACY_STATUS, ReminderStatus.PENDING),
            repeat_type=_decode_enum(record.get("repeatType"), RepeatType, _LEGACY_REPEAT, RepeatType.NONE),
            custom_repeat_config=config,
            time_slots=slots,
            is_notification_enabled=record.get("isNotificationEnabled", True),
            snoozed_until=_decode_instant(record.get("snoozedUntil"), zone),
            snoozed_slot_id=record.get("snoozedSlotId"),
            created_at=_decode_instant(record.get("createdAt")),
            updated_at=_decode_instant(record.get("updatedAt")),
        )
    except (ValueError, TypeError, KeyError, OverflowError) as e:
        raise InvalidRecord(str(e)) from e


@dataclass(frozen=True, slots=True)
class StoreChange:
    kind: str  # "saved" or "deleted"
    reminder_id: str
    origin: str | None = None


class ReminderStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or REMINDERS_FILE
        self._lock = asyncio.Lock()
        self._snapshot: dict[str, Reminder] | None = None
        self._quarantined: dict[str, Any] = {}
        self._subscribers: set[asyncio.Queue[StoreChange]] = set()
        self._seen_revision: tuple[int, int] | None = None

    # --- Reads ---

    def _load(self) -> dict[str, Reminder]:
        """Read from disk. Raises StoreUnavailable; never returns a stale snapshot."""
        revision = file_revision(self.path)
        try:
            raw = read_json(self.path, default={})
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StoreUnavailable(f"cannot read {self.path}: {e}") from e
        if isinstance(raw, list):
            # Older layout: a bare sequence of records
            raw = {r.get("id", f"#{i}"): r for i, r in enumerate(raw) if isinstance(r, dict)}
        if not isinstance(raw, dict):
            raise StoreUnavailable(f"{self.path} does not hold a JSON object")

        reminders: dict[str, Reminder] = {}
        quarantined: dict[str, Any] = {}
        for key, record in raw.items():
            try:
                reminder = record_to_reminder(record)
            except InvalidRecord as e:
                log.error("Quarantined reminder record %s: %s", key, e)
                quarantined[key] = record
                continue
            reminders[reminder.id] = reminder

        self._snapshot = reminders
        self._quarantined = quarantined
        self._seen_revision = revision
        return dict(reminders)

    def _read(self) -> dict[str, Reminder]:
        try:
            return self._load()
        except StoreUnavailable:
            if self._snapshot is None:
                raise
            log.warning("Reminder store unreadable, using last-known state", exc_info=True)
            return dict(self._snapshot)

    async def list(self) -> list[Reminder]:
        return sorted(self._read().values(), key=lambda r: r.scheduled_time)

    async def get(self, reminder_id: str) -> Reminder | None:
        return self._read().get(reminder_id)

    def quarantined(self) -> dict[str, Any]:
        """Raw records that failed validation on the last read."""
        return dict(self._quarantined)

    # --- Writes ---

    async def _write(self, reminders: dict[str, Reminder]) -> None:
        data: dict[str, Any] = dict(self._quarantined)
        for rid in reminders:
            data.pop(rid, None)
        data.update({rid: reminder_to_record(r) for rid, r in reminders.items()})

        last_error: OSError | None = None
        for attempt in range(_WRITE_ATTEMPTS):
            try:
                write_json(self.path, data)
            except OSError as e:
                last_error = e
                log.warning("Store write failed (attempt %d/%d): %s", attempt + 1, _WRITE_ATTEMPTS, e)
                await asyncio.sleep(_WRITE_BACKOFF * 2**attempt)
                continue
            self._snapshot = dict(reminders)
            self._seen_revision = file_revision(self.path)
            return
        raise StoreUnavailable(f"cannot write {self.path}: {last_error}") from last_error

    async def save(self, reminder: Reminder, *, origin: str | None = None) -> None:
        """Insert or replace by id."""
        async with self._lock:
            reminders = self._load()
            reminders[reminder.id] = reminder
            await self._write(reminders)
        self._publish(StoreChange("saved", reminder.id, origin))

    async def delete(self, reminder_id: str, *, origin: str | None = None) -> bool:
        async with self._lock:
            reminders = self._load()
            found = reminders.pop(reminder_id, None) is not None
            if reminder_id in self._quarantined:
                del self._quarantined[reminder_id]
                found = True
            if not found:
                return False
            await self._write(reminders)
        self._publish(StoreChange("deleted", reminder_id, origin))
        return True

    # --- Change notification ---

    def subscribe(self) -> asyncio.Queue[StoreChange]:
        queue: asyncio.Queue[StoreChange] = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StoreChange]) -> None:
        self._subscribers.discard(queue)

    def _publish(self, change: StoreChange) -> None:
        for queue in self._subscribers:
            queue.put_nowait(change)

    def revision(self) -> tuple[int, int] | None:
        return file_revision(self.path)

    def changed_externally(self) -> bool:
        """True when the file changed since this store last read or wrote it."""
        return self.revision() != self._seen_revision
