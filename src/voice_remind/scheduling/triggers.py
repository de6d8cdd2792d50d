"""Trigger identity, payloads and the Trigger Sink boundary.

Trigger ids are derived only from (reminder id, slot id), so registering the
same logical trigger twice replaces it, and reconciliation can recompute the
expected ids without a side table.
"""

from __future__ import annotations

import hashlib
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol


class Delivery(Enum):
    NOTIFICATION = "notification"
    ALARM = "alarm"


def trigger_id(reminder_id: str, slot_id: str | None = None) -> int:
    """Stable positive 31-bit id; fits the int ids OS notification APIs take."""
    key = reminder_id if slot_id is None else f"{reminder_id}:{slot_id}"
    digest = hashlib.sha256(key.encode()).digest()
    return int.from_bytes(digest[:4], "big") & 0x7FFFFFFF


def trigger_ids_for(reminder_id: str, slot_ids: Iterable[str]) -> set[int]:
    """Every id a reminder can own: the single-time id plus one per slot."""
    return {trigger_id(reminder_id)} | {trigger_id(reminder_id, s) for s in slot_ids}


@dataclass(frozen=True, slots=True)
class TriggerPayload:
    """Enough to surface the reminder without reading the store."""

    reminder_id: str
    slot_id: str | None
    title: str
    description: str | None
    fire_at: datetime
    snoozed: bool = False
    delivery: Delivery = Delivery.NOTIFICATION

    @property
    def trigger_id(self) -> int:
        return trigger_id(self.reminder_id, self.slot_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reminderId": self.reminder_id,
            "slotId": self.slot_id,
            "title": self.title,
            "description": self.description,
            "fireAt": self.fire_at.isoformat(),
            "snoozed": self.snoozed,
            "delivery": self.delivery.value,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> TriggerPayload:
        return TriggerPayload(
            reminder_id=data["reminderId"],
            slot_id=data.get("slotId"),
            title=data.get("title") or "Reminder",
            description=data.get("description"),
            fire_at=datetime.fromisoformat(data["fireAt"]),
            snoozed=bool(data.get("snoozed", False)),
            delivery=Delivery(data.get("delivery", Delivery.NOTIFICATION.value)),
        )


@dataclass(frozen=True, slots=True)
class TriggerRegistration:
    trigger_id: int
    fire_at: datetime
    payload: TriggerPayload

    @property
    def reminder_id(self) -> str:
        return self.payload.reminder_id


@dataclass(frozen=True, slots=True)
class FiredTrigger:
    """Message emitted by a sink when a registered instant is reached."""

    trigger_id: int
    payload: TriggerPayload
    fired_at: datetime


class TriggerSink(Protocol):
    """OS notification/alarm surface. All calls are unreliable I/O."""

    async def register(self, trigger_id: int, fire_at: datetime, payload: TriggerPayload) -> None:
        """Register or replace. Raises TriggerSinkError on refusal."""
        ...

    async def cancel(self, trigger_id: int) -> None:
        """Unknown ids are a no-op. Raises TriggerSinkError on failure."""
        ...

    async def registered(self) -> dict[int, TriggerRegistration]: ...

    async def can_schedule_exact(self) -> bool: ...

    async def present(self, payload: TriggerPayload) -> None:
        """Show the notification or full-screen alarm for a fired trigger."""
        ...

    def events(self) -> AsyncIterator[FiredTrigger]: ...
