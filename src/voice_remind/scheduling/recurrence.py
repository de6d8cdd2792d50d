"""Recurrence value types: repeat kinds, reminder status, custom repeat intervals.

CustomRepeatConfig normalizes its interval on construction (90 minutes becomes
1 hour 30 minutes) and rejects configurations that could never fire. Configs
that merely duplicate a standard repeat type are accepted; callers can read
validation_warnings() to nudge the user toward the simpler type.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from voice_remind.errors import InvalidRecurrenceConfig

MIN_INTERVAL_MINUTES = 5
MAX_INTERVAL_MINUTES = 365 * 24 * 60

_DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


class ReminderStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class RepeatType(Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"

    @property
    def is_repeating(self) -> bool:
        return self is not RepeatType.NONE


@dataclass(frozen=True, slots=True)
class CustomRepeatConfig:
    minutes: int = 0
    hours: int = 0
    days: int = 0
    specific_days: frozenset[int] | None = None  # 1=Mon .. 7=Sun
    end_date: datetime | None = None

    def __post_init__(self) -> None:
        for name in ("minutes", "hours", "days"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise InvalidRecurrenceConfig(f"{name} must be a non-negative integer, got {value!r}")

        total = self.days * 24 * 60 + self.hours * 60 + self.minutes
        object.__setattr__(self, "days", total // (24 * 60))
        object.__setattr__(self, "hours", (total % (24 * 60)) // 60)
        object.__setattr__(self, "minutes", total % 60)

        days_set = frozenset(self.specific_days) if self.specific_days else None
        object.__setattr__(self, "specific_days", days_set)
        if days_set is not None:
            bad = sorted(d for d in days_set if not isinstance(d, int) or not 1 <= d <= 7)
            if bad:
                raise InvalidRecurrenceConfig(f"weekday numbers must be 1..7, got {bad}")

        if total == 0 and days_set is None:
            raise InvalidRecurrenceConfig("custom repeat needs an interval or specific days")
        if 0 < total < MIN_INTERVAL_MINUTES:
            raise InvalidRecurrenceConfig(f"minimum interval is {MIN_INTERVAL_MINUTES} minutes")
        if total > MAX_INTERVAL_MINUTES:
            raise InvalidRecurrenceConfig("maximum interval is 365 days")
        if self.end_date is not None and self.end_date.tzinfo is None:
            raise InvalidRecurrenceConfig("end_date must be timezone-aware")

    @property
    def total_minutes(self) -> int:
        return self.days * 24 * 60 + self.hours * 60 + self.minutes

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.total_minutes)

    @property
    def is_sub_day(self) -> bool:
        """True when the cadence is minutes/hours only."""
        return self.total_minutes > 0 and self.days == 0

    def matches_standard_repeat(self) -> RepeatType | None:
        if self.specific_days is not None:
            return None
        if self.hours or self.minutes:
            return None
        if self.days == 1:
            return RepeatType.DAILY
        if self.days == 7:
            return RepeatType.WEEKLY
        # Monthly is calendar-based, never equal to a fixed day count
        return None

    def validation_warnings(self) -> list[str]:
        warnings = []
        standard = self.matches_standard_repeat()
        if standard is not None:
            warnings.append(
                f"this custom repeat is the same as {standard.value!r}; consider using it instead"
            )
        if self.specific_days is not None and len(self.specific_days) == 7:
            warnings.append("all seven weekdays are selected; the weekday filter has no effect")
        return warnings

    def format_interval(self) -> str:
        parts = []
        for value, unit in ((self.days, "day"), (self.hours, "hour"), (self.minutes, "minute")):
            if value:
                parts.append(f"{value} {unit}{'s' if value > 1 else ''}")
        return " and ".join(parts)

    def format_specific_days(self) -> str:
        if not self.specific_days or len(self.specific_days) == 7:
            return "every day"
        days = sorted(self.specific_days)
        if days == [1, 2, 3, 4, 5]:
            return "Mon - Fri"
        if days == [6, 7]:
            return "Sat - Sun"
        if len(days) > 2 and days[-1] - days[0] == len(days) - 1:
            return f"{_DAY_NAMES[days[0] - 1]} - {_DAY_NAMES[days[-1] - 1]}"
        return ", ".join(_DAY_NAMES[d - 1] for d in days)

    def summary(self) -> str:
        """Display text, e.g. "Every 2 days on Mon, Wed until Jan 5, 2025"."""
        interval = self.format_interval()
        if not interval:
            days = self.format_specific_days()
            text = "Every day" if days == "every day" else f"Every {days}"
        else:
            text = f"Every {interval}"
            if self.specific_days is not None:
                text += f" on {self.format_specific_days()}"
        if self.end_date is not None:
            text += f" until {self.end_date.strftime('%b %-d, %Y')}"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "minutes": self.minutes,
            "hours": self.hours,
            "days": self.days,
            "specificDays": sorted(self.specific_days) if self.specific_days else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
        }

    @staticmethod
    def from_dict(data: dict[str, Any], *, end_date: datetime | None = None) -> CustomRepeatConfig:
        """end_date is passed pre-parsed; the store owns instant decoding."""
        specific: Iterable[int] | None = data.get("specificDays")
        return CustomRepeatConfig(
            minutes=data.get("minutes") or 0,
            hours=data.get("hours") or 0,
            days=data.get("days") or 0,
            specific_days=frozenset(specific) if specific else None,
            end_date=end_date,
        )
