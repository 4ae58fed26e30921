"""
Weekly availability value types.

A provider's template holds one ``DayAvailability`` per weekday: open hours
plus break intervals. Construction validates that breaks sit inside open
hours and never overlap, so every instance describes non-overlapping windows.
Times are interpreted in UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Mapping

from appointly.core.exceptions import ValidationError

WEEKDAYS: tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def parse_time(value: Any) -> time:
    """Accept a ``time`` or an ``"HH:MM"`` string."""
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        try:
            hours, minutes = value.split(":")[:2]
            return time(int(hours), int(minutes))
        except ValueError as exc:
            raise ValidationError(f"Invalid time '{value}', expected HH:MM.") from exc
    raise ValidationError(f"Invalid time value: {value!r}")


def format_time(value: time) -> str:
    return value.strftime("%H:%M")


# ---------------------------------------------------------------------------
# TimeWindow
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class TimeWindow:
    start: time
    end: time

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValidationError(
                f"Window start {format_time(self.start)} must be before end {format_time(self.end)}."
            )

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and other.end <= self.end

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TimeWindow":
        return cls(parse_time(data["start_time"]), parse_time(data["end_time"]))

    def to_dict(self) -> dict[str, str]:
        return {"start_time": format_time(self.start), "end_time": format_time(self.end)}


# ---------------------------------------------------------------------------
# DayAvailability
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DayAvailability:
    is_available: bool = False
    start_time: time = time(9, 0)
    end_time: time = time(18, 0)
    breaks: tuple[TimeWindow, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        hours = TimeWindow(self.start_time, self.end_time)
        ordered = tuple(sorted(self.breaks))
        for brk in ordered:
            if not hours.contains(brk):
                raise ValidationError(
                    f"Break {format_time(brk.start)}-{format_time(brk.end)} falls outside "
                    f"working hours {format_time(self.start_time)}-{format_time(self.end_time)}."
                )
        for first, second in zip(ordered, ordered[1:]):
            if first.overlaps(second):
                raise ValidationError("Break intervals must not overlap.")
        object.__setattr__(self, "breaks", ordered)

    @property
    def hours(self) -> TimeWindow:
        return TimeWindow(self.start_time, self.end_time)

    def open_windows(self) -> list[TimeWindow]:
        """Working hours with the breaks cut out, in order."""
        if not self.is_available:
            return []
        windows: list[TimeWindow] = []
        cursor = self.start_time
        for brk in self.breaks:
            if brk.start > cursor:
                windows.append(TimeWindow(cursor, brk.start))
            cursor = max(cursor, brk.end)
        if cursor < self.end_time:
            windows.append(TimeWindow(cursor, self.end_time))
        return windows

    def fits(self, start: datetime, duration_min: int) -> bool:
        """True if ``[start, start + duration)`` lies inside one open window."""
        end = start + timedelta(minutes=duration_min)
        if end.date() != start.date() and end.time() != time(0, 0):
            return False
        end_time = end.time() if end.date() == start.date() else time.max
        requested = TimeWindow(start.time(), end_time)
        return any(window.contains(requested) for window in self.open_windows())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DayAvailability":
        return cls(
            is_available=bool(data.get("is_available", False)),
            start_time=parse_time(data.get("start_time", "09:00")),
            end_time=parse_time(data.get("end_time", "18:00")),
            breaks=tuple(TimeWindow.from_dict(b) for b in data.get("breaks", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_available": self.is_available,
            "start_time": format_time(self.start_time),
            "end_time": format_time(self.end_time),
            "breaks": [b.to_dict() for b in self.breaks],
        }


# ---------------------------------------------------------------------------
# WeeklyAvailability
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WeeklyAvailability:
    """Seven ``DayAvailability`` entries, Monday first."""

    days: tuple[DayAvailability, ...]

    def __post_init__(self) -> None:
        if len(self.days) != len(WEEKDAYS):
            raise ValidationError("A weekly template needs exactly seven days.")

    @classmethod
    def default(cls) -> "WeeklyAvailability":
        """Monday to Saturday 09:00-18:00, closed on Sunday."""
        open_day = DayAvailability(is_available=True)
        return cls(days=(open_day,) * 6 + (DayAvailability(is_available=False),))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "WeeklyAvailability":
        if not data:
            return cls.default()
        fallback = cls.default()
        days = tuple(
            DayAvailability.from_dict(data[name]) if name in data else fallback.days[idx]
            for idx, name in enumerate(WEEKDAYS)
        )
        return cls(days=days)

    def to_dict(self) -> dict[str, Any]:
        return {name: day.to_dict() for name, day in zip(WEEKDAYS, self.days)}

    def for_date(self, day: date) -> DayAvailability:
        return self.days[day.weekday()]

    def fits(self, start: datetime, duration_min: int) -> bool:
        start = start.astimezone(timezone.utc)
        return self.for_date(start.date()).fits(start, duration_min)
