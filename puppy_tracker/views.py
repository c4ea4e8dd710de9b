"""
Derived views over an activity snapshot: filtering, "load more" pagination,
date-range presets, daily counts and weekly analytics.

Everything here is a pure function of its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from puppy_tracker.types import Activity, ActivityType, activity_label

DEFAULT_PAGE_SIZE = 20
DATE_RANGE_PRESETS = {
    "Today": 0,
    "Last 7 days": 7,
    "Last 30 days": 30,
    "Last 3 months": 90,
}
WEEKLY_TYPES = (
    ActivityType.POOP,
    ActivityType.PEE,
    ActivityType.EAT,
    ActivityType.CRY_START,
)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    return ZoneInfo(name or "UTC")


def local_date(activity: Activity, tz: tzinfo) -> date:
    return activity.timestamp.astimezone(tz).date()


@dataclass(frozen=True)
class ActivityFilter:
    """All set predicates must hold; unset ones match everything."""

    search: str = ""
    activity_type: Optional[ActivityType] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @property
    def active(self) -> bool:
        return bool(
            self.search or self.activity_type or self.date_from or self.date_to
        )

    def matches(self, activity: Activity, tz: tzinfo) -> bool:
        if self.search:
            needle = self.search.lower()
            in_notes = needle in (activity.notes or "").lower()
            in_label = needle in activity_label(activity.type).lower()
            if not (in_notes or in_label):
                return False
        if self.activity_type is not None and activity.type != self.activity_type:
            return False
        day = local_date(activity, tz)
        if self.date_from is not None and day < self.date_from:
            return False
        if self.date_to is not None and day > self.date_to:
            return False
        return True


def filter_activities(
    activities: Iterable[Activity], criteria: ActivityFilter, tz: tzinfo
) -> List[Activity]:
    return [a for a in activities if criteria.matches(a, tz)]


@dataclass(frozen=True)
class Page:
    items: List[Activity]
    total: int

    @property
    def remaining(self) -> int:
        return self.total - len(self.items)


def paginate(items: Sequence[Activity], limit: int = DEFAULT_PAGE_SIZE) -> Page:
    return Page(items=list(items[: max(limit, 0)]), total=len(items))


def load_more(limit: int, step: int = DEFAULT_PAGE_SIZE) -> int:
    return limit + step


def date_range_preset(days: int, today: date) -> tuple[date, date]:
    return today - timedelta(days=days), today


def today_counts(
    activities: Iterable[Activity], today: date, tz: tzinfo
) -> Dict[ActivityType, int]:
    counts = {t: 0 for t in ActivityType}
    for activity in activities:
        if local_date(activity, tz) == today:
            counts[activity.type] += 1
    return counts


@dataclass(frozen=True)
class WeeklySummary:
    counts: Dict[ActivityType, int]

    @property
    def daily_average_poops(self) -> float:
        return round(self.counts[ActivityType.POOP] / 7, 1)


def weekly_summary(activities: Iterable[Activity], now: datetime) -> WeeklySummary:
    week_ago = now - timedelta(days=7)
    counts = {t: 0 for t in WEEKLY_TYPES}
    for activity in activities:
        if activity.type in counts and activity.timestamp >= week_ago:
            counts[activity.type] += 1
    return WeeklySummary(counts=counts)


def format_activity_time(timestamp: datetime, now: datetime, tz: tzinfo) -> str:
    local = timestamp.astimezone(tz)
    today = now.astimezone(tz).date()
    clock = _clock(local)
    if local.date() == today:
        return f"Today, {clock}"
    if local.date() == today - timedelta(days=1):
        return f"Yesterday, {clock}"
    return f"{local.strftime('%b')} {local.day}, {clock}"


def _clock(moment: datetime) -> str:
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{moment.hour % 12 or 12}:{moment.minute:02d} {suffix}"
