"""
Records shared across the tracker: the mirrored auth session, the user's
profile row and the logged activities.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, assert_never


class ActivityType(str, enum.Enum):
    POOP = "poop"
    PEE = "pee"
    EAT = "eat"
    CRY_START = "cry_start"
    CRY_STOP = "cry_stop"


class AuthEvent(str, enum.Enum):
    """Notifications pushed by the auth provider."""

    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


def activity_label(activity_type: ActivityType) -> str:
    match activity_type:
        case ActivityType.POOP:
            return "Pooped"
        case ActivityType.PEE:
            return "Peed"
        case ActivityType.EAT:
            return "Ate"
        case ActivityType.CRY_START:
            return "Started Crying"
        case ActivityType.CRY_STOP:
            return "Stopped Crying"
        case _:
            assert_never(activity_type)


def activity_icon(activity_type: ActivityType) -> str:
    match activity_type:
        case ActivityType.POOP:
            return "\U0001f4a9"
        case ActivityType.PEE:
            return "\U0001f4a7"
        case ActivityType.EAT:
            return "\U0001f37d️"
        case ActivityType.CRY_START:
            return "\U0001f622"
        case ActivityType.CRY_STOP:
            return "\U0001f60a"
        case _:
            assert_never(activity_type)


@dataclass(frozen=True)
class Session:
    """The signed-in identity as known locally."""

    user_id: str
    email: str
    email_verified: bool = False

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "email_verified": self.email_verified,
        }


@dataclass(frozen=True)
class Profile:
    user_id: str
    display_name: str
    puppy_name: str

    @classmethod
    def from_row(cls, row: dict) -> "Profile":
        return cls(
            user_id=str(row["id"]),
            display_name=row.get("name") or "",
            puppy_name=row.get("puppy_name") or "",
        )

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "puppy_name": self.puppy_name,
        }


@dataclass(frozen=True)
class Activity:
    id: str
    user_id: str
    type: ActivityType
    timestamp: datetime
    notes: Optional[str] = None
    photo_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Activity":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=ActivityType(row["type"]),
            timestamp=parse_timestamp(row["timestamp"]),
            notes=row.get("notes"),
            photo_url=row.get("photo_url"),
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "notes": self.notes,
            "photo_url": self.photo_url,
        }


# Fields a caller may change on an existing activity.
EDITABLE_ACTIVITY_FIELDS = frozenset({"type", "notes", "photo_url", "timestamp"})


def parse_timestamp(value) -> datetime:
    """Accept ISO strings or datetimes; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
