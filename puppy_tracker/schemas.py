"""
Pydantic schemas for the tracker's HTTP surface.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from puppy_tracker.types import ActivityType


class SignUpRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1, max_length=100)
    puppy_name: str = Field(..., min_length=1, max_length=100)


class SignInRequest(BaseModel):
    email: str
    password: str


class SessionPayload(BaseModel):
    user_id: str
    email: str
    email_verified: bool


class ProfilePayload(BaseModel):
    user_id: str
    display_name: str
    puppy_name: str


class AuthStateResponse(BaseModel):
    phase: str
    loading: bool
    email_verified: bool
    session: Optional[SessionPayload] = None
    profile: Optional[ProfilePayload] = None
    profile_missing: bool = False
    error: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    puppy_name: Optional[str] = Field(default=None, min_length=1, max_length=100)


class ActivityPayload(BaseModel):
    id: str
    user_id: str
    type: ActivityType
    timestamp: datetime
    notes: Optional[str] = None
    photo_url: Optional[str] = None
    label: str
    icon: str
    display_time: str


class ActivityCreateRequest(BaseModel):
    type: ActivityType
    notes: Optional[str] = Field(default=None, max_length=2000)
    photo_url: Optional[str] = None


class ActivityUpdateRequest(BaseModel):
    type: Optional[ActivityType] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    photo_url: Optional[str] = None
    timestamp: Optional[datetime] = None


class ActivityListResponse(BaseModel):
    activities: List[ActivityPayload]
    total: int
    remaining: int
    filtered: bool
    error: Optional[str] = None


class WeeklySummaryPayload(BaseModel):
    counts: Dict[str, int]
    daily_average_poops: float


class ActivitySummaryResponse(BaseModel):
    today: Dict[str, int]
    weekly: WeeklySummaryPayload


class PhotoUploadResponse(BaseModel):
    photo_url: str
    inline: bool
