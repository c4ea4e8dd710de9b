"""
Activity collection store.

Keeps the signed-in user's activities in memory, newest first, and folds the
result of every remote mutation back into that list.
"""

from __future__ import annotations

import bisect
import logging
from typing import List, Optional, Union

from puppy_tracker.backend import BackendClient
from puppy_tracker.errors import TrackerError, UnauthenticatedError, ValidationFailure
from puppy_tracker.session import AuthState, SessionSynchronizer
from puppy_tracker.types import (
    EDITABLE_ACTIVITY_FIELDS,
    Activity,
    ActivityType,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


def sort_newest_first(activities: List[Activity]) -> List[Activity]:
    # sorted() is stable, so records sharing a timestamp keep their order.
    return sorted(activities, key=lambda a: a.timestamp, reverse=True)


class ActivityStore:
    """
    In-memory mirror of the `activities` table for the current user.

    Every operation needs a signed-in user. A failed `refresh` only sets
    `error`; failed mutations set it and re-raise so callers can react. The
    collection is never touched by a failed call.
    """

    def __init__(self, client: BackendClient, sessions: SessionSynchronizer):
        self._client = client
        self._sessions = sessions
        self.activities: List[Activity] = []
        self.loading = False
        self.loaded = False
        self.error: Optional[str] = None
        self._owner: Optional[str] = sessions.state.user_id
        self._unsubscribe = sessions.subscribe(self._on_auth_state)

    def close(self) -> None:
        self._unsubscribe()

    def _on_auth_state(self, state: AuthState) -> None:
        if state.user_id != self._owner:
            # Another user's (or no user's) rows must not linger.
            self._owner = state.user_id
            self.activities = []
            self.loaded = False
            self.error = None

    def _require_user(self) -> str:
        user_id = self._sessions.state.user_id
        if user_id is None:
            raise UnauthenticatedError("User not authenticated")
        return user_id

    def _owned_by(self, user_id: str, action: str) -> bool:
        if self._sessions.state.user_id == user_id:
            return True
        logger.debug("Discarding %s result for %s", action, user_id)
        return False

    def _fail(self, user_id: str, action: str, exc: TrackerError) -> None:
        logger.error("Failed to %s activity: %s", action, exc)
        if self._owned_by(user_id, action):
            self.error = str(exc) or f"Failed to {action} activity"

    async def refresh(self, user_id: Optional[str] = None) -> List[Activity]:
        """Replace the collection with the user's rows, newest first."""
        current = self._require_user()
        user_id = user_id or current
        self.loading = True
        self.error = None
        try:
            rows = await self._client.select_activities(user_id)
        except TrackerError as exc:
            self.error = str(exc) or "Failed to fetch activities"
            logger.error("Failed to fetch activities: %s", exc)
            return self.activities
        finally:
            self.loading = False
        if not self._owned_by(user_id, "fetch"):
            return self.activities
        self.activities = sort_newest_first(rows)
        self.loaded = True
        return self.activities

    async def insert(
        self,
        activity_type: Union[ActivityType, str],
        notes: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> Activity:
        user_id = self._require_user()
        try:
            fields = {
                "user_id": user_id,
                "type": ActivityType(activity_type),
                "notes": notes or None,
                "photo_url": photo_url or None,
            }
        except ValueError as exc:
            raise ValidationFailure(f"Unknown activity type: {activity_type}") from exc
        try:
            created = await self._client.insert_activity(fields)
        except TrackerError as exc:
            self._fail(user_id, "add", exc)
            raise
        if not self._owned_by(user_id, "insert"):
            return created
        # Newest record, so this lands at the front unless clocks disagree.
        keys = [-a.timestamp.timestamp() for a in self.activities]
        position = bisect.bisect_left(keys, -created.timestamp.timestamp())
        self.activities = (
            self.activities[:position] + [created] + self.activities[position:]
        )
        return created

    async def update(self, activity_id: str, fields: dict) -> Activity:
        user_id = self._require_user()
        changes = _validated_changes(fields)
        try:
            updated = await self._client.update_activity(activity_id, user_id, changes)
        except TrackerError as exc:
            self._fail(user_id, "update", exc)
            raise
        if not self._owned_by(user_id, "update"):
            return updated
        # The timestamp may have been edited, so re-sort everything.
        self.activities = sort_newest_first(
            [updated if a.id == activity_id else a for a in self.activities]
        )
        return updated

    async def delete(self, activity_id: str) -> None:
        user_id = self._require_user()
        try:
            await self._client.delete_activity(activity_id, user_id)
        except TrackerError as exc:
            self._fail(user_id, "delete", exc)
            raise
        if not self._owned_by(user_id, "delete"):
            return
        self.activities = [a for a in self.activities if a.id != activity_id]

    def get(self, activity_id: str) -> Optional[Activity]:
        for activity in self.activities:
            if activity.id == activity_id:
                return activity
        return None


def _validated_changes(fields: dict) -> dict:
    unknown = set(fields) - EDITABLE_ACTIVITY_FIELDS
    if unknown:
        raise ValidationFailure(
            f"Cannot update activity fields: {', '.join(sorted(unknown))}"
        )
    changes = dict(fields)
    try:
        if "type" in changes:
            changes["type"] = ActivityType(changes["type"])
        if "timestamp" in changes:
            changes["timestamp"] = parse_timestamp(changes["timestamp"])
    except ValueError as exc:
        raise ValidationFailure(str(exc)) from exc
    for key in ("notes", "photo_url"):
        if key in changes and not changes[key]:
            changes[key] = None
    return changes
