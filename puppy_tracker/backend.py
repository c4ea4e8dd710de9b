"""
Remote backend abstraction: auth sessions, the `users`/`activities` tables and
photo uploads, with a Supabase implementation and an in-memory one for tests.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, TypeVar

import requests

from puppy_tracker.errors import (
    NotFoundError,
    RemoteFailure,
    TrackerError,
    UnauthenticatedError,
)
from puppy_tracker.storage import (
    BlobStorage,
    InMemoryStorageClient,
    SupabaseS3StorageClient,
)
from puppy_tracker.types import (
    Activity,
    ActivityType,
    AuthEvent,
    Profile,
    Session,
    utc_now,
)

logger = logging.getLogger(__name__)

AuthListener = Callable[[AuthEvent, Optional[Session]], None]
Unsubscribe = Callable[[], None]
T = TypeVar("T")

# PostgREST code for "JSON object requested, multiple (or no) rows returned".
NO_ROWS_CODE = "PGRST116"


class BackendClient(Protocol):
    """Interface for the hosted backend."""

    async def get_session(self) -> Optional[Session]:
        ...

    def on_auth_change(self, listener: AuthListener) -> Unsubscribe:
        ...

    async def sign_up(
        self, email: str, password: str, *, display_name: str, puppy_name: str
    ) -> Session:
        ...

    async def sign_in(self, email: str, password: str) -> Session:
        ...

    async def sign_out(self) -> None:
        ...

    async def select_profile(self, user_id: str) -> Profile:
        ...

    async def update_profile(self, user_id: str, fields: dict) -> Profile:
        ...

    async def select_activities(self, user_id: str) -> List[Activity]:
        ...

    async def insert_activity(self, fields: dict) -> Activity:
        ...

    async def update_activity(
        self, activity_id: str, user_id: str, fields: dict
    ) -> Activity:
        ...

    async def delete_activity(self, activity_id: str, user_id: str) -> None:
        ...

    async def upload_blob(self, path: str, data: bytes, content_type: str) -> str:
        ...


def activity_payload(fields: dict) -> dict:
    """Serialize activity fields into row values."""
    payload = {}
    for key, value in fields.items():
        if isinstance(value, ActivityType):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        payload[key] = value
    return payload


def profile_payload(fields: dict) -> dict:
    payload = {}
    if fields.get("display_name") is not None:
        payload["name"] = fields["display_name"]
    if fields.get("puppy_name") is not None:
        payload["puppy_name"] = fields["puppy_name"]
    return payload


class _AuthListeners:
    """Ordered listener registry; notifications are delivered synchronously."""

    def __init__(self):
        self._listeners: List[AuthListener] = []

    def add(self, listener: AuthListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        logger.info(
            "Auth state change: %s %s",
            event.value,
            session.email if session else None,
        )
        for listener in list(self._listeners):
            listener(event, session)

    def __len__(self) -> int:
        return len(self._listeners)


@dataclass
class _UserRecord:
    user_id: str
    email: str
    password: str
    email_verified: bool
    metadata: dict


class InMemoryBackendClient:
    """
    Simple in-memory backend for development and tests.

    Profiles are only provisioned on sign-up when `auto_provision_profiles` is
    set, mirroring the server-side trigger the hosted project relies on.
    """

    def __init__(
        self,
        *,
        auto_provision_profiles: bool = False,
        auto_confirm_email: bool = True,
        storage: Optional[InMemoryStorageClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.auto_provision_profiles = auto_provision_profiles
        self.auto_confirm_email = auto_confirm_email
        self.storage = storage or InMemoryStorageClient()
        self.clock = clock
        self.users: Dict[str, _UserRecord] = {}
        self.profiles: Dict[str, Profile] = {}
        self.activities: Dict[str, Activity] = {}
        self.current: Optional[Session] = None
        self.calls: List[str] = []
        self._listeners = _AuthListeners()
        self._failures: Dict[str, TrackerError] = {}

    def fail_next(self, operation: str, error: TrackerError) -> None:
        """Make the next call to `operation` raise `error`."""
        self._failures[operation] = error

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.users.clear()
        self.profiles.clear()
        self.activities.clear()
        self.storage.stored_objects.clear()
        self.calls.clear()
        self._failures.clear()
        self.current = None

    def provision_profile(
        self, user_id: str, display_name: str, puppy_name: str
    ) -> Profile:
        profile = Profile(
            user_id=user_id, display_name=display_name, puppy_name=puppy_name
        )
        self.profiles[user_id] = profile
        return profile

    def push_auth_change(self, event: AuthEvent, session: Optional[Session]) -> None:
        """Simulate a notification originating elsewhere (another tab, refresh)."""
        self.current = session
        self._listeners.emit(event, session)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        failure = self._failures.pop(operation, None)
        if failure is not None:
            raise failure

    def _require_session(self) -> Session:
        if self.current is None:
            raise RemoteFailure("JWT required", status=401)
        return self.current

    async def get_session(self) -> Optional[Session]:
        self._enter("get_session")
        return self.current

    def on_auth_change(self, listener: AuthListener) -> Unsubscribe:
        return self._listeners.add(listener)

    async def sign_up(
        self, email: str, password: str, *, display_name: str, puppy_name: str
    ) -> Session:
        self._enter("sign_up")
        if email in self.users:
            raise RemoteFailure("User already registered", status=422)
        user = _UserRecord(
            user_id=uuid.uuid4().hex,
            email=email,
            password=password,
            email_verified=self.auto_confirm_email,
            metadata={"name": display_name, "puppy_name": puppy_name},
        )
        self.users[email] = user
        if self.auto_provision_profiles:
            self.provision_profile(user.user_id, display_name, puppy_name)
        session = Session(
            user_id=user.user_id, email=email, email_verified=user.email_verified
        )
        self.current = session
        self._listeners.emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_in(self, email: str, password: str) -> Session:
        self._enter("sign_in")
        user = self.users.get(email)
        if user is None or user.password != password:
            raise RemoteFailure(
                "Invalid login credentials", status=400, code="invalid_credentials"
            )
        session = Session(
            user_id=user.user_id, email=email, email_verified=user.email_verified
        )
        self.current = session
        self._listeners.emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        self._enter("sign_out")
        self.current = None
        self._listeners.emit(AuthEvent.SIGNED_OUT, None)

    async def select_profile(self, user_id: str) -> Profile:
        self._enter("select_profile")
        self._require_session()
        profile = self.profiles.get(user_id)
        if profile is None:
            raise NotFoundError("No rows found for profile")
        return profile

    async def update_profile(self, user_id: str, fields: dict) -> Profile:
        self._enter("update_profile")
        self._require_session()
        profile = self.profiles.get(user_id)
        if profile is None:
            raise NotFoundError("No rows found for profile")
        changes = {
            key: value
            for key, value in fields.items()
            if key in ("display_name", "puppy_name") and value is not None
        }
        profile = dataclasses.replace(profile, **changes)
        self.profiles[user_id] = profile
        return profile

    async def select_activities(self, user_id: str) -> List[Activity]:
        self._enter("select_activities")
        self._require_session()
        rows = [a for a in self.activities.values() if a.user_id == user_id]
        return sorted(rows, key=lambda a: a.timestamp, reverse=True)

    async def insert_activity(self, fields: dict) -> Activity:
        self._enter("insert_activity")
        session = self._require_session()
        if fields.get("user_id") != session.user_id:
            raise RemoteFailure(
                "new row violates row-level security policy", status=403
            )
        row = activity_payload(fields)
        row.setdefault("timestamp", self.clock())
        row["id"] = uuid.uuid4().hex
        activity = Activity.from_row(row)
        self.activities[activity.id] = activity
        return activity

    async def update_activity(
        self, activity_id: str, user_id: str, fields: dict
    ) -> Activity:
        self._enter("update_activity")
        self._require_session()
        existing = self.activities.get(activity_id)
        if existing is None or existing.user_id != user_id:
            raise NotFoundError(f"Activity {activity_id} not found")
        row = {**existing.as_dict(), **activity_payload(fields)}
        updated = Activity.from_row(row)
        self.activities[activity_id] = updated
        return updated

    async def delete_activity(self, activity_id: str, user_id: str) -> None:
        self._enter("delete_activity")
        self._require_session()
        existing = self.activities.get(activity_id)
        if existing is not None and existing.user_id == user_id:
            del self.activities[activity_id]

    async def upload_blob(self, path: str, data: bytes, content_type: str) -> str:
        self._enter("upload_blob")
        self._require_session()
        self.storage.upload_bytes(path, data, content_type)
        return self.storage.public_url(path)


@dataclass
class _Tokens:
    access_token: str
    refresh_token: str
    expires_at: float

    # Refresh a little early so a request never carries a token that expires
    # in flight.
    def expired(self, leeway: float = 10.0) -> bool:
        return time.time() + leeway >= self.expires_at


def _session_from_user(user: dict) -> Session:
    return Session(
        user_id=str(user["id"]),
        email=user.get("email") or "",
        email_verified=bool(user.get("email_confirmed_at") or user.get("confirmed_at")),
    )


def _parse_row(factory: Callable[[dict], T], row) -> T:
    try:
        return factory(row)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise RemoteFailure(f"Malformed row from backend: {exc!r}") from exc


def _error_from_response(response: requests.Response) -> TrackerError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("code") or body.get("error_code") or body.get("error")
    message = (
        body.get("message")
        or body.get("msg")
        or body.get("error_description")
        or response.text
        or response.reason
    )
    if code == NO_ROWS_CODE:
        return NotFoundError(message)
    return RemoteFailure(
        message,
        status=response.status_code,
        code=str(code) if code is not None else None,
    )


class SupabaseBackendClient:
    """
    Talks to a Supabase project over HTTP: GoTrue for auth, PostgREST for rows
    and the S3 gateway for photos. Blocking `requests` calls run in a worker
    thread so callers can await them.
    """

    OBJECT_ACCEPT = "application/vnd.pgrst.object+json"

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        bucket: str = "puppy-photos",
        region: str = "us-east-1",
        timeout: float = 15.0,
        http: Optional[requests.Session] = None,
        storage_factory: Callable[..., BlobStorage] = SupabaseS3StorageClient,
    ):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.bucket = bucket
        self.region = region
        self.timeout = timeout
        self.http = http or requests.Session()
        self.storage_factory = storage_factory
        self._tokens: Optional[_Tokens] = None
        self._session: Optional[Session] = None
        self._refresh_lock = asyncio.Lock()
        self._listeners = _AuthListeners()

    @classmethod
    def from_settings(cls, settings) -> "SupabaseBackendClient":
        base_url, anon_key = settings.require_remote()
        return cls(
            base_url,
            anon_key,
            bucket=settings.photo_bucket,
            region=settings.storage_region,
            timeout=settings.http_timeout_seconds,
        )

    # -- transport ---------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> requests.Response:
        bearer = self._tokens.access_token if self._tokens else self.anon_key
        merged = {"apikey": self.anon_key, "Authorization": f"Bearer {bearer}"}
        merged.update(headers or {})
        try:
            response = self.http.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers=merged,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise RemoteFailure(str(exc)) from exc
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response

    async def _call(self, method: str, path: str, **kwargs) -> requests.Response:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    async def _authorized(
        self, method: str, path: str, **kwargs
    ) -> requests.Response:
        """Like `_call`, but swaps an expired access token for a fresh one first."""
        await self._refresh_if_expired()
        return await self._call(method, path, **kwargs)

    def _require_user_id(self) -> str:
        if self._session is None:
            raise UnauthenticatedError("No signed-in user")
        return self._session.user_id

    # -- auth --------------------------------------------------------------

    def _adopt_token_response(self, body: dict) -> Session:
        expires_at = body.get("expires_at") or time.time() + float(
            body.get("expires_in") or 3600
        )
        self._tokens = _Tokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or "",
            expires_at=float(expires_at),
        )
        self._session = _session_from_user(body["user"])
        return self._session

    def _clear(self) -> None:
        self._tokens = None
        self._session = None

    async def _refresh_if_expired(self) -> None:
        async with self._refresh_lock:
            if self._tokens is None or not self._tokens.expired():
                return
            try:
                response = await self._call(
                    "POST",
                    "/auth/v1/token",
                    params={"grant_type": "refresh_token"},
                    json={"refresh_token": self._tokens.refresh_token},
                )
            except TrackerError:
                logger.exception("Session refresh failed; treating user as signed out")
                self._clear()
                self._listeners.emit(AuthEvent.SIGNED_OUT, None)
                raise
            session = self._adopt_token_response(response.json())
            self._listeners.emit(AuthEvent.TOKEN_REFRESHED, session)

    async def get_session(self) -> Optional[Session]:
        await self._refresh_if_expired()
        return self._session

    def on_auth_change(self, listener: AuthListener) -> Unsubscribe:
        return self._listeners.add(listener)

    async def sign_up(
        self, email: str, password: str, *, display_name: str, puppy_name: str
    ) -> Session:
        response = await self._call(
            "POST",
            "/auth/v1/signup",
            json={
                "email": email,
                "password": password,
                "data": {"name": display_name, "puppy_name": puppy_name},
            },
        )
        body = response.json()
        if "access_token" not in body:
            # Email confirmation pending: the user exists but is not signed in.
            user = body.get("user") or body
            return _session_from_user(user)
        session = self._adopt_token_response(body)
        self._listeners.emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_in(self, email: str, password: str) -> Session:
        response = await self._call(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = self._adopt_token_response(response.json())
        self._listeners.emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        if self._tokens is not None:
            await self._authorized("POST", "/auth/v1/logout")
        self._clear()
        self._listeners.emit(AuthEvent.SIGNED_OUT, None)

    # -- rows --------------------------------------------------------------

    async def select_profile(self, user_id: str) -> Profile:
        response = await self._authorized(
            "GET",
            "/rest/v1/users",
            params={"select": "*", "id": f"eq.{user_id}"},
            headers={"Accept": self.OBJECT_ACCEPT},
        )
        return _parse_row(Profile.from_row, response.json())

    async def update_profile(self, user_id: str, fields: dict) -> Profile:
        response = await self._authorized(
            "PATCH",
            "/rest/v1/users",
            params={"id": f"eq.{user_id}"},
            json=profile_payload(fields),
            headers={"Accept": self.OBJECT_ACCEPT, "Prefer": "return=representation"},
        )
        return _parse_row(Profile.from_row, response.json())

    async def select_activities(self, user_id: str) -> List[Activity]:
        response = await self._authorized(
            "GET",
            "/rest/v1/activities",
            params={
                "select": "*",
                "user_id": f"eq.{user_id}",
                "order": "timestamp.desc",
            },
        )
        rows = response.json() or []
        return [_parse_row(Activity.from_row, row) for row in rows]

    async def insert_activity(self, fields: dict) -> Activity:
        payload = activity_payload(fields)
        payload.setdefault("timestamp", utc_now().isoformat())
        response = await self._authorized(
            "POST",
            "/rest/v1/activities",
            json=payload,
            headers={"Accept": self.OBJECT_ACCEPT, "Prefer": "return=representation"},
        )
        return _parse_row(Activity.from_row, response.json())

    async def update_activity(
        self, activity_id: str, user_id: str, fields: dict
    ) -> Activity:
        response = await self._authorized(
            "PATCH",
            "/rest/v1/activities",
            params={"id": f"eq.{activity_id}", "user_id": f"eq.{user_id}"},
            json=activity_payload(fields),
            headers={"Accept": self.OBJECT_ACCEPT, "Prefer": "return=representation"},
        )
        return _parse_row(Activity.from_row, response.json())

    async def delete_activity(self, activity_id: str, user_id: str) -> None:
        await self._authorized(
            "DELETE",
            "/rest/v1/activities",
            params={"id": f"eq.{activity_id}", "user_id": f"eq.{user_id}"},
        )

    # -- storage -----------------------------------------------------------

    async def upload_blob(self, path: str, data: bytes, content_type: str) -> str:
        await self._refresh_if_expired()
        if self._tokens is None:
            raise UnauthenticatedError("Sign in before uploading photos")
        storage = self.storage_factory(
            base_url=self.base_url,
            anon_key=self.anon_key,
            access_token=self._tokens.access_token,
            bucket=self.bucket,
            region=self.region,
        )
        await asyncio.to_thread(storage.upload_bytes, path, data, content_type)
        return storage.public_url(path)
