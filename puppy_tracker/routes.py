"""
HTTP routes consumed by the mobile UI.
"""

from __future__ import annotations

import logging
from datetime import date, tzinfo

from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile

from puppy_tracker.activities import ActivityStore
from puppy_tracker.backend import BackendClient
from puppy_tracker.config import get_settings
from puppy_tracker.dependencies import (
    get_activity_store,
    get_backend_client,
    get_synchronizer,
)
from puppy_tracker.errors import (
    ConfigurationError,
    FetchTimeoutError,
    NotFoundError,
    RemoteFailure,
    TrackerError,
    UnauthenticatedError,
    ValidationFailure,
)
from puppy_tracker.photos import upload_photo, validate_photo
from puppy_tracker.schemas import (
    ActivityCreateRequest,
    ActivityListResponse,
    ActivityPayload,
    ActivitySummaryResponse,
    ActivityUpdateRequest,
    AuthStateResponse,
    PhotoUploadResponse,
    ProfilePayload,
    ProfileUpdateRequest,
    SessionPayload,
    SignInRequest,
    SignUpRequest,
    WeeklySummaryPayload,
)
from puppy_tracker.session import AuthState, SessionSynchronizer
from puppy_tracker.types import (
    Activity,
    ActivityType,
    activity_icon,
    activity_label,
    utc_now,
)
from puppy_tracker.views import (
    DEFAULT_PAGE_SIZE,
    ActivityFilter,
    filter_activities,
    format_activity_time,
    paginate,
    resolve_timezone,
    today_counts,
    weekly_summary,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, UnauthenticatedError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationFailure):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, FetchTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, RemoteFailure) and exc.status and 400 <= exc.status < 500:
        # Client-side mistakes (bad credentials, duplicate email) pass through.
        return HTTPException(status_code=exc.status, detail=str(exc))
    logger.error("Backend request failed: %s", exc)
    return HTTPException(status_code=502, detail=str(exc) or "Backend request failed")


def _auth_state_response(state: AuthState) -> AuthStateResponse:
    return AuthStateResponse(
        phase=state.phase.value,
        loading=state.loading,
        email_verified=state.email_verified,
        session=SessionPayload(**state.session.as_dict()) if state.session else None,
        profile=ProfilePayload(**state.profile.as_dict()) if state.profile else None,
        profile_missing=state.profile_missing,
        error=str(state.last_error) if state.last_error else None,
    )


def _activity_payload(activity: Activity, tz: tzinfo) -> ActivityPayload:
    return ActivityPayload(
        **activity.as_dict(),
        label=activity_label(activity.type),
        icon=activity_icon(activity.type),
        display_time=format_activity_time(activity.timestamp, utc_now(), tz),
    )


def _display_tz() -> tzinfo:
    return resolve_timezone(get_settings().display_timezone)


@router.get("/auth/state", response_model=AuthStateResponse)
def auth_state(sessions: SessionSynchronizer = Depends(get_synchronizer)):
    return _auth_state_response(sessions.state)


@router.post("/auth/sign-up", response_model=AuthStateResponse)
async def sign_up(
    payload: SignUpRequest,
    sessions: SessionSynchronizer = Depends(get_synchronizer),
):
    try:
        await sessions.sign_up(
            payload.email,
            payload.password,
            display_name=payload.name,
            puppy_name=payload.puppy_name,
        )
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return _auth_state_response(await sessions.settled())


@router.post("/auth/sign-in", response_model=AuthStateResponse)
async def sign_in(
    payload: SignInRequest,
    sessions: SessionSynchronizer = Depends(get_synchronizer),
):
    try:
        await sessions.sign_in(payload.email, payload.password)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return _auth_state_response(await sessions.settled())


@router.post("/auth/sign-out", response_model=AuthStateResponse)
async def sign_out(sessions: SessionSynchronizer = Depends(get_synchronizer)):
    try:
        await sessions.sign_out()
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return _auth_state_response(sessions.state)


@router.patch("/profile", response_model=AuthStateResponse)
async def update_profile(
    payload: ProfileUpdateRequest,
    sessions: SessionSynchronizer = Depends(get_synchronizer),
):
    try:
        await sessions.update_profile(
            display_name=payload.name, puppy_name=payload.puppy_name
        )
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return _auth_state_response(sessions.state)


@router.get("/activities", response_model=ActivityListResponse)
async def list_activities(
    search: str = Query("", max_length=200),
    activity_type: ActivityType | None = Query(None, alias="type"),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=1000),
    refresh: bool = Query(False),
    store: ActivityStore = Depends(get_activity_store),
):
    try:
        if refresh or not store.loaded:
            await store.refresh()
    except TrackerError as exc:
        raise _http_error(exc) from exc

    tz = _display_tz()
    criteria = ActivityFilter(
        search=search.strip(),
        activity_type=activity_type,
        date_from=date_from,
        date_to=date_to,
    )
    page = paginate(filter_activities(store.activities, criteria, tz), limit)
    return ActivityListResponse(
        activities=[_activity_payload(a, tz) for a in page.items],
        total=page.total,
        remaining=page.remaining,
        filtered=criteria.active,
        error=store.error,
    )


@router.post("/activities", response_model=ActivityPayload, status_code=201)
async def create_activity(
    payload: ActivityCreateRequest,
    store: ActivityStore = Depends(get_activity_store),
):
    try:
        created = await store.insert(payload.type, payload.notes, payload.photo_url)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return _activity_payload(created, _display_tz())


@router.get("/activities/summary", response_model=ActivitySummaryResponse)
async def activity_summary(store: ActivityStore = Depends(get_activity_store)):
    try:
        if not store.loaded:
            await store.refresh()
    except TrackerError as exc:
        raise _http_error(exc) from exc

    tz = _display_tz()
    now = utc_now()
    today = today_counts(store.activities, now.astimezone(tz).date(), tz)
    weekly = weekly_summary(store.activities, now)
    return ActivitySummaryResponse(
        today={t.value: count for t, count in today.items()},
        weekly=WeeklySummaryPayload(
            counts={t.value: count for t, count in weekly.counts.items()},
            daily_average_poops=weekly.daily_average_poops,
        ),
    )


@router.patch("/activities/{activity_id}", response_model=ActivityPayload)
async def update_activity(
    activity_id: str,
    payload: ActivityUpdateRequest,
    store: ActivityStore = Depends(get_activity_store),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        updated = await store.update(activity_id, fields)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return _activity_payload(updated, _display_tz())


@router.delete("/activities/{activity_id}", status_code=204)
async def delete_activity(
    activity_id: str,
    store: ActivityStore = Depends(get_activity_store),
):
    try:
        await store.delete(activity_id)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@router.post("/photos", response_model=PhotoUploadResponse, status_code=201)
async def upload_activity_photo(
    file: UploadFile = File(...),
    client: BackendClient = Depends(get_backend_client),
    sessions: SessionSynchronizer = Depends(get_synchronizer),
):
    max_bytes = get_settings().max_photo_bytes
    try:
        if file.size is not None:
            # Spooled size is already known; reject before reading into memory.
            validate_photo(file.size, file.content_type, max_bytes)
        result = await upload_photo(
            client,
            sessions.state.user_id,
            await file.read(),
            file.content_type,
            file.filename,
            max_bytes=max_bytes,
        )
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return PhotoUploadResponse(photo_url=result.url, inline=result.inline)
