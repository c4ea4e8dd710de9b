"""
Session synchronizer: mirrors the backend's auth session and the matching
profile row into a locally owned state object.

The synchronizer is the only writer of `AuthState`. Everything else reads
snapshots through `state` or by subscribing. After startup the backend's
auth-change notifications are the source of truth; sign-in and sign-up do not
touch local state directly and converge through the notification they cause.

Each session transition bumps a generation counter. Profile fetches are tagged
with the generation they were issued for, and a result that arrives after a
newer transition is dropped, so a slow lookup cannot overwrite fresher state.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from puppy_tracker.backend import BackendClient, Unsubscribe
from puppy_tracker.errors import (
    FetchTimeoutError,
    NotFoundError,
    TrackerError,
    UnauthenticatedError,
)
from puppy_tracker.types import AuthEvent, Profile, Session

logger = logging.getLogger(__name__)

DEFAULT_SESSION_INIT_TIMEOUT = 8.0
DEFAULT_PROFILE_FETCH_TIMEOUT = 5.0


class SyncPhase(enum.Enum):
    INITIALIZING = "initializing"
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_PROFILE = "awaiting_profile"
    READY = "ready"


@dataclass(frozen=True)
class AuthState:
    """Immutable snapshot of the local auth mirror."""

    phase: SyncPhase = SyncPhase.INITIALIZING
    session: Optional[Session] = None
    profile: Optional[Profile] = None
    loading: bool = True
    last_error: Optional[TrackerError] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session else None

    @property
    def email_verified(self) -> bool:
        return bool(self.session and self.session.email_verified)

    @property
    def profile_missing(self) -> bool:
        """Signed in and settled, but no profile row has been provisioned."""
        return self.phase is SyncPhase.READY and self.profile is None


StateListener = Callable[[AuthState], None]


class SessionSynchronizer:
    def __init__(
        self,
        client: BackendClient,
        *,
        session_init_timeout: float = DEFAULT_SESSION_INIT_TIMEOUT,
        profile_fetch_timeout: float = DEFAULT_PROFILE_FETCH_TIMEOUT,
    ):
        self._client = client
        self.session_init_timeout = session_init_timeout
        self.profile_fetch_timeout = profile_fetch_timeout
        self._state = AuthState()
        self._generation = 0
        self._listeners: List[StateListener] = []
        self._unsubscribe: Optional[Unsubscribe] = None
        self._profile_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: StateListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, **changes) -> None:
        self._state = dataclasses.replace(self._state, **changes)
        for listener in list(self._listeners):
            listener(self._state)

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> AuthState:
        """Adopt any existing session and start following auth notifications."""
        if self._unsubscribe is None:
            self._unsubscribe = self._client.on_auth_change(self.on_auth_change)

        generation = self._generation
        logger.info("Initializing auth")
        try:
            session = await asyncio.wait_for(
                self._client.get_session(), self.session_init_timeout
            )
        except asyncio.TimeoutError:
            self._fail_initialization(
                generation,
                FetchTimeoutError(
                    f"Session lookup exceeded {self.session_init_timeout}s"
                ),
            )
            return self._state
        except TrackerError as exc:
            self._fail_initialization(generation, exc)
            return self._state

        if generation != self._generation:
            # A notification arrived while we waited and already owns the state.
            logger.debug("Discarding initial session lookup; state moved on")
            return self._state

        if session is None:
            logger.info("No user, completing auth initialization")
            self._clear(phase=SyncPhase.UNAUTHENTICATED)
            return self._state

        logger.info("Session found for %s", session.email)
        generation = self._adopt(session)
        await self.fetch_profile(session.user_id, generation=generation)
        return self._state

    def _fail_initialization(self, generation: int, error: TrackerError) -> None:
        if generation != self._generation:
            return
        logger.error("Auth initialization failed: %s", error)
        self._clear(phase=SyncPhase.UNAUTHENTICATED, last_error=error)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # -- notifications -----------------------------------------------------

    def on_auth_change(self, event: AuthEvent, session: Optional[Session]) -> None:
        """
        Handle a pushed auth notification.

        Runs synchronously so notifications are applied strictly in delivery
        order; the profile lookup it needs is scheduled as a task.
        """
        logger.info(
            "Applying auth change %s for %s",
            event.value,
            session.email if session else None,
        )
        if session is None:
            self._clear(phase=SyncPhase.UNAUTHENTICATED)
            return
        generation = self._adopt(session)
        self._profile_task = asyncio.get_running_loop().create_task(
            self.fetch_profile(session.user_id, generation=generation)
        )

    async def settled(self) -> AuthState:
        """Wait for the most recently scheduled profile fetch to finish."""
        while self._profile_task is not None and not self._profile_task.done():
            await asyncio.shield(self._profile_task)
        return self._state

    # -- transitions -------------------------------------------------------

    def _adopt(self, session: Session) -> int:
        self._generation += 1
        keep_profile = (
            self._state.profile is not None
            and self._state.profile.user_id == session.user_id
        )
        self._set_state(
            phase=SyncPhase.AWAITING_PROFILE,
            session=session,
            profile=self._state.profile if keep_profile else None,
            loading=True,
            last_error=None,
        )
        return self._generation

    def _clear(
        self, *, phase: SyncPhase, last_error: Optional[TrackerError] = None
    ) -> None:
        # The profile never outlives the session.
        self._generation += 1
        self._set_state(
            phase=phase,
            session=None,
            profile=None,
            loading=False,
            last_error=last_error,
        )

    async def fetch_profile(
        self, user_id: str, *, generation: Optional[int] = None
    ) -> Optional[Profile]:
        """
        Look up the profile row for `user_id`, giving up after the timeout.

        A missing row or a timeout both leave the profile absent; neither is
        fatal. The remote call is not cancelled on timeout, only abandoned.
        The result is applied only if `generation` (the one current when the
        fetch was issued) is still current when it settles.
        """
        if generation is None:
            generation = self._generation
        lookup = asyncio.ensure_future(self._client.select_profile(user_id))
        lookup.add_done_callback(_drain)

        profile: Optional[Profile] = None
        error: Optional[TrackerError] = None
        try:
            profile = await asyncio.wait_for(
                asyncio.shield(lookup), self.profile_fetch_timeout
            )
            logger.info("User profile fetched for %s", user_id)
        except asyncio.TimeoutError:
            error = FetchTimeoutError(
                f"Profile fetch exceeded {self.profile_fetch_timeout}s"
            )
            logger.warning("Profile fetch timed out for %s", user_id)
        except NotFoundError as exc:
            error = exc
            logger.info("User profile not found for %s; setup incomplete", user_id)
        except TrackerError as exc:
            error = exc
            logger.error("Error fetching user profile for %s: %s", user_id, exc)
        finally:
            self._settle_profile(generation, profile, error)
        return profile

    def _settle_profile(
        self,
        generation: int,
        profile: Optional[Profile],
        error: Optional[TrackerError],
    ) -> None:
        if generation != self._generation:
            logger.debug(
                "Discarding profile result for generation %d (current %d)",
                generation,
                self._generation,
            )
            return
        self._set_state(
            phase=SyncPhase.READY,
            profile=profile,
            loading=False,
            last_error=None if isinstance(error, NotFoundError) else error,
        )

    # -- user actions ------------------------------------------------------

    async def sign_up(
        self, email: str, password: str, *, display_name: str, puppy_name: str
    ) -> Session:
        return await self._client.sign_up(
            email, password, display_name=display_name, puppy_name=puppy_name
        )

    async def sign_in(self, email: str, password: str) -> Session:
        return await self._client.sign_in(email, password)

    async def sign_out(self) -> None:
        try:
            await self._client.sign_out()
        except TrackerError as exc:
            logger.error("Sign out error: %s", exc)
            raise
        # Clear now instead of waiting for the notification to avoid flicker.
        self._clear(phase=SyncPhase.UNAUTHENTICATED)

    async def update_profile(
        self,
        *,
        display_name: Optional[str] = None,
        puppy_name: Optional[str] = None,
    ) -> Profile:
        session = self._state.session
        if session is None:
            raise UnauthenticatedError("User not authenticated")
        generation = self._generation
        profile = await self._client.update_profile(
            session.user_id,
            {"display_name": display_name, "puppy_name": puppy_name},
        )
        if generation == self._generation:
            self._set_state(profile=profile)
        return profile


def _drain(task: asyncio.Future) -> None:
    # Abandoned lookups may fail after we stopped waiting on them.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Late profile lookup failed: %s", task.exception())
