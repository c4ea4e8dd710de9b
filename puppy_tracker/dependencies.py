"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from puppy_tracker.activities import ActivityStore
from puppy_tracker.backend import (
    BackendClient,
    InMemoryBackendClient,
    SupabaseBackendClient,
)
from puppy_tracker.config import get_settings
from puppy_tracker.session import SessionSynchronizer

_backend_client: BackendClient | None = None
_synchronizer: SessionSynchronizer | None = None
_activity_store: ActivityStore | None = None


def get_backend_client() -> BackendClient:
    """
    Return a singleton backend client; the Supabase one holds the auth tokens.

    Raises ConfigurationError when the service URL or key is missing.
    """
    global _backend_client
    if _backend_client:
        return _backend_client

    settings = get_settings()
    if settings.use_in_memory_backends:
        _backend_client = InMemoryBackendClient()
    else:
        _backend_client = SupabaseBackendClient.from_settings(settings)
    return _backend_client


def get_synchronizer() -> SessionSynchronizer:
    global _synchronizer
    if _synchronizer:
        return _synchronizer

    settings = get_settings()
    _synchronizer = SessionSynchronizer(
        get_backend_client(),
        session_init_timeout=settings.session_init_timeout_seconds,
        profile_fetch_timeout=settings.profile_fetch_timeout_seconds,
    )
    return _synchronizer


def get_activity_store() -> ActivityStore:
    global _activity_store
    if _activity_store:
        return _activity_store

    _activity_store = ActivityStore(get_backend_client(), get_synchronizer())
    return _activity_store


def reset_dependencies() -> None:
    """Drop the singletons (used by tests and on shutdown)."""
    global _backend_client, _synchronizer, _activity_store
    if _activity_store:
        _activity_store.close()
    if _synchronizer:
        _synchronizer.close()
    _backend_client = None
    _synchronizer = None
    _activity_store = None


def use_backend_client(client: BackendClient) -> None:
    """Install a specific backend (e.g. an in-memory one) and rebuild on top of it."""
    global _backend_client
    reset_dependencies()
    _backend_client = client
