"""
Error taxonomy shared by the synchronizer, the activity store and the
backend clients. Backend-specific failures are translated into these.
"""

from __future__ import annotations

from typing import Optional


class TrackerError(Exception):
    """Base class for every error the tracker reports."""


class UnauthenticatedError(TrackerError):
    """An operation needed a signed-in user and there was none."""


class NotFoundError(TrackerError):
    """The requested row does not exist (e.g. profile not provisioned yet)."""


class FetchTimeoutError(TrackerError):
    """A remote lookup did not settle within its time budget."""


class RemoteFailure(TrackerError):
    """The backend returned an error that has no more specific meaning."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code


class ValidationFailure(TrackerError):
    """Input was rejected locally before any network call was made."""


class ConfigurationError(RuntimeError):
    """The service endpoint or key is missing."""
