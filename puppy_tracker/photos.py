"""
Photo attachments for activities.

Uploads go to object storage; if that fails the photo is kept inline as a
data URL so the activity can still be saved with its picture.
"""

from __future__ import annotations

import base64
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from puppy_tracker.backend import BackendClient
from puppy_tracker.errors import RemoteFailure, UnauthenticatedError, ValidationFailure

logger = logging.getLogger(__name__)

MAX_PHOTO_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class PhotoUpload:
    url: str
    inline: bool = False


def validate_photo(
    size: int, content_type: Optional[str], max_bytes: int = MAX_PHOTO_BYTES
) -> None:
    if size > max_bytes:
        raise ValidationFailure(
            f"Photo must be smaller than {max_bytes // (1024 * 1024)}MB"
        )
    if not content_type or not content_type.startswith("image/"):
        raise ValidationFailure("Please select an image file")


def photo_path(user_id: str, filename: Optional[str], now: Optional[float] = None) -> str:
    """`{user_id}/{epoch_ms}-{random}.{ext}`, unique per upload."""
    name = filename or ""
    ext = name.rsplit(".", 1)[1].lower() if "." in name else "jpg"
    millis = int((now if now is not None else time.time()) * 1000)
    return f"{user_id}/{millis}-{secrets.token_hex(6)}.{ext}"


def data_url(data: bytes, content_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


async def upload_photo(
    client: BackendClient,
    user_id: Optional[str],
    data: bytes,
    content_type: Optional[str],
    filename: Optional[str] = None,
    *,
    max_bytes: int = MAX_PHOTO_BYTES,
) -> PhotoUpload:
    if user_id is None:
        raise UnauthenticatedError("User not authenticated")
    validate_photo(len(data), content_type, max_bytes)

    path = photo_path(user_id, filename)
    try:
        url = await client.upload_blob(path, data, content_type)
    except RemoteFailure as exc:
        logger.warning("Storage upload failed, falling back to inline photo: %s", exc)
        return PhotoUpload(url=data_url(data, content_type), inline=True)
    logger.info("Uploaded photo to %s", path)
    return PhotoUpload(url=url)
