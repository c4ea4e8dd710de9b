"""
Blob storage for activity photos: Supabase Storage through its S3-compatible
endpoint, plus an in-memory double for tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from puppy_tracker.errors import RemoteFailure


class BlobStorage(Protocol):
    """Defines the operations the tracker needs from object storage."""

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        ...

    def public_url(self, path: str) -> str:
        ...


def public_object_url(base_url: str, bucket: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/storage/v1/object/public/{bucket}/{path}"


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test"
    bucket: str = "puppy-photos"
    stored_objects: dict = field(default_factory=dict)

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        if path in self.stored_objects:
            raise RemoteFailure(f"object already exists: {path}", status=409)
        self.stored_objects[path] = (content_type, bytes(data))

    def public_url(self, path: str) -> str:
        return public_object_url(self.base_url, self.bucket, path)


@dataclass
class SupabaseS3StorageClient:
    """
    Supabase Storage via its S3 protocol endpoint.

    Authenticates as the signed-in user: the project ref and anon key act as
    the access key pair and the user's JWT is the session token, so storage
    row-level policies apply as they would from the browser.
    """

    base_url: str
    anon_key: str
    access_token: str
    bucket: str
    region: str = "us-east-1"

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        # Supabase's S3 gateway only understands path-style addressing.
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=f"{self.base_url}/storage/v1/s3",
            region_name=self.region,
            aws_access_key_id=project_ref(self.base_url),
            aws_secret_access_key=self.anon_key,
            aws_session_token=self.access_token,
            config=config,
        )

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                CacheControl="max-age=3600",
            )
        except ClientError as exc:
            error = exc.response.get("Error", {})
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            raise RemoteFailure(
                error.get("Message") or str(exc),
                status=status,
                code=error.get("Code"),
            ) from exc
        except BotoCoreError as exc:
            raise RemoteFailure(str(exc)) from exc

    def public_url(self, path: str) -> str:
        return public_object_url(self.base_url, self.bucket, path)


def project_ref(base_url: str) -> str:
    """`https://abcd.supabase.co` -> `abcd`."""
    host = urlparse(base_url).hostname or ""
    return host.split(".", 1)[0]
