"""Blob storage backends and upload reading helpers.

Two backends implement the same small capability: an S3-compatible object
store reached through boto3 (MinIO for local development) and a plain
directory on disk. Both are synchronous; callers run them off the event loop.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import UploadFile

from .config import Settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB

_MISSING_CODES = {"404", "NoSuchKey", "NoSuchBucket", "NotFound"}


class BlobStoreError(RuntimeError):
    pass


class FileTooLargeError(ValueError):
    def __init__(self, filename: str, limit: int) -> None:
        self.filename = filename
        self.limit = limit
        super().__init__(f"File {filename!r} exceeds the maximum size of {limit} bytes")


async def read_upload_file(upload_file: UploadFile, max_bytes: int) -> bytes:
    """Read an upload into memory, refusing anything over max_bytes."""
    chunks: list[bytes] = []
    size = 0
    try:
        while True:
            chunk = await upload_file.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > max_bytes:
                raise FileTooLargeError(upload_file.filename or "", max_bytes)
            chunks.append(chunk)
    finally:
        await upload_file.close()
    return b"".join(chunks)


class BlobStore(Protocol):
    def ensure_container(self) -> None: ...

    def put(self, name: str, data: bytes, content_type: str) -> str:
        """Store data under name and return its public URL."""
        ...

    def delete(self, name: str) -> None:
        """Remove the blob; removing a missing blob is not an error."""
        ...

    def exists(self, name: str) -> bool: ...


class S3BlobStore:
    def __init__(self, client: Any, container: str, region: str = "us-east-1", public_base_url: str | None = None):
        self._client = client
        self.container = container
        self._region = region
        self._public_base_url = public_base_url

    @classmethod
    def from_settings(cls, settings: Settings) -> S3BlobStore:
        client = boto3.client(
            "s3",
            endpoint_url=settings.blob_endpoint_url,
            aws_access_key_id=settings.blob_access_key_id,
            aws_secret_access_key=settings.blob_secret_access_key,
            region_name=settings.blob_region,
        )
        return cls(
            client,
            settings.blob_container,
            region=settings.blob_region,
            public_base_url=settings.blob_public_base_url,
        )

    def ensure_container(self) -> None:
        """Create the bucket with public object read access if it does not exist.

        The read policy is applied only when the bucket is created here; an
        existing bucket keeps whatever policy it already has.
        """
        try:
            self._client.head_bucket(Bucket=self.container)
            logger.info("Container %s already exists", self.container)
            return
        except ClientError as e:
            if _error_code(e) not in _MISSING_CODES:
                raise BlobStoreError(f"Cannot access container {self.container}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Cannot access container {self.container}: {e}") from e

        try:
            params: dict[str, Any] = {"Bucket": self.container}
            if self._region != "us-east-1":
                params["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
            self._client.create_bucket(**params)
            self._client.put_bucket_policy(Bucket=self.container, Policy=json.dumps(self._public_read_policy()))
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Cannot create container {self.container}: {e}") from e
        logger.info("Created container %s with public blob read access", self.container)

    def put(self, name: str, data: bytes, content_type: str) -> str:
        try:
            self._client.put_object(Bucket=self.container, Key=name, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Failed to store blob {name}: {e}") from e
        return self.url_for(name)

    def delete(self, name: str) -> None:
        try:
            self._client.delete_object(Bucket=self.container, Key=name)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return
            raise BlobStoreError(f"Failed to delete blob {name}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to delete blob {name}: {e}") from e

    def exists(self, name: str) -> bool:
        try:
            self._client.head_object(Bucket=self.container, Key=name)
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return False
            raise BlobStoreError(f"Failed to check blob {name}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to check blob {name}: {e}") from e
        return True

    def url_for(self, name: str) -> str:
        base = self._public_base_url or f"{self._client.meta.endpoint_url.rstrip('/')}/{self.container}"
        return f"{base.rstrip('/')}/{quote(name)}"

    def _public_read_policy(self) -> dict:
        return {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": "*",
                    "Action": ["s3:GetObject"],
                    "Resource": [f"arn:aws:s3:::{self.container}/*"],
                }
            ],
        }


class LocalBlobStore:
    """Blobs as files in one directory, served by the app under /blobs."""

    def __init__(self, root: Path, base_url: str):
        self.root = Path(root)
        self._base_url = base_url.rstrip("/")

    def ensure_container(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def put(self, name: str, data: bytes, content_type: str) -> str:
        destination = self._path(name)
        try:
            with destination.open("wb") as out:
                for start in range(0, len(data), CHUNK_SIZE):
                    out.write(data[start : start + CHUNK_SIZE])
        except OSError as e:
            raise BlobStoreError(f"Failed to store blob {name}: {e}") from e
        return f"{self._base_url}/blobs/{quote(name)}"

    def delete(self, name: str) -> None:
        try:
            self._path(name).unlink(missing_ok=True)
        except OSError as e:
            raise BlobStoreError(f"Failed to delete blob {name}: {e}") from e

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise BlobStoreError(f"Invalid blob name: {name!r}")
        return self.root / name


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.blob_backend == "local":
        return LocalBlobStore(Path(settings.files_dir), settings.public_base_url)
    return S3BlobStore.from_settings(settings)


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))
