"""Tests for the blob store backends."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import EndpointConnectionError
from moto import mock_aws

from upload_service.config import Settings
from upload_service.storage import (
    BlobStoreError,
    LocalBlobStore,
    S3BlobStore,
    build_blob_store,
)

_BUCKET = "uploads-test"


@pytest.fixture
def s3_client():
    """Mocked S3 client; the bucket is not created."""
    with mock_aws():
        yield boto3.client(
            "s3",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
        )


@pytest.fixture
def s3_store(s3_client) -> S3BlobStore:
    store = S3BlobStore(s3_client, _BUCKET)
    store.ensure_container()
    return store


class TestS3BlobStore:
    def test_ensure_container_creates_public_bucket(self, s3_client) -> None:
        S3BlobStore(s3_client, _BUCKET).ensure_container()

        s3_client.head_bucket(Bucket=_BUCKET)
        policy = json.loads(s3_client.get_bucket_policy(Bucket=_BUCKET)["Policy"])
        statement = policy["Statement"][0]
        assert statement["Action"] == ["s3:GetObject"]
        assert statement["Resource"] == [f"arn:aws:s3:::{_BUCKET}/*"]

    def test_ensure_container_is_idempotent(self, s3_store) -> None:
        s3_store.ensure_container()

    def test_ensure_container_unreachable(self) -> None:
        client = MagicMock()
        client.head_bucket.side_effect = EndpointConnectionError(endpoint_url="http://127.0.0.1:1/uploads")

        with pytest.raises(BlobStoreError, match="Cannot access container"):
            S3BlobStore(client, _BUCKET).ensure_container()
        client.create_bucket.assert_not_called()

    def test_put_stores_bytes_and_content_type(self, s3_client, s3_store) -> None:
        url = s3_store.put("1700000000000-abcdefghi.png", b"\x89PNG", "image/png")

        obj = s3_client.get_object(Bucket=_BUCKET, Key="1700000000000-abcdefghi.png")
        assert obj["Body"].read() == b"\x89PNG"
        assert obj["ContentType"] == "image/png"
        assert url.endswith(f"/{_BUCKET}/1700000000000-abcdefghi.png")
        assert s3_store.exists("1700000000000-abcdefghi.png")

    def test_url_uses_public_base(self, s3_client) -> None:
        store = S3BlobStore(s3_client, _BUCKET, public_base_url="https://cdn.example.com/files/")
        assert store.url_for("1-a b.txt") == "https://cdn.example.com/files/1-a%20b.txt"

    def test_delete(self, s3_store) -> None:
        s3_store.put("1-abc.txt", b"x", "text/plain")
        s3_store.delete("1-abc.txt")
        assert not s3_store.exists("1-abc.txt")
        # deleting again is not an error
        s3_store.delete("1-abc.txt")

    def test_put_without_bucket_fails(self, s3_client) -> None:
        store = S3BlobStore(s3_client, "missing-bucket")
        with pytest.raises(BlobStoreError):
            store.put("1-abc.txt", b"x", "text/plain")


class TestLocalBlobStore:
    def test_put_and_delete(self, tmp_path) -> None:
        store = LocalBlobStore(tmp_path / "files", "http://localhost:8000/")
        store.ensure_container()

        url = store.put("1-abc.txt", b"hello", "text/plain")

        assert url == "http://localhost:8000/blobs/1-abc.txt"
        assert (tmp_path / "files" / "1-abc.txt").read_bytes() == b"hello"
        assert store.exists("1-abc.txt")
        store.delete("1-abc.txt")
        assert not store.exists("1-abc.txt")
        store.delete("1-abc.txt")

    @pytest.mark.parametrize("name", ["", "..", "../escape.txt", "a\\b.txt"])
    def test_rejects_path_names(self, tmp_path, name) -> None:
        store = LocalBlobStore(tmp_path, "http://localhost:8000")
        with pytest.raises(BlobStoreError):
            store.put(name, b"x", "text/plain")


def test_build_blob_store_selects_backend(tmp_path) -> None:
    local = build_blob_store(Settings(blob_backend="local", files_dir=str(tmp_path)))
    assert isinstance(local, LocalBlobStore)

    with mock_aws():
        s3 = build_blob_store(
            Settings(blob_backend="s3", blob_access_key_id="testing", blob_secret_access_key="testing")
        )
    assert isinstance(s3, S3BlobStore)
    assert s3.container == "uploads"
