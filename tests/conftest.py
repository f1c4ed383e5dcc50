"""Shared pytest fixtures for upload service tests."""

from __future__ import annotations

import datetime as dt
from collections.abc import AsyncGenerator, Callable

import pytest
from httpx import ASGITransport, AsyncClient

from upload_service.config import Settings
from upload_service.db import init_db, make_engine, make_session_factory
from upload_service.main import create_app
from upload_service.models import FileRecord
from upload_service.repository import FileRepository, MetadataStoreError
from upload_service.storage import BlobStoreError


class FakeBlobStore:
    """In-memory blob store with switchable failures."""

    def __init__(self) -> None:
        self.blobs: dict[str, tuple[bytes, str]] = {}
        self.broken_payloads: set[bytes] = set()
        self.fail_deletes = False
        self.taken_names: set[str] = set()
        self.deleted: list[str] = []

    def ensure_container(self) -> None:
        pass

    def put(self, name: str, data: bytes, content_type: str) -> str:
        if data in self.broken_payloads:
            raise BlobStoreError(f"Failed to store blob {name}: connection reset")
        self.blobs[name] = (data, content_type)
        return f"http://blobs.test/uploads/{name}"

    def delete(self, name: str) -> None:
        if self.fail_deletes:
            raise BlobStoreError(f"Failed to delete blob {name}: service unavailable")
        self.blobs.pop(name, None)
        self.deleted.append(name)

    def exists(self, name: str) -> bool:
        return name in self.blobs or name in self.taken_names


class FlakyRepository(FileRepository):
    """Repository that refuses to insert records for selected original names."""

    def __init__(self, session_factory, rejected_names: set[str]):
        super().__init__(session_factory)
        self.rejected_names = rejected_names
        self.fail_deletes = False

    def insert(self, record: FileRecord) -> FileRecord:
        if record.original_name in self.rejected_names:
            raise MetadataStoreError("Failed to save file record: database is locked")
        return super().insert(record)

    def delete(self, file_id: str) -> bool:
        if self.fail_deletes:
            raise MetadataStoreError(f"Failed to delete file record {file_id}: database is locked")
        return super().delete(file_id)


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory) -> FileRepository:
    return FileRepository(session_factory)


@pytest.fixture
def flaky_repository(session_factory) -> FlakyRepository:
    return FlakyRepository(session_factory, rejected_names=set())


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def make_record(repository: FileRepository) -> Callable[..., FileRecord]:
    """Insert a record directly, bypassing the blob store."""
    base = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
    counter = iter(range(10_000))

    def _make(original_name: str = "photo.png", file_type: str = "image/png", size: int = 10, **kwargs) -> FileRecord:
        n = next(counter)
        record = FileRecord(
            storage_name=kwargs.pop("storage_name", f"1700000000000-{n:09d}.bin"),
            original_name=original_name,
            url=f"http://blobs.test/uploads/{n}",
            size=size,
            file_type=file_type,
            upload_date=kwargs.pop("upload_date", base + dt.timedelta(minutes=n)),
            **kwargs,
        )
        return repository.insert(record)

    return _make


@pytest.fixture
def test_settings() -> Settings:
    return Settings(blob_backend="s3", log_level="WARNING")


@pytest.fixture
async def client(
    test_settings: Settings,
    blob_store: FakeBlobStore,
    flaky_repository: FlakyRepository,
) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(test_settings, blob_store=blob_store, repository=flaky_repository)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
