"""Upload, listing and deletion of stored files.

Every record is written only after its blob was stored, and deleted only
after its blob was removed. There is no transaction across the two stores;
that ordering is the whole consistency story, so a failed record insert can
leave an orphaned blob behind (logged, never hidden).
"""

from __future__ import annotations

import logging
import math
import os
import secrets
import string
import time
from dataclasses import dataclass, field

from .models import FileRecord
from .repository import SORT_COLUMNS, FileQuery, FileRepository, MetadataStoreError
from .storage import BlobStore, BlobStoreError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SUFFIX_LENGTH = 9

DEFAULT_PAGE = 1
# largest row offset handed to the database; fits a signed 64-bit integer
MAX_OFFSET = 2**62
DEFAULT_SORT = ("upload_date", True)
SORT_FIELDS = {
    "uploadDate": "upload_date",
    "originalName": "original_name",
    "fileType": "file_type",
    "storageName": "storage_name",
    "filename": "storage_name",
    "_id": "id",
    **{name: name for name in SORT_COLUMNS},
}


class EmptyBatchError(ValueError):
    pass


class BatchTooLargeError(ValueError):
    pass


class FileRecordNotFound(LookupError):
    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"File {file_id} not found")


class DeletionFailed(RuntimeError):
    pass


class BlobDeleteFailed(DeletionFailed):
    pass


class RecordDeleteFailed(DeletionFailed):
    pass


def make_storage_name(original_name: str, now_ms: int | None = None) -> str:
    """Build `{millis}-{random suffix}{extension}`; the extension is the only part taken from the user."""
    basename = original_name.replace("\\", "/").rsplit("/", 1)[-1]
    extension = os.path.splitext(basename)[1]
    suffix = "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    return f"{now_ms}-{suffix}{extension}"


def parse_positive_int(value: object, default: int) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def parse_sort(sort: str | None) -> tuple[str, bool]:
    """Turn `-uploadDate` style input into (column name, descending)."""
    text = (sort or "").strip()
    if not text:
        return DEFAULT_SORT
    descending = text.startswith("-")
    column = SORT_FIELDS.get(text.lstrip("-+"))
    if column is None:
        return DEFAULT_SORT
    return column, descending


@dataclass
class FilePayload:
    content: bytes
    original_name: str
    content_type: str = DEFAULT_CONTENT_TYPE
    user_id: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class FileFailure:
    filename: str
    error: str


@dataclass
class BatchResult:
    uploaded: list[FileRecord] = field(default_factory=list)
    errors: list[FileFailure] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Uploaded {len(self.uploaded)} files, {len(self.errors)} failed"


@dataclass
class FilePage:
    files: list[FileRecord]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit)


class UploadPipeline:
    def __init__(
        self,
        blob_store: BlobStore,
        repository: FileRepository,
        max_files: int = 50,
        name_attempts: int = 3,
    ):
        self._blobs = blob_store
        self._records = repository
        self.max_files = max_files
        self._name_attempts = max(1, name_attempts)

    def upload_batch(self, payloads: list[FilePayload]) -> BatchResult:
        """Store each payload in turn and collect per-file outcomes.

        Files are processed one at a time. A failure is recorded against the
        file that caused it and the batch moves on; only an empty or oversized
        batch is rejected as a whole.
        """
        if not payloads:
            raise EmptyBatchError("No files uploaded")
        if len(payloads) > self.max_files:
            raise BatchTooLargeError(f"Too many files: {len(payloads)} (max {self.max_files})")

        result = BatchResult()
        for payload in payloads:
            try:
                record = self.upload_one(payload)
            except Exception as e:
                logger.exception("Error uploading %s", payload.original_name)
                result.errors.append(FileFailure(filename=payload.original_name, error=str(e)))
            else:
                result.uploaded.append(record)

        logger.info("Upload batch finished: %s", result.message)
        return result

    def upload_one(self, payload: FilePayload) -> FileRecord:
        content_type = payload.content_type or DEFAULT_CONTENT_TYPE
        storage_name = self._free_storage_name(payload.original_name)

        url = self._blobs.put(storage_name, payload.content, content_type)
        logger.info("Stored blob %s for %s (%d bytes)", storage_name, payload.original_name, payload.size)

        record = FileRecord(
            storage_name=storage_name,
            original_name=payload.original_name,
            url=url,
            size=payload.size,
            file_type=content_type,
            user_id=payload.user_id,
        )
        try:
            return self._records.insert(record)
        except Exception:
            self._discard_orphan(storage_name)
            raise

    def _free_storage_name(self, original_name: str) -> str:
        for _ in range(self._name_attempts):
            name = make_storage_name(original_name)
            if not self._blobs.exists(name):
                return name
            logger.warning("Storage name %s already taken, generating another", name)
        raise BlobStoreError(f"No free storage name for {original_name} after {self._name_attempts} attempts")

    def _discard_orphan(self, storage_name: str) -> None:
        logger.warning("Record insert failed, removing blob %s", storage_name)
        try:
            self._blobs.delete(storage_name)
        except BlobStoreError:
            logger.error("Orphaned blob left in storage: %s", storage_name, exc_info=True)


class ListingService:
    def __init__(self, repository: FileRepository, default_limit: int = 10, max_limit: int = 100):
        self._records = repository
        self.default_limit = default_limit
        self.max_limit = max_limit

    def list_files(
        self,
        page: object = None,
        limit: object = None,
        sort: str | None = None,
        search: str | None = None,
    ) -> FilePage:
        page_size = min(parse_positive_int(limit, self.default_limit), self.max_limit)
        page_number = min(parse_positive_int(page, DEFAULT_PAGE), MAX_OFFSET // page_size + 1)
        sort_field, descending = parse_sort(sort)

        query = FileQuery(
            search=search or "",
            sort_field=sort_field,
            descending=descending,
            offset=(page_number - 1) * page_size,
            limit=page_size,
        )
        files, total = self._records.find(query)
        return FilePage(files=files, page=page_number, limit=page_size, total=total)


class DeletionService:
    def __init__(self, blob_store: BlobStore, repository: FileRepository):
        self._blobs = blob_store
        self._records = repository

    def delete_file(self, file_id: str) -> FileRecord:
        """Remove the blob, then the record.

        If the blob cannot be removed the record stays, so the caller can
        still find the file and retry.
        """
        record = self._records.get(file_id)
        if record is None:
            raise FileRecordNotFound(file_id)

        try:
            self._blobs.delete(record.storage_name)
        except BlobStoreError as e:
            raise BlobDeleteFailed(str(e)) from e

        try:
            removed = self._records.delete(file_id)
        except MetadataStoreError as e:
            logger.error("Blob %s deleted but record %s remains", record.storage_name, file_id)
            raise RecordDeleteFailed(str(e)) from e

        if not removed:
            logger.info("Record %s was already gone after blob delete", file_id)
        logger.info("Deleted file %s (%s)", file_id, record.storage_name)
        return record
