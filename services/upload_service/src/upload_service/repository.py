from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, func, or_, select, Select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .models import FileRecord

SORT_COLUMNS = {
    "upload_date": FileRecord.upload_date,
    "original_name": FileRecord.original_name,
    "file_type": FileRecord.file_type,
    "size": FileRecord.size,
    "storage_name": FileRecord.storage_name,
    "id": FileRecord.id,
}


class MetadataStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class FileQuery:
    search: str = ""
    sort_field: str = "upload_date"
    descending: bool = True
    offset: int = 0
    limit: int = 10


class FileRepository:
    """Metadata records for stored blobs, one short session per call."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def insert(self, record: FileRecord) -> FileRecord:
        try:
            with self._session_factory() as db:
                db.add(record)
                db.commit()
                db.refresh(record)
                return record
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to save file record: {e}") from e

    def get(self, file_id: str) -> FileRecord | None:
        try:
            with self._session_factory() as db:
                return db.get(FileRecord, file_id)
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to load file record {file_id}: {e}") from e

    def find(self, query: FileQuery) -> tuple[list[FileRecord], int]:
        column = SORT_COLUMNS.get(query.sort_field, FileRecord.upload_date)
        order = column.desc() if query.descending else column.asc()
        # id as tie-breaker keeps pages stable when sort values repeat
        tie = FileRecord.id.desc() if query.descending else FileRecord.id.asc()
        stmt = _filtered(select(FileRecord), query.search).order_by(order, tie).offset(query.offset).limit(query.limit)
        try:
            with self._session_factory() as db:
                rows = list(db.execute(stmt).scalars().all())
                total = db.execute(_filtered(select(func.count(FileRecord.id)), query.search)).scalar_one()
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to query file records: {e}") from e
        return rows, total

    def count(self, search: str = "") -> int:
        try:
            with self._session_factory() as db:
                return db.execute(_filtered(select(func.count(FileRecord.id)), search)).scalar_one()
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to count file records: {e}") from e

    def delete(self, file_id: str) -> bool:
        try:
            with self._session_factory() as db:
                result = db.execute(delete(FileRecord).where(FileRecord.id == file_id))
                db.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to delete file record {file_id}: {e}") from e


def _filtered(stmt: Select, search: str) -> Select:
    if not search:
        return stmt
    term = search.lower()
    return stmt.where(
        or_(
            func.lower(FileRecord.original_name).contains(term, autoescape=True),
            func.lower(FileRecord.file_type).contains(term, autoescape=True),
        )
    )
