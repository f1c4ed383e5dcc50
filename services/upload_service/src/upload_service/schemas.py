import datetime as dt
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class UploadedFile(CamelModel):
    id: str
    original_name: str
    url: str
    size: int
    file_type: str
    upload_date: dt.datetime


class UploadError(CamelModel):
    filename: str
    error: str


class UploadResponse(CamelModel):
    success: bool = True
    uploaded_files: list[UploadedFile] = Field(default_factory=list)
    errors: list[UploadError] = Field(default_factory=list)
    message: str


class FileMeta(CamelModel):
    id: str
    storage_name: str
    original_name: str
    url: str
    size: int
    file_type: str
    upload_date: dt.datetime
    user_id: str | None = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class FileListResponse(CamelModel):
    success: bool = True
    files: list[FileMeta]
    pagination: Pagination


class DeleteResponse(CamelModel):
    success: bool = True
    message: str


class FailureResponse(CamelModel):
    success: bool = False
    error: str
    details: str | None = None
