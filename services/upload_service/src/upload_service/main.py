import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import Settings, settings as default_settings
from .db import init_db, make_engine, make_session_factory
from .logging_config import setup_logging
from .repository import FileRepository
from .schemas import (
    DeleteResponse,
    FailureResponse,
    FileListResponse,
    FileMeta,
    Pagination,
    UploadError,
    UploadResponse,
    UploadedFile,
)
from .services import (
    DEFAULT_CONTENT_TYPE,
    BatchTooLargeError,
    DeletionService,
    EmptyBatchError,
    FilePayload,
    FileRecordNotFound,
    ListingService,
    UploadPipeline,
)
from .storage import BlobStore, BlobStoreError, FileTooLargeError, build_blob_store, read_upload_file

logger = logging.getLogger(__name__)

router = APIRouter()


def create_app(
    settings: Settings = default_settings,
    blob_store: BlobStore | None = None,
    repository: FileRepository | None = None,
) -> FastAPI:
    """Build the app; stores not passed in are created from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings.log_level)

        # a blob store that cannot be configured is fatal: startup aborts here
        store = blob_store if blob_store is not None else build_blob_store(settings)
        try:
            await run_in_threadpool(store.ensure_container)
            logger.info("Blob container ready")
        except BlobStoreError:
            logger.error("Blob container provisioning failed", exc_info=True)

        engine = None
        records = repository
        if records is None:
            engine = make_engine(settings.db_url)
            init_db(engine)
            records = FileRepository(make_session_factory(engine))

        app.state.upload_pipeline = UploadPipeline(
            store,
            records,
            max_files=settings.max_files_per_upload,
            name_attempts=settings.storage_name_attempts,
        )
        app.state.listing_service = ListingService(
            records,
            default_limit=settings.default_page_limit,
            max_limit=settings.max_page_limit,
        )
        app.state.deletion_service = DeletionService(store, records)
        logger.info("Upload service started")
        try:
            yield
        finally:
            if engine is not None:
                engine.dispose()

    app = FastAPI(title="File Upload Service", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    if settings.blob_backend == "local":
        app.mount("/blobs", StaticFiles(directory=settings.files_dir, check_dir=False), name="blobs")
    return app


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_upload_pipeline(request: Request) -> UploadPipeline:
    return request.app.state.upload_pipeline


def get_listing_service(request: Request) -> ListingService:
    return request.app.state.listing_service


def get_deletion_service(request: Request) -> DeletionService:
    return request.app.state.deletion_service


def _failure(status_code: int, error: str, exc: Exception | None = None) -> JSONResponse:
    body = FailureResponse(error=error, details=str(exc) if exc is not None else None)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/api/upload", response_model=UploadResponse)
async def upload_files(
    files: list[UploadFile] | None = File(None),
    user_id: str | None = Form(None, alias="userId"),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
    settings: Settings = Depends(get_settings),
):
    if not files:
        return _failure(400, "No files uploaded")
    if len(files) > pipeline.max_files:
        return _failure(400, f"Too many files: {len(files)} (max {pipeline.max_files})")

    payloads = []
    try:
        for upload in files:
            content = await read_upload_file(upload, settings.max_file_size)
            payloads.append(
                FilePayload(
                    content=content,
                    original_name=upload.filename or "",
                    content_type=upload.content_type or DEFAULT_CONTENT_TYPE,
                    user_id=user_id or None,
                )
            )
    except FileTooLargeError as e:
        return _failure(413, "File too large", e)

    try:
        result = await run_in_threadpool(pipeline.upload_batch, payloads)
    except (EmptyBatchError, BatchTooLargeError) as e:
        return _failure(400, str(e))
    except Exception as e:
        logger.exception("Upload endpoint error")
        return _failure(500, "Upload failed", e)

    return UploadResponse(
        uploaded_files=[UploadedFile.model_validate(r) for r in result.uploaded],
        errors=[UploadError(filename=f.filename, error=f.error) for f in result.errors],
        message=result.message,
    )


@router.get("/api/files", response_model=FileListResponse)
def list_files(
    page: str | None = None,
    limit: str | None = None,
    sort: str | None = None,
    search: str | None = None,
    listing: ListingService = Depends(get_listing_service),
):
    # pagination arrives as raw strings so malformed values fall back to defaults instead of a 422
    try:
        result = listing.list_files(page=page, limit=limit, sort=sort, search=search)
    except Exception as e:
        logger.exception("Error fetching files")
        return _failure(500, "Failed to fetch files", e)

    return FileListResponse(
        files=[FileMeta.model_validate(f) for f in result.files],
        pagination=Pagination(page=result.page, limit=result.limit, total=result.total, pages=result.pages),
    )


@router.delete("/api/files/{file_id}", response_model=DeleteResponse)
def delete_file(file_id: str, deletion: DeletionService = Depends(get_deletion_service)):
    try:
        deletion.delete_file(file_id)
    except FileRecordNotFound:
        return _failure(404, "File not found")
    except Exception as e:
        logger.exception("Error deleting file %s", file_id)
        return _failure(500, "Failed to delete file", e)
    return DeleteResponse(message="File deleted successfully")


app = create_app()


def run() -> None:
    uvicorn.run(app, host="0.0.0.0", port=default_settings.port)
