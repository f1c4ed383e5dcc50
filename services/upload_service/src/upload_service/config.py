from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    data_dir: str = "/data"
    database_url: str | None = None

    blob_backend: Literal["s3", "local"] = "s3"

    # S3-compatible object store (MinIO locally)
    blob_endpoint_url: str | None = None
    blob_access_key_id: str | None = None
    blob_secret_access_key: str | None = None
    blob_region: str = "us-east-1"
    blob_container: str = "uploads"
    blob_public_base_url: str | None = None

    # local backend, served under /blobs
    files_dir: str = "/data/files"
    public_base_url: str = "http://localhost:8000"

    max_files_per_upload: int = 50
    max_file_size: int = 100 * 1024 * 1024
    default_page_limit: int = 10
    max_page_limit: int = 100
    storage_name_attempts: int = 3

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir.rstrip('/')}/upload_service.db"


settings = Settings()
