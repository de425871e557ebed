"""Runtime configuration (environment / ``.env``, overridden by CLI flags)."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from .errors import ConfigurationError
from .utils import (
    DEFAULT_OCR_TIMEOUT_S,
    DEFAULT_OCR_WORKERS,
    DEFAULT_PAGE_SEPARATOR,
    DEFAULT_STATEMENT_TIMEOUT_S,
    DEFAULT_UPLOAD_WORKERS,
    MAX_ARCHIVE_BYTES,
    MAX_ARCHIVE_ENTRIES,
    PAGE_SEPARATORS,
    PROGRESS_EVERY,
)


class Settings(BaseSettings):
    # Store
    database_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("DATABASE_URL", "SERENDB_CONNECTION_STRING", "database_url"),
    )
    statement_timeout: float = Field(DEFAULT_STATEMENT_TIMEOUT_S, gt=0)

    # Paths
    source_dir: Path = Path("uploads")
    output_dir: Path = Path("extracted")
    staging_dir: Path = Path(tempfile.gettempdir()) / "archive-pipeline-staging"
    backup_dir: Path = Path("backups")

    # Concurrency
    ocr_workers: int = Field(DEFAULT_OCR_WORKERS, ge=1)
    upload_workers: int = Field(DEFAULT_UPLOAD_WORKERS, ge=1)

    # OCR
    ocr_engine: Literal["ocrmypdf", "docling"] = "ocrmypdf"
    ocr_language: str = "eng"
    ocr_timeout: float = Field(DEFAULT_OCR_TIMEOUT_S, ge=0)  # 0 disables
    page_separator: str = DEFAULT_PAGE_SEPARATOR
    force_ocr: bool = False

    # Run mode
    upload_mode: Literal["streaming", "batch", "none"] = "streaming"
    upload_only: bool = False
    dry_run: bool = False
    progress_every: int = Field(PROGRESS_EVERY, ge=1)

    # Staging caps
    max_archive_entries: int = Field(MAX_ARCHIVE_ENTRIES, ge=1)
    max_archive_bytes: int = Field(MAX_ARCHIVE_BYTES, ge=1)

    model_config = {
        "env_prefix": "ARCHIVE_PIPELINE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @field_validator("page_separator", mode="before")
    def _check_separator(cls, v):
        v = str(v).strip().lower()
        if v not in PAGE_SEPARATORS:
            raise ValueError(f"page_separator must be one of {sorted(PAGE_SEPARATORS)}")
        return v

    @field_validator("database_url", mode="before")
    def _blank_url_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def needs_store(self) -> bool:
        if self.dry_run:
            return False
        return self.upload_only or self.upload_mode != "none"


def load_settings(**overrides) -> Settings:
    """Build :class:`Settings`, ignoring ``None`` overrides.

    Raises :class:`ConfigurationError` on invalid values.
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return Settings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration:\n{exc}") from exc


def require_database_url(settings: Settings) -> str:
    if not settings.database_url:
        raise ConfigurationError(
            "A store connection string is required "
            "(set DATABASE_URL or SERENDB_CONNECTION_STRING)"
        )
    return settings.database_url
