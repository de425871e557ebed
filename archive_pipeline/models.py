"""Shared data models for the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class TaskStatus(str, Enum):
    """Lifecycle of one eligible staged file within a single run."""

    STAGED = "staged"
    OCR_SUBMITTED = "ocr_submitted"
    OCR_DONE = "ocr_done"
    OCR_FAILED = "ocr_failed"
    PARSED = "parsed"
    UPLOADED = "uploaded"
    SKIPPED = "skipped"
    UPLOAD_FAILED = "upload_failed"


class NameMatch(str, Enum):
    """How a sidecar filename was mapped back to (archive, source file)."""

    MATCHED = "matched"
    FALLBACK_SPLIT = "fallback_split"
    UNRECOGNIZED = "unrecognized"


class UploadOutcome(str, Enum):
    UPLOADED = "uploaded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ProcessingTask:
    """Tracks one eligible file from staging through upload."""

    archive_name: str
    entry_path: str
    staged_path: Path
    sidecar_path: Path
    status: TaskStatus = TaskStatus.STAGED
    error: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.archive_name}::{self.entry_path}"


@dataclass
class StagedArchive:
    """An archive expanded into its own staging directory."""

    archive_path: Path
    root: Path
    files: list[Path] = field(default_factory=list)

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()


@dataclass(frozen=True)
class NameParse:
    kind: NameMatch
    original_zip: str
    source_file: str


@dataclass
class ParsedDocument:
    """Page-split content of one sidecar, ready for upload."""

    original_zip: str
    source_file: str
    pages: list[str] = field(default_factory=list)
    name_match: NameMatch = NameMatch.MATCHED

    @property
    def total_pages(self) -> int:
        return len(self.pages)


@dataclass
class UploadResult:
    """Counters from a batch upload pass."""

    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    files: list[Path] = field(default_factory=list)


@dataclass
class RunSummary:
    """Terminal counters for one pipeline run."""

    archives: int = 0
    archives_failed: int = 0
    extracted: int = 0
    ocr_succeeded: int = 0
    ocr_failed: int = 0
    ocr_skipped: int = 0
    uploaded: int = 0
    skipped_duplicate: int = 0
    upload_failed: int = 0
    cancelled: bool = False
    archive_paths: list[Path] = field(default_factory=list)

    def add_upload(self, result: UploadResult) -> None:
        self.uploaded += result.uploaded
        self.skipped_duplicate += result.skipped
        self.upload_failed += result.failed
