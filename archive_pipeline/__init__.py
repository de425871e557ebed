"""ZIP archive -> OCR -> relational store ingestion pipeline.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from archive_pipeline import X``
works.
"""

from .backup import backup_filename, create_backup
from .config import Settings, load_settings, require_database_url
from .conversion import (
    DoclingRunner,
    OcrmypdfRunner,
    OcrWorkerPool,
    create_ocr_converter,
    create_runner,
)
from .db import Store
from .errors import (
    BackupError,
    ConfigurationError,
    DiscoveryError,
    NotFoundError,
    OCRFailure,
    OCRTimeout,
    OCRToolMissing,
    PipelineError,
    StagingError,
    UploadFailure,
)
from .models import (
    NameMatch,
    NameParse,
    ParsedDocument,
    ProcessingTask,
    RunSummary,
    StagedArchive,
    TaskStatus,
    UploadOutcome,
    UploadResult,
)
from .orchestrator import build_tasks, process_archive, run_pipeline
from .parsing import parse_sidecar, parse_sidecar_name, split_pages
from .sources import discover_archives, discover_sidecars
from .staging import release_staging, stage_archive, staged_archive
from .tables import Document, Page
from .upload import UploadWorkerPool, upload_directory, upload_document
from .utils import (
    ensure_output_dir,
    is_ocr_eligible,
    load_pipeline_state,
    save_pipeline_state,
    sidecar_name,
)
from .workers import BoundedPool

__all__ = [
    # Models
    "TaskStatus",
    "NameMatch",
    "UploadOutcome",
    "ProcessingTask",
    "StagedArchive",
    "NameParse",
    "ParsedDocument",
    "UploadResult",
    "RunSummary",
    # Errors
    "PipelineError",
    "ConfigurationError",
    "NotFoundError",
    "DiscoveryError",
    "StagingError",
    "OCRFailure",
    "OCRTimeout",
    "OCRToolMissing",
    "UploadFailure",
    "BackupError",
    # Config
    "Settings",
    "load_settings",
    "require_database_url",
    # Utils
    "ensure_output_dir",
    "is_ocr_eligible",
    "sidecar_name",
    "load_pipeline_state",
    "save_pipeline_state",
    # Discovery and staging
    "discover_archives",
    "discover_sidecars",
    "stage_archive",
    "staged_archive",
    "release_staging",
    # OCR
    "BoundedPool",
    "OcrmypdfRunner",
    "DoclingRunner",
    "create_ocr_converter",
    "create_runner",
    "OcrWorkerPool",
    # Parsing
    "parse_sidecar_name",
    "split_pages",
    "parse_sidecar",
    # Store and upload
    "Document",
    "Page",
    "Store",
    "upload_document",
    "UploadWorkerPool",
    "upload_directory",
    # Orchestration
    "build_tasks",
    "process_archive",
    "run_pipeline",
    # Backup
    "backup_filename",
    "create_backup",
]
