"""Exception hierarchy for the ingestion pipeline.

Only :class:`DiscoveryError` and :class:`ConfigurationError` are meant to
reach the caller; the rest are caught per file or per document, logged and
counted.
"""


class PipelineError(Exception):
    """Base exception for all pipeline errors."""


class ConfigurationError(PipelineError):
    """Raised when configuration is invalid or missing."""


class NotFoundError(PipelineError):
    """Raised when a required path does not exist."""


class DiscoveryError(NotFoundError):
    """Raised when the archive source directory cannot be listed."""


class StagingError(PipelineError):
    """Raised when an archive cannot be opened for extraction."""


class OCRFailure(PipelineError):
    """Raised when OCR for a single file fails."""


class OCRTimeout(OCRFailure):
    """Raised when OCR for a single file exceeds its timeout."""


class OCRToolMissing(OCRFailure):
    """Raised when the OCR executable or library is not installed."""


class UploadFailure(PipelineError):
    """Raised when a document cannot be written to the store."""


class BackupError(PipelineError):
    """Raised when a database dump fails."""
