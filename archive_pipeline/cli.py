"""CLI entrypoint for the ZIP -> OCR -> relational store pipeline.

Usage:
    python -m archive_pipeline --source-dir ./uploads --output-dir ./extracted
    python -m archive_pipeline --source-dir ./uploads --dry-run
    python -m archive_pipeline --source-dir ./uploads --upload-mode batch
    python -m archive_pipeline --output-dir ./extracted --upload-only
    python -m archive_pipeline --source-dir ./uploads --ocr-workers 8 --upload-workers 2
"""

from __future__ import annotations

import argparse
import logging
from logging.handlers import RotatingFileHandler
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    output_dir: Path,
    log_file: Path | None,
) -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(root_level)

    console_fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    detailed_fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "%(threadName)s | %(filename)s:%(lineno)d | %(message)s"
    )
    formatter = logging.Formatter(
        detailed_fmt if detailed_logging else console_fmt,
        "%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    resolved_log_file = log_file
    if resolved_log_file is None and detailed_logging:
        resolved_log_file = output_dir / "pipeline.log"

    if resolved_log_file is not None:
        resolved_log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            resolved_log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_fmt, "%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("docling").setLevel(logging.WARNING)
    logging.getLogger("ocrmypdf").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Unset options are left as None so environment / ``.env`` values apply.
    """
    parser = argparse.ArgumentParser(
        description="ZIP archives -> OCR sidecars -> documents/pages store"
    )
    parser.add_argument(
        "--source-dir",
        type=Path,
        help="Directory containing .zip archives (default: uploads/)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Directory for OCR sidecar .txt files (default: extracted/)",
    )
    parser.add_argument(
        "--staging-dir",
        type=Path,
        help="Root for per-archive staging directories (default: system temp)",
    )
    parser.add_argument(
        "--ocr-workers",
        type=int,
        help="Concurrent OCR invocations (default: 4)",
    )
    parser.add_argument(
        "--upload-workers",
        type=int,
        help="Concurrent store writers; also the connection cap (default: 2)",
    )
    parser.add_argument(
        "--upload-mode",
        choices=["streaming", "batch", "none"],
        help=(
            "streaming: upload each file as OCR finishes; "
            "batch: OCR everything, then upload the output directory; "
            "none: OCR only (default: streaming)"
        ),
    )
    parser.add_argument(
        "--upload-only",
        action="store_true",
        default=None,
        help="Skip OCR and upload existing sidecars from --output-dir",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="List archives (or sidecars with --upload-only) and exit",
    )
    parser.add_argument(
        "--ocr-engine",
        choices=["ocrmypdf", "docling"],
        help="OCR backend (default: ocrmypdf)",
    )
    parser.add_argument(
        "--ocr-language",
        help="Tesseract language for ocrmypdf (default: eng)",
    )
    parser.add_argument(
        "--ocr-timeout",
        type=float,
        help="Per-file OCR timeout in seconds, 0 disables (default: 900)",
    )
    parser.add_argument(
        "--page-separator",
        choices=["formfeed", "blank-line"],
        help="Page boundary in sidecar text (default: formfeed)",
    )
    parser.add_argument(
        "--force-ocr",
        action="store_true",
        default=None,
        help="Re-run OCR even when a sidecar already exists",
    )
    parser.add_argument(
        "--database-url",
        help="Store URL (default: $DATABASE_URL or $SERENDB_CONNECTION_STRING)",
    )
    parser.add_argument(
        "--statement-timeout",
        type=float,
        help="Per-query store timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bars",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (thread, file/line, rotating log file)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help=(
            "Optional log file path "
            "(default: <output-dir>/pipeline.log in detailed mode)"
        ),
    )
    return parser.parse_args(argv)


_SETTING_FLAGS = (
    "source_dir",
    "output_dir",
    "staging_dir",
    "ocr_workers",
    "upload_workers",
    "upload_mode",
    "upload_only",
    "dry_run",
    "ocr_engine",
    "ocr_language",
    "ocr_timeout",
    "page_separator",
    "force_ocr",
    "database_url",
    "statement_timeout",
)


def _install_cancel_handler(cancel_event: threading.Event) -> Any:
    """First Ctrl-C requests a clean stop; the second one interrupts."""
    if threading.current_thread() is not threading.main_thread():
        return None

    def _handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        log.warning("Stop requested; finishing in-flight work (Ctrl-C again to abort)")
        cancel_event.set()

    return signal.signal(signal.SIGINT, _handler)


def main(argv: list[str] | None = None) -> None:
    """Run the full pipeline."""
    from .config import load_settings
    from .errors import ConfigurationError, DiscoveryError
    from .orchestrator import run_pipeline

    args = parse_args(argv)
    overrides = {name: getattr(args, name) for name in _SETTING_FLAGS}

    try:
        settings = load_settings(**overrides)
    except ConfigurationError as exc:
        _setup_logging(
            verbose=args.verbose,
            detailed_logging=False,
            output_dir=Path("."),
            log_file=None,
        )
        log.error("%s", exc)
        sys.exit(2)

    _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        output_dir=settings.output_dir,
        log_file=args.log_file,
    )

    overall_t0 = time.perf_counter()
    log.info(
        "Runtime: ocr_workers=%s upload_workers=%s upload_mode=%s engine=%s "
        "separator=%s dry_run=%s upload_only=%s",
        settings.ocr_workers,
        settings.upload_workers,
        settings.upload_mode,
        settings.ocr_engine,
        settings.page_separator,
        settings.dry_run,
        settings.upload_only,
    )

    cancel_event = threading.Event()
    previous_handler = _install_cancel_handler(cancel_event)
    try:
        summary = run_pipeline(
            settings,
            cancel_event=cancel_event,
            show_progress=not args.no_progress,
        )
    except (ConfigurationError, DiscoveryError) as exc:
        log.error("%s", exc)
        sys.exit(2)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    # --- Summary ---
    log.info("=" * 60)
    log.info("DRY RUN COMPLETE" if settings.dry_run else "PIPELINE COMPLETE")
    log.info(f"  Archives found:     {len(summary.archive_paths)}")
    if not settings.dry_run:
        log.info(f"  Archives processed: {summary.archives}")
        log.info(f"  Archives failed:    {summary.archives_failed}")
        log.info(f"  Files extracted:    {summary.extracted}")
        log.info(f"  OCR succeeded:      {summary.ocr_succeeded}")
        log.info(f"  OCR failed:         {summary.ocr_failed}")
        log.info(f"  OCR skipped:        {summary.ocr_skipped}")
        log.info(f"  Uploaded:           {summary.uploaded}")
        log.info(f"  Skipped duplicate:  {summary.skipped_duplicate}")
        log.info(f"  Upload failed:      {summary.upload_failed}")
    log.info(f"  Output dir:         {settings.output_dir}")
    log.info(f"  Total runtime:      {time.perf_counter() - overall_t0:.1f}s")

    if summary.cancelled:
        log.warning("Run cancelled before all work was submitted")
        sys.exit(130)
