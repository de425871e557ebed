"""Drive scanning -> staging -> OCR -> parse -> upload, one archive at a time."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from .config import Settings, require_database_url
from .conversion import OcrRunner, OcrWorkerPool, create_runner
from .db import Store
from .errors import StagingError
from .models import ProcessingTask, RunSummary, StagedArchive, TaskStatus
from .sources import discover_archives, discover_sidecars
from .staging import staged_archive
from .upload import UploadWorkerPool, upload_directory
from .utils import (
    ensure_output_dir,
    is_ocr_eligible,
    known_archives,
    load_pipeline_state,
    record_tasks,
    resolve_separator,
    save_pipeline_state,
    sidecar_name,
)

log = logging.getLogger(__name__)


def build_tasks(
    staged: StagedArchive,
    output_dir: Path,
    claimed: Optional[dict[Path, str]] = None,
) -> list[ProcessingTask]:
    """One task per OCR-eligible staged file; everything else is dropped here.

    *claimed* maps sidecar paths already taken in this run to the task key
    that owns them. A later file whose flattened name lands on a claimed
    sidecar (``a/b.pdf`` vs ``a_b.pdf``) is marked OCR_FAILED instead of
    being mistaken for a resumed file.
    """
    claimed = {} if claimed is None else claimed
    archive_stem = staged.archive_path.stem
    tasks: list[ProcessingTask] = []
    for path in staged.files:
        if not path.is_file() or not is_ocr_eligible(path):
            log.debug("Not OCR-eligible, skipped: %s", path.name)
            continue
        entry = staged.relative(path)
        task = ProcessingTask(
            archive_name=archive_stem,
            entry_path=entry,
            staged_path=path,
            sidecar_path=output_dir / sidecar_name(staged.archive_path, entry),
        )
        owner = claimed.get(task.sidecar_path)
        if owner is not None:
            task.status = TaskStatus.OCR_FAILED
            task.error = f"sidecar name {task.sidecar_path.name} already used by {owner}"
            log.error("OCR failed: %s (%s)", task.key, task.error)
        else:
            claimed[task.sidecar_path] = task.key
        tasks.append(task)
    return tasks


def run_archive_tasks(
    tasks: list[ProcessingTask],
    runner: OcrRunner,
    summary: RunSummary,
    *,
    settings: Settings,
    separator: str,
    store: Optional[Store] = None,
    cancel_event: Optional[threading.Event] = None,
    label: str = "OCR",
    show_progress: bool = False,
) -> None:
    """Fan *tasks* out over the OCR pool and, when *store* is given, stream
    each available sidecar into the upload pool. Returns once every task has
    settled.
    """
    cancel_event = cancel_event or threading.Event()
    known = tuple({task.archive_name for task in tasks})
    bar = tqdm(total=len(tasks), desc=label, unit="file", disable=not show_progress)

    upload_pool = None
    if store is not None:
        upload_pool = UploadWorkerPool(
            store,
            settings.upload_workers,
            cancel_event=cancel_event,
        )

    def _stream_upload(task: ProcessingTask) -> None:
        upload_pool.submit_sidecar(
            task.sidecar_path,
            separator=separator,
            known_archives=known,
            task=task,
        )

    ocr_pool = OcrWorkerPool(
        runner,
        settings.ocr_workers,
        timeout=settings.ocr_timeout,
        cancel_event=cancel_event,
        force=settings.force_ocr,
        on_settled=lambda _task: bar.update(1),
    )
    name_clashes = 0
    try:
        for task in tasks:
            if cancel_event.is_set():
                log.warning("Cancel requested; not submitting remaining files")
                break
            if task.status is TaskStatus.OCR_FAILED:
                name_clashes += 1
                bar.update(1)
                continue
            submitted = ocr_pool.submit(
                task,
                on_success=_stream_upload if upload_pool is not None else None,
            )
            # An existing sidecar still has to reach the store in streaming
            # mode; the upload dedups.
            if not submitted and task.status is TaskStatus.SKIPPED and upload_pool is not None:
                _stream_upload(task)
        ocr_pool.wait()
        if upload_pool is not None:
            upload_pool.wait()
    finally:
        ocr_pool.shutdown()
        if upload_pool is not None:
            upload_pool.shutdown()
        bar.close()

    summary.ocr_succeeded += ocr_pool.counts[TaskStatus.OCR_DONE]
    summary.ocr_failed += ocr_pool.counts[TaskStatus.OCR_FAILED] + name_clashes
    summary.ocr_skipped += ocr_pool.counts[TaskStatus.SKIPPED]
    if upload_pool is not None:
        summary.add_upload(upload_pool.result)


def process_archive(
    archive_path: Path,
    runner: OcrRunner,
    summary: RunSummary,
    state: dict,
    *,
    settings: Settings,
    separator: str,
    store: Optional[Store] = None,
    cancel_event: Optional[threading.Event] = None,
    show_progress: bool = False,
    claimed: Optional[dict[Path, str]] = None,
) -> list[ProcessingTask]:
    """Stage one archive, run its files, and always release the staging dir.

    Returns the archive's tasks; an archive that cannot be staged is logged,
    counted and yields no tasks.
    """
    t0 = time.perf_counter()
    log.info("Processing %s ...", archive_path.name)
    try:
        with staged_archive(
            archive_path,
            settings.staging_dir,
            max_entries=settings.max_archive_entries,
            max_total_bytes=settings.max_archive_bytes,
        ) as staged:
            summary.archives += 1
            summary.extracted += len(staged.files)
            tasks = build_tasks(staged, settings.output_dir, claimed)
            log.info(
                "%s: %s files staged, %s OCR-eligible",
                archive_path.name,
                len(staged.files),
                len(tasks),
            )
            run_archive_tasks(
                tasks,
                runner,
                summary,
                settings=settings,
                separator=separator,
                store=store,
                cancel_event=cancel_event,
                label=archive_path.name,
                show_progress=show_progress,
            )
    except StagingError as exc:
        log.error("Skipping archive %s: %s", archive_path.name, exc)
        summary.archives_failed += 1
        return []

    record_tasks(state, tasks)
    log.info("%s: done in %.2fs", archive_path.name, time.perf_counter() - t0)
    return tasks


def run_pipeline(
    settings: Settings,
    *,
    store: Optional[Store] = None,
    runner: Optional[OcrRunner] = None,
    cancel_event: Optional[threading.Event] = None,
    show_progress: bool = False,
) -> RunSummary:
    """Run one pipeline pass according to *settings*.

    Discovery and configuration errors propagate; everything per file or
    per document is logged and counted in the returned summary. A *store*
    passed in is left open for the caller; one created here is disposed
    before returning.
    """
    cancel_event = cancel_event or threading.Event()
    separator = resolve_separator(settings.page_separator)
    output_dir = ensure_output_dir(settings.output_dir)
    summary = RunSummary()

    archives: list[Path] = []
    if not settings.upload_only:
        archives = discover_archives(settings.source_dir)
        summary.archive_paths = archives
        log.info("Discovered %s archives in %s", len(archives), settings.source_dir)

    if settings.dry_run:
        if settings.upload_only:
            log.info("Dry run: %s sidecars in %s", len(discover_sidecars(output_dir)), output_dir)
        else:
            for archive in archives:
                log.info("  %s", archive)
        return summary

    owns_store = False
    if store is None and settings.needs_store:
        store = Store(
            require_database_url(settings),
            pool_size=settings.upload_workers,
            statement_timeout=settings.statement_timeout,
        )
        owns_store = True

    try:
        if store is not None and settings.needs_store:
            store.create_schema()

        state = load_pipeline_state(output_dir)
        if archives:
            runner = runner or create_runner(
                settings.ocr_engine,
                language=settings.ocr_language,
                separator=separator,
            )
        streaming_store = store if settings.upload_mode == "streaming" else None
        claimed: dict[Path, str] = {}

        for archive in archives:
            if cancel_event.is_set():
                break
            process_archive(
                archive,
                runner,
                summary,
                state,
                settings=settings,
                separator=separator,
                store=streaming_store,
                cancel_event=cancel_event,
                show_progress=show_progress,
                claimed=claimed,
            )
            save_pipeline_state(output_dir, state)

        batch_upload = settings.upload_only or settings.upload_mode == "batch"
        if batch_upload and not cancel_event.is_set():
            known = known_archives(state) | {archive.stem for archive in archives}
            result = upload_directory(
                store,
                output_dir,
                max_workers=settings.upload_workers,
                separator=separator,
                known_archives=known,
                progress_every=settings.progress_every,
                cancel_event=cancel_event,
            )
            summary.add_upload(result)
    finally:
        if owns_store:
            store.dispose()

    summary.cancelled = cancel_event.is_set()
    return summary
