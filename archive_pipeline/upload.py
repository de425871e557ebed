"""Write parsed documents and their pages to the store."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .db import Store
from .errors import ConfigurationError, UploadFailure
from .models import ParsedDocument, ProcessingTask, TaskStatus, UploadOutcome, UploadResult
from .parsing import parse_sidecar
from .sources import discover_sidecars
from .tables import Document, Page
from .utils import PROGRESS_EVERY
from .workers import BoundedPool

log = logging.getLogger(__name__)


def document_exists(store: Store, source_file: str) -> bool:
    with store.session() as session:
        row = session.execute(
            select(Document.id).where(Document.source_file == source_file)
        ).first()
    return row is not None


def upload_document(store: Store, parsed: ParsedDocument) -> UploadOutcome:
    """Insert *parsed* as one document plus pages ``1..N`` in a single transaction.

    An existing document with the same ``source_file`` is a skip, not an
    error. Any failure rolls back the whole document.
    """
    try:
        with store.session() as session, session.begin():
            existing = session.execute(
                select(Document.id).where(Document.source_file == parsed.source_file)
            ).first()
            if existing is not None:
                log.info("Skipped: %s (already exists)", parsed.source_file)
                return UploadOutcome.SKIPPED

            document = Document(
                source_file=parsed.source_file,
                original_zip=parsed.original_zip,
                total_pages=parsed.total_pages,
            )
            session.add(document)
            session.flush()
            session.add_all(
                Page(document_id=document.id, page_number=number, content_text=text)
                for number, text in enumerate(parsed.pages, start=1)
            )
    except IntegrityError as exc:
        # A concurrent worker may have inserted the same source_file first.
        try:
            duplicate = document_exists(store, parsed.source_file)
        except SQLAlchemyError:
            duplicate = False
        if duplicate:
            log.info("Skipped: %s (inserted concurrently)", parsed.source_file)
            return UploadOutcome.SKIPPED
        log.error("Upload failed: %s (%s)", parsed.source_file, exc.orig)
        return UploadOutcome.FAILED
    except SQLAlchemyError as exc:
        log.error("Upload failed: %s (%s)", parsed.source_file, exc)
        return UploadOutcome.FAILED

    log.info("Uploaded: %s (%s pages)", parsed.source_file, parsed.total_pages)
    return UploadOutcome.UPLOADED


def read_sidecar(
    path: Path,
    *,
    separator: str = "\f",
    known_archives: Iterable[str] = (),
) -> ParsedDocument:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise UploadFailure(f"cannot read {path.name}: {exc}") from exc
    return parse_sidecar(
        path.name,
        content,
        separator=separator,
        known_archives=known_archives,
    )


class UploadProgress:
    """Log processed count, rate and ETA every *every* settled items."""

    def __init__(self, total: int, every: int = PROGRESS_EVERY) -> None:
        self.total = total
        self.every = max(1, every)
        self.count = 0
        self._t0 = time.perf_counter()
        self._lock = threading.Lock()

    def tick(self, *_: Any) -> None:
        with self._lock:
            self.count += 1
            count = self.count
        if count % self.every == 0 or count == self.total:
            self.report(count)

    def report(self, count: int) -> None:
        elapsed = max(time.perf_counter() - self._t0, 1e-9)
        rate = count / elapsed
        remaining = max(self.total - count, 0)
        eta = timedelta(seconds=round(remaining / rate)) if rate > 0 else "?"
        log.info(
            "Upload progress: %s/%s (%.1f docs/s, ETA %s)",
            count,
            self.total,
            rate,
            eta,
        )


class UploadWorkerPool:
    """Upload documents with at most *max_workers* concurrent store writers."""

    def __init__(
        self,
        store: Store,
        max_workers: int = 2,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_settled=None,
    ) -> None:
        if max_workers > store.pool_size:
            log.warning(
                "upload workers (%s) exceed store pool size (%s); extra workers will wait",
                max_workers,
                store.pool_size,
            )
        self.store = store
        self.on_settled = on_settled
        self._pool = BoundedPool("upload", max_workers, cancel_event)
        self._lock = threading.Lock()
        self.result = UploadResult()

    @property
    def peak_active(self) -> int:
        return self._pool.peak_active

    def submit(self, parsed: ParsedDocument, task: Optional[ProcessingTask] = None) -> bool:
        return self._pool.submit(self._upload, parsed, task) is not None

    def submit_sidecar(
        self,
        path: Path,
        *,
        separator: str = "\f",
        known_archives: Iterable[str] = (),
        task: Optional[ProcessingTask] = None,
    ) -> bool:
        """Read, parse and upload the sidecar at *path* on a worker thread."""
        known = tuple(known_archives)
        future = self._pool.submit(self._upload_sidecar, path, separator, known, task)
        return future is not None

    def _upload_sidecar(
        self,
        path: Path,
        separator: str,
        known_archives: tuple[str, ...],
        task: Optional[ProcessingTask],
    ) -> None:
        try:
            parsed = read_sidecar(path, separator=separator, known_archives=known_archives)
        except UploadFailure as exc:
            log.error("Upload failed: %s", exc)
            if task is not None:
                task.status = TaskStatus.UPLOAD_FAILED
                task.error = str(exc)
            self._count(UploadOutcome.FAILED)
            return
        if task is not None:
            task.status = TaskStatus.PARSED
        self._upload(parsed, task)

    def _upload(self, parsed: ParsedDocument, task: Optional[ProcessingTask]) -> None:
        outcome = upload_document(self.store, parsed)
        if task is not None:
            task.status = {
                UploadOutcome.UPLOADED: TaskStatus.UPLOADED,
                UploadOutcome.SKIPPED: TaskStatus.SKIPPED,
                UploadOutcome.FAILED: TaskStatus.UPLOAD_FAILED,
            }[outcome]
        self._count(outcome)

    def _count(self, outcome: UploadOutcome) -> None:
        with self._lock:
            if outcome is UploadOutcome.UPLOADED:
                self.result.uploaded += 1
            elif outcome is UploadOutcome.SKIPPED:
                self.result.skipped += 1
            else:
                self.result.failed += 1
        if self.on_settled:
            self.on_settled(outcome)

    def wait(self) -> None:
        self._pool.wait()

    def shutdown(self) -> None:
        self._pool.shutdown()

    def __enter__(self) -> "UploadWorkerPool":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()


def upload_directory(
    store: Optional[Store],
    input_dir: Path,
    *,
    max_workers: int = 2,
    separator: str = "\f",
    known_archives: Iterable[str] = (),
    dry_run: bool = False,
    progress_every: int = PROGRESS_EVERY,
    cancel_event: Optional[threading.Event] = None,
) -> UploadResult:
    """Batch mode: upload every sidecar in *input_dir*.

    Independent of any live OCR run, so it is also how an interrupted run is
    resumed. A dry run only lists the sidecars.
    """
    files = discover_sidecars(input_dir)
    log.info("Batch upload: %s sidecars in %s", len(files), input_dir)
    if dry_run:
        return UploadResult(files=files)
    if store is None:
        raise ConfigurationError("Batch upload requires a store")

    known = tuple(known_archives)
    progress = UploadProgress(len(files), progress_every)
    t0 = time.perf_counter()
    with UploadWorkerPool(
        store,
        max_workers,
        cancel_event=cancel_event,
        on_settled=progress.tick,
    ) as pool:
        for path in files:
            if not pool.submit_sidecar(path, separator=separator, known_archives=known):
                log.warning("Batch upload cancelled; no further sidecars submitted")
                break
    result = pool.result
    result.files = files
    log.info(
        "Batch upload: %s uploaded, %s skipped, %s failed (%.2fs)",
        result.uploaded,
        result.skipped,
        result.failed,
        time.perf_counter() - t0,
    )
    return result
