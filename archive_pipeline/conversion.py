"""OCR runners and the bounded OCR worker pool.

A runner turns one scanned file into a text sidecar whose pages are
separated by a form feed. The default runner shells out to OCRmyPDF with a
fixed flag set; the Docling runner is available when the ``docling`` extra
is installed.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
import traceback
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from .errors import OCRFailure, OCRTimeout, OCRToolMissing
from .models import ProcessingTask, TaskStatus
from .utils import partial_path
from .workers import BoundedPool

log = logging.getLogger(__name__)

_IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png"}


class OcrRunner(Protocol):
    name: str

    def __call__(self, input_path: Path, output_path: Path, timeout: Optional[float] = None) -> None:
        ...


# ---------------------------------------------------------------------------
# OCRmyPDF
# ---------------------------------------------------------------------------


class OcrmypdfRunner:
    """Run ``ocrmypdf`` once per file, writing only the text sidecar.

    Flags:
        --force-ocr       rasterise and OCR every page, even ones with text
        --deskew          straighten tilted scans
        --clean           remove background noise before OCR
        --language LANG   tesseract language model
        --oversample 300  upsample to at least 300 DPI
        --image-dpi 300   (images only) assume 300 DPI when unset
    The output PDF is discarded; ``--sidecar`` receives the text.
    """

    name = "ocrmypdf"

    def __init__(self, language: str = "eng", executable: str = "ocrmypdf") -> None:
        self.language = language
        self.executable = executable

    def command(self, input_path: Path, output_path: Path) -> list[str]:
        cmd = [
            self.executable,
            "--force-ocr",
            "--deskew",
            "--clean",
            "--language",
            self.language,
            "--oversample",
            "300",
        ]
        if input_path.suffix.lower() in _IMAGE_SUFFIXES:
            cmd += ["--image-dpi", "300"]
        cmd += ["--sidecar", str(output_path), str(input_path), os.devnull]
        return cmd

    def __call__(self, input_path: Path, output_path: Path, timeout: Optional[float] = None) -> None:
        if shutil.which(self.executable) is None:
            raise OCRToolMissing(f"{self.executable} not found on PATH")
        try:
            completed = subprocess.run(
                self.command(input_path, output_path),
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise OCRTimeout(f"{input_path.name}: timed out after {timeout}s") from exc
        except OSError as exc:
            raise OCRFailure(f"{input_path.name}: could not start {self.executable}: {exc}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip().splitlines()
            tail = stderr[-1] if stderr else "no output"
            raise OCRFailure(f"{input_path.name}: exit {completed.returncode}: {tail}")
        if not output_path.exists():
            raise OCRFailure(f"{input_path.name}: no sidecar written")


# ---------------------------------------------------------------------------
# Docling
# ---------------------------------------------------------------------------


def create_ocr_converter(*, num_threads: int = 4) -> tuple[Any, str]:
    """Build a Docling ``DocumentConverter`` with OCR forced on.

    Returns:
        (converter, ocr_engine) where ``ocr_engine`` is a best-effort profile.
    """
    import importlib.util

    t0 = time.time()
    try:
        from docling.datamodel.accelerator_options import AcceleratorOptions
        from docling.datamodel.base_models import InputFormat
        from docling.datamodel.pipeline_options import (
            EasyOcrOptions,
            OcrAutoOptions,
            PdfPipelineOptions,
            TesseractOcrOptions,
        )
        from docling.document_converter import (
            DocumentConverter,
            ImageFormatOption,
            PdfFormatOption,
        )
    except ImportError as exc:
        raise OCRToolMissing("docling is not installed (pip install '.[docling]')") from exc
    log.debug("create_ocr_converter: imports done in %.2fs", time.time() - t0)

    if importlib.util.find_spec("easyocr") is not None:
        ocr_options, ocr_engine = EasyOcrOptions(force_full_page_ocr=True), "easyocr"
    elif shutil.which("tesseract") is not None:
        ocr_options, ocr_engine = TesseractOcrOptions(force_full_page_ocr=True), "tesseract"
    else:
        ocr_options, ocr_engine = OcrAutoOptions(force_full_page_ocr=True), "auto"

    pipeline_options = PdfPipelineOptions(
        do_ocr=True,
        ocr_options=ocr_options,
        accelerator_options=AcceleratorOptions(num_threads=max(1, num_threads)),
    )
    converter = DocumentConverter(
        format_options={
            InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
            InputFormat.IMAGE: ImageFormatOption(pipeline_options=pipeline_options),
        }
    )
    log.info("Docling OCR converter initialized (%s) in %.2fs", ocr_engine, time.time() - t0)
    return converter, ocr_engine


class DoclingRunner:
    """OCR through Docling, one converter per worker thread.

    Docling runs in-process and cannot be interrupted, so a per-file timeout
    is not enforced; setting one logs a single warning.
    """

    name = "docling"

    def __init__(self, separator: str = "\f", num_threads: int = 4) -> None:
        self.separator = separator
        self.num_threads = num_threads
        self._local = threading.local()
        self._timeout_warned = False
        self._warn_lock = threading.Lock()

    def _converter(self) -> Any:
        converter = getattr(self._local, "converter", None)
        if converter is None:
            converter, _ = create_ocr_converter(num_threads=self.num_threads)
            self._local.converter = converter
        return converter

    def _warn_timeout(self, timeout: float) -> None:
        with self._warn_lock:
            if self._timeout_warned:
                return
            self._timeout_warned = True
        log.warning(
            "docling engine does not enforce the OCR timeout (%ss); files run to completion",
            timeout,
        )

    def __call__(self, input_path: Path, output_path: Path, timeout: Optional[float] = None) -> None:
        if timeout:
            self._warn_timeout(timeout)
        converter = self._converter()
        try:
            result = converter.convert(source=str(input_path))
        except Exception as exc:
            raise OCRFailure(f"{input_path.name}: docling conversion failed: {exc}") from exc

        doc = result.document
        pages = [
            doc.export_to_text(page_no=page_no)
            for page_no in sorted(getattr(doc, "pages", {}) or {})
        ]
        if not pages:
            pages = [doc.export_to_text()]
        output_path.write_text(self.separator.join(pages), encoding="utf-8")


def create_runner(engine: str, *, language: str = "eng", separator: str = "\f", num_threads: int = 4) -> OcrRunner:
    if engine == "ocrmypdf":
        return OcrmypdfRunner(language=language)
    if engine == "docling":
        return DoclingRunner(separator=separator, num_threads=num_threads)
    raise ValueError(f"Unknown OCR engine: {engine!r}")


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------


class OcrWorkerPool:
    """Run OCR for staged files with at most *max_workers* in flight.

    A task whose sidecar already exists is marked SKIPPED without invoking
    the runner, which is what makes reruns resume instead of redo. Runner
    output goes to ``<sidecar>.partial`` and is renamed into place only on
    success, so a sidecar on disk is always complete.
    """

    def __init__(
        self,
        runner: OcrRunner,
        max_workers: int = 4,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        force: bool = False,
        on_settled: Optional[Callable[[ProcessingTask], None]] = None,
    ) -> None:
        self.runner = runner
        self.timeout = timeout or None
        self.force = force
        self.on_settled = on_settled
        self.counts: Counter[TaskStatus] = Counter()
        self._lock = threading.Lock()
        self._pool = BoundedPool("ocr", max_workers, cancel_event)

    @property
    def peak_active(self) -> int:
        return self._pool.peak_active

    def submit(
        self,
        task: ProcessingTask,
        on_success: Optional[Callable[[ProcessingTask], None]] = None,
    ) -> bool:
        """Queue *task*; returns False when it was skipped or cancelled."""
        if not self.force and task.sidecar_path.exists():
            log.info("OCR skip (sidecar exists): %s", task.sidecar_path.name)
            self._settle(task, TaskStatus.SKIPPED)
            return False

        task.status = TaskStatus.OCR_SUBMITTED
        future = self._pool.submit(self._run, task, on_success)
        if future is None:
            task.status = TaskStatus.STAGED
            return False
        return True

    def _settle(self, task: ProcessingTask, status: TaskStatus) -> None:
        task.status = status
        with self._lock:
            self.counts[status] += 1
        if self.on_settled:
            self.on_settled(task)

    def _run(
        self,
        task: ProcessingTask,
        on_success: Optional[Callable[[ProcessingTask], None]],
    ) -> None:
        partial = partial_path(task.sidecar_path)
        t0 = time.perf_counter()
        try:
            self.runner(task.staged_path, partial, self.timeout)
            partial.replace(task.sidecar_path)
        except OCRFailure as exc:
            task.error = str(exc)
            partial.unlink(missing_ok=True)
            log.error("OCR failed: %s (%s)", task.key, exc)
            self._settle(task, TaskStatus.OCR_FAILED)
            return
        except Exception:
            task.error = traceback.format_exc()
            partial.unlink(missing_ok=True)
            log.error("OCR failed: %s\n%s", task.key, task.error)
            self._settle(task, TaskStatus.OCR_FAILED)
            return

        log.info(
            "OCR done: %s -> %s (%.2fs)",
            task.key,
            task.sidecar_path.name,
            time.perf_counter() - t0,
        )
        self._settle(task, TaskStatus.OCR_DONE)
        if on_success is not None:
            on_success(task)

    def wait(self) -> None:
        self._pool.wait()

    def shutdown(self) -> None:
        self._pool.shutdown()

    def __enter__(self) -> "OcrWorkerPool":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()
