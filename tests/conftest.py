"""Shared fixtures for the pipeline test suite.

OCR is replaced by an in-process fake runner and the store is a file-backed
SQLite database, so the suite needs neither ocrmypdf nor PostgreSQL.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import zipfile
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Configure verbose logging for test debugging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
log = logging.getLogger("conftest")


class FakeRunner:
    """Stands in for ocrmypdf: writes ``pages`` joined by form feeds.

    Records every call and the peak number of concurrent calls. Files whose
    name contains ``fail_marker`` raise an OCR failure.
    """

    name = "fake"

    def __init__(
        self,
        pages: tuple[str, ...] = ("Page one text", "Page two text"),
        delay: float = 0.0,
        fail_marker: str = "corrupt",
    ) -> None:
        self.pages = pages
        self.delay = delay
        self.fail_marker = fail_marker
        self.calls: list[Path] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, input_path: Path, output_path: Path, timeout=None) -> None:
        from archive_pipeline.errors import OCRFailure

        with self._lock:
            self.calls.append(input_path)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail_marker and self.fail_marker in input_path.name:
                raise OCRFailure(f"{input_path.name}: exit 2: corrupt input")
            output_path.write_text("\f".join(self.pages), encoding="utf-8")
        finally:
            with self._lock:
                self.active -= 1

    @property
    def call_names(self) -> list[str]:
        return sorted(p.name for p in self.calls)


def write_zip(path: Path, entries: dict[str, bytes]) -> Path:
    """Write a ZIP at *path*; names ending in ``/`` become directory entries."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries.items():
            if name.endswith("/"):
                zf.writestr(zipfile.ZipInfo(name), b"")
            else:
                zf.writestr(name, data)
    return path


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_runner():
    """Factory for FakeRunner with custom pages, delay or failure marker."""
    return FakeRunner


@pytest.fixture
def make_zip():
    return write_zip


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """Source directory with two archives of mixed content."""
    src = tmp_path / "uploads"
    write_zip(
        src / "batch_one.zip",
        {
            "scans/": b"",
            "scans/report.pdf": b"%PDF-1.4 report",
            "scans/photo.JPG": b"\xff\xd8jpeg",
            "notes.txt": b"not for ocr",
            "letter.docx": b"PK docx",
        },
    )
    write_zip(
        src / "batch_two.zip",
        {
            "invoice.pdf": b"%PDF-1.4 invoice",
            "diagram.png": b"\x89PNG",
        },
    )
    return src


@pytest.fixture
def store(tmp_path: Path):
    """Isolated SQLite store with the schema created."""
    from archive_pipeline.db import Store

    db = Store(f"sqlite:///{tmp_path / 'store.db'}", pool_size=2, statement_timeout=10)
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def make_settings(tmp_path: Path, source_dir: Path):
    """Factory for Settings pointing at temporary directories."""
    from archive_pipeline.config import Settings

    def _make(**overrides) -> Settings:
        values = {
            "source_dir": source_dir,
            "output_dir": tmp_path / "extracted",
            "staging_dir": tmp_path / "staging",
            "database_url": f"sqlite:///{tmp_path / 'store.db'}",
            "ocr_timeout": 0,
        }
        values.update(overrides)
        return Settings(**values)

    return _make
