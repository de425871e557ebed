"""Cross-cutting helpers: constants, path utilities, run-state I/O."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path, PurePath
from typing import Any, Iterable

from .errors import ConfigurationError
from .models import ProcessingTask

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ARCHIVE_SUFFIX = ".zip"
SIDECAR_SUFFIX = ".txt"
PARTIAL_SUFFIX = ".partial"
OCR_ELIGIBLE_SUFFIXES = frozenset({".pdf", ".jpg", ".png"})
STATE_FILE_NAME = "pipeline_state.json"

DEFAULT_OCR_WORKERS = 4
DEFAULT_UPLOAD_WORKERS = 2
DEFAULT_OCR_TIMEOUT_S = 900.0
DEFAULT_STATEMENT_TIMEOUT_S = 30.0
PROGRESS_EVERY = 100

# Staging caps per archive.
MAX_ARCHIVE_ENTRIES = 50_000
MAX_ARCHIVE_BYTES = 20 * 1024**3

PAGE_SEPARATORS = {
    "formfeed": "\f",
    "blank-line": "\n\n",
}
DEFAULT_PAGE_SEPARATOR = "formfeed"


def resolve_separator(name: str) -> str:
    """Map a configured separator name to the literal page boundary."""
    try:
        return PAGE_SEPARATORS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown page separator {name!r}; "
            f"expected one of {sorted(PAGE_SEPARATORS)}"
        ) from None


# ---------------------------------------------------------------------------
# Classification and naming
# ---------------------------------------------------------------------------


def is_ocr_eligible(path: PurePath | str) -> bool:
    """Return True for files OCR can handle (PDF, JPG, PNG)."""
    return PurePath(path).suffix.lower() in OCR_ELIGIBLE_SUFFIXES


def sidecar_name(archive_path: PurePath | str, entry_path: str) -> str:
    """``{archiveStem}_{entryPath}.txt`` with path separators flattened."""
    stem = PurePath(archive_path).stem
    flat_entry = entry_path.replace("\\", "/").strip("/").replace("/", "_")
    return f"{stem}_{flat_entry}{SIDECAR_SUFFIX}"


def partial_path(sidecar: Path) -> Path:
    return sidecar.with_name(sidecar.name + PARTIAL_SUFFIX)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def ensure_output_dir(output_dir: Path) -> Path:
    """Create *output_dir* (and parents) and return it."""
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _state_path(output_dir: Path) -> Path:
    return output_dir / STATE_FILE_NAME


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


def load_pipeline_state(output_dir: Path) -> dict[str, Any]:
    """Load persistent pipeline state from ``pipeline_state.json``."""
    path = _state_path(output_dir)
    if not path.exists():
        return {"files": {}}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            state = json.load(fh)
    except (json.JSONDecodeError, OSError, ValueError):
        return {"files": {}}

    if not isinstance(state, dict):
        return {"files": {}}

    files = state.get("files")
    if not isinstance(files, dict):
        state["files"] = {}
    return state


def save_pipeline_state(output_dir: Path, state: dict[str, Any]) -> Path:
    """Persist pipeline state and return the state file path.

    Written to a temporary name first so an interrupted run never leaves a
    truncated state file behind.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    path = _state_path(output_dir)
    tmp = path.with_name(path.name + PARTIAL_SUFFIX)
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump(state, fh, indent=2, ensure_ascii=False, default=str)
    tmp.replace(path)
    return path


def record_tasks(state: dict[str, Any], tasks: Iterable[ProcessingTask]) -> None:
    """Fold the outcome of *tasks* into *state* keyed by ``archive::entry``."""
    files: dict[str, dict[str, Any]] = state.setdefault("files", {})
    processed_at = datetime.now(timezone.utc).isoformat()
    for task in tasks:
        entry: dict[str, Any] = {
            "archive": task.archive_name,
            "entry": task.entry_path,
            "sidecar": task.sidecar_path.name,
            "status": task.status.value,
            "processed_at": processed_at,
        }
        if task.error:
            entry["error"] = task.error[:500]
        files[task.key] = entry


def known_archives(state: dict[str, Any]) -> set[str]:
    """Archive stems seen by earlier runs, used to disambiguate sidecar names."""
    names = set()
    for entry in state.get("files", {}).values():
        if isinstance(entry, dict) and entry.get("archive"):
            names.add(str(entry["archive"]))
    return names
