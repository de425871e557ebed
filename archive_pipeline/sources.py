"""Archive and sidecar discovery on the local filesystem."""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import DiscoveryError
from .utils import ARCHIVE_SUFFIX, PARTIAL_SUFFIX, SIDECAR_SUFFIX

log = logging.getLogger(__name__)


def discover_archives(folder: Path) -> list[Path]:
    """Find ZIP archives directly under *folder*, sorted by name."""
    if not folder.exists():
        raise DiscoveryError(f"Source directory not found: {folder}")
    if not folder.is_dir():
        raise DiscoveryError(f"Source path is not a directory: {folder}")
    archives = sorted(
        p for p in folder.iterdir()
        if p.is_file() and p.suffix.lower() == ARCHIVE_SUFFIX
    )
    log.debug("discover_archives: %s archives in %s", len(archives), folder)
    return archives


def discover_sidecars(folder: Path) -> list[Path]:
    """Find OCR sidecar files under *folder*, sorted by name.

    In-progress ``.partial`` files are never returned.
    """
    if not folder.exists():
        raise DiscoveryError(f"Sidecar directory not found: {folder}")
    return sorted(
        p for p in folder.iterdir()
        if p.is_file()
        and p.name.endswith(SIDECAR_SUFFIX)
        and not p.name.endswith(PARTIAL_SUFFIX)
    )
