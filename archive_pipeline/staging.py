"""Expand ZIP archives into per-archive staging directories."""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import StagingError
from .models import StagedArchive
from .utils import MAX_ARCHIVE_BYTES, MAX_ARCHIVE_ENTRIES

log = logging.getLogger(__name__)

_UTF8_FLAG = 0x800


def decode_entry_name(info: zipfile.ZipInfo) -> str:
    """Return the entry name, repairing UTF-8 names stored without the flag.

    ``zipfile`` decodes unflagged names as CP437. Many archivers write UTF-8
    bytes without setting the flag, so try to recover those first.
    """
    name = info.filename
    if info.flag_bits & _UTF8_FLAG:
        return name
    try:
        return name.encode("cp437").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return name


def safe_relative_path(name: str) -> str | None:
    """Normalise an entry name to a relative POSIX path, or None to skip it.

    Leading separators, drive letters, ``.`` and ``..`` segments are removed.
    """
    parts = [p for p in name.replace("\\", "/").split("/") if p not in ("", ".", "..")]
    if parts and len(parts[0]) == 2 and parts[0][1] == ":":
        parts = parts[1:]
    if not parts:
        return None
    return "/".join(parts)


def _is_within(root: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def stage_archive(
    zip_path: Path,
    staging_root: Path,
    *,
    max_entries: int = MAX_ARCHIVE_ENTRIES,
    max_total_bytes: int = MAX_ARCHIVE_BYTES,
) -> StagedArchive:
    """Extract every file entry of *zip_path* into a fresh staging directory.

    Unreadable entries are logged and skipped. Raises :class:`StagingError`
    when the archive cannot be opened or the staging directory cannot be
    created.
    """
    try:
        zf = zipfile.ZipFile(zip_path)
    except (zipfile.BadZipFile, OSError) as exc:
        raise StagingError(f"Cannot open archive {zip_path}: {exc}") from exc

    with zf:
        try:
            staging_root.mkdir(parents=True, exist_ok=True)
            stamp = time.strftime("%Y%m%d-%H%M%S")
            root = Path(tempfile.mkdtemp(prefix=f"{zip_path.stem}-{stamp}-", dir=staging_root))
        except OSError as exc:
            raise StagingError(f"Cannot create staging directory under {staging_root}: {exc}") from exc
        return _extract_entries(zf, zip_path, root, max_entries, max_total_bytes)


def _extract_entries(
    zf: zipfile.ZipFile,
    zip_path: Path,
    root: Path,
    max_entries: int,
    max_total_bytes: int,
) -> StagedArchive:
    staged = StagedArchive(archive_path=zip_path, root=root)
    total_bytes = 0
    skipped = 0
    t0 = time.perf_counter()
    try:
        for index, info in enumerate(zf.infolist()):
            if index >= max_entries:
                log.warning(
                    "stage_archive: %s exceeds %s entries; remaining entries ignored",
                    zip_path.name,
                    max_entries,
                )
                break
            if info.is_dir():
                continue

            raw_name = decode_entry_name(info)
            rel = safe_relative_path(raw_name)
            if rel is None:
                continue
            target = root.joinpath(*rel.split("/"))
            if not _is_within(root, target):
                log.warning("stage_archive: rejected entry outside root: %r", raw_name)
                skipped += 1
                continue

            if total_bytes + info.file_size > max_total_bytes:
                log.warning(
                    "stage_archive: %s exceeds %s bytes; stopping at %s",
                    zip_path.name,
                    max_total_bytes,
                    rel,
                )
                break

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            except (zipfile.BadZipFile, OSError, EOFError, RuntimeError, NotImplementedError) as exc:
                log.error("stage_archive: failed to extract %s from %s: %s", rel, zip_path.name, exc)
                target.unlink(missing_ok=True)
                skipped += 1
                continue

            total_bytes += info.file_size
            staged.files.append(target)
    except BaseException:
        release_staging(root)
        raise

    log.info(
        "stage_archive: %s -> %s (%s files, %s skipped, %.2fs)",
        zip_path.name,
        root,
        len(staged.files),
        skipped,
        time.perf_counter() - t0,
    )
    return staged


def release_staging(root: Path) -> None:
    """Remove a staging directory; failures are logged, never raised."""
    shutil.rmtree(root, ignore_errors=True)
    if root.exists():
        log.warning("release_staging: could not fully remove %s", root)
    else:
        log.debug("release_staging: removed %s", root)


@contextmanager
def staged_archive(
    zip_path: Path,
    staging_root: Path,
    **kwargs,
) -> Iterator[StagedArchive]:
    """Stage *zip_path* and always remove the staging directory afterwards."""
    staged = stage_archive(zip_path, staging_root, **kwargs)
    try:
        yield staged
    finally:
        release_staging(staged.root)
