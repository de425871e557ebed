"""Split OCR sidecars into pages and recover their archive/file identity."""

from __future__ import annotations

import re
from typing import Iterable

from .models import NameMatch, NameParse, ParsedDocument
from .utils import SIDECAR_SUFFIX

UNKNOWN_ARCHIVE = "unknown"

# <zip>_<simpleFilename>.<pdf|jpg|png>; the source name may not contain "_".
_SIDECAR_NAME_RE = re.compile(r"^(.+)_([^_]+\.(?:pdf|jpg|png))$", re.IGNORECASE)


def strip_sidecar_suffix(filename: str) -> str:
    if filename.lower().endswith(SIDECAR_SUFFIX):
        return filename[: -len(SIDECAR_SUFFIX)]
    return filename


def parse_sidecar_name(filename: str, known_archives: Iterable[str] = ()) -> NameParse:
    """Map ``{zip}_{file}.txt`` back to its archive and source file.

    Precedence:
      1. a known archive stem followed by ``_`` (longest stem wins), then the
         ``<zip>_<name>.<pdf|jpg|png>`` pattern -> MATCHED
      2. split at the first underscore -> FALLBACK_SPLIT
      3. no usable underscore -> UNRECOGNIZED with archive ``"unknown"``

    The regex rule is greedy on the archive part, so without *known_archives*
    ``test_archive_test_document.pdf.txt`` parses as ``test_archive_test`` /
    ``document.pdf``. Pass the archive stems to get ``test_archive`` /
    ``test_document.pdf``.
    """
    base = strip_sidecar_suffix(filename)

    for stem in sorted(set(known_archives), key=len, reverse=True):
        prefix = f"{stem}_"
        if stem and base.startswith(prefix) and len(base) > len(prefix):
            return NameParse(NameMatch.MATCHED, stem, base[len(prefix):])

    match = _SIDECAR_NAME_RE.match(base)
    if match:
        return NameParse(NameMatch.MATCHED, match.group(1), match.group(2))

    underscore = base.find("_")
    if underscore > 0 and underscore < len(base) - 1:
        return NameParse(NameMatch.FALLBACK_SPLIT, base[:underscore], base[underscore + 1:])

    return NameParse(NameMatch.UNRECOGNIZED, UNKNOWN_ARCHIVE, base)


def split_pages(content: str, separator: str = "\f") -> list[str]:
    """Split on *separator*, trim each page, drop empty ones, keep order."""
    pages = (page.strip() for page in content.split(separator))
    return [page for page in pages if page]


def parse_sidecar(
    filename: str,
    content: str,
    *,
    separator: str = "\f",
    known_archives: Iterable[str] = (),
) -> ParsedDocument:
    name = parse_sidecar_name(filename, known_archives)
    return ParsedDocument(
        original_zip=name.original_zip,
        source_file=name.source_file,
        pages=split_pages(content, separator),
        name_match=name.kind,
    )
