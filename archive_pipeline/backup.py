"""Timestamped ``pg_dump`` backups of the document store."""

from __future__ import annotations

import argparse
import logging
import shutil
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import Settings, load_settings, require_database_url
from .db import libpq_url
from .errors import BackupError, ConfigurationError

log = logging.getLogger(__name__)

BACKUP_PREFIX = "documents-db-"


def backup_filename(now: Optional[datetime] = None) -> str:
    """``documents-db-YYYYMMDD-HHMMSS.sql``"""
    now = now or datetime.now()
    return f"{BACKUP_PREFIX}{now:%Y%m%d-%H%M%S}.sql"


def create_backup(settings: Settings, output_dir: Optional[Path] = None) -> Path:
    """Dump the store to a new SQL file and return its path."""
    url = libpq_url(require_database_url(settings))
    output_dir = output_dir or settings.backup_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / backup_filename()

    if shutil.which("pg_dump") is None:
        raise BackupError("pg_dump not found on PATH")

    try:
        subprocess.run(
            ["pg_dump", url, "-f", str(path)],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as exc:
        path.unlink(missing_ok=True)
        raise BackupError(f"Backup failed: {(exc.stderr or '').strip() or exc}") from exc

    log.info("Backup created: %s (%s bytes)", path, path.stat().st_size)
    return path


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Dump the document store with pg_dump")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Backup directory (default: backups/)",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        path = create_backup(load_settings(), args.output_dir)
    except (ConfigurationError, BackupError) as exc:
        log.error("%s", exc)
        sys.exit(1)
    log.info("Location: %s", path)


if __name__ == "__main__":
    main()
