"""pg_dump backups."""

from __future__ import annotations

import subprocess
from datetime import datetime
from pathlib import Path

import pytest

from archive_pipeline import BackupError, ConfigurationError, backup_filename, create_backup
from archive_pipeline.backup import main
from archive_pipeline.config import Settings


def test_backup_filename_is_timestamped():
    assert backup_filename(datetime(2024, 3, 9, 7, 5, 1)) == "documents-db-20240309-070501.sql"


def test_requires_database_url(tmp_path: Path):
    settings = Settings(database_url=None, backup_dir=tmp_path)
    with pytest.raises(ConfigurationError):
        create_backup(settings)


def test_missing_pg_dump(tmp_path: Path, monkeypatch):
    monkeypatch.setattr("archive_pipeline.backup.shutil.which", lambda name: None)
    settings = Settings(database_url="postgresql://u:p@db/docs", backup_dir=tmp_path)
    with pytest.raises(BackupError, match="pg_dump not found"):
        create_backup(settings)


def test_successful_dump(tmp_path: Path, monkeypatch):
    seen = {}

    def _run(cmd, **kwargs):
        seen["cmd"] = cmd
        Path(cmd[-1]).write_text("-- dump", encoding="utf-8")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr("archive_pipeline.backup.shutil.which", lambda name: "/usr/bin/pg_dump")
    monkeypatch.setattr("archive_pipeline.backup.subprocess.run", _run)
    settings = Settings(database_url="postgresql+psycopg://u:p@db/docs", backup_dir=tmp_path / "b")

    path = create_backup(settings)

    assert path.parent == tmp_path / "b"
    assert path.name.startswith("documents-db-") and path.suffix == ".sql"
    assert path.read_text(encoding="utf-8") == "-- dump"
    assert seen["cmd"][:2] == ["pg_dump", "postgresql://u:p@db/docs"]


def test_failed_dump_removes_partial_file(tmp_path: Path, monkeypatch):
    def _run(cmd, **kwargs):
        Path(cmd[-1]).write_text("-- partial", encoding="utf-8")
        raise subprocess.CalledProcessError(1, cmd, stderr="connection refused")

    monkeypatch.setattr("archive_pipeline.backup.shutil.which", lambda name: "/usr/bin/pg_dump")
    monkeypatch.setattr("archive_pipeline.backup.subprocess.run", _run)
    settings = Settings(database_url="postgresql://u:p@db/docs", backup_dir=tmp_path)

    with pytest.raises(BackupError, match="connection refused"):
        create_backup(settings)
    assert list(tmp_path.glob("*.sql")) == []


def test_main_exits_1_on_failure(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SERENDB_CONNECTION_STRING", raising=False)
    with pytest.raises(SystemExit) as excinfo:
        main(["--output-dir", str(tmp_path)])
    assert excinfo.value.code == 1
