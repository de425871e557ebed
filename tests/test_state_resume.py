from __future__ import annotations

from pathlib import Path

import pytest

from archive_pipeline.cli import main, parse_args
from archive_pipeline.config import load_settings
from archive_pipeline.errors import ConfigurationError
from archive_pipeline.models import ProcessingTask, RunSummary, TaskStatus
from archive_pipeline.utils import (
    known_archives,
    load_pipeline_state,
    record_tasks,
    save_pipeline_state,
)


def test_pipeline_state_roundtrip(tmp_path):
    out_dir = tmp_path / "out"
    state = {"files": {"box::a.pdf": {"archive": "box", "status": "uploaded"}}}
    path = save_pipeline_state(out_dir, state)
    assert path.exists()
    assert not path.with_name(path.name + ".partial").exists()

    loaded = load_pipeline_state(out_dir)
    assert loaded["files"]["box::a.pdf"]["status"] == "uploaded"


def test_load_pipeline_state_handles_invalid_json(tmp_path):
    out_dir = tmp_path / "out"
    out_dir.mkdir(parents=True)
    (out_dir / "pipeline_state.json").write_text("{invalid json", encoding="utf-8")
    assert load_pipeline_state(out_dir) == {"files": {}}


def test_load_pipeline_state_repairs_invalid_files_key(tmp_path):
    out_dir = tmp_path / "out"
    save_pipeline_state(out_dir, {"files": []})
    loaded = load_pipeline_state(out_dir)
    assert loaded["files"] == {}


def test_record_tasks_keeps_previous_entries(tmp_path):
    state = {"files": {"old::x.pdf": {"archive": "old", "status": "uploaded"}}}
    done = ProcessingTask("box_1", "scans/a.pdf", tmp_path / "a.pdf", tmp_path / "box_1_scans_a.pdf.txt")
    done.status = TaskStatus.UPLOADED
    failed = ProcessingTask("box_1", "b.png", tmp_path / "b.png", tmp_path / "box_1_b.png.txt")
    failed.status = TaskStatus.OCR_FAILED
    failed.error = "x" * 2000

    record_tasks(state, [done, failed])

    assert set(state["files"]) == {"old::x.pdf", "box_1::scans/a.pdf", "box_1::b.png"}
    assert state["files"]["box_1::scans/a.pdf"]["sidecar"] == "box_1_scans_a.pdf.txt"
    assert state["files"]["box_1::b.png"]["status"] == "ocr_failed"
    assert len(state["files"]["box_1::b.png"]["error"]) == 500
    assert "error" not in state["files"]["box_1::scans/a.pdf"]
    assert known_archives(state) == {"old", "box_1"}


def test_known_archives_ignores_malformed_entries():
    state = {"files": {"a": "not a dict", "b": {"status": "uploaded"}, "c": {"archive": "zipA"}}}
    assert known_archives(state) == {"zipA"}


def test_parse_args_supports_run_flags():
    args = parse_args(
        [
            "--source-dir",
            "./uploads",
            "--upload-mode",
            "batch",
            "--force-ocr",
            "--ocr-workers",
            "8",
        ]
    )
    assert args.source_dir == Path("./uploads")
    assert args.upload_mode == "batch"
    assert args.force_ocr is True
    assert args.ocr_workers == 8
    # Unset flags stay None so environment values are not overridden.
    assert args.dry_run is None
    assert args.upload_only is None
    assert args.upload_workers is None


def test_load_settings_rejects_bad_values():
    with pytest.raises(ConfigurationError):
        load_settings(ocr_workers=0)
    with pytest.raises(ConfigurationError):
        load_settings(page_separator="semicolon")


def test_load_settings_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("SERENDB_CONNECTION_STRING", "postgresql://u:p@db/docs")
    monkeypatch.setenv("ARCHIVE_PIPELINE_OCR_WORKERS", "6")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    settings = load_settings(upload_workers=None, output_dir=tmp_path)
    assert settings.database_url == "postgresql://u:p@db/docs"
    assert settings.ocr_workers == 6
    assert settings.upload_workers == 2
    assert settings.output_dir == tmp_path


def test_main_runs_pipeline_and_resumes(tmp_path, monkeypatch, source_dir, make_runner):
    output_dir = tmp_path / "out"
    runners = []

    def _create_runner(engine, **kwargs):
        runner = make_runner()
        runners.append(runner)
        return runner

    monkeypatch.setattr("archive_pipeline.orchestrator.create_runner", _create_runner)
    argv = [
        "--source-dir",
        str(source_dir),
        "--output-dir",
        str(output_dir),
        "--staging-dir",
        str(tmp_path / "staging"),
        "--database-url",
        f"sqlite:///{tmp_path / 'main.db'}",
        "--no-progress",
    ]

    main(argv)
    assert len(runners[0].calls) == 4
    loaded = load_pipeline_state(output_dir)
    assert loaded["files"]["batch_two::invoice.pdf"]["status"] == "uploaded"

    main(argv)
    assert runners[1].calls == []
    loaded = load_pipeline_state(output_dir)
    assert loaded["files"]["batch_two::invoice.pdf"]["status"] == "skipped"


def test_main_force_ocr_overrides_resume_skip(tmp_path, monkeypatch, source_dir, make_runner):
    output_dir = tmp_path / "out"
    output_dir.mkdir()
    (output_dir / "batch_two_invoice.pdf.txt").write_text("stale", encoding="utf-8")
    runner = make_runner()
    monkeypatch.setattr("archive_pipeline.orchestrator.create_runner", lambda engine, **kw: runner)

    main(
        [
            "--source-dir",
            str(source_dir),
            "--output-dir",
            str(output_dir),
            "--staging-dir",
            str(tmp_path / "staging"),
            "--upload-mode",
            "none",
            "--force-ocr",
            "--no-progress",
        ]
    )

    assert "invoice.pdf" in runner.call_names
    assert (output_dir / "batch_two_invoice.pdf.txt").read_text(encoding="utf-8") != "stale"


def test_main_exits_2_on_invalid_settings(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["--ocr-workers", "0", "--output-dir", str(tmp_path)])
    assert excinfo.value.code == 2


def test_main_exits_2_without_database_url(tmp_path, source_dir):
    with pytest.raises(SystemExit) as excinfo:
        main(
            [
                "--source-dir",
                str(source_dir),
                "--output-dir",
                str(tmp_path / "out"),
                "--database-url",
                "",
                "--no-progress",
            ]
        )
    assert excinfo.value.code == 2


def test_main_exits_2_on_missing_source(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(
            [
                "--source-dir",
                str(tmp_path / "missing"),
                "--output-dir",
                str(tmp_path / "out"),
                "--dry-run",
            ]
        )
    assert excinfo.value.code == 2


def test_main_exits_130_when_cancelled(tmp_path, monkeypatch):
    monkeypatch.setattr(
        "archive_pipeline.orchestrator.run_pipeline",
        lambda settings, **kwargs: RunSummary(cancelled=True),
    )
    with pytest.raises(SystemExit) as excinfo:
        main(["--output-dir", str(tmp_path), "--no-progress"])
    assert excinfo.value.code == 130


def test_main_dry_run_passes_flags_through(tmp_path, monkeypatch):
    seen = {}

    def _run_pipeline(settings, **kwargs):
        seen["settings"] = settings
        seen["kwargs"] = kwargs
        return RunSummary()

    monkeypatch.setattr("archive_pipeline.orchestrator.run_pipeline", _run_pipeline)
    main(["--output-dir", str(tmp_path), "--dry-run", "--upload-workers", "3"])

    assert seen["settings"].dry_run is True
    assert seen["settings"].upload_workers == 3
    assert seen["kwargs"]["show_progress"] is True
    assert seen["kwargs"]["cancel_event"].is_set() is False
