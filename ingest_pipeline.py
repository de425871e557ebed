"""CLI shim -- delegates to archive_pipeline.cli.main().

Usage:
    python ingest_pipeline.py --source-dir ./uploads --output-dir ./extracted
    python ingest_pipeline.py --output-dir ./extracted --upload-only
"""

from archive_pipeline.cli import main

if __name__ == "__main__":
    main()
