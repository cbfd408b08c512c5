"""Command-line interface for converting backups between formats."""
from __future__ import annotations

from converters.cli import main


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
