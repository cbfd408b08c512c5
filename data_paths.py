"""Centralized helpers for resolving where converted backups are written."""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent
DEFAULT_OUTPUT_ROOT = APP_ROOT / "output"


def ensure_output_root(output_root: Optional[Path] = None) -> Path:
    """Return the output directory, creating it when needed."""
    root = Path(output_root) if output_root is not None else DEFAULT_OUTPUT_ROOT
    if not root.exists():
        LOGGER.info("Creating output directory %s", root)
    root.mkdir(parents=True, exist_ok=True)
    return root


def file_timestamp(now: Optional[datetime] = None) -> str:
    moment = now or datetime.now()
    return moment.strftime("%Y-%m-%d-%H-%M-%S")


def timestamped_filename(filename: str, timestamp: Optional[str] = None) -> str:
    """Insert ``-<timestamp>`` before the extension of ``filename``.

    ``libretube_converted.json`` becomes
    ``libretube_converted-2024-01-31-12-00-00.json``.
    """

    stamp = timestamp or file_timestamp()
    path = Path(filename)
    if not path.suffix:
        return f"{filename}-{stamp}"
    return f"{path.stem}-{stamp}{path.suffix}"
