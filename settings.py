"""Environment driven configuration for the converters."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pytz

from data_paths import DEFAULT_OUTPUT_ROOT

DEFAULT_TIMEZONE = "UTC"
DEFAULT_HISTORY_WINDOW_MS = 1000
DEFAULT_MIN_DURATION_MINUTES = 5
DEFAULT_POLICY = "target_wins"


@dataclass
class Settings:
    output_dir: Path
    timezone: str
    history_window_ms: int
    min_duration_minutes: int
    default_policy: str

    def tzinfo(self):
        return pytz.timezone(self.timezone)


def load_settings(environ: Optional[dict] = None) -> Settings:
    """Build :class:`Settings` from ``environ`` (defaults to ``os.environ``).

    Raises ``ValueError`` for an unknown time zone name.
    """

    env = os.environ if environ is None else environ

    def _get(name: str, default: str) -> str:
        value = env.get(name)
        if value is None or not str(value).strip():
            return default
        return str(value).strip()

    def _get_int(name: str, default: int) -> int:
        try:
            return int(_get(name, str(default)))
        except ValueError:
            return default

    timezone_name = _get("NPCONV_TIMEZONE", DEFAULT_TIMEZONE)
    try:
        pytz.timezone(timezone_name)
    except pytz.UnknownTimeZoneError as exc:
        raise ValueError(f"Unknown time zone '{timezone_name}'") from exc

    return Settings(
        output_dir=Path(_get("NPCONV_OUTPUT_DIR", str(DEFAULT_OUTPUT_ROOT))).expanduser(),
        timezone=timezone_name,
        history_window_ms=max(0, _get_int("NPCONV_HISTORY_WINDOW_MS", DEFAULT_HISTORY_WINDOW_MS)),
        min_duration_minutes=max(0, _get_int("NPCONV_MIN_DURATION_MINUTES", DEFAULT_MIN_DURATION_MINUTES)),
        default_policy=_get("NPCONV_DEFAULT_POLICY", DEFAULT_POLICY),
    )
