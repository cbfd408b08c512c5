"""Reading and writing the two video-app backup containers."""
from __future__ import annotations

import io
import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union
from zipfile import BadZipFile, ZipFile, ZIP_DEFLATED

from database import (
    STRUCTURED_DB_NAME,
    connect_memory,
    create_schema,
    export_database,
    list_tables,
    load_database,
)

__all__ = [
    "ArchiveError",
    "DEFAULT_PREFERENCES",
    "StructuredBackup",
    "empty_flat_backup",
    "read_flat_backup",
    "read_structured_backup",
    "write_flat_backup",
    "write_structured_backup",
]

LOGGER = logging.getLogger(__name__)

PREFERENCES_NAME = "preferences.json"
SETTINGS_NAME = "newpipe.settings"

DEFAULT_PREFERENCES = {
    "content_country": "US",
    "content_language": "en",
    "theme": "DARK",
}

FLAT_LIST_KEYS = (
    "watchHistory",
    "subscriptions",
    "playlistBookmarks",
    "localPlaylists",
    "preferences",
    "watchPositions",
)

Source = Union[bytes, bytearray, str, Path, io.IOBase]


class ArchiveError(RuntimeError):
    """Raised when an input container is missing required parts or is unreadable."""


@dataclass
class StructuredBackup:
    """An opened structured backup: the loaded database plus the files around it.

    The connection lives in memory; call :meth:`close` (or use the backup as
    a context manager) before loading another backup into the same slot.
    """

    connection: sqlite3.Connection
    preferences: Optional[str] = None
    settings_blob: Optional[bytes] = None

    @classmethod
    def create(cls) -> "StructuredBackup":
        conn = connect_memory()
        create_schema(conn)
        return cls(connection=conn)

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "StructuredBackup":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def read_source(source: Source) -> bytes:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    if isinstance(source, (str, Path)):
        return Path(source).expanduser().read_bytes()
    if getattr(source, "seekable", None) and source.seekable():
        source.seek(0)
    return source.read()


def read_structured_backup(source: Source) -> StructuredBackup:
    """Open a structured backup zip from bytes, a path or a binary stream."""

    payload = read_source(source)
    try:
        archive = ZipFile(io.BytesIO(payload))
    except BadZipFile as exc:
        raise ArchiveError("The structured backup is not a valid ZIP archive.") from exc

    with archive:
        names = set(archive.namelist())
        if STRUCTURED_DB_NAME not in names:
            raise ArchiveError(f"Invalid structured backup: missing {STRUCTURED_DB_NAME}")
        db_bytes = archive.read(STRUCTURED_DB_NAME)
        preferences = None
        if PREFERENCES_NAME in names:
            preferences = archive.read(PREFERENCES_NAME).decode("utf-8")
        settings_blob = archive.read(SETTINGS_NAME) if SETTINGS_NAME in names else None

    try:
        conn = load_database(db_bytes)
        tables = list_tables(conn)
    except sqlite3.DatabaseError as exc:
        raise ArchiveError(f"{STRUCTURED_DB_NAME} is not a readable SQLite database: {exc}") from exc

    LOGGER.info("Loaded structured backup with tables: %s", ", ".join(tables) or "(none)")
    return StructuredBackup(connection=conn, preferences=preferences, settings_blob=settings_blob)


def write_structured_backup(backup: StructuredBackup) -> bytes:
    """Serialize ``backup`` back into a zip archive."""

    buffer = io.BytesIO()
    with ZipFile(buffer, mode="w", compression=ZIP_DEFLATED) as archive:
        archive.writestr(STRUCTURED_DB_NAME, export_database(backup.connection))
        if backup.preferences:
            archive.writestr(PREFERENCES_NAME, backup.preferences)
            LOGGER.info("Preserved existing %s.", PREFERENCES_NAME)
        else:
            archive.writestr(PREFERENCES_NAME, json.dumps(DEFAULT_PREFERENCES, indent=2))
            LOGGER.info("Created default %s.", PREFERENCES_NAME)
        if backup.settings_blob is not None:
            archive.writestr(SETTINGS_NAME, backup.settings_blob)
            LOGGER.info("Preserved existing %s.", SETTINGS_NAME)
    return buffer.getvalue()


def empty_flat_backup() -> Dict[str, Any]:
    return {key: [] for key in FLAT_LIST_KEYS}


def read_flat_backup(source: Source) -> Dict[str, Any]:
    """Decode a flat (JSON) backup document."""

    payload = read_source(source)
    try:
        document = json.loads(payload.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise ArchiveError(f"The flat backup is not UTF-8 text: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ArchiveError(f"Could not decode the flat backup JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise ArchiveError("The flat backup must be a JSON object.")
    return document


def write_flat_backup(document: Dict[str, Any]) -> bytes:
    return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")
