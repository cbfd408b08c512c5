"""Populate (or merge into) a structured backup from a flat JSON document.

All writes of one run happen inside a single transaction, phase by phase in
dependency order: subscriptions, local playlists (streams before membership
rows), playlist bookmarks, then watch state and history.  The identity marker
row goes in last.  A phase that fails rolls the whole run back; a single bad
record inside a phase is logged and skipped.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Mapping, Optional

from converters.archive import StructuredBackup
from converters.codecs import (
    SERVICE_ID_YOUTUBE,
    canonical_watch_url,
    channel_url,
    clamp_to_safe_int,
    extract_video_id,
    is_platform_url,
    normalize_timestamp,
    playlist_url,
    to_epoch_seconds,
)
from converters.common import ConversionError, ConversionReport, PlaylistPolicy, run_phase
from database import (
    describe_watch_state_schema,
    ensure_compatible_schema,
    list_tables,
    transaction,
    write_identity_marker,
)
from settings import DEFAULT_HISTORY_WINDOW_MS

LOGGER = logging.getLogger(__name__)

STREAM_TYPE_VIDEO = "VIDEO_STREAM"
UNKNOWN = "Unknown"
UNTITLED = "Untitled"

HISTORY_KEYS = ("history", "watchHistory", "watch_history", "watch_history_items")
ACCESS_DATE_KEYS = ("accessDate", "accessedAt", "lastWatched", "timestamp", "date", "time")
REPEAT_COUNT_KEYS = ("repeatCount", "watchCount", "playCount", "repeat_count")
PROGRESS_SECONDS_KEYS = ("currentTime", "position", "progress")

# Position the flat app writes when it has no real offset for a video
UNKNOWN_POSITION = "9223372036854775807"

RECORD_ERRORS = (sqlite3.Error, ValueError, TypeError, KeyError, AttributeError)


def convert_to_structured(
    document: Mapping[str, Any],
    existing: Optional[StructuredBackup] = None,
    *,
    policy: Any = PlaylistPolicy.TARGET_WINS,
    include_history: bool = True,
    history_window_ms: int = DEFAULT_HISTORY_WINDOW_MS,
    report: Optional[ConversionReport] = None,
) -> StructuredBackup:
    """Write ``document`` into ``existing`` (merge mode) or a new backup.

    Returns the backup that now holds the data.  On failure the transaction
    is rolled back and :class:`ConversionError` propagates; a freshly created
    backup is closed before that happens.
    """

    if not isinstance(document, Mapping):
        raise ValueError("The flat backup must be a JSON object.")
    policy = PlaylistPolicy.parse(policy)
    report = report if report is not None else ConversionReport()
    window = max(0, int(history_window_ms))

    merge = existing is not None
    if merge:
        backup = existing
        report.note(
            "Existing structured database contains tables: "
            + (", ".join(list_tables(backup.connection)) or "(none)"),
            LOGGER,
        )
        if ensure_compatible_schema(backup.connection):
            report.note("Rebuilt the stream_state table into the current layout.", LOGGER)
    else:
        report.note("Creating a new structured database...", LOGGER)
        backup = StructuredBackup.create()
    conn = backup.connection
    LOGGER.debug("Output stream_state schema:\n%s", describe_watch_state_schema(conn))

    try:
        with transaction(conn):
            run_phase("subscriptions", report, _import_subscriptions, conn, document, merge, report)

            skip_playlists = merge and policy is PlaylistPolicy.TARGET_ONLY
            if merge and policy is PlaylistPolicy.SOURCE_ONLY:
                run_phase("playlist cleanup", report, _clear_playlists, conn, report)
            elif skip_playlists:
                report.note("Preserving existing structured playlists; flat playlists are not imported.", LOGGER)
            elif merge:
                report.note(f"Merging playlists with policy {policy.value}.", LOGGER)

            if not skip_playlists:
                run_phase("local playlists", report, _import_local_playlists, conn, document, policy, report)
                run_phase("playlist bookmarks", report, _import_bookmarks, conn, document, policy, report)

            if include_history:
                run_phase("watch history", report, _import_history, conn, document, window, report)

            write_identity_marker(conn)
            report.note("Wrote room_master_table identity row.", LOGGER)
    except ConversionError:
        report.warn("Conversion aborted; all changes of this run were rolled back.", LOGGER)
        if not merge:
            backup.close()
        raise

    return backup


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _first_value(item: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = item.get(key)
        if value:
            return value
    return None


def _next_display_index(conn: sqlite3.Connection, table: str) -> int:
    row = conn.execute(f"SELECT MAX(display_index) FROM {table}").fetchone()
    return 0 if row is None or row[0] is None else int(row[0]) + 1


def _ensure_stream(
    conn: sqlite3.Connection,
    video_id: str,
    *,
    title: str,
    uploader: str,
    duration: int,
    upload_date: Optional[int],
    thumbnail_url: Optional[str],
) -> Optional[int]:
    """Insert the stream unless its canonical URL is already stored; return its uid."""

    url = canonical_watch_url(video_id)
    conn.execute(
        "INSERT OR IGNORE INTO streams "
        "(service_id, url, title, stream_type, duration, uploader, upload_date, thumbnail_url) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (SERVICE_ID_YOUTUBE, url, title, STREAM_TYPE_VIDEO, duration, uploader, upload_date, thumbnail_url),
    )
    row = conn.execute(
        "SELECT uid FROM streams WHERE service_id = ? AND url = ?",
        (SERVICE_ID_YOUTUBE, url),
    ).fetchone()
    return None if row is None else int(row[0])


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


def _import_subscriptions(
    conn: sqlite3.Connection,
    document: Mapping[str, Any],
    merge: bool,
    report: ConversionReport,
) -> None:
    if merge:
        removed = conn.execute(
            "DELETE FROM subscriptions WHERE service_id = ?", (SERVICE_ID_YOUTUBE,)
        ).rowcount
        report.note(f"Removed {removed} existing subscriptions before re-import.", LOGGER)

    added = 0
    for subscription in _as_list(document.get("subscriptions")):
        if not isinstance(subscription, dict):
            report.warn(f"Skipped malformed subscription entry: {subscription!r}", LOGGER)
            continue
        name = subscription.get("name") or UNKNOWN
        url = subscription.get("url") or ""
        if not url and subscription.get("channelId"):
            url = channel_url(str(subscription["channelId"]))
        if not is_platform_url(url):
            report.warn(f"Dropped non-platform subscription: {name} ({url})", LOGGER)
            continue
        try:
            conn.execute(
                "INSERT INTO subscriptions "
                "(service_id, url, name, avatar_url, subscriber_count, description, notification_mode) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    SERVICE_ID_YOUTUBE,
                    url,
                    name,
                    subscription.get("avatar") or subscription.get("avatarUrl") or None,
                    clamp_to_safe_int(subscription.get("subscriberCount")),
                    subscription.get("description") or "",
                    0,
                ),
            )
        except sqlite3.IntegrityError:
            report.warn(f"Skipped duplicate subscription: {name} ({url})", LOGGER)
            continue
        except RECORD_ERRORS as exc:
            report.warn(f"Failed to insert subscription {name}: {exc}", LOGGER)
            continue
        added += 1

    report.bump("subscriptions", added)
    report.note(f"Inserted {added} subscriptions.", LOGGER)


def _clear_playlists(conn: sqlite3.Connection, report: ConversionReport) -> None:
    conn.execute("DELETE FROM playlist_stream_join")
    conn.execute("DELETE FROM playlists")
    conn.execute("DELETE FROM remote_playlists")
    report.note("Cleared existing structured playlists; only flat playlists will be kept.", LOGGER)


def _import_local_playlists(
    conn: sqlite3.Connection,
    document: Mapping[str, Any],
    policy: PlaylistPolicy,
    report: ConversionReport,
) -> None:
    added = 0
    display_index = _next_display_index(conn, "playlists")
    for entry in _as_list(document.get("localPlaylists")):
        if not isinstance(entry, dict):
            report.warn(f"Skipped malformed local playlist entry: {entry!r}", LOGGER)
            continue
        meta = entry.get("playlist") if isinstance(entry.get("playlist"), dict) else {}
        name = meta.get("name") or UNTITLED

        duplicate = conn.execute("SELECT uid FROM playlists WHERE name = ?", (name,)).fetchone()
        if duplicate is not None:
            if policy is PlaylistPolicy.SOURCE_WINS:
                conn.execute("DELETE FROM playlist_stream_join WHERE playlist_id = ?", (duplicate[0],))
                conn.execute("DELETE FROM playlists WHERE uid = ?", (duplicate[0],))
                report.note(f"Replaced existing local playlist: {name}", LOGGER)
            else:
                report.note(f"Skipping duplicate local playlist: {name}", LOGGER)
                continue

        cursor = conn.execute(
            "INSERT INTO playlists (name, is_thumbnail_permanent, thumbnail_stream_id, display_index) "
            "VALUES (?, 0, -1, ?)",
            (name, display_index),
        )
        display_index += 1
        playlist_uid = cursor.lastrowid
        members = _import_playlist_videos(conn, playlist_uid, name, _as_list(entry.get("videos")), report)
        LOGGER.debug("Playlist %s written with %d videos", name, members)
        added += 1

    report.bump("local_playlists", added)
    report.note(f"Inserted {added} local playlists.", LOGGER)


def _import_playlist_videos(
    conn: sqlite3.Connection,
    playlist_uid: int,
    playlist_name: str,
    videos: List[Any],
    report: ConversionReport,
) -> int:
    join_index = 0
    for video in videos:
        if not isinstance(video, dict):
            report.warn(f"Skipped malformed video in playlist {playlist_name}.", LOGGER)
            continue
        video_id = str(video.get("videoId") or "") or extract_video_id(video.get("url"))
        if not video_id:
            report.warn(f"Skipped video in playlist {playlist_name} due to missing videoId.", LOGGER)
            continue
        title = video.get("title") or UNKNOWN
        try:
            stream_id = _ensure_stream(
                conn,
                video_id,
                title=title,
                uploader=video.get("uploader") or UNKNOWN,
                duration=clamp_to_safe_int(video.get("duration")),
                upload_date=to_epoch_seconds(video.get("uploadDate")),
                thumbnail_url=video.get("thumbnailUrl") or None,
            )
            if stream_id is None:
                report.warn(f"Could not find or insert stream for video {title}", LOGGER)
                continue
            conn.execute(
                "INSERT INTO playlist_stream_join (playlist_id, stream_id, join_index) VALUES (?, ?, ?)",
                (playlist_uid, stream_id, join_index),
            )
            if join_index == 0:
                conn.execute(
                    "UPDATE playlists SET thumbnail_stream_id = ? WHERE uid = ?",
                    (stream_id, playlist_uid),
                )
        except RECORD_ERRORS as exc:
            report.warn(f'Failed to add video "{title}" to playlist "{playlist_name}": {exc}', LOGGER)
            continue
        join_index += 1
    return join_index


def _import_bookmarks(
    conn: sqlite3.Connection,
    document: Mapping[str, Any],
    policy: PlaylistPolicy,
    report: ConversionReport,
) -> None:
    added = 0
    display_index = _next_display_index(conn, "remote_playlists")
    for bookmark in _as_list(document.get("playlistBookmarks")):
        if not isinstance(bookmark, dict):
            report.warn(f"Skipped malformed playlist bookmark: {bookmark!r}", LOGGER)
            continue
        name = bookmark.get("playlistName") or bookmark.get("name") or UNTITLED
        url = bookmark.get("url") or ""
        if not url and bookmark.get("playlistId"):
            url = playlist_url(str(bookmark["playlistId"]))
        if not is_platform_url(url):
            report.warn(f"Dropped non-platform playlist bookmark: {name}", LOGGER)
            continue

        duplicate = conn.execute(
            "SELECT uid FROM remote_playlists WHERE url = ? OR name = ?", (url, name)
        ).fetchone()
        if duplicate is not None:
            if policy is PlaylistPolicy.SOURCE_WINS:
                conn.execute("DELETE FROM remote_playlists WHERE uid = ?", (duplicate[0],))
                report.note(f"Replaced existing playlist bookmark: {name}", LOGGER)
            else:
                report.note(f"Skipping duplicate playlist bookmark: {name}", LOGGER)
                continue

        try:
            conn.execute(
                "INSERT INTO remote_playlists "
                "(service_id, name, url, thumbnail_url, uploader, display_index, stream_count) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    SERVICE_ID_YOUTUBE,
                    name,
                    url,
                    bookmark.get("thumbnailUrl") or None,
                    bookmark.get("uploader") or UNKNOWN,
                    display_index,
                    clamp_to_safe_int(bookmark.get("videos")),
                ),
            )
        except RECORD_ERRORS as exc:
            report.warn(f"Failed to insert playlist bookmark {name}: {exc}", LOGGER)
            continue
        display_index += 1
        added += 1

    report.bump("playlist_bookmarks", added)
    report.note(f"Inserted {added} playlist bookmarks.", LOGGER)


def _history_items(document: Mapping[str, Any]) -> List[Any]:
    for key in HISTORY_KEYS:
        value = document.get(key)
        if value:
            return _as_list(value)
    return []


def _position_map(document: Mapping[str, Any]) -> Dict[str, Any]:
    positions: Dict[str, Any] = {}
    for entry in _as_list(document.get("watchPositions")):
        if isinstance(entry, dict) and entry.get("videoId"):
            positions[str(entry["videoId"])] = entry.get("position")
    return positions


def progress_ms(item: Mapping[str, Any], mapped_position: Any = None) -> int:
    """Playback offset in milliseconds for one history entry.

    A value from the position map is already milliseconds; the fallback
    fields on the entry itself are seconds.
    """

    if mapped_position is not None:
        if str(mapped_position) == UNKNOWN_POSITION:
            return 0
        return clamp_to_safe_int(mapped_position)
    seconds = _first_value(item, PROGRESS_SECONDS_KEYS) or 0
    try:
        return clamp_to_safe_int(float(seconds) * 1000)
    except (TypeError, ValueError):
        return 0


def access_date_ms(item: Mapping[str, Any]) -> int:
    raw = _first_value(item, ACCESS_DATE_KEYS)
    return normalize_timestamp(raw) if raw else 0


def repeat_count(item: Mapping[str, Any]) -> int:
    count = clamp_to_safe_int(_first_value(item, REPEAT_COUNT_KEYS))
    return count if count > 0 else 1


def record_history(
    conn: sqlite3.Connection,
    stream_id: int,
    access_ms: int,
    count: int,
    window_ms: int = DEFAULT_HISTORY_WINDOW_MS,
) -> bool:
    """Add one watch event to ``stream_history``.

    An existing row for the stream within ``window_ms`` of ``access_ms`` is
    the same event: its repeat count grows by ``count`` and ``True`` is
    returned.  Otherwise a new row is inserted and ``False`` is returned.
    """

    row = conn.execute(
        "SELECT access_date FROM stream_history "
        "WHERE stream_id = ? AND access_date BETWEEN ? AND ? "
        "ORDER BY ABS(access_date - ?) LIMIT 1",
        (stream_id, access_ms - window_ms, access_ms + window_ms, access_ms),
    ).fetchone()
    if row is not None:
        conn.execute(
            "UPDATE stream_history SET repeat_count = repeat_count + ? "
            "WHERE stream_id = ? AND access_date = ?",
            (count, stream_id, row[0]),
        )
        return True
    conn.execute(
        "INSERT INTO stream_history (stream_id, access_date, repeat_count) VALUES (?, ?, ?)",
        (stream_id, access_ms, count),
    )
    return False


def _import_history(
    conn: sqlite3.Connection,
    document: Mapping[str, Any],
    window_ms: int,
    report: ConversionReport,
) -> None:
    positions = _position_map(document)
    processed = added = merged = 0
    for item in _history_items(document):
        if not isinstance(item, dict):
            report.warn(f"Skipped malformed history entry: {item!r}", LOGGER)
            continue
        raw_id = item.get("videoId") or item.get("videoIdStr") or item.get("id")
        video_id = str(raw_id) if raw_id else extract_video_id(item.get("url"))
        if not video_id:
            report.warn(f"Skipped history entry without a video id: {item.get('title') or item!r}", LOGGER)
            continue
        try:
            stream_id = _ensure_stream(
                conn,
                video_id,
                title=item.get("title") or item.get("name") or UNKNOWN,
                uploader=item.get("uploader") or item.get("uploaderName") or UNKNOWN,
                duration=clamp_to_safe_int(item.get("duration") or item.get("length")),
                upload_date=to_epoch_seconds(item.get("uploadDate")),
                thumbnail_url=item.get("thumbnailUrl") or item.get("thumbnail") or None,
            )
            if stream_id is None:
                report.warn(f"Could not find or insert stream for history entry {video_id}", LOGGER)
                continue
            conn.execute(
                "INSERT OR REPLACE INTO stream_state (progress_time, stream_id) VALUES (?, ?)",
                (progress_ms(item, positions.get(video_id)), stream_id),
            )
            if record_history(conn, stream_id, access_date_ms(item), repeat_count(item), window_ms):
                merged += 1
            else:
                added += 1
        except RECORD_ERRORS as exc:
            report.warn(f"Failed to write history for {video_id}: {exc}", LOGGER)
            continue
        processed += 1

    report.bump("history_added", added)
    report.bump("history_merged", merged)
    report.note(
        f"Processed {processed} history items (added: {added}, duplicates merged: {merged}).",
        LOGGER,
    )
