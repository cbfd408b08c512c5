"""Flatten a structured (relational) backup into the flat JSON document.

The structured store is only read here.  Everything lands in a plain ``dict``
shaped like the flat app's backup file, optionally merged on top of an
existing document which is deep-copied first and never mutated.
"""

from __future__ import annotations

import copy
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Set

from converters.archive import FLAT_LIST_KEYS, StructuredBackup
from converters.codecs import (
    SERVICE_ID_YOUTUBE,
    clamp_to_safe_int,
    extract_channel_id,
    extract_playlist_id,
    extract_video_id,
    format_upload_date,
    is_platform_url,
    normalize_timestamp,
)
from converters.common import ConversionReport, PlaylistPolicy, run_phase
from database import describe_watch_state_schema, table_exists

LOGGER = logging.getLogger(__name__)

ACCESS_DATE_KEYS = ("accessDate", "accessedAt", "lastWatched", "timestamp", "date", "time")


def convert_to_flat(
    backup: StructuredBackup,
    existing: Optional[Dict[str, Any]] = None,
    *,
    policy: Any = PlaylistPolicy.TARGET_WINS,
    include_history: bool = True,
    report: Optional[ConversionReport] = None,
) -> Dict[str, Any]:
    """Return a flat backup document built from ``backup``.

    When ``existing`` is given the result is a merge of both: subscriptions
    are de-duplicated, playlists follow ``policy``, watch positions only move
    forward and history keeps whatever the existing document already had for
    a video.
    """

    policy = PlaylistPolicy.parse(policy)
    report = report if report is not None else ConversionReport()
    conn = backup.connection

    snapshot = _snapshot_playlists(existing) if existing is not None else None
    target = _prepare_target(existing)
    skip_playlists = False
    if existing is not None:
        if policy is PlaylistPolicy.SOURCE_ONLY:
            target["playlistBookmarks"] = []
            target["localPlaylists"] = []
            report.note("Cleared existing flat playlists; only structured playlists will be kept.", LOGGER)
        elif policy is PlaylistPolicy.TARGET_ONLY:
            skip_playlists = True
            report.note("Preserving existing flat playlists; structured playlists are not imported.", LOGGER)
        else:
            report.note(f"Merging playlists with policy {policy.value}.", LOGGER)

    if table_exists(conn, "stream_state"):
        LOGGER.debug("Input stream_state schema:\n%s", describe_watch_state_schema(conn))

    run_phase("subscriptions", report, _export_subscriptions, conn, target, report)
    if not skip_playlists:
        run_phase("playlist bookmarks", report, _export_bookmarks, conn, target, policy, report)
        run_phase("local playlists", report, _export_local_playlists, conn, target, policy, report)
    elif snapshot is not None:
        target.update(copy.deepcopy(snapshot))
        report.note("Restored original flat playlist data.", LOGGER)

    target["watchPositions"] = _clamped_positions(target.get("watchPositions"))

    if include_history:
        run_phase("watch positions", report, _export_watch_positions, conn, target, report)
        run_phase("watch history", report, _export_watch_history, conn, target, report)

    return target


def _prepare_target(existing: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if existing is None:
        return {key: [] for key in FLAT_LIST_KEYS}
    target = copy.deepcopy(existing)
    for key in FLAT_LIST_KEYS:
        if not isinstance(target.get(key), list):
            target[key] = []
    return target


def _snapshot_playlists(document: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: copy.deepcopy(value)
        for key, value in document.items()
        if "playlist" in key.lower()
    }


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


def _export_subscriptions(conn: sqlite3.Connection, target: Dict[str, Any], report: ConversionReport) -> None:
    subscriptions: List[Dict[str, Any]] = target["subscriptions"]
    known_urls: Set[str] = set()
    known_channels: Set[str] = set()
    for entry in subscriptions:
        if isinstance(entry, dict):
            if entry.get("url"):
                known_urls.add(str(entry["url"]))
            if entry.get("channelId"):
                known_channels.add(str(entry["channelId"]))

    added = 0
    rows = conn.execute(
        "SELECT url, name, avatar_url FROM subscriptions WHERE service_id = ? ORDER BY uid",
        (SERVICE_ID_YOUTUBE,),
    ).fetchall()
    for row in rows:
        url = row["url"] or ""
        name = row["name"] or ""
        if not is_platform_url(url):
            report.warn(f"Dropped non-platform subscription: {name} ({url})", LOGGER)
            continue
        channel_id = extract_channel_id(url)
        if url in known_urls or (channel_id and channel_id in known_channels):
            LOGGER.debug("Subscription %s already present; keeping existing entry", url)
            continue
        subscriptions.append(
            {
                "channelId": channel_id,
                "url": url,
                "name": name,
                "avatar": row["avatar_url"] or None,
                "verified": False,
            }
        )
        known_urls.add(url)
        if channel_id:
            known_channels.add(channel_id)
        added += 1

    report.bump("subscriptions", added)
    report.note(f"Exported {added} subscriptions.", LOGGER)


def _export_bookmarks(
    conn: sqlite3.Connection,
    target: Dict[str, Any],
    policy: PlaylistPolicy,
    report: ConversionReport,
) -> None:
    bookmarks: List[Dict[str, Any]] = target["playlistBookmarks"]
    added = 0
    rows = conn.execute(
        "SELECT name, url, uploader, thumbnail_url, stream_count FROM remote_playlists "
        "WHERE service_id = ? ORDER BY display_index, uid",
        (SERVICE_ID_YOUTUBE,),
    ).fetchall()
    for row in rows:
        url = row["url"] or ""
        name = row["name"] or ""
        if not is_platform_url(url):
            report.warn(f"Dropped non-platform playlist bookmark: {name} ({url})", LOGGER)
            continue
        playlist_id = extract_playlist_id(url)

        if playlist_id:
            index = _find_index(bookmarks, lambda item: item.get("playlistId") == playlist_id)
            if index is not None:
                if policy is PlaylistPolicy.SOURCE_WINS:
                    del bookmarks[index]
                    report.note(f"Replaced existing playlist bookmark: {name}", LOGGER)
                else:
                    report.note(f"Kept existing playlist bookmark: {name}", LOGGER)
                    continue

        bookmarks.append(
            {
                "playlistId": playlist_id,
                "playlistName": name,
                "thumbnailUrl": row["thumbnail_url"] or None,
                "uploader": row["uploader"] or None,
                "uploaderUrl": "",
                "videos": clamp_to_safe_int(row["stream_count"]),
            }
        )
        added += 1

    report.bump("playlist_bookmarks", added)
    report.note(f"Exported {added} playlist bookmarks.", LOGGER)


def _export_local_playlists(
    conn: sqlite3.Connection,
    target: Dict[str, Any],
    policy: PlaylistPolicy,
    report: ConversionReport,
) -> None:
    playlists: List[Dict[str, Any]] = target["localPlaylists"]
    kept = []
    for entry in playlists:
        if not isinstance(entry, dict) or not isinstance(entry.get("playlist"), dict):
            report.warn(f"Skipping malformed local playlist entry: {entry!r}", LOGGER)
            continue
        kept.append(entry)
    playlists[:] = kept

    added = 0
    for playlist_row in conn.execute("SELECT uid, name FROM playlists ORDER BY display_index, uid").fetchall():
        playlist_id = clamp_to_safe_int(playlist_row["uid"])
        name = playlist_row["name"] or ""
        videos = _playlist_videos(conn, playlist_row["uid"], playlist_id, name, report)
        if not videos and not name:
            LOGGER.debug("Skipping empty unnamed playlist %s", playlist_id)
            continue

        index = _find_index(
            playlists,
            lambda item: isinstance(item.get("playlist"), dict) and item["playlist"].get("name") == name,
        )
        if index is not None:
            if policy is PlaylistPolicy.SOURCE_WINS:
                del playlists[index]
                report.note(f"Replaced existing local playlist: {name}", LOGGER)
            else:
                report.note(f"Kept existing local playlist: {name}", LOGGER)
                continue

        playlists.append(
            {
                "playlist": {
                    "id": playlist_id,
                    "name": name,
                    "thumbnailUrl": videos[0]["thumbnailUrl"] if videos else "",
                },
                "videos": videos,
            }
        )
        added += 1

    report.bump("local_playlists", added)
    report.note(f"Exported {added} local playlists.", LOGGER)


def _playlist_videos(
    conn: sqlite3.Connection,
    uid: int,
    playlist_id: int,
    playlist_name: str,
    report: ConversionReport,
) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT s.url, s.title, s.duration, s.uploader, s.upload_date, s.thumbnail_url
        FROM playlist_stream_join j
        JOIN streams s ON j.stream_id = s.uid
        WHERE j.playlist_id = ? AND s.service_id = ?
        ORDER BY j.join_index ASC
        """,
        (uid, SERVICE_ID_YOUTUBE),
    ).fetchall()

    videos: List[Dict[str, Any]] = []
    for row in rows:
        video_id = extract_video_id(row["url"])
        if not video_id:
            report.warn(
                f'Skipped stream in playlist "{playlist_name}" with unparseable URL: {row["url"]}',
                LOGGER,
            )
            continue
        videos.append(
            {
                "id": len(videos),
                "playlistId": playlist_id,
                "videoId": video_id,
                "title": row["title"] or "",
                "uploadDate": format_upload_date(row["upload_date"]),
                "uploader": row["uploader"] or "",
                "thumbnailUrl": row["thumbnail_url"] or None,
                "duration": clamp_to_safe_int(row["duration"]),
            }
        )
    return videos


def _clamped_positions(positions: Any) -> List[Any]:
    if not isinstance(positions, list):
        return []
    clamped = []
    for entry in positions:
        if isinstance(entry, dict) and entry.get("position") is not None:
            entry = dict(entry, position=clamp_to_safe_int(entry["position"]))
        clamped.append(entry)
    return clamped


def _export_watch_positions(conn: sqlite3.Connection, target: Dict[str, Any], report: ConversionReport) -> None:
    positions: Dict[str, int] = {}
    for entry in target["watchPositions"]:
        if isinstance(entry, dict) and entry.get("videoId"):
            positions[str(entry["videoId"])] = clamp_to_safe_int(entry.get("position"))

    updated = 0
    rows = conn.execute(
        "SELECT s.url, ss.progress_time FROM stream_state ss "
        "JOIN streams s ON ss.stream_id = s.uid WHERE s.service_id = ?",
        (SERVICE_ID_YOUTUBE,),
    ).fetchall()
    for row in rows:
        video_id = extract_video_id(row["url"])
        if not video_id:
            continue
        progress = clamp_to_safe_int(row["progress_time"])
        if progress > positions.get(video_id, 0):
            positions[video_id] = progress
            updated += 1

    target["watchPositions"] = [
        {"videoId": video_id, "position": position} for video_id, position in positions.items()
    ]
    report.bump("watch_positions", updated)
    report.note(f"Updated {updated} watch positions.", LOGGER)


def _existing_access_date(entry: Dict[str, Any]) -> int:
    for key in ACCESS_DATE_KEYS:
        if entry.get(key):
            return normalize_timestamp(entry[key])
    return 0


def _export_watch_history(conn: sqlite3.Connection, target: Dict[str, Any], report: ConversionReport) -> None:
    history: List[Dict[str, Any]] = []
    seen: Set[str] = set()
    for entry in target["watchHistory"]:
        if not isinstance(entry, dict):
            continue
        entry = dict(entry, accessDate=_existing_access_date(entry))
        history.append(entry)
        if entry.get("videoId"):
            seen.add(str(entry["videoId"]))

    added = 0
    rows = conn.execute(
        """
        SELECT s.url, s.title, s.duration, s.uploader, s.uploader_url, s.thumbnail_url,
               s.upload_date, sh.access_date
        FROM stream_history sh
        JOIN streams s ON sh.stream_id = s.uid
        WHERE s.service_id = ?
        ORDER BY sh.access_date DESC
        """,
        (SERVICE_ID_YOUTUBE,),
    ).fetchall()
    for row in rows:
        video_id = extract_video_id(row["url"])
        if not video_id or video_id in seen:
            continue
        seen.add(video_id)
        history.append(
            {
                "videoId": video_id,
                "title": row["title"] or "",
                "uploadDate": format_upload_date(row["upload_date"]),
                "uploader": row["uploader"] or "",
                "uploaderUrl": extract_channel_id(row["uploader_url"]),
                "uploaderAvatar": "",
                "thumbnailUrl": row["thumbnail_url"] or "",
                "duration": clamp_to_safe_int(row["duration"]),
                "accessDate": normalize_timestamp(row["access_date"]),
            }
        )
        added += 1

    history.sort(key=lambda item: item.get("accessDate") or 0, reverse=True)
    target["watchHistory"] = history
    report.bump("history_added", added)
    report.note(f"Added {added} watch history entries.", LOGGER)


def _find_index(items: List[Any], predicate) -> Optional[int]:
    for index, item in enumerate(items):
        if isinstance(item, dict) and predicate(item):
            return index
    return None
