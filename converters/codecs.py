"""Stateless field conversions shared by every converter direction.

The two video apps disagree on units and identifier schemes: one stores
canonical watch URLs and epoch seconds, the other bare video ids, ISO dates
and millisecond offsets that a 64-bit JVM parser has to accept.  Everything
here is pure and never raises on bad input; a malformed value degrades to a
neutral default instead of aborting a conversion.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as dateutil_parser

SERVICE_ID_YOUTUBE = 0

MAX_SAFE_INTEGER = 2**53 - 1

EPOCH_DATE = "1970-01-01"

WATCH_URL_TEMPLATE = "https://www.youtube.com/watch?v={video_id}"
CHANNEL_URL_TEMPLATE = "https://www.youtube.com/channel/{channel_id}"
PLAYLIST_URL_TEMPLATE = "https://www.youtube.com/playlist?list={playlist_id}"

_PLATFORM_HOSTS = ("youtube.com", "youtu.be")

_VIDEO_ID_PATTERNS = (
    re.compile(r"[?&]v=([\w-]+)"),
    re.compile(r"youtu\.be/([\w-]+)"),
    re.compile(r"/shorts/([\w-]+)"),
    re.compile(r"/embed/([\w-]+)"),
)
_CHANNEL_PATTERN = re.compile(r"channel/([\w-]+)")
_USER_PATTERN = re.compile(r"user/([\w-]+)")
_BARE_CHANNEL_ID = re.compile(r"^UC[A-Za-z0-9_-]{20,}$")
_PLAYLIST_PATTERN = re.compile(r"[?&]list=([^&#]+)")
_ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")

_MS_THRESHOLD = 10**12
_SECONDS_THRESHOLD = 10**9
_COMPACT_DATE_MIN = 10**7
_COMPACT_DATE_MAX = 10**8 - 1


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def clamp_to_safe_int(value: Any) -> int:
    """Truncate ``value`` to an integer within ±(2**53 - 1).

    Non-numeric and non-finite input returns ``0``.
    """

    number = _to_number(value)
    if number is None:
        return 0
    if isinstance(number, float):
        if not math.isfinite(number):
            return 0
        number = math.trunc(number)
    if number > MAX_SAFE_INTEGER:
        return MAX_SAFE_INTEGER
    if number < -MAX_SAFE_INTEGER:
        return -MAX_SAFE_INTEGER
    return int(number)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def _compact_date_to_ms(number: int) -> Optional[int]:
    text = str(abs(number))
    try:
        moment = datetime(int(text[0:4]), int(text[4:6]), int(text[6:8]), tzinfo=timezone.utc)
    except ValueError:
        return None
    return int(moment.timestamp()) * 1000


def _number_to_ms(number: float) -> int:
    if not math.isfinite(number):
        return 0
    magnitude = abs(number)
    if magnitude >= _MS_THRESHOLD:
        return int(math.floor(number))
    if magnitude >= _SECONDS_THRESHOLD:
        return int(math.floor(number * 1000))
    if _COMPACT_DATE_MIN <= magnitude <= _COMPACT_DATE_MAX and float(number).is_integer():
        compact = _compact_date_to_ms(int(number))
        if compact is not None:
            return compact
    return int(math.floor(number))


def _parse_date_text(text: str) -> Optional[int]:
    try:
        moment = dateutil_parser.parse(text)
    except (ValueError, OverflowError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(math.floor(moment.timestamp() * 1000))


def normalize_timestamp(value: Any) -> int:
    """Return ``value`` as epoch milliseconds.

    Numbers are classified by magnitude: at least 10**12 is already
    milliseconds, at least 10**9 is seconds, eight digits is a ``YYYYMMDD``
    compact date, anything smaller is taken as milliseconds.  Other strings
    are handed to dateutil.  Unparseable input yields ``0``.
    """

    if value is None or value == "":
        return 0
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(math.floor(moment.timestamp() * 1000))
    number = _to_number(value)
    if number is not None:
        return _number_to_ms(number)
    parsed = _parse_date_text(str(value).strip())
    return parsed if parsed is not None else 0


def format_upload_date(value: Any) -> str:
    """Render ``value`` as a ``YYYY-MM-DD`` calendar date in UTC."""

    if value is None or value == "":
        return EPOCH_DATE
    if isinstance(value, str) and _ISO_DATE_PREFIX.match(value.strip()):
        return value.strip()[:10]
    millis = normalize_timestamp(value)
    try:
        moment = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return EPOCH_DATE
    return moment.strftime("%Y-%m-%d")


def to_epoch_seconds(value: Any) -> Optional[int]:
    """Epoch seconds for ``value``, or ``None`` when no value was given."""

    if value is None or value == "":
        return None
    return normalize_timestamp(value) // 1000


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def is_platform_url(url: Optional[str]) -> bool:
    if not url:
        return False
    return any(host in url for host in _PLATFORM_HOSTS)


def extract_video_id(url: Optional[str]) -> str:
    """Pull the bare video id out of a watch, short-link, shorts or embed URL."""

    if not url:
        return ""
    for pattern in _VIDEO_ID_PATTERNS:
        match = pattern.search(str(url))
        if match:
            return match.group(1)
    return ""


def canonical_watch_url(video_id: str) -> str:
    return WATCH_URL_TEMPLATE.format(video_id=video_id)


def extract_channel_id(url: Optional[str]) -> str:
    if not url:
        return ""
    text = str(url).strip()
    for pattern in (_CHANNEL_PATTERN, _USER_PATTERN):
        match = pattern.search(text)
        if match:
            return match.group(1)
    if _BARE_CHANNEL_ID.match(text):
        return text
    return ""


def channel_url(channel_id: str) -> str:
    return CHANNEL_URL_TEMPLATE.format(channel_id=channel_id)


def extract_playlist_id(url: Optional[str]) -> str:
    if not url:
        return ""
    match = _PLAYLIST_PATTERN.search(str(url))
    return match.group(1) if match else ""


def playlist_url(playlist_id: str) -> str:
    return PLAYLIST_URL_TEMPLATE.format(playlist_id=playlist_id)
