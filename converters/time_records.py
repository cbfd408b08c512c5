"""Parser for the time tracker's tab-separated ``.backup`` export.

Each non-blank line starts with a tag naming the row kind.  Only four kinds
matter here::

    recordType  1  Guitar  🎸  2  0  0
    record      4  3  1691576017000  1691584365000  course notes
    category    1  Productive Hobbies  9
    recordTag   1  <unused>  e-reader  0  0  <unused>  📓  5

Anything else (preferences, tag joins, goals...) is ignored.
"""

from __future__ import annotations

import io
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import pytz

from converters.common import ConversionReport

LOGGER = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


@dataclass
class RecordType:
    id: int
    name: str
    emoji: str = ""
    color: int = 0
    category_id: int = 0


@dataclass
class TimeRecord:
    id: int
    type_id: int
    start_ms: int
    end_ms: int
    comment: str = ""

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


@dataclass
class Category:
    id: int
    name: str
    color: int = 0


@dataclass
class RecordTag:
    id: int
    name: str
    emoji: str = ""
    color: int = 0
    type_id: int = 0


@dataclass
class TimeRecordExport:
    record_types: Dict[int, RecordType] = field(default_factory=dict)
    records: List[TimeRecord] = field(default_factory=list)
    categories: Dict[int, Category] = field(default_factory=dict)
    record_tags: Dict[int, RecordTag] = field(default_factory=dict)


def _field(parts: List[str], index: int) -> str:
    return parts[index] if index < len(parts) else ""


def _lenient_int(text: str, default: int = 0) -> int:
    match = _LEADING_INT.match(text or "")
    return int(match.group(1)) if match else default


def _strict_int(text: str) -> int:
    return int(text.strip())


def _record_end(text: str) -> int:
    value = text.strip()
    # Some exporter versions leave a stray float suffix on the end time
    if value.endswith("f"):
        value = value[:-1]
    return int(value)


def parse_time_record_export(text: str, report: Optional[ConversionReport] = None) -> TimeRecordExport:
    """Parse the export ``text`` into a :class:`TimeRecordExport`."""

    report = report if report is not None else ConversionReport()
    export = TimeRecordExport()

    for line in text.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        tag = parts[0].strip()

        if tag == "recordType":
            try:
                type_id = _strict_int(_field(parts, 1))
            except ValueError:
                report.warn(f"Skipping record type with invalid id: {line}", LOGGER)
                continue
            export.record_types[type_id] = RecordType(
                id=type_id,
                name=_field(parts, 2),
                emoji=_field(parts, 3),
                color=_lenient_int(_field(parts, 4)),
                category_id=_lenient_int(_field(parts, 5)),
            )
        elif tag == "record":
            try:
                record = TimeRecord(
                    id=_strict_int(_field(parts, 1)),
                    type_id=_strict_int(_field(parts, 2)),
                    start_ms=_strict_int(_field(parts, 3)),
                    end_ms=_record_end(_field(parts, 4)),
                    comment="\t".join(parts[5:]),
                )
            except ValueError:
                report.warn(f"Skipping invalid record: {line}", LOGGER)
                continue
            export.records.append(record)
        elif tag == "category":
            try:
                category_id = _strict_int(_field(parts, 1))
            except ValueError:
                report.warn(f"Skipping category with invalid id: {line}", LOGGER)
                continue
            export.categories[category_id] = Category(
                id=category_id,
                name=_field(parts, 2),
                color=_lenient_int(_field(parts, 3)),
            )
        elif tag == "recordTag":
            try:
                tag_id = _strict_int(_field(parts, 1))
            except ValueError:
                report.warn(f"Skipping record tag with invalid id: {line}", LOGGER)
                continue
            export.record_tags[tag_id] = RecordTag(
                id=tag_id,
                name=_field(parts, 3),
                emoji=_field(parts, 7),
                color=_lenient_int(_field(parts, 4)),
                type_id=_lenient_int(_field(parts, 5)),
            )

    report.note(
        f"Parsed {len(export.record_types)} record types and {len(export.records)} records.",
        LOGGER,
    )
    return export


def read_time_record_export(
    source: Union[bytes, str, Path, io.IOBase],
    report: Optional[ConversionReport] = None,
) -> TimeRecordExport:
    """Read and parse an export from raw bytes, a file path or a binary stream."""

    if isinstance(source, (bytes, bytearray)):
        payload = bytes(source)
    elif isinstance(source, (str, Path)):
        payload = Path(source).expanduser().read_bytes()
    else:
        payload = source.read()
    if isinstance(payload, str):
        text = payload
    else:
        text = payload.decode("utf-8-sig")
    return parse_time_record_export(text, report)


def filter_records_by_duration(records: Iterable[TimeRecord], min_minutes: float) -> List[TimeRecord]:
    records = list(records)
    if min_minutes <= 0:
        return records
    min_ms = min_minutes * 60 * 1000
    return [record for record in records if record.duration_ms >= min_ms]


def records_for_type(records: Iterable[TimeRecord], type_id: int) -> List[TimeRecord]:
    return [record for record in records if record.type_id == type_id]


def resolve_timezone(tz):
    if isinstance(tz, str):
        try:
            return pytz.timezone(tz)
        except pytz.UnknownTimeZoneError as exc:
            raise ValueError(f"Unknown time zone '{tz}'") from exc
    return tz


def day_start_ms(timestamp_ms: int, tz="UTC") -> int:
    """Epoch milliseconds of local midnight for the day containing ``timestamp_ms``."""

    zone = resolve_timezone(tz)
    local = datetime.fromtimestamp(timestamp_ms / 1000, tz=pytz.utc).astimezone(zone)
    midnight = zone.localize(datetime(local.year, local.month, local.day))
    return int(round(midnight.timestamp() * 1000))


def group_records_by_day(records: Iterable[TimeRecord], tz="UTC") -> Dict[int, List[TimeRecord]]:
    """Bucket ``records`` by the local day of their start time, keyed by day start."""

    zone = resolve_timezone(tz)
    groups: Dict[int, List[TimeRecord]] = OrderedDict()
    for record in records:
        groups.setdefault(day_start_ms(record.start_ms, zone), []).append(record)
    return groups
