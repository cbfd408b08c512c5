"""Habit tracker database access and the time-record → habit check-in conversion."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from converters.archive import ArchiveError, Source, read_source
from converters.common import ConversionReport
from converters.time_records import (
    TimeRecord,
    TimeRecordExport,
    filter_records_by_duration,
    group_records_by_day,
    records_for_type,
    resolve_timezone,
)
from database import connect_memory, export_database, load_database, table_columns, table_exists, transaction
from settings import DEFAULT_MIN_DURATION_MINUTES

LOGGER = logging.getLogger(__name__)

CHECKED = 2
UNCHECKED = 0
BOOLEAN_HABIT = 0

HABIT_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS Habits (
        id integer primary key autoincrement,
        archived integer,
        color integer,
        description text,
        freq_den integer,
        freq_num integer,
        highlight integer,
        name text,
        position integer,
        reminder_hour integer,
        reminder_min integer,
        reminder_days integer not null default 127,
        type integer not null default 0,
        target_type integer not null default 0,
        target_value real not null default 0,
        unit text not null default "",
        question text,
        uuid text
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS Repetitions (
        id integer primary key autoincrement,
        habit integer not null references habits(id),
        timestamp integer not null,
        value integer not null,
        notes text
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_repetitions_habit_timestamp ON Repetitions(habit, timestamp)",
    "CREATE TABLE IF NOT EXISTS android_metadata (locale TEXT)",
]


@dataclass
class Habit:
    id: int
    name: str
    type: int = BOOLEAN_HABIT
    archived: bool = False
    question: Optional[str] = None
    description: Optional[str] = None

    @property
    def is_boolean(self) -> bool:
        return self.type == BOOLEAN_HABIT


@dataclass
class Repetition:
    id: Optional[int]
    habit_id: int
    timestamp: int
    value: int
    notes: str = ""


@dataclass
class HabitStore:
    """A loaded habit database plus the habits and repetitions read from it."""

    connection: sqlite3.Connection
    habits: Dict[int, Habit] = field(default_factory=dict)
    repetitions: List[Repetition] = field(default_factory=list)
    has_notes: bool = True

    def export(self) -> bytes:
        return export_database(self.connection)

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "HabitStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


FALSE_VALUES = {"", "0", "false", "no", "off"}


def _as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSE_VALUES
    return bool(value)


@dataclass
class HabitMapping:
    record_type_id: int
    habit_id: int
    min_duration_minutes: float = DEFAULT_MIN_DURATION_MINUTES
    copy_comments: bool = False

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        default_min_duration: float = DEFAULT_MIN_DURATION_MINUTES,
    ) -> "HabitMapping":
        """Build a mapping from snake_case keys or the camelCase keys older exports used."""

        if not isinstance(data, Mapping):
            raise ValueError(f"Mapping must be an object, got {data!r}")

        def pick(*keys: str) -> Any:
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        record_type_id = pick("record_type_id", "sttTypeId")
        habit_id = pick("habit_id", "uhabitsHabitId")
        if record_type_id is None or habit_id is None:
            raise ValueError(f"Mapping needs a record type and a habit: {dict(data)!r}")
        minutes = pick("min_duration_minutes", "minDuration")
        return cls(
            record_type_id=int(record_type_id),
            habit_id=int(habit_id),
            min_duration_minutes=float(default_min_duration if minutes is None else minutes),
            copy_comments=_as_flag(pick("copy_comments", "copySttComments")),
        )


@dataclass
class HabitConversionResult:
    added: int = 0
    skipped: int = 0
    rows: List[Repetition] = field(default_factory=list)


def create_habit_schema(conn: sqlite3.Connection) -> None:
    """Create an empty habit database layout on ``conn``."""

    with transaction(conn):
        for statement in HABIT_SCHEMA_STATEMENTS:
            conn.execute(statement)
        if conn.execute("SELECT COUNT(*) FROM android_metadata").fetchone()[0] == 0:
            conn.execute("INSERT INTO android_metadata (locale) VALUES ('en_US')")
    LOGGER.info("Created habit database schema")


def new_habit_store() -> HabitStore:
    conn = connect_memory()
    create_habit_schema(conn)
    return HabitStore(connection=conn)


def read_habit_store(source: Source) -> HabitStore:
    """Load a habit database and read every habit and repetition it holds."""

    try:
        conn = load_database(read_source(source))
    except sqlite3.DatabaseError as exc:
        raise ArchiveError(f"The habit backup is not a readable SQLite database: {exc}") from exc

    for table in ("Habits", "Repetitions"):
        if not table_exists(conn, table):
            conn.close()
            raise ArchiveError(f"Invalid habit backup: missing {table} table")

    store = HabitStore(connection=conn, has_notes="notes" in table_columns(conn, "Repetitions"))
    for row in conn.execute("SELECT * FROM Habits ORDER BY id").fetchall():
        keys = row.keys()
        store.habits[int(row["id"])] = Habit(
            id=int(row["id"]),
            name=row["name"] or "",
            type=int(row["type"] or 0) if "type" in keys else BOOLEAN_HABIT,
            archived=bool(row["archived"]) if "archived" in keys else False,
            question=row["question"] if "question" in keys else None,
            description=row["description"] if "description" in keys else None,
        )

    notes_column = ", notes" if store.has_notes else ""
    for row in conn.execute(f"SELECT id, habit, timestamp, value{notes_column} FROM Repetitions ORDER BY id").fetchall():
        store.repetitions.append(
            Repetition(
                id=row["id"],
                habit_id=int(row["habit"]),
                timestamp=int(row["timestamp"]),
                value=int(row["value"] or 0),
                notes=(row["notes"] or "") if store.has_notes else "",
            )
        )

    LOGGER.info(
        "Loaded %d habits and %d repetitions from the habit backup",
        len(store.habits),
        len(store.repetitions),
    )
    return store


def _day_notes(records: Iterable[TimeRecord]) -> str:
    comments: List[str] = []
    for record in records:
        comment = (record.comment or "").strip()
        if comment and comment not in comments:
            comments.append(comment)
    return "\n".join(comments)


def convert_time_records_to_habits(
    export: TimeRecordExport,
    store: HabitStore,
    mappings: Iterable[HabitMapping],
    *,
    tz="UTC",
    report: Optional[ConversionReport] = None,
) -> HabitConversionResult:
    """Check off each mapped habit on every day with a long enough record.

    A day that already has any repetition row for the habit is left alone,
    so running the conversion again with the same inputs adds nothing.
    """

    report = report if report is not None else ConversionReport()
    zone = resolve_timezone(tz)
    result = HabitConversionResult()
    taken: Set[Tuple[int, int]] = {(rep.habit_id, rep.timestamp) for rep in store.repetitions}
    pending: List[Repetition] = []

    for mapping in mappings:
        record_type = export.record_types.get(mapping.record_type_id)
        habit = store.habits.get(mapping.habit_id)
        if record_type is None:
            report.warn(f"Record type {mapping.record_type_id} not found in the time-record export", LOGGER)
            continue
        if habit is None:
            report.warn(f"Habit {mapping.habit_id} not found in the habit backup", LOGGER)
            continue
        if not habit.is_boolean:
            report.warn(f'Habit "{habit.name}" ({habit.id}) is not a yes/no habit; mapping skipped', LOGGER)
            continue
        if habit.archived:
            report.note(f'Habit "{habit.name}" ({habit.id}) is archived; adding check-ins anyway', LOGGER)

        records = filter_records_by_duration(
            records_for_type(export.records, mapping.record_type_id),
            mapping.min_duration_minutes,
        )
        days = group_records_by_day(records, zone)
        report.note(
            f'Mapping "{record_type.emoji} {record_type.name}" -> "{habit.name}": '
            f"{len(records)} records over {len(days)} days",
            LOGGER,
        )

        added = skipped = 0
        for day_start, day_records in days.items():
            key = (habit.id, day_start)
            if key in taken:
                skipped += 1
                continue
            taken.add(key)
            pending.append(
                Repetition(
                    id=None,
                    habit_id=habit.id,
                    timestamp=day_start,
                    value=CHECKED,
                    notes=_day_notes(day_records) if mapping.copy_comments else "",
                )
            )
            added += 1
        result.skipped += skipped
        report.note(f"  added {added} check-ins, skipped {skipped} existing days", LOGGER)

    pending.sort(key=lambda rep: (rep.timestamp, rep.habit_id))
    if pending:
        conn = store.connection
        with transaction(conn):
            for rep in pending:
                if store.has_notes:
                    cursor = conn.execute(
                        "INSERT INTO Repetitions (habit, timestamp, value, notes) VALUES (?, ?, ?, ?)",
                        (rep.habit_id, rep.timestamp, rep.value, rep.notes or None),
                    )
                else:
                    cursor = conn.execute(
                        "INSERT INTO Repetitions (habit, timestamp, value) VALUES (?, ?, ?)",
                        (rep.habit_id, rep.timestamp, rep.value),
                    )
                rep.id = cursor.lastrowid
        store.repetitions.extend(pending)

    result.added = len(pending)
    result.rows = pending
    report.bump("repetitions_added", result.added)
    report.bump("repetitions_skipped", result.skipped)
    report.note(f"Total new check-ins added: {result.added}", LOGGER)
    return result
