import sqlite3

import pytest

from converters.archive import ArchiveError
from converters.common import ConversionReport
from converters.habits import (
    CHECKED,
    UNCHECKED,
    HabitMapping,
    convert_time_records_to_habits,
    new_habit_store,
    read_habit_store,
)
from converters.time_records import RecordType, TimeRecord, TimeRecordExport
from database import export_database


def _habit_db_bytes(repetitions=()):
    with new_habit_store() as store:
        conn = store.connection
        conn.execute("INSERT INTO Habits (id, name, type, archived) VALUES (7, 'Practice', 0, 0)")
        conn.execute("INSERT INTO Habits (id, name, type, archived) VALUES (8, 'Pages read', 1, 0)")
        conn.execute("INSERT INTO Habits (id, name, type, archived) VALUES (9, 'Old habit', 0, 1)")
        for habit_id, timestamp, value in repetitions:
            conn.execute(
                "INSERT INTO Repetitions (habit, timestamp, value) VALUES (?, ?, ?)",
                (habit_id, timestamp, value),
            )
        return store.export()


def _export(records):
    return TimeRecordExport(
        record_types={1: RecordType(1, 'Guitar', '🎸'), 2: RecordType(2, 'Reading', '📚')},
        records=list(records),
    )


def _repetitions(store):
    return [tuple(row) for row in store.connection.execute(
        "SELECT habit, timestamp, value FROM Repetitions ORDER BY timestamp, habit"
    ).fetchall()]


def test_records_on_two_days_become_two_check_ins():
    export = _export([
        TimeRecord(1, 1, 0, 120000),
        TimeRecord(2, 1, 90000000, 90600000),
    ])
    with read_habit_store(_habit_db_bytes()) as store:
        result = convert_time_records_to_habits(export, store, [HabitMapping(1, 7, 1)], tz='UTC')

        assert result.added == 2
        assert [row.timestamp for row in result.rows] == [0, 86400000]
        assert all(row.value == CHECKED for row in result.rows)
        assert _repetitions(store) == [(7, 0, CHECKED), (7, 86400000, CHECKED)]


def test_second_run_adds_nothing():
    export = _export([
        TimeRecord(1, 1, 0, 120000),
        TimeRecord(2, 1, 90000000, 90600000),
    ])
    mappings = [HabitMapping(1, 7, 1)]
    with read_habit_store(_habit_db_bytes()) as store:
        convert_time_records_to_habits(export, store, mappings)
        again = convert_time_records_to_habits(export, store, mappings)
        payload = store.export()

    assert again.added == 0
    assert again.skipped == 2

    with read_habit_store(payload) as reloaded:
        third = convert_time_records_to_habits(export, reloaded, mappings)
        assert third.added == 0
        assert len(reloaded.repetitions) == 2


def test_short_records_are_filtered_out():
    export = _export([TimeRecord(1, 1, 0, 59000)])
    with read_habit_store(_habit_db_bytes()) as store:
        result = convert_time_records_to_habits(export, store, [HabitMapping(1, 7, 1)])
        assert result.added == 0


def test_existing_unchecked_day_is_not_overwritten():
    export = _export([TimeRecord(1, 1, 0, 600000)])
    with read_habit_store(_habit_db_bytes([(7, 0, UNCHECKED)])) as store:
        result = convert_time_records_to_habits(export, store, [HabitMapping(1, 7, 1)])
        assert result.added == 0
        assert result.skipped == 1
        assert _repetitions(store) == [(7, 0, UNCHECKED)]


def test_comments_are_copied_only_when_requested():
    export = _export([
        TimeRecord(1, 1, 1000, 400000, 'scales'),
        TimeRecord(2, 1, 500000, 900000, 'chords'),
        TimeRecord(3, 1, 1000000, 1400000, 'scales'),
        TimeRecord(4, 2, 0, 600000, 'novel'),
    ])
    mappings = [HabitMapping(1, 7, 1, copy_comments=True), HabitMapping(2, 9, 1)]
    report = ConversionReport()
    with read_habit_store(_habit_db_bytes()) as store:
        result = convert_time_records_to_habits(export, store, mappings, report=report)
        notes = dict(store.connection.execute("SELECT habit, notes FROM Repetitions").fetchall())

    assert result.added == 2
    assert [(row.habit_id, row.timestamp) for row in result.rows] == [(7, 0), (9, 0)]
    assert notes == {7: 'scales\nchords', 9: None}
    assert any('archived' in note for note in report.notes)


def test_invalid_mappings_are_reported_and_skipped():
    export = _export([TimeRecord(1, 1, 0, 600000)])
    mappings = [HabitMapping(5, 7, 1), HabitMapping(1, 42, 1), HabitMapping(1, 8, 1)]
    report = ConversionReport()
    with read_habit_store(_habit_db_bytes()) as store:
        result = convert_time_records_to_habits(export, store, mappings, report=report)

    assert result.added == 0
    assert len(report.warnings) == 3


def test_day_boundary_follows_time_zone():
    # 03:00 UTC on Jan 2nd is still Jan 1st in New York
    export = _export([TimeRecord(1, 1, 97200000, 97800000)])
    with read_habit_store(_habit_db_bytes()) as store:
        result = convert_time_records_to_habits(
            export, store, [HabitMapping(1, 7, 1)], tz='America/New_York'
        )
    assert [row.timestamp for row in result.rows] == [18000000]


def test_mapping_from_dict_accepts_both_spellings():
    snake = HabitMapping.from_dict({'record_type_id': '1', 'habit_id': 7, 'min_duration_minutes': 10})
    camel = HabitMapping.from_dict({'sttTypeId': 1, 'uhabitsHabitId': '7', 'copySttComments': True})

    assert (snake.record_type_id, snake.habit_id, snake.min_duration_minutes) == (1, 7, 10)
    assert snake.copy_comments is False
    assert (camel.record_type_id, camel.habit_id, camel.copy_comments) == (1, 7, True)

    with pytest.raises(ValueError):
        HabitMapping.from_dict({'habit_id': 7})


def test_read_habit_store_requires_habit_tables():
    conn = sqlite3.connect(':memory:')
    conn.execute("CREATE TABLE Other (id INTEGER)")
    conn.commit()
    payload = export_database(conn)
    conn.close()

    with pytest.raises(ArchiveError, match='Habits'):
        read_habit_store(payload)


def test_read_habit_store_tolerates_missing_notes_column():
    conn = sqlite3.connect(':memory:')
    conn.execute("CREATE TABLE Habits (id INTEGER PRIMARY KEY, name TEXT, type INTEGER, archived INTEGER)")
    conn.execute("CREATE TABLE Repetitions (id INTEGER PRIMARY KEY, habit INTEGER, timestamp INTEGER, value INTEGER)")
    conn.execute("INSERT INTO Habits VALUES (7, 'Practice', 0, 0)")
    conn.commit()
    payload = export_database(conn)
    conn.close()

    export = _export([TimeRecord(1, 1, 0, 600000, 'ignored')])
    with read_habit_store(payload) as store:
        assert store.has_notes is False
        result = convert_time_records_to_habits(export, store, [HabitMapping(1, 7, 1, True)])
        assert result.added == 1


@pytest.mark.parametrize('raw, expected', [
    ('false', False), ('No', False), ('0', False), ('', False),
    ('true', True), ('yes', True), (1, True), (0, False),
])
def test_mapping_comment_flag_parses_strings(raw, expected):
    mapping = HabitMapping.from_dict({'record_type_id': 1, 'habit_id': 7, 'copy_comments': raw})
    assert mapping.copy_comments is expected
