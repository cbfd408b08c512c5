"""Command line front-end for the backup converters."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from converters.archive import (
    ArchiveError,
    read_flat_backup,
    read_structured_backup,
    write_flat_backup,
    write_structured_backup,
)
from converters.common import ConversionError, ConversionReport, PlaylistPolicy
from converters.habits import HabitMapping, convert_time_records_to_habits, read_habit_store
from converters.time_records import read_time_record_export
from converters.to_flat import convert_to_flat
from converters.to_structured import convert_to_structured
from data_paths import ensure_output_root, timestamped_filename
from settings import Settings, load_settings

POLICY_CHOICES = [policy.value for policy in PlaylistPolicy]


def parse_mapping(text: str, default_min_duration: float) -> HabitMapping:
    """Parse ``TYPE:HABIT[:MINUTES[:comments]]``."""

    parts = text.split(":")
    if len(parts) < 2 or len(parts) > 4:
        raise argparse.ArgumentTypeError(f"Invalid mapping '{text}', expected TYPE:HABIT[:MINUTES[:comments]]")
    try:
        record_type_id = int(parts[0])
        habit_id = int(parts[1])
        minutes = float(parts[2]) if len(parts) > 2 and parts[2] else default_min_duration
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid mapping '{text}': {exc}") from exc
    copy_comments = len(parts) == 4 and parts[3].lower() in {"comments", "c", "yes", "true", "1"}
    return HabitMapping(record_type_id, habit_id, minutes, copy_comments)


def _output_path(requested: Optional[Path], settings: Settings, filename: str) -> Path:
    if requested is not None:
        requested = requested.expanduser()
        requested.parent.mkdir(parents=True, exist_ok=True)
        return requested
    return ensure_output_root(settings.output_dir) / timestamped_filename(filename)


def _print_report(report: ConversionReport) -> None:
    for message in report.notes:
        print(f"  {message}")
    if report.warnings:
        print(f"{len(report.warnings)} warning(s) during conversion.")


def _run_to_flat(args: argparse.Namespace, settings: Settings, report: ConversionReport) -> Path:
    existing = read_flat_backup(args.merge_into) if args.merge_into else None
    with read_structured_backup(args.source) as backup:
        document = convert_to_flat(
            backup,
            existing,
            policy=args.policy or settings.default_policy,
            include_history=not args.no_history,
            report=report,
        )
    output = _output_path(args.output, settings, "libretube_converted.json")
    output.write_bytes(write_flat_backup(document))
    return output


def _run_to_structured(args: argparse.Namespace, settings: Settings, report: ConversionReport) -> Path:
    document = read_flat_backup(args.source)
    existing = read_structured_backup(args.merge_into) if args.merge_into else None
    try:
        backup = convert_to_structured(
            document,
            existing,
            policy=args.policy or settings.default_policy,
            include_history=not args.no_history,
            history_window_ms=settings.history_window_ms,
            report=report,
        )
    except ConversionError:
        if existing is not None:
            existing.close()
        raise
    with backup:
        payload = write_structured_backup(backup)
    output = _output_path(args.output, settings, "newpipe_converted.zip")
    output.write_bytes(payload)
    return output


def _run_habits(args: argparse.Namespace, settings: Settings, report: ConversionReport) -> Path:
    mappings = [parse_mapping(text, settings.min_duration_minutes) for text in args.map]
    export = read_time_record_export(args.records, report)
    with read_habit_store(args.habits) as store:
        convert_time_records_to_habits(
            export,
            store,
            mappings,
            tz=args.timezone or settings.tzinfo(),
            report=report,
        )
        payload = store.export()
    output = _output_path(args.output, settings, "uhabits_with_stt.db")
    output.write_bytes(payload)
    return output


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="npconv",
        description="Convert video-app and time-tracker backups between formats.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    to_flat = subparsers.add_parser("to-flat", help="Structured (.zip) backup to flat (.json) backup")
    to_flat.add_argument("source", type=Path, help="Structured backup zip to read")
    to_flat.add_argument("--merge-into", type=Path, default=None, help="Existing flat backup to merge into")
    to_flat.set_defaults(handler=_run_to_flat)

    to_structured = subparsers.add_parser("to-structured", help="Flat (.json) backup to structured (.zip) backup")
    to_structured.add_argument("source", type=Path, help="Flat backup JSON to read")
    to_structured.add_argument(
        "--merge-into", type=Path, default=None, help="Existing structured backup to merge into"
    )
    to_structured.set_defaults(handler=_run_to_structured)

    for sub in (to_flat, to_structured):
        sub.add_argument("--policy", choices=POLICY_CHOICES, default=None, help="Playlist conflict policy")
        sub.add_argument("--no-history", action="store_true", help="Skip watch history and positions")
        sub.add_argument("--output", type=Path, default=None, help="Where to write the converted file")

    habits = subparsers.add_parser("habits", help="Time-tracker records to habit check-ins")
    habits.add_argument("records", type=Path, help="Time-tracker .backup export")
    habits.add_argument("habits", type=Path, help="Habit tracker database")
    habits.add_argument(
        "--map",
        action="append",
        required=True,
        metavar="TYPE:HABIT[:MINUTES[:comments]]",
        help="Map a record type id to a habit id (repeatable)",
    )
    habits.add_argument("--timezone", default=None, help="Time zone whose midnight starts a day")
    habits.add_argument("--output", type=Path, default=None, help="Where to write the updated database")
    habits.set_defaults(handler=_run_habits)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point used by ``convert.py`` and the ``npconv`` script."""

    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    report = ConversionReport()

    try:
        settings = load_settings()
        output = args.handler(args, settings, report)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except (ArchiveError, ConversionError, ValueError, OSError) as exc:
        _print_report(report)
        print(f"Conversion failed: {exc}", file=sys.stderr)
        return 1

    _print_report(report)
    print(f"Wrote {output}")
    return 0
