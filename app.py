import io
import json
import socket
import sys
import traceback
from functools import wraps
from threading import Lock

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_file
from werkzeug.utils import secure_filename

from converters.archive import (
    ArchiveError,
    read_flat_backup,
    read_structured_backup,
    write_flat_backup,
    write_structured_backup,
)
from converters.common import ConversionError, ConversionReport
from converters.habits import HabitMapping, convert_time_records_to_habits, read_habit_store
from converters.time_records import read_time_record_export
from converters.to_flat import convert_to_flat
from converters.to_structured import convert_to_structured
from data_paths import timestamped_filename
from settings import load_settings

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
PORT = 5002

app = Flask(__name__)
app.config['JSON_SORT_KEYS'] = False

# One conversion at a time; a second request while one runs is refused
_conversion_lock = Lock()

FALSE_VALUES = {'0', 'false', 'no', 'off'}


def single_conversion(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not _conversion_lock.acquire(blocking=False):
            return jsonify({"status": "error", "message": "Another conversion is already running."}), 409
        try:
            return view(*args, **kwargs)
        finally:
            _conversion_lock.release()
    return wrapper


def _uploaded(field_name, required=True):
    file = request.files.get(field_name)
    if file is None or not file.filename:
        if required:
            raise ValueError(f"Missing required file '{field_name}'.")
        return None
    app.logger.info("Received %s upload: %s", field_name, secure_filename(file.filename))
    file.stream.seek(0)
    return file.stream.read()


def _include_history():
    value = request.form.get('include_history')
    if value is None:
        return True
    return value.strip().lower() not in FALSE_VALUES


def _attachment(payload, filename, mimetype, report):
    response = send_file(
        io.BytesIO(payload),
        mimetype=mimetype,
        as_attachment=True,
        download_name=filename,
    )
    response.headers['X-Conversion-Warnings'] = str(len(report.warnings))
    return response


def _error_response(exc, report, label):
    if isinstance(exc, (ArchiveError, ValueError)):
        app.logger.error("%s rejected: %s", label, exc)
        return jsonify({"status": "error", "message": str(exc), "log": report.notes}), 400
    app.logger.error(f"Error during {label}: {exc}")
    app.logger.error(traceback.format_exc())
    message = str(exc) if isinstance(exc, ConversionError) else f"{label} failed."
    return jsonify({"status": "error", "message": message, "log": report.notes}), 500


@app.route('/api/convert/to-flat', methods=['POST'])
@single_conversion
def convert_structured_to_flat():
    """Convert an uploaded structured backup zip into a flat JSON backup."""
    report = ConversionReport()
    try:
        settings = load_settings()
        structured = _uploaded('structured')
        flat = _uploaded('flat', required=False)
        existing = read_flat_backup(flat) if flat is not None else None
        with read_structured_backup(structured) as backup:
            document = convert_to_flat(
                backup,
                existing,
                policy=request.form.get('policy') or settings.default_policy,
                include_history=_include_history(),
                report=report,
            )
        payload = write_flat_backup(document)
    except Exception as exc:
        return _error_response(exc, report, "Conversion to flat backup")

    return _attachment(
        payload,
        timestamped_filename('libretube_converted.json'),
        'application/json',
        report,
    )


@app.route('/api/convert/to-structured', methods=['POST'])
@single_conversion
def convert_flat_to_structured():
    """Convert an uploaded flat JSON backup into a structured backup zip."""
    report = ConversionReport()
    existing = None
    try:
        settings = load_settings()
        document = read_flat_backup(_uploaded('flat'))
        structured = _uploaded('structured', required=False)
        existing = read_structured_backup(structured) if structured is not None else None
        backup = convert_to_structured(
            document,
            existing,
            policy=request.form.get('policy') or settings.default_policy,
            include_history=_include_history(),
            history_window_ms=settings.history_window_ms,
            report=report,
        )
        with backup:
            payload = write_structured_backup(backup)
    except Exception as exc:
        if existing is not None:
            existing.close()
        return _error_response(exc, report, "Conversion to structured backup")

    return _attachment(
        payload,
        timestamped_filename('newpipe_converted.zip'),
        'application/zip',
        report,
    )


@app.route('/api/convert/habits', methods=['POST'])
@single_conversion
def convert_records_to_habits():
    """Add habit check-ins derived from a time-tracker export to a habit database."""
    report = ConversionReport()
    try:
        settings = load_settings()
        raw_mappings = json.loads(request.form.get('mappings') or '[]')
        if not isinstance(raw_mappings, list) or not raw_mappings:
            raise ValueError("At least one mapping is required.")
        mappings = [
            HabitMapping.from_dict(item, default_min_duration=settings.min_duration_minutes)
            for item in raw_mappings
        ]
        export = read_time_record_export(_uploaded('records'), report)
        with read_habit_store(_uploaded('habits')) as store:
            result = convert_time_records_to_habits(
                export,
                store,
                mappings,
                tz=request.form.get('timezone') or settings.tzinfo(),
                report=report,
            )
            payload = store.export()
    except Exception as exc:
        return _error_response(exc, report, "Habit conversion")

    app.logger.info("Habit conversion added %d check-ins", result.added)
    return _attachment(payload, 'uhabits_with_stt.db', 'application/x-sqlite3', report)


def is_port_in_use(port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(('127.0.0.1', port)) == 0


def main():
    if is_port_in_use(PORT):
        print(f"Port {PORT} is already in use.")
        sys.exit(1)
    print(f"Port {PORT} is free. Starting conversion server.")
    app.run(host='127.0.0.1', port=PORT, debug=False)


if __name__ == '__main__':
    main()
