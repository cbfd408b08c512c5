import io
import json
import zipfile

import pytest

from converters.archive import (
    DEFAULT_PREFERENCES,
    ArchiveError,
    StructuredBackup,
    empty_flat_backup,
    read_flat_backup,
    read_structured_backup,
    write_flat_backup,
    write_structured_backup,
)


def _zip_bytes(files):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        for name, payload in files.items():
            archive.writestr(name, payload)
    return buffer.getvalue()


def test_new_backup_gets_default_preferences():
    with StructuredBackup.create() as backup:
        backup.connection.execute(
            "INSERT INTO subscriptions (service_id, url, name, notification_mode) VALUES (0, 'https://www.youtube.com/channel/UC1', 'One', 0)"
        )
        payload = write_structured_backup(backup)

    with zipfile.ZipFile(io.BytesIO(payload)) as archive:
        names = set(archive.namelist())
        preferences = json.loads(archive.read('preferences.json'))
    assert names == {'newpipe.db', 'preferences.json'}
    assert preferences == DEFAULT_PREFERENCES

    with read_structured_backup(payload) as reloaded:
        rows = reloaded.connection.execute("SELECT name FROM subscriptions").fetchall()
        assert [row['name'] for row in rows] == ['One']


def test_preferences_and_settings_pass_through(tmp_path):
    with StructuredBackup.create() as backup:
        db_payload = write_structured_backup(backup)
    with zipfile.ZipFile(io.BytesIO(db_payload)) as archive:
        db_bytes = archive.read('newpipe.db')

    source = tmp_path / 'backup.zip'
    source.write_bytes(_zip_bytes({
        'newpipe.db': db_bytes,
        'preferences.json': '{"theme": "LIGHT"}',
        'newpipe.settings': b'\x00\x01settings',
    }))

    with read_structured_backup(source) as backup:
        assert backup.preferences == '{"theme": "LIGHT"}'
        assert backup.settings_blob == b'\x00\x01settings'
        payload = write_structured_backup(backup)

    with zipfile.ZipFile(io.BytesIO(payload)) as archive:
        assert archive.read('preferences.json') == b'{"theme": "LIGHT"}'
        assert archive.read('newpipe.settings') == b'\x00\x01settings'


def test_rejects_non_zip_input():
    with pytest.raises(ArchiveError):
        read_structured_backup(b'definitely not a zip file')


def test_rejects_zip_without_database():
    with pytest.raises(ArchiveError, match='missing newpipe.db'):
        read_structured_backup(_zip_bytes({'preferences.json': '{}'}))


def test_rejects_database_that_is_not_sqlite():
    with pytest.raises(ArchiveError):
        read_structured_backup(_zip_bytes({'newpipe.db': b'x' * 4096}))


def test_flat_backup_read_and_write():
    document = empty_flat_backup()
    document['subscriptions'].append({'name': 'Ünïcode', 'url': 'https://www.youtube.com/channel/UC1'})

    payload = write_flat_backup(document)
    assert b'\n  "watchHistory"' in payload
    assert read_flat_backup(io.BytesIO(payload)) == document


def test_flat_backup_must_be_a_json_object():
    with pytest.raises(ArchiveError):
        read_flat_backup(b'{not json')
    with pytest.raises(ArchiveError):
        read_flat_backup(b'[1, 2, 3]')
