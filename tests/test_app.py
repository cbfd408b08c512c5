import io
import json
import zipfile

import pytest

import app as npconv_app
from converters.archive import StructuredBackup, write_structured_backup
from converters.habits import new_habit_store, read_habit_store


@pytest.fixture(autouse=True)
def configure_app(monkeypatch):
    for name in ('NPCONV_TIMEZONE', 'NPCONV_DEFAULT_POLICY', 'NPCONV_HISTORY_WINDOW_MS', 'NPCONV_MIN_DURATION_MINUTES'):
        monkeypatch.delenv(name, raising=False)
    npconv_app.app.config['TESTING'] = True
    yield


@pytest.fixture()
def client():
    return npconv_app.app.test_client()


def _flat_document():
    return {
        'subscriptions': [{'channelId': 'UC1', 'name': 'One'}],
        'localPlaylists': [
            {'playlist': {'name': 'Mix'}, 'videos': [{'videoId': 'abc', 'title': 'Abc'}]},
        ],
        'playlistBookmarks': [],
        'watchHistory': [{'videoId': 'abc', 'accessDate': 1700000000000}],
        'watchPositions': [],
    }


def _structured_zip():
    with StructuredBackup.create() as backup:
        backup.connection.execute(
            "INSERT INTO subscriptions (service_id, url, name, notification_mode) "
            "VALUES (0, 'https://www.youtube.com/channel/UC9', 'Nine', 0)"
        )
        return write_structured_backup(backup)


def test_to_structured_returns_zip_attachment(client):
    payload = json.dumps(_flat_document()).encode('utf-8')
    response = client.post(
        '/api/convert/to-structured',
        data={'flat': (io.BytesIO(payload), 'libretube.json')},
        content_type='multipart/form-data',
    )

    assert response.status_code == 200
    assert response.mimetype == 'application/zip'
    assert 'newpipe_converted' in response.headers['Content-Disposition']
    assert response.headers['X-Conversion-Warnings'] == '0'
    with zipfile.ZipFile(io.BytesIO(response.data)) as archive:
        assert 'newpipe.db' in archive.namelist()


def test_to_flat_merges_into_uploaded_document(client):
    existing = json.dumps({'subscriptions': [{'channelId': 'UC1', 'name': 'One'}]}).encode('utf-8')
    response = client.post(
        '/api/convert/to-flat',
        data={
            'structured': (io.BytesIO(_structured_zip()), 'newpipe.zip'),
            'flat': (io.BytesIO(existing), 'libretube.json'),
            'include_history': 'false',
        },
        content_type='multipart/form-data',
    )

    assert response.status_code == 200
    document = json.loads(response.data)
    assert [entry['channelId'] for entry in document['subscriptions']] == ['UC1', 'UC9']
    assert document['watchHistory'] == []


def test_missing_upload_is_a_bad_request(client):
    response = client.post('/api/convert/to-flat', data={}, content_type='multipart/form-data')
    assert response.status_code == 400
    assert response.get_json()['status'] == 'error'
    assert 'structured' in response.get_json()['message']


def test_corrupt_zip_is_a_bad_request(client):
    response = client.post(
        '/api/convert/to-flat',
        data={'structured': (io.BytesIO(b'not a zip'), 'broken.zip')},
        content_type='multipart/form-data',
    )
    assert response.status_code == 400


def test_habit_conversion_returns_updated_database(client):
    with new_habit_store() as store:
        store.connection.execute("INSERT INTO Habits (id, name, type, archived) VALUES (7, 'Practice', 0, 0)")
        habits_db = store.export()
    records = "recordType\t1\tGuitar\t🎸\t2\t0\t0\nrecord\t1\t1\t0\t600000\tscales\n".encode('utf-8')

    response = client.post(
        '/api/convert/habits',
        data={
            'records': (io.BytesIO(records), 'stt.backup'),
            'habits': (io.BytesIO(habits_db), 'uhabits.db'),
            'mappings': json.dumps([{'record_type_id': 1, 'habit_id': 7, 'min_duration_minutes': 1}]),
            'timezone': 'UTC',
        },
        content_type='multipart/form-data',
    )

    assert response.status_code == 200
    assert 'uhabits_with_stt.db' in response.headers['Content-Disposition']
    with read_habit_store(response.data) as updated:
        assert [(rep.habit_id, rep.timestamp) for rep in updated.repetitions] == [(7, 0)]


def test_habit_conversion_requires_mappings(client):
    response = client.post(
        '/api/convert/habits',
        data={'mappings': '[]'},
        content_type='multipart/form-data',
    )
    assert response.status_code == 400


def test_second_conversion_is_refused_while_one_runs(client):
    assert npconv_app._conversion_lock.acquire(blocking=False)
    try:
        response = client.post('/api/convert/to-flat', data={}, content_type='multipart/form-data')
    finally:
        npconv_app._conversion_lock.release()
    assert response.status_code == 409
