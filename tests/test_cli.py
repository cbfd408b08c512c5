import json
import zipfile

import pytest

from converters import cli
from converters.habits import new_habit_store, read_habit_store


@pytest.fixture(autouse=True)
def output_dir(tmp_path, monkeypatch):
    target = tmp_path / 'out'
    monkeypatch.setenv('NPCONV_OUTPUT_DIR', str(target))
    monkeypatch.delenv('NPCONV_TIMEZONE', raising=False)
    monkeypatch.delenv('NPCONV_DEFAULT_POLICY', raising=False)
    monkeypatch.setattr(cli, 'load_dotenv', lambda: None)
    return target


def _write_flat(path):
    path.write_text(json.dumps({
        'subscriptions': [{'channelId': 'UC1', 'name': 'One'}],
        'localPlaylists': [{'playlist': {'name': 'Mix'}, 'videos': [{'videoId': 'abc'}]}],
        'watchHistory': [{'videoId': 'abc', 'accessDate': 5}],
    }), encoding='utf-8')
    return path


def test_to_structured_then_back_to_flat(tmp_path, output_dir):
    flat = _write_flat(tmp_path / 'libretube.json')
    structured = tmp_path / 'newpipe.zip'

    assert cli.main(['to-structured', str(flat), '--output', str(structured)]) == 0
    with zipfile.ZipFile(structured) as archive:
        assert 'newpipe.db' in archive.namelist()

    assert cli.main(['to-flat', str(structured), '--no-history']) == 0
    [written] = list(output_dir.glob('libretube_converted-*.json'))
    document = json.loads(written.read_text(encoding='utf-8'))
    assert [entry['channelId'] for entry in document['subscriptions']] == ['UC1']
    assert document['watchHistory'] == []


def test_zip_without_database_fails_cleanly(tmp_path, capsys):
    broken = tmp_path / 'broken.zip'
    with zipfile.ZipFile(broken, 'w') as archive:
        archive.writestr('preferences.json', '{}')

    assert cli.main(['to-flat', str(broken)]) == 1
    assert 'Conversion failed' in capsys.readouterr().err


def test_habits_command_applies_mappings(tmp_path):
    with new_habit_store() as store:
        store.connection.execute("INSERT INTO Habits (id, name, type, archived) VALUES (7, 'Practice', 0, 0)")
        (tmp_path / 'uhabits.db').write_bytes(store.export())
    (tmp_path / 'stt.backup').write_text(
        "recordType\t1\tGuitar\t🎸\t2\t0\t0\nrecord\t1\t1\t0\t120000\t\n",
        encoding='utf-8',
    )
    output = tmp_path / 'result.db'

    code = cli.main([
        'habits', str(tmp_path / 'stt.backup'), str(tmp_path / 'uhabits.db'),
        '--map', '1:7:1', '--timezone', 'UTC', '--output', str(output),
    ])

    assert code == 0
    with read_habit_store(output) as store:
        assert [(rep.habit_id, rep.timestamp) for rep in store.repetitions] == [(7, 0)]


def test_parse_mapping_variants():
    mapping = cli.parse_mapping('3:9', 5)
    assert (mapping.record_type_id, mapping.habit_id, mapping.min_duration_minutes) == (3, 9, 5)
    assert mapping.copy_comments is False

    mapping = cli.parse_mapping('3:9:10:comments', 5)
    assert (mapping.min_duration_minutes, mapping.copy_comments) == (10.0, True)

    with pytest.raises(cli.argparse.ArgumentTypeError):
        cli.parse_mapping('3', 5)
    with pytest.raises(cli.argparse.ArgumentTypeError):
        cli.parse_mapping('x:9', 5)
