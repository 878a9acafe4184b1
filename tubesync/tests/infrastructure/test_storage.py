import json
import os
import stat

import pytest

from tubesync.infrastructure.storage import atomic_write_json, read_json


def test_atomic_write_creates_parent_dirs_and_round_trips(tmp_path):
    path = tmp_path / 'a' / 'b' / 'data.json'

    atomic_write_json(path, {'x': 1, 'name': 'Bjørk'})

    assert read_json(path) == {'x': 1, 'name': 'Bjørk'}


def test_atomic_write_replaces_existing_file_and_leaves_no_temp_files(tmp_path):
    path = tmp_path / 'data.json'
    path.write_text('{"old": true}')

    atomic_write_json(path, {'new': True})

    assert json.loads(path.read_text()) == {'new': True}
    assert os.listdir(tmp_path) == ['data.json']


def test_atomic_write_applies_mode(tmp_path):
    path = tmp_path / 'secret.json'

    atomic_write_json(path, {}, mode=0o600)

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_failed_serialization_keeps_previous_content(tmp_path):
    path = tmp_path / 'data.json'
    atomic_write_json(path, {'v': 1})

    with pytest.raises(TypeError):
        atomic_write_json(path, {'v': object()})

    assert read_json(path) == {'v': 1}
    assert os.listdir(tmp_path) == ['data.json']
