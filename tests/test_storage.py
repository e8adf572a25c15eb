import os

import pytest

from torrust_index import storage
from torrust_index.errors import InternalServerError, NotFound


def test_save_creates_directory_and_load_reads_back(tmp_path):
    upload_dir = str(tmp_path / 'nested' / 'uploads')

    path = storage.save(upload_dir, 5, b'd4:infodee')

    assert path == os.path.join(upload_dir, '5.torrent')
    assert storage.load(upload_dir, 5) == b'd4:infodee'
    # no temporary files left behind
    assert os.listdir(upload_dir) == ['5.torrent']


def test_save_replaces_existing_file(tmp_path):
    storage.save(str(tmp_path), 1, b'first')
    storage.save(str(tmp_path), 1, b'second')
    assert storage.load(str(tmp_path), 1) == b'second'


def test_load_missing_raises_not_found(tmp_path):
    with pytest.raises(NotFound):
        storage.load(str(tmp_path), 42)


def test_save_failure_is_an_internal_error(tmp_path):
    blocker = tmp_path / 'file'
    blocker.write_bytes(b'')
    with pytest.raises(InternalServerError):
        storage.save(str(blocker), 1, b'data')


def test_path_only_uses_the_integer_id(tmp_path):
    assert storage.torrent_path(str(tmp_path), '7') == os.path.join(str(tmp_path), '7.torrent')
    with pytest.raises(ValueError):
        storage.torrent_path(str(tmp_path), '../../etc/passwd')


def test_remove(tmp_path):
    storage.save(str(tmp_path), 3, b'x')
    assert storage.remove(str(tmp_path), 3) is True
    assert storage.remove(str(tmp_path), 3) is False
    with pytest.raises(NotFound):
        storage.load(str(tmp_path), 3)
