import pytest
import requests

from torrust_index import upload_cli


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self.ok = status_code < 400
        self.reason = 'Bad Request' if status_code >= 400 else 'OK'
        self._payload = payload

    def json(self):
        return self._payload


@pytest.fixture
def torrent_file(tmp_path, make_torrent):
    path = tmp_path / 'Big Buck Bunny.torrent'
    path.write_bytes(make_torrent())
    return str(path)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(upload_cli.time, 'sleep', lambda seconds: None)


def test_upload_posts_multipart_form(monkeypatch, torrent_file):
    calls = []

    def fake_post(url, data, files, headers, timeout):
        calls.append((url, data, files, headers))
        return FakeResponse(200, {'data': {'torrent_id': 12}})

    monkeypatch.setattr(upload_cli.requests, 'post', fake_post)

    torrent_id = upload_cli.upload_torrent('http://index.test/', 'tok', torrent_file, 'movie')

    assert torrent_id == 12
    url, data, files, headers = calls[0]
    assert url == 'http://index.test/torrent/upload'
    assert data == {'title': 'Big Buck Bunny', 'description': '', 'category': 'movie'}
    assert files['torrent'][2] == 'application/x-bittorrent'
    assert headers['Authorization'] == 'Bearer tok'


def test_upload_retries_transport_errors(monkeypatch, torrent_file):
    attempts = []

    def flaky_post(url, **kwargs):
        attempts.append(url)
        if len(attempts) < 3:
            raise requests.exceptions.ConnectionError('refused')
        return FakeResponse(200, {'data': {'torrent_id': 1}})

    monkeypatch.setattr(upload_cli.requests, 'post', flaky_post)

    assert upload_cli.upload_torrent('http://index.test', 'tok', torrent_file, 'movie') == 1
    assert len(attempts) == 3


def test_upload_gives_up_after_max_retries(monkeypatch, torrent_file):
    def failing_post(url, **kwargs):
        raise requests.exceptions.ConnectionError('refused')

    monkeypatch.setattr(upload_cli.requests, 'post', failing_post)
    assert upload_cli.upload_torrent('http://index.test', 'tok', torrent_file, 'movie') is None


def test_rejected_upload_is_not_retried(monkeypatch, torrent_file):
    attempts = []

    def rejecting_post(url, **kwargs):
        attempts.append(url)
        return FakeResponse(400, {'error': 'selected category does not exist'})

    monkeypatch.setattr(upload_cli.requests, 'post', rejecting_post)

    assert upload_cli.upload_torrent('http://index.test', 'tok', torrent_file, 'nope') is None
    assert len(attempts) == 1


def test_invalid_torrent_is_not_sent(monkeypatch, tmp_path):
    path = tmp_path / 'broken.torrent'
    path.write_bytes(b'garbage')

    def unexpected_post(*args, **kwargs):
        raise AssertionError('should not be called')

    monkeypatch.setattr(upload_cli.requests, 'post', unexpected_post)
    assert upload_cli.upload_torrent('http://index.test', 'tok', str(path), 'movie') is None


def test_validate_torrent_file(tmp_path, torrent_file):
    other = tmp_path / 'notes.txt'
    other.write_text('hi')

    assert upload_cli.validate_torrent_file(torrent_file)
    assert not upload_cli.validate_torrent_file(str(other))
    assert not upload_cli.validate_torrent_file(str(tmp_path / 'missing.torrent'))


def test_main_reports_failures(monkeypatch, torrent_file, tmp_path):
    monkeypatch.setattr(upload_cli, 'upload_torrent', lambda *args, **kwargs: 5)

    assert upload_cli.main([torrent_file, '--token', 't', '--category', 'movie']) == 0
    assert upload_cli.main([str(tmp_path / 'missing.torrent'), '--token', 't',
                            '--category', 'movie']) == 1
