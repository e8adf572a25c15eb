import io

import pytest

from torrust_index.bencoding import encode
from torrust_index.config import (Configuration, DatabaseSettings, Settings, StorageSettings,
                                  TrackerSettings)
from torrust_index.database import Database
from torrust_index.errors import TrackerUnavailable
from torrust_index.server import create_app
from torrust_index.tracker import TorrentStats

SITE_TRACKER = 'udp://tracker.example.org:6969'
CATEGORIES = ('movie', 'music', 'app')


class FakeTracker:
    """Stands in for TrackerService; records calls and can be switched off."""

    def __init__(self):
        self.available = True
        self.whitelisted = []
        self.swarms = {}

    def whitelist_info_hash(self, info_hash):
        if not self.available:
            raise TrackerUnavailable()
        self.whitelisted.append(info_hash)

    def get_torrent_info(self, info_hash):
        if not self.available:
            raise TrackerUnavailable()
        return self.swarms.get(info_hash, TorrentStats())

    def stats(self, info_hash):
        try:
            return self.get_torrent_info(info_hash)
        except TrackerUnavailable:
            return TorrentStats()

    def get_personal_announce_url(self, username):
        if not self.available:
            raise TrackerUnavailable()
        return f"{SITE_TRACKER}/key-{username}"


def build_torrent(name='bunny.mkv', length=12345, piece_length=16384, pieces=b'\x01' * 20,
                  announce='http://other.example.org/announce', announce_list=None, files=None):
    info = {'name': name, 'piece length': piece_length, 'pieces': pieces}
    if files is not None:
        info['files'] = files
    else:
        info['length'] = length
    torrent = {'info': info}
    if announce is not None:
        torrent['announce'] = announce
    if announce_list is not None:
        torrent['announce-list'] = announce_list
    return encode(torrent)


@pytest.fixture
def make_torrent():
    return build_torrent


@pytest.fixture
def settings(tmp_path):
    return Settings(
        tracker=TrackerSettings(url=SITE_TRACKER, api_url='http://tracker-api.example.org',
                                token='secret'),
        database=DatabaseSettings(path=str(tmp_path / 'index.db'),
                                  default_categories=CATEGORIES,
                                  torrent_info_update_interval=0),
        storage=StorageSettings(upload_path=str(tmp_path / 'uploads')),
    )


@pytest.fixture
def configuration(settings):
    return Configuration(settings)


@pytest.fixture
def database(settings):
    db = Database(settings.database.path)
    db.initialize(settings.database.default_categories)
    db.add_user('alice', 'alice-token')
    db.add_user('bob', 'bob-token')
    db.add_user('admin', 'admin-token', administrator=True)
    return db


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def app(configuration, database, tracker):
    return create_app(configuration, database=database, tracker=tracker)


@pytest.fixture
def client(app):
    return app.test_client()


def auth_header(token):
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def upload(client):
    def _upload(torrent_bytes, token='alice-token', title='Big Buck Bunny', category='movie',
                description='an open movie', content_type='application/x-bittorrent'):
        data = {
            'title': title,
            'description': description,
            'category': category,
            'torrent': (io.BytesIO(torrent_bytes), 'bunny.torrent', content_type),
        }
        headers = auth_header(token) if token else {}
        return client.post('/torrent/upload', data=data, headers=headers,
                           content_type='multipart/form-data')
    return _upload
