import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests

from .config import Configuration, TrackerSettings
from .errors import ServiceError, TrackerUnavailable

logger = logging.getLogger(__name__)

# Reuse a cached personal key only if it stays valid at least this long
KEY_RENEWAL_MARGIN = 60 * 60  # seconds

HTTP_HEADERS = {
    'User-Agent': 'Torrust-Index/1.0',
}


@dataclass
class TorrentStats:
    seeders: int = 0
    leechers: int = 0
    completed: int = 0

    @classmethod
    def from_dict(cls, data):
        if not data:
            return cls()
        return cls(
            seeders=int(data.get('seeders', 0)),
            leechers=int(data.get('leechers', 0)),
            completed=int(data.get('completed', 0)),
        )


class TrackerService:
    """
    Client for the tracker's HTTP API.

    Only primitives go in (info hashes, usernames); the service never reaches
    back into request state.
    """

    def __init__(self, configuration: Configuration, database,
                 session: Optional[requests.Session] = None):
        self.configuration = configuration
        self.database = database
        self.session = session or requests.Session()
        self.session.headers.update(HTTP_HEADERS)

    def _tracker_settings(self) -> TrackerSettings:
        return self.configuration.snapshot().tracker

    def _request(self, method: str, path: str) -> requests.Response:
        settings = self._tracker_settings()
        url = f"{settings.api_url.rstrip('/')}/api/{path}"
        try:
            response = self.session.request(
                method,
                url,
                params={'token': settings.token},
                timeout=settings.request_timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.debug("Tracker API %s %s failed: %s", method, path, e)
            raise TrackerUnavailable()
        return response

    def whitelist_info_hash(self, info_hash: str):
        """Register an info hash with the tracker so it accepts announces for it."""
        self._request('POST', f"whitelist/{info_hash}")

    def get_torrent_info(self, info_hash: str) -> TorrentStats:
        """
        Live swarm counters for a torrent.

        Raises:
            TrackerUnavailable: if the tracker cannot be reached or answers garbage
        """
        response = self._request('GET', f"torrent/{info_hash}")
        try:
            data = response.json()
            return TorrentStats.from_dict(data)
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug("Unreadable tracker stats for %s: %s", info_hash, e)
            raise TrackerUnavailable()

    def stats(self, info_hash: str) -> TorrentStats:
        """Like get_torrent_info, but a failing tracker counts as an empty swarm."""
        try:
            return self.get_torrent_info(info_hash)
        except TrackerUnavailable:
            logger.debug("No tracker stats for %s, assuming zero", info_hash)
            return TorrentStats()

    def retrieve_new_tracker_key(self, username: str) -> str:
        settings = self._tracker_settings()
        response = self._request('POST', f"key/{settings.token_valid_seconds}")
        try:
            data = response.json()
            key = data['key']
            valid_until = int(data['valid_until'])
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Tracker returned an unusable key: %s", e)
            raise TrackerUnavailable()

        self.database.add_tracker_key(username, key, valid_until)
        logger.info("Issued new tracker key for %s valid until %d", username, valid_until)
        return key

    def get_personal_announce_url(self, username: str) -> str:
        """
        Announce URL carrying the user's personal tracker key.

        Raises:
            TrackerUnavailable: if no valid key is cached and the tracker cannot issue one
        """
        settings = self._tracker_settings()
        margin = min(KEY_RENEWAL_MARGIN, settings.token_valid_seconds // 2)
        key = self.database.get_valid_tracker_key(username, int(time.time()) + margin)
        if key is None:
            key = self.retrieve_new_tracker_key(username)
        return f"{settings.url.rstrip('/')}/{key}"

    def update_torrents_stats(self) -> int:
        """Refresh seeders/leechers of every stored torrent. Returns how many rows were updated."""
        updated = 0
        for torrent_id, info_hash in self.database.all_info_hashes():
            try:
                stats = self.get_torrent_info(info_hash)
            except TrackerUnavailable:
                logger.warning("Tracker unavailable, stopping stats refresh after %d torrents", updated)
                break
            self.database.update_tracker_stats(torrent_id, stats.seeders, stats.leechers)
            updated += 1
        return updated


class StatsUpdater(threading.Thread):
    """Background thread that periodically copies tracker stats into the database."""

    def __init__(self, tracker: TrackerService, interval: float):
        super().__init__(name='stats-updater', daemon=True)
        self.tracker = tracker
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        logger.info("Stats updater running every %s seconds", self.interval)
        while not self._stop_event.wait(self.interval):
            try:
                updated = self.tracker.update_torrents_stats()
                logger.info("Refreshed tracker stats for %d torrents", updated)
            except ServiceError as e:
                logger.error("Stats refresh failed: %s", e)

    def stop(self):
        self._stop_event.set()
