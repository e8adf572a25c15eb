import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from .errors import BadRequest, InternalServerError, TorrentNotFound
from .listing import ListingParams, build_listing_query

logger = logging.getLogger(__name__)

DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

SCHEMA = """
CREATE TABLE IF NOT EXISTS torrust_categories (
    category_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS torrust_torrents (
    torrent_id INTEGER PRIMARY KEY AUTOINCREMENT,
    uploader TEXT NOT NULL,
    info_hash TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    category_id INTEGER NOT NULL REFERENCES torrust_categories (category_id),
    description TEXT NOT NULL DEFAULT '',
    upload_date TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    seeders INTEGER NOT NULL DEFAULT 0,
    leechers INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS torrust_users (
    user_id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    administrator INTEGER NOT NULL DEFAULT 0,
    api_token TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS torrust_tracker_keys (
    key_id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL,
    tracker_key TEXT NOT NULL,
    date_expiry INTEGER NOT NULL
);
"""


@dataclass
class TorrentListing:
    torrent_id: int
    uploader: str
    info_hash: str
    title: str
    category_id: int
    description: str
    upload_date: str
    file_size: int
    seeders: int
    leechers: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'TorrentListing':
        return cls(**{key: row[key] for key in row.keys()})

    def to_dict(self):
        return asdict(self)


def now_timestamp() -> str:
    return datetime.now(timezone.utc).strftime(DATE_FORMAT)


class Database:
    """SQLite access for the index. Every call uses its own short lived connection."""

    def __init__(self, path: str):
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    @contextmanager
    def transaction(self):
        """
        Yield a connection; commit when the block finishes, roll back if it raises.

        sqlite3 errors escaping the block are logged and turned into
        InternalServerError.
        """
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            logger.error("Cannot open database %s: %s", self.path, e)
            raise InternalServerError()

        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("Database error: %s", e)
            raise InternalServerError()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self, default_categories: Iterable[str] = ()):
        with self.transaction() as conn:
            conn.executescript(SCHEMA)
        for name in default_categories:
            self.insert_category(name)

    # Categories

    def insert_category(self, name: str) -> int:
        with self.transaction() as conn:
            conn.execute("INSERT OR IGNORE INTO torrust_categories (name) VALUES (?)", (name,))
            row = conn.execute(
                "SELECT category_id FROM torrust_categories WHERE name = ?", (name,)
            ).fetchone()
        return row['category_id']

    def get_category_id(self, name: str) -> Optional[int]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT category_id FROM torrust_categories WHERE name = ?", (name,)
            ).fetchone()
        return row['category_id'] if row else None

    def verify_categories(self, names: List[str]) -> List[str]:
        """Subset of ``names`` that exist as categories, in request order."""
        unique = list(dict.fromkeys(names))
        if not unique:
            return []
        placeholders = ', '.join('?' for _ in unique)
        with self.transaction() as conn:
            rows = conn.execute(
                f"SELECT name FROM torrust_categories WHERE name IN ({placeholders})", unique
            ).fetchall()
        existing = {row['name'] for row in rows}
        return [name for name in unique if name in existing]

    # Torrents

    def insert_torrent(self, conn: sqlite3.Connection, uploader: str, info_hash: str,
                       title: str, category_id: int, description: str, file_size: int,
                       seeders: int = 0, leechers: int = 0,
                       upload_date: Optional[str] = None) -> int:
        """
        Insert a torrent row on an open transaction and return its id.

        Raises:
            BadRequest: if a torrent with the same info_hash exists
        """
        try:
            cursor = conn.execute(
                "INSERT INTO torrust_torrents (uploader, info_hash, title, category_id,"
                " description, upload_date, file_size, seeders, leechers)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (uploader, info_hash, title, category_id, description,
                 upload_date or now_timestamp(), file_size, seeders, leechers)
            )
        except sqlite3.IntegrityError as e:
            logger.info("Rejected torrent %s: %s", info_hash, e)
            raise BadRequest("a torrent with this info hash already exists")
        return cursor.lastrowid

    def get_torrent_by_id(self, torrent_id: int) -> TorrentListing:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM torrust_torrents WHERE torrent_id = ?", (torrent_id,)
            ).fetchone()
        if row is None:
            raise TorrentNotFound()
        return TorrentListing.from_row(row)

    def update_torrent_description(self, torrent_id: int, description: str):
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE torrust_torrents SET description = ? WHERE torrent_id = ?",
                (description, torrent_id)
            )
        if cursor.rowcount == 0:
            raise TorrentNotFound()

    def delete_torrent(self, torrent_id: int):
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM torrust_torrents WHERE torrent_id = ?", (torrent_id,)
            )
        if cursor.rowcount == 0:
            raise TorrentNotFound()

    def update_tracker_stats(self, torrent_id: int, seeders: int, leechers: int):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE torrust_torrents SET seeders = ?, leechers = ? WHERE torrent_id = ?",
                (seeders, leechers, torrent_id)
            )

    def all_info_hashes(self) -> List[Tuple[int, str]]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT torrent_id, info_hash FROM torrust_torrents ORDER BY torrent_id"
            ).fetchall()
        return [(row['torrent_id'], row['info_hash']) for row in rows]

    def list_torrents(self, params: ListingParams) -> Tuple[int, List[TorrentListing]]:
        """Run a listing request. Returns (total matching rows, rows of the requested page)."""
        valid_categories = None
        if params.categories is not None:
            valid_categories = self.verify_categories(params.categories)

        query = build_listing_query(params, valid_categories)
        with self.transaction() as conn:
            total = conn.execute(query.count_sql, query.count_args).fetchone()['count']
            rows = conn.execute(query.select_sql, query.select_args).fetchall()
        return total, [TorrentListing.from_row(row) for row in rows]

    # Users

    def add_user(self, username: str, api_token: str, administrator: bool = False) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO torrust_users (username, administrator, api_token) VALUES (?, ?, ?)",
                (username, int(administrator), api_token)
            )
        return cursor.lastrowid

    def get_user_by_token(self, api_token: str) -> Optional[sqlite3.Row]:
        with self.transaction() as conn:
            return conn.execute(
                "SELECT username, administrator FROM torrust_users WHERE api_token = ?",
                (api_token,)
            ).fetchone()

    # Tracker keys

    def add_tracker_key(self, username: str, tracker_key: str, date_expiry: int):
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO torrust_tracker_keys (username, tracker_key, date_expiry)"
                " VALUES (?, ?, ?)",
                (username, tracker_key, date_expiry)
            )

    def get_valid_tracker_key(self, username: str, min_expiry: int) -> Optional[str]:
        """Most recent key for the user that stays valid past ``min_expiry`` (unix time)."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT tracker_key FROM torrust_tracker_keys"
                " WHERE username = ? AND date_expiry > ?"
                " ORDER BY date_expiry DESC LIMIT 1",
                (username, min_expiry)
            ).fetchone()
        return row['tracker_key'] if row else None
