import logging
import os
import threading
import tomllib
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from typing import Optional, Tuple

from .errors import ConfigError

logger = logging.getLogger(__name__)

# Global defaults
DEFAULT_CONFIG_PATH = 'config.toml'
DEFAULT_CATEGORIES = ('movies', 'tv shows', 'games', 'music', 'software')


@dataclass(frozen=True)
class TrackerSettings:
    url: str = 'udp://localhost:6969'
    api_url: str = 'http://localhost:1212'
    token: str = 'MyAccessToken'
    token_valid_seconds: int = 7257600
    request_timeout: float = 10.0


@dataclass(frozen=True)
class NetSettings:
    host: str = '0.0.0.0'
    port: int = 3000


@dataclass(frozen=True)
class DatabaseSettings:
    path: str = 'data.db'
    default_categories: Tuple[str, ...] = DEFAULT_CATEGORIES
    torrent_info_update_interval: int = 3600


@dataclass(frozen=True)
class StorageSettings:
    upload_path: str = './uploads'


@dataclass(frozen=True)
class UploadSettings:
    max_torrent_size: int = 1024 * 1024
    max_field_size: int = 64 * 1024
    keep_announce_list: bool = False
    strict_bencode: bool = False


@dataclass(frozen=True)
class ApiSettings:
    default_page_size: int = 30
    max_page_size: int = 100


@dataclass(frozen=True)
class Settings:
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
    net: NetSettings = field(default_factory=NetSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    upload: UploadSettings = field(default_factory=UploadSettings)
    api: ApiSettings = field(default_factory=ApiSettings)


def _build_section(section_cls, data: dict):
    """Build one settings section, ignoring keys the section does not know."""
    if not isinstance(data, dict):
        raise ConfigError(f"Section for {section_cls.__name__} must be a table")
    known = {f.name for f in fields(section_cls)}
    values = {}
    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown configuration key: %s", key)
            continue
        values[key] = tuple(value) if isinstance(value, list) else value
    return section_cls(**values)


def settings_from_dict(data: dict) -> Settings:
    sections = {}
    for f in fields(Settings):
        if f.name in data:
            sections[f.name] = _build_section(f.default_factory, data[f.name])
    return Settings(**sections)


def load_settings(path: str = DEFAULT_CONFIG_PATH) -> Settings:
    """
    Read settings from a TOML file.

    A missing file yields the defaults, so a fresh checkout can start
    without any configuration.

    Raises:
        ConfigError: if the file exists but is not valid TOML
    """
    if not os.path.exists(path):
        logger.info("No configuration file at %s, using defaults", path)
        return Settings()

    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as e:
        raise ConfigError(f"Failed to read configuration {path}: {e}")

    try:
        return settings_from_dict(data)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration {path}: {e}")


class ReadWriteLock:
    """Many concurrent readers or a single writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def reading(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def writing(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class Configuration:
    """
    Process wide settings guarded by a readers-writer lock.

    Settings values are immutable, so callers take a snapshot and release
    the lock before doing any I/O with it.
    """

    def __init__(self, settings: Optional[Settings] = None, path: Optional[str] = None):
        self.path = path
        self._settings = settings if settings is not None else Settings()
        self._lock = ReadWriteLock()

    @classmethod
    def from_file(cls, path: str = DEFAULT_CONFIG_PATH) -> 'Configuration':
        return cls(load_settings(path), path=path)

    @contextmanager
    def read(self):
        with self._lock.reading():
            yield self._settings

    def snapshot(self) -> Settings:
        with self.read() as settings:
            return settings

    def update(self, settings: Settings):
        with self._lock.writing():
            self._settings = settings

    def reload(self):
        if self.path is None:
            raise ConfigError("Configuration was not loaded from a file")
        # Parse outside the lock, swap inside it
        settings = load_settings(self.path)
        self.update(settings)
        logger.info("Reloaded configuration from %s", self.path)
