from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from . import bencoding
from .errors import InvalidTorrentFile

PIECE_HASH_LENGTH = 20
# sizes are stored as signed 64-bit integers
MAX_FILE_SIZE = 2 ** 63 - 1


@dataclass(frozen=True)
class File:
    path: Tuple[str, ...]
    length: int
    md5sum: Optional[str] = None

    def to_dict(self):
        data = asdict(self)
        data['path'] = list(self.path)
        return data

    def to_bencode(self) -> dict:
        data = {b'path': list(self.path), b'length': self.length}
        if self.md5sum is not None:
            data[b'md5sum'] = self.md5sum
        return data


@dataclass(frozen=True)
class InfoDict:
    name: str
    piece_length: int
    pieces: bytes = field(repr=False)
    length: Optional[int] = None
    files: Optional[Tuple[File, ...]] = None
    private: Optional[int] = None

    def to_bencode(self) -> dict:
        data = {
            b'name': self.name,
            b'piece length': self.piece_length,
            b'pieces': self.pieces,
        }
        if self.files is not None:
            data[b'files'] = [f.to_bencode() for f in self.files]
        else:
            data[b'length'] = self.length
        if self.private is not None:
            data[b'private'] = self.private
        return data


@dataclass
class Metainfo:
    """
    A decoded .torrent file.

    ``raw_info`` holds the exact bytes of the info dictionary as uploaded.
    It is what gets hashed and what gets written back on encode, so fields
    of the info dictionary this model does not know about survive untouched.
    """
    info: InfoDict
    announce: Optional[str] = None
    announce_list: Optional[List[List[str]]] = None
    extra: Dict[bytes, Any] = field(default_factory=dict, repr=False)
    raw_info: Optional[bytes] = field(default=None, repr=False)

    @property
    def info_bytes(self) -> bytes:
        if self.raw_info is not None:
            return self.raw_info
        return bencoding.encode(self.info.to_bencode())

    @property
    def info_hash(self) -> str:
        """Lowercase hex SHA-1 of the bencoded info dictionary."""
        return bencoding.sha1_hex(self.info_bytes)

    def file_size(self) -> int:
        if self.info.files is not None:
            return sum(f.length for f in self.info.files)
        return self.info.length or 0

    def file_list(self) -> List[File]:
        """Files of the torrent; a single-file torrent yields one entry named after it."""
        if self.info.files is not None:
            return list(self.info.files)
        return [File(path=(self.info.name,), length=self.info.length or 0)]

    def trackers(self) -> List[str]:
        """First URL of every announce tier, in tier order."""
        if not self.announce_list:
            return []
        return [tier[0] for tier in self.announce_list if tier]


def _text(value, what: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError:
            raise InvalidTorrentFile(f"invalid torrent file: {what} is not valid UTF-8")
    raise InvalidTorrentFile(f"invalid torrent file: {what} must be a string")


def _integer(value, what: str, minimum: int = 0, maximum: int = MAX_FILE_SIZE) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
        raise InvalidTorrentFile(f"invalid torrent file: {what} must be an integer >= {minimum}")
    if value > maximum:
        raise InvalidTorrentFile(f"invalid torrent file: {what} is larger than {maximum}")
    return value


def _get(data: dict, key: bytes):
    # bencodepy returns bytes keys; tolerate str keys as well
    if key in data:
        return data[key]
    return data.get(key.decode('ascii'))


def _parse_file(entry) -> File:
    if not isinstance(entry, dict):
        raise InvalidTorrentFile("invalid torrent file: file entry is not a dictionary")
    path = _get(entry, b'path')
    if not isinstance(path, list) or not path:
        raise InvalidTorrentFile("invalid torrent file: file path must be a non-empty list")
    md5sum = _get(entry, b'md5sum')
    return File(
        path=tuple(_text(p, "file path") for p in path),
        length=_integer(_get(entry, b'length'), "file length"),
        md5sum=_text(md5sum, "md5sum") if md5sum is not None else None,
    )


def parse_info(info) -> InfoDict:
    if not isinstance(info, dict):
        raise InvalidTorrentFile("invalid torrent file: info is not a dictionary")

    pieces = _get(info, b'pieces')
    if not isinstance(pieces, bytes) or len(pieces) % PIECE_HASH_LENGTH != 0:
        raise InvalidTorrentFile("invalid torrent file: pieces must be a multiple of 20 bytes")

    length = _get(info, b'length')
    files = _get(info, b'files')
    if (length is None) == (files is None):
        raise InvalidTorrentFile("invalid torrent file: exactly one of length or files is required")
    if files is not None and not isinstance(files, list):
        raise InvalidTorrentFile("invalid torrent file: files must be a list")

    private = _get(info, b'private')
    parsed = InfoDict(
        name=_text(_get(info, b'name'), "name"),
        piece_length=_integer(_get(info, b'piece length'), "piece length", minimum=1),
        pieces=pieces,
        length=_integer(length, "length") if length is not None else None,
        files=tuple(_parse_file(f) for f in files) if files is not None else None,
        private=_integer(private, "private") if private is not None else None,
    )
    if parsed.files is not None and sum(f.length for f in parsed.files) > MAX_FILE_SIZE:
        raise InvalidTorrentFile(f"invalid torrent file: total size is larger than {MAX_FILE_SIZE}")
    return parsed


def _parse_announce_list(value) -> List[List[str]]:
    if not isinstance(value, list):
        raise InvalidTorrentFile("invalid torrent file: announce-list must be a list")
    tiers = []
    for tier in value:
        if not isinstance(tier, list):
            raise InvalidTorrentFile("invalid torrent file: announce-list tier must be a list")
        tiers.append([_text(url, "announce-list url") for url in tier])
    return tiers


def decode_torrent(data: bytes, max_size: int = bencoding.DEFAULT_MAX_SIZE,
                   strict: bool = False) -> Metainfo:
    """
    Decode .torrent bytes into a Metainfo.

    Raises:
        InvalidTorrentFile: if the bytes are not a well formed metainfo file
    """
    value, spans = bencoding.decode_dict(data, max_size=max_size, strict=strict)
    if b'info' not in spans:
        raise InvalidTorrentFile("invalid torrent file: missing info dictionary")

    start, end = spans[b'info']
    info = parse_info(_get(value, b'info'))

    announce = _get(value, b'announce')
    announce_list = _get(value, b'announce-list')
    extra = {
        bencoding.as_key(k): v for k, v in value.items()
        if bencoding.as_key(k) not in (b'info', b'announce', b'announce-list')
    }

    return Metainfo(
        info=info,
        announce=_text(announce, "announce") if announce is not None else None,
        announce_list=_parse_announce_list(announce_list) if announce_list is not None else None,
        extra=extra,
        raw_info=bytes(data[start:end]),
    )


def encode_torrent(metainfo: Metainfo) -> bytes:
    """Encode a Metainfo as canonical bencode, keeping the info dictionary byte-identical."""
    value = dict(metainfo.extra)
    if metainfo.announce is not None:
        value[b'announce'] = metainfo.announce
    if metainfo.announce_list is not None:
        value[b'announce-list'] = metainfo.announce_list
    return bencoding.encode_dict_with_raw(value, {b'info': metainfo.info_bytes})


def apply_site_config(metainfo: Metainfo, tracker_url: str, keep_announce_list: bool = False):
    """
    Make the site tracker the authoritative announce URL.

    The announce-list is reduced to a single tier holding the site tracker,
    unless ``keep_announce_list`` is set, in which case the uploaded tiers are
    kept after it (with the site tracker removed from them).
    The info dictionary is left alone, so the info_hash does not change.
    """
    metainfo.announce = tracker_url
    if metainfo.announce_list is None:
        return

    tiers = [[tracker_url]]
    if keep_announce_list:
        for tier in metainfo.announce_list:
            urls = [url for url in tier if url != tracker_url]
            if urls:
                tiers.append(urls)
    metainfo.announce_list = tiers


def personalize(metainfo: Metainfo, user_announce_url: str):
    """Stamp a per-user announce URL on a torrent before it is downloaded."""
    metainfo.announce = user_announce_url
    if metainfo.announce_list is not None:
        metainfo.announce_list.insert(0, [user_announce_url])
