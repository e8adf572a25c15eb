"""
Bencode helpers built on top of bencodepy.

bencodepy turns bytes into Python values and back, but it throws away where
each value came from. The info_hash of a torrent is the SHA-1 of the exact
bytes of its ``info`` dictionary, so decoding here also walks the raw input
once to record the byte span of every top-level value, and encoding can
splice such a span back in verbatim.
"""
import hashlib
import re
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

import bencodepy

from .errors import InvalidTorrentFile

DEFAULT_MAX_SIZE = 1024 * 1024  # bytes
MAX_DEPTH = 64
MAX_LENGTH_DIGITS = 20

_CANONICAL_INT = re.compile(rb'-?(0|[1-9][0-9]*)')

Span = Tuple[int, int]


class _SpanScanner:
    """Walk a bencoded buffer without building values, validating as it goes."""

    def __init__(self, data: bytes, strict: bool = False):
        self.data = data
        self.strict = strict

    def fail(self, pos: int, reason: str):
        raise InvalidTorrentFile(f"invalid torrent file: {reason} at offset {pos}")

    def scan(self) -> Dict[bytes, Span]:
        if self.data[:1] != b'd':
            self.fail(0, "metainfo is not a dictionary")
        spans: Dict[bytes, Span] = {}
        end = self.scan_dict(0, 0, spans)
        if end != len(self.data):
            self.fail(end, "trailing data after metainfo")
        return spans

    def skip(self, pos: int, depth: int) -> int:
        if depth > MAX_DEPTH:
            self.fail(pos, "nesting too deep")
        if pos >= len(self.data):
            self.fail(pos, "unexpected end of data")

        token = self.data[pos:pos + 1]
        if token == b'i':
            return self.read_int(pos)
        if token.isdigit():
            return self.read_string(pos)[1]
        if token == b'l':
            pos += 1
            while True:
                if pos >= len(self.data):
                    self.fail(pos, "unterminated list")
                if self.data[pos:pos + 1] == b'e':
                    return pos + 1
                pos = self.skip(pos, depth + 1)
        if token == b'd':
            return self.scan_dict(pos, depth)
        self.fail(pos, f"unexpected delimiter {token!r}")

    def read_int(self, pos: int) -> int:
        end = self.data.find(b'e', pos + 1)
        if end == -1:
            self.fail(pos, "unterminated integer")
        digits = self.data[pos + 1:end]
        if not _CANONICAL_INT.fullmatch(digits) or digits == b'-0':
            self.fail(pos, f"malformed integer {digits[:MAX_LENGTH_DIGITS]!r}")
        return end + 1

    def read_string(self, pos: int) -> Span:
        colon = self.data.find(b':', pos, pos + MAX_LENGTH_DIGITS + 1)
        if colon == -1:
            self.fail(pos, "missing ':' after string length")
        digits = self.data[pos:colon]
        if not digits.isdigit() or (len(digits) > 1 and digits[:1] == b'0'):
            self.fail(pos, "non-numeric string length")
        start = colon + 1
        end = start + int(digits)
        if end > len(self.data):
            self.fail(pos, "truncated string")
        return start, end

    def scan_dict(self, pos: int, depth: int, spans: Optional[Dict[bytes, Span]] = None) -> int:
        pos += 1
        seen = set()
        previous = None
        while True:
            if pos >= len(self.data):
                self.fail(pos, "unterminated dictionary")
            if self.data[pos:pos + 1] == b'e':
                return pos + 1
            if not self.data[pos:pos + 1].isdigit():
                self.fail(pos, "dictionary key is not a byte string")

            key_start, key_end = self.read_string(pos)
            key = self.data[key_start:key_end]
            if key in seen:
                self.fail(pos, f"duplicate key {key!r}")
            if self.strict and previous is not None and key < previous:
                self.fail(pos, f"key {key!r} out of order")
            seen.add(key)
            previous = key

            pos = self.skip(key_end, depth + 1)
            if spans is not None:
                spans[key] = (key_end, pos)


def decode_dict(data: bytes, max_size: int = DEFAULT_MAX_SIZE,
                strict: bool = False) -> Tuple[Dict[bytes, Any], Dict[bytes, Span]]:
    """
    Decode a bencoded dictionary.

    Args:
        data: raw bencoded bytes
        max_size: inputs longer than this are rejected before parsing
        strict: also reject dictionaries whose keys are not sorted

    Returns:
        (decoded dictionary, byte span of each top-level value)

    Raises:
        InvalidTorrentFile: on any parse failure
    """
    if not isinstance(data, (bytes, bytearray)):
        raise InvalidTorrentFile("invalid torrent file: expected bytes")
    data = bytes(data)
    if not data:
        raise InvalidTorrentFile("invalid torrent file: empty")
    if len(data) > max_size:
        raise InvalidTorrentFile(f"invalid torrent file: larger than {max_size} bytes")

    spans = _SpanScanner(data, strict).scan()

    try:
        value = bencodepy.decode(data)
    except bencodepy.DecodingError as e:
        raise InvalidTorrentFile(f"invalid torrent file: {e}")

    if not isinstance(value, dict):
        raise InvalidTorrentFile("invalid torrent file: metainfo is not a dictionary")
    return value, spans


def as_key(key) -> bytes:
    if isinstance(key, str):
        return key.encode('utf-8')
    if isinstance(key, bytes):
        return key
    raise ValueError(f"Dictionary keys must be str or bytes, not {type(key).__name__}")


def _canonical(value):
    """Normalize a value so that bencodepy emits canonical bencode."""
    if isinstance(value, dict):
        items = [(as_key(k), _canonical(v)) for k, v in value.items()]
        keys = [k for k, _ in items]
        if len(set(keys)) != len(keys):
            raise ValueError("Duplicate dictionary keys after normalization")
        return OrderedDict(sorted(items, key=lambda item: item[0]))
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, str):
        return value.encode('utf-8')
    if isinstance(value, bool):
        return int(value)
    return value


def encode(value) -> bytes:
    """Encode a value as canonical bencode (dictionary keys in byte order)."""
    return bencodepy.encode(_canonical(value))


def encode_dict_with_raw(value: Dict, raw_values: Dict[bytes, bytes]) -> bytes:
    """
    Encode a dictionary, splicing the already-encoded bytes in ``raw_values``
    in place of those keys. Keys are emitted in byte order.
    """
    items = _canonical(value)
    keys = sorted(set(items) | set(raw_values))

    out = bytearray(b'd')
    for key in keys:
        out += bencodepy.encode(key)
        if key in raw_values:
            out += raw_values[key]
        else:
            out += bencodepy.encode(items[key])
    out += b'e'
    return bytes(out)


def sha1_hex(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()
