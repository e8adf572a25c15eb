"""
Parsing of the multipart upload form.

The body is fed chunk by chunk into werkzeug's sans-io multipart decoder, so
the size limits apply while reading instead of after the whole body has been
buffered.
"""
import itertools
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from werkzeug.http import parse_options_header
from werkzeug.sansio.multipart import Data, Epilogue, Field, File, MultipartDecoder, NeedData

from .bencoding import DEFAULT_MAX_SIZE
from .errors import BadRequest, InvalidFileType, InvalidTorrentFile
from .metainfo import Metainfo, decode_torrent

logger = logging.getLogger(__name__)

TORRENT_CONTENT_TYPE = 'application/x-bittorrent'
TEXT_FIELDS = ('title', 'description', 'category')
TORRENT_FIELD = 'torrent'
DEFAULT_MAX_FIELD_SIZE = 64 * 1024
# room for part headers and delimiters on top of the part payloads
FORM_OVERHEAD = 16 * 1024


@dataclass
class CreateTorrent:
    title: str
    description: str
    category: str

    def verify(self):
        if not self.title or not self.category:
            raise BadRequest("title and category are required")


@dataclass
class TorrentRequest:
    fields: CreateTorrent
    torrent: Metainfo


def boundary_from_content_type(content_type: Optional[str]) -> bytes:
    mimetype, options = parse_options_header(content_type or '')
    boundary = options.get('boundary')
    if mimetype != 'multipart/form-data' or not boundary:
        raise BadRequest("expected a multipart/form-data body")
    return boundary.encode('latin-1')


def max_body_size(max_torrent_size: int, max_field_size: int) -> int:
    """Largest upload body accepted for the given part limits."""
    return max_torrent_size + len(TEXT_FIELDS) * max_field_size + FORM_OVERHEAD


def _hold_back_tail(chunks: Iterable[bytes], tail: int) -> Iterator[bytes]:
    """
    Re-chunk the body so the last ``tail`` bytes always arrive together.

    The decoder hands a stray CR of the closing delimiter to the last part
    when its buffer ends inside that delimiter.
    """
    pending = b''
    for chunk in chunks:
        pending += chunk
        if len(pending) > tail:
            yield pending[:-tail]
            pending = pending[-tail:]
    if pending:
        yield pending


def parse_torrent_request(chunks: Iterable[bytes], boundary: bytes,
                          max_torrent_size: int = DEFAULT_MAX_SIZE,
                          max_field_size: int = DEFAULT_MAX_FIELD_SIZE,
                          strict: bool = False) -> TorrentRequest:
    """
    Read an upload form and decode the torrent inside it.

    Recognized parts are the text fields ``title``, ``description`` and
    ``category`` and the file part ``torrent``, which must be sent as
    application/x-bittorrent. Other parts are skipped.

    Raises:
        InvalidFileType: the torrent part has another content type
        InvalidTorrentFile: the torrent is too large or cannot be decoded
        BadRequest: the body is malformed, truncated or too large, or title/category are missing
    """
    decoder = MultipartDecoder(boundary)
    body_limit = max_body_size(max_torrent_size, max_field_size)
    body_size = 0
    texts = {name: bytearray() for name in TEXT_FIELDS}
    torrent_buffer = bytearray()

    current = None
    finished = False

    try:
        # the closing delimiter is "\r\n--" + boundary + "--\r\n"
        body = _hold_back_tail(chunks, len(boundary) + 8)
        # None marks the end of the body for the decoder
        for chunk in itertools.chain(body, [None]):
            if chunk is not None:
                body_size += len(chunk)
                if body_size > body_limit:
                    raise BadRequest(f"upload body is larger than {body_limit} bytes")
            decoder.receive_data(chunk)
            event = decoder.next_event()
            while not isinstance(event, (Epilogue, NeedData)):
                if isinstance(event, (Field, File)):
                    current = event.name
                    if current == TORRENT_FIELD:
                        mimetype, _ = parse_options_header(event.headers.get('Content-Type', ''))
                        if mimetype != TORRENT_CONTENT_TYPE:
                            raise InvalidFileType()
                elif isinstance(event, Data):
                    if current == TORRENT_FIELD:
                        torrent_buffer += event.data
                        if len(torrent_buffer) > max_torrent_size:
                            raise InvalidTorrentFile(
                                f"invalid torrent file: larger than {max_torrent_size} bytes")
                    elif current in texts:
                        texts[current] += event.data
                        if len(texts[current]) > max_field_size:
                            raise BadRequest(f"{current} is too long")
                event = decoder.next_event()
            if isinstance(event, Epilogue):
                finished = True
                break
    except ValueError as e:
        logger.debug("Malformed multipart body: %s", e)
        raise BadRequest("malformed multipart body")

    if not finished:
        raise BadRequest("incomplete multipart body")

    try:
        values = {name: bytes(data).decode('utf-8') for name, data in texts.items()}
    except UnicodeDecodeError:
        raise BadRequest("form fields must be UTF-8")

    fields = CreateTorrent(**values)
    fields.verify()

    torrent = decode_torrent(bytes(torrent_buffer), max_size=max_torrent_size, strict=strict)
    return TorrentRequest(fields=fields, torrent=torrent)
