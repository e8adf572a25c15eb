import pytest

from torrust_index.errors import BadRequest, InvalidFileType, InvalidTorrentFile
from torrust_index.intake import boundary_from_content_type, max_body_size, parse_torrent_request

BOUNDARY = b'----torrust-test-boundary'


def multipart_body(parts, boundary=BOUNDARY):
    """parts: (name, value bytes, content type or None)"""
    body = b''
    for name, value, content_type in parts:
        body += b'--' + boundary + b'\r\n'
        disposition = f'Content-Disposition: form-data; name="{name}"'
        if content_type is not None:
            disposition += '; filename="upload.torrent"'
        body += disposition.encode() + b'\r\n'
        if content_type is not None:
            body += f'Content-Type: {content_type}\r\n'.encode()
        body += b'\r\n' + value + b'\r\n'
    body += b'--' + boundary + b'--\r\n'
    return body


def chunked(data, size):
    return [data[i:i + size] for i in range(0, len(data), size)]


def form(torrent_bytes, title=b'Big Buck Bunny', category=b'movie',
         content_type='application/x-bittorrent'):
    return [
        ('title', title, None),
        ('description', 'Ünïcode description'.encode('utf-8'), None),
        ('category', category, None),
        ('torrent', torrent_bytes, content_type),
    ]


@pytest.mark.parametrize('chunk_size', [1, 7, 64, 100000])
def test_parses_fields_and_torrent_across_chunk_sizes(make_torrent, chunk_size):
    torrent_bytes = make_torrent()
    body = multipart_body(form(torrent_bytes))

    request = parse_torrent_request(chunked(body, chunk_size), BOUNDARY)

    assert request.fields.title == 'Big Buck Bunny'
    assert request.fields.description == 'Ünïcode description'
    assert request.fields.category == 'movie'
    assert request.torrent.info.name == 'bunny.mkv'
    assert request.torrent.info.length == 12345


def test_unknown_parts_are_ignored(make_torrent):
    parts = [('avatar', b'\x00' * 1000, 'image/png')] + form(make_torrent())
    request = parse_torrent_request([multipart_body(parts)], BOUNDARY)
    assert request.fields.title == 'Big Buck Bunny'


def test_every_two_chunk_split_parses_the_same(make_torrent):
    body = multipart_body(form(make_torrent()))
    expected = parse_torrent_request([body], BOUNDARY).torrent.info_hash

    for cut in range(1, len(body)):
        request = parse_torrent_request([body[:cut], body[cut:]], BOUNDARY)
        assert request.torrent.info_hash == expected, cut
        assert request.fields.category == 'movie', cut


def test_oversized_unknown_part_is_a_bad_request(make_torrent):
    parts = [('avatar', b'\x00' * (64 * 1024), 'image/png')] + form(make_torrent())
    body = multipart_body(parts)
    with pytest.raises(BadRequest):
        parse_torrent_request(chunked(body, 512), BOUNDARY, max_torrent_size=1024,
                              max_field_size=256)


def test_body_limit_leaves_room_for_the_form():
    assert max_body_size(1024, 256) > 1024 + 3 * 256


def test_wrong_torrent_content_type_is_rejected(make_torrent):
    body = multipart_body(form(make_torrent(), content_type='text/plain'))
    with pytest.raises(InvalidFileType):
        parse_torrent_request([body], BOUNDARY)


def test_torrent_part_without_content_type_is_rejected(make_torrent):
    parts = form(make_torrent())[:3] + [('torrent', make_torrent(), None)]
    with pytest.raises(InvalidFileType):
        parse_torrent_request([multipart_body(parts)], BOUNDARY)


@pytest.mark.parametrize('title, category', [(b'', b'movie'), (b'Bunny', b'')])
def test_missing_title_or_category_is_a_bad_request(make_torrent, title, category):
    body = multipart_body(form(make_torrent(), title=title, category=category))
    with pytest.raises(BadRequest):
        parse_torrent_request([body], BOUNDARY)


def test_field_check_happens_before_torrent_decoding():
    body = multipart_body(form(b'not bencode', title=b''))
    with pytest.raises(BadRequest):
        parse_torrent_request([body], BOUNDARY)


def test_oversized_torrent_is_rejected(make_torrent):
    torrent_bytes = make_torrent()
    body = multipart_body(form(torrent_bytes))
    with pytest.raises(InvalidTorrentFile):
        parse_torrent_request(chunked(body, 16), BOUNDARY, max_torrent_size=len(torrent_bytes) - 1)


def test_garbage_torrent_is_rejected():
    body = multipart_body(form(b'this is not a torrent'))
    with pytest.raises(InvalidTorrentFile):
        parse_torrent_request([body], BOUNDARY)


def test_missing_torrent_part_is_rejected():
    body = multipart_body(form(b'')[:3])
    with pytest.raises(InvalidTorrentFile):
        parse_torrent_request([body], BOUNDARY)


def test_truncated_body_is_a_bad_request(make_torrent):
    body = multipart_body(form(make_torrent()))
    with pytest.raises(BadRequest):
        parse_torrent_request([body[:len(body) // 2]], BOUNDARY)


def test_non_utf8_field_is_a_bad_request(make_torrent):
    body = multipart_body(form(make_torrent(), title=b'\xff\xfe'))
    with pytest.raises(BadRequest):
        parse_torrent_request([body], BOUNDARY)


def test_boundary_from_content_type():
    assert boundary_from_content_type('multipart/form-data; boundary=abc') == b'abc'
    with pytest.raises(BadRequest):
        boundary_from_content_type('application/json')
    with pytest.raises(BadRequest):
        boundary_from_content_type('multipart/form-data')
    with pytest.raises(BadRequest):
        boundary_from_content_type(None)
