import pytest

from torrust_index.errors import BadRequest
from torrust_index.listing import (MAX_SQL_INTEGER, ListingParams, build_listing_query,
                                   order_clause, parse_categories, search_pattern)

INJECTION = "movie' OR 1=1 --"


@pytest.mark.parametrize('sort, expected', [
    ('uploaded_ASC', 'tt.upload_date ASC, tt.torrent_id ASC'),
    ('seeders_DESC', 'tt.seeders DESC, tt.torrent_id DESC'),
    ('leechers_ASC', 'tt.leechers ASC, tt.torrent_id ASC'),
    ('name_ASC', 'tt.title ASC, tt.torrent_id ASC'),
    ('size_DESC', 'tt.file_size DESC, tt.torrent_id DESC'),
    (None, 'tt.upload_date DESC, tt.torrent_id DESC'),
    ('bogus', 'tt.upload_date DESC, tt.torrent_id DESC'),
    ('title; DROP TABLE torrust_torrents', 'tt.upload_date DESC, tt.torrent_id DESC'),
])
def test_order_clause(sort, expected):
    assert order_clause(sort) == expected


def test_parse_categories():
    assert parse_categories('movie, music,,app ') == ['movie', 'music', 'app']
    assert parse_categories('') is None
    assert parse_categories(' , ') is None
    assert parse_categories(None) is None


def test_search_pattern_escapes_wildcards():
    assert search_pattern(None) == '%'
    assert search_pattern('') == '%'
    assert search_pattern('bunny') == '%bunny%'
    assert search_pattern('100%_x') == '%100\\%\\_x%'


def test_params_defaults_and_cap():
    params = ListingParams.from_args({}, default_page_size=30, max_page_size=100)
    assert (params.page, params.page_size, params.offset) == (0, 30, 0)
    assert params.categories is None

    params = ListingParams.from_args({'page': '2', 'page_size': '500'}, max_page_size=100)
    assert params.page_size == 100
    assert params.offset == 200


@pytest.mark.parametrize('args', [
    {'page': 'one'},
    {'page': '-1'},
    {'page_size': '0'},
    {'page_size': 'x'},
    {'page': str(10 ** 20)},
])
def test_params_reject_invalid_numbers(args):
    with pytest.raises(BadRequest):
        ListingParams.from_args(args)


def test_last_addressable_page_is_accepted():
    page = MAX_SQL_INTEGER // 30
    params = ListingParams.from_args({'page': str(page)}, default_page_size=30)
    assert params.offset <= MAX_SQL_INTEGER

    with pytest.raises(BadRequest):
        ListingParams.from_args({'page': str(page + 1)}, default_page_size=30)


def test_query_without_filters_binds_search_and_paging():
    query = build_listing_query(ListingParams(page=1, page_size=10, search='bunny'))

    assert 'torrust_categories' not in query.select_sql
    assert query.count_args == ('%bunny%',)
    assert query.select_args == ('%bunny%', 10, 10)
    assert query.select_sql.endswith('LIMIT ? OFFSET ?')
    assert query.count_sql.startswith('SELECT COUNT(*)')


def test_query_with_categories_uses_placeholders():
    params = ListingParams(categories=['movie', 'app'])
    query = build_listing_query(params, valid_categories=['movie', 'app'])

    assert 'tc.name IN (?, ?)' in query.select_sql
    assert 'movie' not in query.select_sql
    assert query.count_args == ('movie', 'app', '%')


def test_injection_never_reaches_sql_text():
    params = ListingParams.from_args({'categories': INJECTION, 'search': INJECTION})
    query = build_listing_query(params, valid_categories=[])

    for sql in (query.select_sql, query.count_sql):
        assert INJECTION not in sql
        assert 'OR 1=1' not in sql
    # a filter was requested but nothing valid survived: match nothing
    assert '0 = 1' in query.select_sql
