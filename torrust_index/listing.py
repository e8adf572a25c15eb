"""
Composition of the paginated torrent listing query.

Everything user supplied is either looked up in a closed table (sort keys),
validated against the category table before it gets here, or bound as a
query parameter. No request string is ever formatted into the SQL text.
"""
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from .errors import BadRequest

# sort key -> (column, direction)
SORT_ORDERS = {
    'uploaded_ASC': ('upload_date', 'ASC'),
    'uploaded_DESC': ('upload_date', 'DESC'),
    'seeders_ASC': ('seeders', 'ASC'),
    'seeders_DESC': ('seeders', 'DESC'),
    'leechers_ASC': ('leechers', 'ASC'),
    'leechers_DESC': ('leechers', 'DESC'),
    'name_ASC': ('title', 'ASC'),
    'name_DESC': ('title', 'DESC'),
    'size_ASC': ('file_size', 'ASC'),
    'size_DESC': ('file_size', 'DESC'),
}
DEFAULT_SORT = ('upload_date', 'DESC')

LIKE_ESCAPE = '\\'

# largest value sqlite can bind as an INTEGER
MAX_SQL_INTEGER = 2 ** 63 - 1


@dataclass
class ListingParams:
    page: int = 0
    page_size: int = 30
    sort: Optional[str] = None
    # None means no category filter was requested
    categories: Optional[List[str]] = None
    search: Optional[str] = None

    @property
    def offset(self) -> int:
        return self.page * self.page_size

    @classmethod
    def from_args(cls, args: Mapping[str, str], default_page_size: int = 30,
                  max_page_size: int = 100) -> 'ListingParams':
        """
        Build listing parameters from a query string mapping.

        Raises:
            BadRequest: if page or page_size is not a valid integer, or the
                page lies beyond what the database can address
        """
        page = _int_arg(args, 'page', 0)
        page_size = _int_arg(args, 'page_size', default_page_size)
        if page < 0:
            raise BadRequest("page must not be negative")
        if page_size <= 0:
            raise BadRequest("page_size must be positive")

        page_size = min(page_size, max_page_size)
        if page * page_size > MAX_SQL_INTEGER:
            raise BadRequest("page is out of range")

        return cls(
            page=page,
            page_size=page_size,
            sort=args.get('sort'),
            categories=parse_categories(args.get('categories')),
            search=args.get('search'),
        )


def _int_arg(args: Mapping[str, str], name: str, default: int) -> int:
    value = args.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise BadRequest(f"{name} must be an integer")


def parse_categories(csv: Optional[str]) -> Optional[List[str]]:
    """Split ``movie,other,app`` into names; blank input means no filter."""
    if csv is None:
        return None
    names = [name.strip() for name in csv.split(',')]
    names = [name for name in names if name]
    return names or None


def order_clause(sort: Optional[str]) -> str:
    column, direction = SORT_ORDERS.get(sort, DEFAULT_SORT)
    # torrent_id keeps the order total when the sort column has ties
    return f"tt.{column} {direction}, tt.torrent_id {direction}"


def search_pattern(search: Optional[str]) -> str:
    if not search:
        return '%'
    escaped = (search.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
                     .replace('%', LIKE_ESCAPE + '%')
                     .replace('_', LIKE_ESCAPE + '_'))
    return f"%{escaped}%"


@dataclass
class ListingQuery:
    count_sql: str
    select_sql: str
    count_args: Tuple = field(default_factory=tuple)
    select_args: Tuple = field(default_factory=tuple)


def build_listing_query(params: ListingParams,
                        valid_categories: Optional[List[str]] = None) -> ListingQuery:
    """
    Compose the count and page queries for a listing request.

    ``valid_categories`` must hold only names already confirmed to exist in
    the category table. When a filter was requested but none of the names
    exist, the query matches nothing.
    """
    filter_args: Tuple = ()
    joins = ''
    predicates = [f"tt.title LIKE ? ESCAPE '{LIKE_ESCAPE}'"]

    if params.categories is not None:
        if valid_categories:
            placeholders = ', '.join('?' for _ in valid_categories)
            joins = (" INNER JOIN torrust_categories tc ON tt.category_id = tc.category_id"
                     f" AND tc.name IN ({placeholders})")
            filter_args = tuple(valid_categories)
        else:
            predicates.append('0 = 1')

    base = f"SELECT tt.* FROM torrust_torrents tt{joins} WHERE {' AND '.join(predicates)}"
    args = filter_args + (search_pattern(params.search),)

    return ListingQuery(
        count_sql=f"SELECT COUNT(*) AS count FROM ({base}) AS filtered",
        select_sql=f"{base} ORDER BY {order_clause(params.sort)} LIMIT ? OFFSET ?",
        count_args=args,
        select_args=args + (params.page_size, params.offset),
    )
