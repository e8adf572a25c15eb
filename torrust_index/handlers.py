import logging
import urllib.parse
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from flask import Blueprint, Response, current_app, jsonify, request
from werkzeug.exceptions import ClientDisconnected, HTTPException

from . import storage
from .auth import Auth
from .config import Configuration, Settings
from .database import Database, TorrentListing
from .errors import (BadRequest, InternalServerError, InvalidCategory, InvalidTorrentFile,
                     NotFound, ServiceError, TorrentNotFound, TrackerUnavailable, Unauthorized)
from .intake import (TORRENT_CONTENT_TYPE, boundary_from_content_type, max_body_size,
                     parse_torrent_request)
from .listing import MAX_SQL_INTEGER, ListingParams
from .metainfo import Metainfo, apply_site_config, decode_torrent, encode_torrent, personalize
from .tracker import TrackerService

logger = logging.getLogger(__name__)

bp = Blueprint('torrents', __name__)

CHUNK_SIZE = 64 * 1024  # bytes read from the request body at a time
EXTENSION_KEY = 'torrust_index'


@dataclass
class AppData:
    configuration: Configuration
    database: Database
    tracker: TrackerService
    auth: Auth


@dataclass
class TorrentResponse:
    torrent_id: int
    uploader: str
    info_hash: str
    title: str
    description: Optional[str]
    category_id: int
    upload_date: str
    file_size: int
    seeders: int
    leechers: int
    files: Optional[List[dict]] = None
    trackers: List[str] = field(default_factory=list)
    magnet_link: str = ''

    @classmethod
    def from_listing(cls, listing: TorrentListing) -> 'TorrentResponse':
        return cls(
            torrent_id=listing.torrent_id,
            uploader=listing.uploader,
            info_hash=listing.info_hash,
            title=listing.title,
            description=listing.description,
            category_id=listing.category_id,
            upload_date=listing.upload_date,
            file_size=listing.file_size,
            seeders=listing.seeders,
            leechers=listing.leechers,
        )

    def add_trackers(self, urls: List[str], first: bool = False):
        merged = urls + self.trackers if first else self.trackers + urls
        self.trackers = list(dict.fromkeys(merged))

    def to_dict(self):
        return asdict(self)


def magnet_link(info_hash: str, title: str, trackers: List[str]) -> str:
    magnet = f"magnet:?xt=urn:btih:{info_hash}&dn={urllib.parse.quote(title, safe='')}"
    for tracker in trackers:
        magnet += f"&tr={urllib.parse.quote(tracker, safe='')}"
    return magnet


def app_data() -> AppData:
    return current_app.extensions[EXTENSION_KEY]


def ok(data):
    return jsonify({'data': data})


def parse_torrent_id(value: str) -> int:
    try:
        torrent_id = int(value)
    except (TypeError, ValueError):
        raise BadRequest("torrent id must be an integer")
    # no row can carry an id sqlite cannot store
    if abs(torrent_id) > MAX_SQL_INTEGER:
        raise TorrentNotFound()
    return torrent_id


def _body_chunks():
    stream = request.stream
    while True:
        try:
            chunk = stream.read(CHUNK_SIZE)
        except ClientDisconnected:
            raise BadRequest("client disconnected during upload")
        if not chunk:
            return
        yield chunk


def _read_stored_torrent(settings: Settings, torrent_id: int) -> Metainfo:
    """Load and decode a stored torrent. Stored files may exceed the upload limit by the rewritten announce."""
    data = storage.load(settings.storage.upload_path, torrent_id)
    return decode_torrent(data, max_size=2 * settings.upload.max_torrent_size)


@bp.app_errorhandler(ServiceError)
def handle_service_error(error: ServiceError):
    return jsonify(error.to_dict()), error.status_code


@bp.app_errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unhandled error while serving %s %s", request.method, request.path)
    internal = InternalServerError()
    return jsonify(internal.to_dict()), internal.status_code


# eg: /torrents?categories=music,other,movie&search=bunny&sort=size_DESC
@bp.route('/torrents', methods=['GET'])
def get_torrents():
    data = app_data()
    with data.configuration.read() as settings:
        api = settings.api

    params = ListingParams.from_args(request.args, api.default_page_size, api.max_page_size)
    total, results = data.database.list_torrents(params)

    return ok({
        'total': total,
        'results': [listing.to_dict() for listing in results],
    })


@bp.route('/torrent/upload', methods=['POST'])
def upload_torrent():
    data = app_data()
    user = data.auth.get_user_from_request(request)
    settings = data.configuration.snapshot()

    body_limit = max_body_size(settings.upload.max_torrent_size, settings.upload.max_field_size)
    if request.content_length is not None and request.content_length > body_limit:
        raise BadRequest(f"upload body is larger than {body_limit} bytes")

    boundary = boundary_from_content_type(request.content_type)
    torrent_request = parse_torrent_request(
        _body_chunks(),
        boundary,
        max_torrent_size=settings.upload.max_torrent_size,
        max_field_size=settings.upload.max_field_size,
        strict=settings.upload.strict_bencode,
    )
    fields = torrent_request.fields
    torrent = torrent_request.torrent

    # our tracker becomes the announce url of every stored torrent
    apply_site_config(torrent, settings.tracker.url, settings.upload.keep_announce_list)

    category_id = data.database.get_category_id(fields.category)
    if category_id is None:
        raise InvalidCategory()

    info_hash = torrent.info_hash
    stats = data.tracker.stats(info_hash)
    torrent_bytes = encode_torrent(torrent)

    saved_id = None
    try:
        with data.database.transaction() as conn:
            torrent_id = data.database.insert_torrent(
                conn,
                uploader=user.username,
                info_hash=info_hash,
                title=fields.title,
                category_id=category_id,
                description=fields.description,
                file_size=torrent.file_size(),
                seeders=stats.seeders,
                leechers=stats.leechers,
            )
            storage.save(settings.storage.upload_path, torrent_id, torrent_bytes)
            saved_id = torrent_id
    except ServiceError:
        if saved_id is not None:
            try:
                storage.remove(settings.storage.upload_path, saved_id)
            except OSError as e:
                logger.error("Could not remove file of rolled back torrent %d: %s", saved_id, e)
        raise

    try:
        data.tracker.whitelist_info_hash(info_hash)
    except TrackerUnavailable:
        logger.warning("Could not whitelist %s on the tracker", info_hash)

    logger.info("User %s uploaded torrent %d (%s)", user.username, torrent_id, info_hash)
    return ok({'torrent_id': torrent_id})


@bp.route('/torrent/download/<torrent_id>', methods=['GET'])
def download_torrent(torrent_id):
    data = app_data()
    user = data.auth.get_user_from_request(request)
    torrent_id = parse_torrent_id(torrent_id)
    settings = data.configuration.snapshot()

    # a deleted row means the torrent is gone, even if its file was left behind
    data.database.get_torrent_by_id(torrent_id)

    try:
        torrent = _read_stored_torrent(settings, torrent_id)
    except NotFound:
        raise TorrentNotFound()
    except InvalidTorrentFile as e:
        logger.error("Stored torrent %d is corrupt: %s", torrent_id, e)
        raise InternalServerError()

    personal_announce_url = data.tracker.get_personal_announce_url(user.username)
    personalize(torrent, personal_announce_url)

    return Response(
        encode_torrent(torrent),
        mimetype=TORRENT_CONTENT_TYPE,
        headers={'Content-Disposition': f'attachment; filename="{torrent_id}.torrent"'},
    )


@bp.route('/torrent/<torrent_id>', methods=['GET'])
def get_torrent(torrent_id):
    data = app_data()
    user = data.auth.get_optional_user(request)
    torrent_id = parse_torrent_id(torrent_id)
    settings = data.configuration.snapshot()

    listing = data.database.get_torrent_by_id(torrent_id)
    response = TorrentResponse.from_listing(listing)

    try:
        torrent = _read_stored_torrent(settings, torrent_id)
    except (NotFound, InvalidTorrentFile, InternalServerError) as e:
        logger.warning("Cannot read stored torrent %d: %s", torrent_id, e)
    else:
        response.files = [f.to_dict() for f in torrent.file_list()]
        response.add_trackers(torrent.trackers())

    if user is not None:
        response.add_trackers([data.tracker.get_personal_announce_url(user.username)], first=True)
    else:
        response.add_trackers([settings.tracker.url], first=True)

    response.magnet_link = magnet_link(response.info_hash, response.title, response.trackers)

    try:
        stats = data.tracker.get_torrent_info(response.info_hash)
    except TrackerUnavailable:
        logger.debug("Showing stored stats for torrent %d", torrent_id)
    else:
        response.seeders = stats.seeders
        response.leechers = stats.leechers
        data.database.update_tracker_stats(torrent_id, stats.seeders, stats.leechers)

    return ok(response.to_dict())


@bp.route('/torrent/<torrent_id>', methods=['PUT'])
def update_torrent(torrent_id):
    data = app_data()
    user = data.auth.get_user_from_request(request)
    torrent_id = parse_torrent_id(torrent_id)

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not isinstance(payload.get('description'), str):
        raise BadRequest("expected a JSON body with a description")
    description = payload['description']

    listing = data.database.get_torrent_by_id(torrent_id)

    # owner or administrator
    if listing.uploader != user.username and not user.administrator:
        raise Unauthorized()

    data.database.update_torrent_description(torrent_id, description)
    listing.description = description

    return ok(TorrentResponse.from_listing(listing).to_dict())


@bp.route('/torrent/<torrent_id>', methods=['DELETE'])
def delete_torrent(torrent_id):
    data = app_data()
    user = data.auth.get_user_from_request(request)
    if not user.administrator:
        raise Unauthorized()

    torrent_id = parse_torrent_id(torrent_id)
    data.database.delete_torrent(torrent_id)

    upload_path = data.configuration.snapshot().storage.upload_path
    try:
        storage.remove(upload_path, torrent_id)
    except OSError as e:
        logger.warning("Deleted torrent %d but could not remove its file: %s", torrent_id, e)

    logger.info("Administrator %s deleted torrent %d", user.username, torrent_id)
    return ok({'torrent_id': torrent_id})
