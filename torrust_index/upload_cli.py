import argparse
import logging
import os
import sys
import time
from typing import Optional

import requests

from .errors import InvalidTorrentFile
from .intake import TORRENT_CONTENT_TYPE
from .metainfo import decode_torrent

logger = logging.getLogger(__name__)

# Global Configuration
INDEX_DEFAULT_URL = 'http://localhost:3000'
UPLOAD_ENDPOINT = '/torrent/upload'

# Error handling configuration
MAX_RETRIES = 3
RETRY_DELAY = 2  # seconds

SUPPORTED_EXTENSIONS = ['.torrent']

# HTTP request configuration
REQUEST_TIMEOUT = 30  # seconds
HTTP_HEADERS = {
    'User-Agent': 'Torrust-Upload/1.0',
}


def read_torrent_file(torrent_path: str) -> bytes:
    """Read a .torrent file and check that it decodes before sending it."""
    try:
        with open(torrent_path, 'rb') as f:
            data = f.read()
    except IOError as e:
        raise IOError(f"Failed to read torrent file: {e}")
    try:
        decode_torrent(data, max_size=len(data))
    except InvalidTorrentFile as e:
        raise ValueError(f"Invalid torrent file format: {e}")
    return data


def validate_torrent_file(torrent_path: str) -> bool:
    """Validate torrent file path and extension."""
    if not os.path.exists(torrent_path):
        logger.error("File not found: %s", torrent_path)
        return False

    _, ext = os.path.splitext(torrent_path)
    if ext.lower() not in SUPPORTED_EXTENSIONS:
        logger.error("Unsupported file extension: %s", ext)
        return False

    return True


def upload_torrent(index_url: str, token: str, torrent_path: str, category: str,
                   title: Optional[str] = None, description: str = '') -> Optional[int]:
    """
    Upload one torrent, retrying transport failures.

    Returns:
        the new torrent id, or None if the upload failed
    """
    try:
        data = read_torrent_file(torrent_path)
    except (IOError, ValueError) as e:
        logger.error("%s", e)
        return None

    filename = os.path.basename(torrent_path)
    fields = {
        'title': title or os.path.splitext(filename)[0],
        'description': description,
        'category': category,
    }
    headers = dict(HTTP_HEADERS, Authorization=f'Bearer {token}')

    for attempt in range(MAX_RETRIES):
        try:
            response = requests.post(
                f"{index_url.rstrip('/')}{UPLOAD_ENDPOINT}",
                data=fields,
                files={'torrent': (filename, data, TORRENT_CONTENT_TYPE)},
                headers=headers,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            if attempt < MAX_RETRIES - 1:
                logger.warning("Attempt %d failed. Retrying in %d seconds...", attempt + 1, RETRY_DELAY)
                time.sleep(RETRY_DELAY)
                continue
            logger.error("Failed to upload torrent after %d attempts: %s", MAX_RETRIES, e)
            return None

        if not response.ok:
            try:
                reason = response.json().get('error', response.reason)
            except ValueError:
                reason = response.reason
            logger.error("Index rejected %s: %s (%d)", filename, reason, response.status_code)
            return None

        torrent_id = response.json()['data']['torrent_id']
        logger.info("Uploaded %s as torrent %d", filename, torrent_id)
        return torrent_id

    return None


def main(argv=None):
    parser = argparse.ArgumentParser(description='Upload torrents to a torrust index')
    parser.add_argument('torrent_files', nargs='+', help='Path to .torrent file(s)')
    parser.add_argument('--index', default=INDEX_DEFAULT_URL,
                        help=f'Index URL (default: {INDEX_DEFAULT_URL})')
    parser.add_argument('--token', default=os.environ.get('TORRUST_TOKEN'),
                        help='API token (default: $TORRUST_TOKEN)')
    parser.add_argument('--category', required=True, help='Category name')
    parser.add_argument('--title', help='Title (default: file name, single file only)')
    parser.add_argument('--description', default='', help='Description')

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    if not args.token:
        parser.error('an API token is required (--token or TORRUST_TOKEN)')

    failures = 0
    for torrent_file in args.torrent_files:
        if not validate_torrent_file(torrent_file):
            failures += 1
            continue
        logger.info("Processing: %s", torrent_file)
        title = args.title if len(args.torrent_files) == 1 else None
        if upload_torrent(args.index, args.token, torrent_file, args.category,
                          title=title, description=args.description) is None:
            failures += 1

    return 1 if failures else 0


if __name__ == '__main__':
    sys.exit(main())
