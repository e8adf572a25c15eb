import logging
import os
import tempfile

from .errors import InternalServerError, NotFound

logger = logging.getLogger(__name__)

TORRENT_EXTENSION = '.torrent'


def torrent_path(upload_dir: str, torrent_id: int) -> str:
    """Path of the stored .torrent for an id. Only the integer id takes part."""
    return os.path.join(upload_dir, f"{int(torrent_id)}{TORRENT_EXTENSION}")


def save(upload_dir: str, torrent_id: int, data: bytes) -> str:
    """
    Write the torrent bytes to ``<upload_dir>/<id>.torrent``.

    The bytes go to a temporary file in the same directory which is then
    renamed over the target, so readers never see a partial file.

    Raises:
        InternalServerError: if the directory or file cannot be written
    """
    path = torrent_path(upload_dir, torrent_id)
    try:
        os.makedirs(upload_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{int(torrent_id)}-", suffix='.tmp', dir=upload_dir)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
    except OSError as e:
        logger.error("Failed to write torrent file %s: %s", path, e)
        raise InternalServerError()
    return path


def load(upload_dir: str, torrent_id: int) -> bytes:
    """
    Read the stored torrent bytes.

    Raises:
        NotFound: if no file exists for the id
        InternalServerError: on any other read failure
    """
    path = torrent_path(upload_dir, torrent_id)
    try:
        with open(path, 'rb') as f:
            return f.read()
    except FileNotFoundError:
        raise NotFound(path)
    except OSError as e:
        logger.error("Failed to read torrent file %s: %s", path, e)
        raise InternalServerError()


def remove(upload_dir: str, torrent_id: int) -> bool:
    """Delete a stored torrent. Returns False if there was nothing to delete."""
    path = torrent_path(upload_dir, torrent_id)
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True
