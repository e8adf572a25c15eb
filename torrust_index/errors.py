class ServiceError(Exception):
    """Base class for every error that is rendered to an API client."""

    status_code = 500
    message = "internal server error"

    def __init__(self, message: str = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self):
        return {'error': self.message}


class BadRequest(ServiceError):
    status_code = 400
    message = "bad request"


class Unauthorized(ServiceError):
    status_code = 401
    message = "unauthorized"


class InvalidCategory(ServiceError):
    status_code = 400
    message = "selected category does not exist"


class InvalidFileType(ServiceError):
    status_code = 400
    message = "uploaded file is not a .torrent file (application/x-bittorrent)"


class InvalidTorrentFile(ServiceError):
    status_code = 400
    message = "invalid torrent file"


class TorrentNotFound(ServiceError):
    status_code = 404
    message = "torrent not found"


class TrackerUnavailable(ServiceError):
    status_code = 502
    message = "tracker is unavailable"


class InternalServerError(ServiceError):
    status_code = 500
    message = "internal server error"


class NotFound(Exception):
    """Raised by storage when a blob does not exist. Never sent to clients."""


class ConfigError(Exception):
    """Raised when the configuration file cannot be parsed."""
