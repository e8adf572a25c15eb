import argparse
import logging
import signal
import sys
import threading
import time
from typing import Optional

from flask import Flask

from . import handlers
from .auth import Auth
from .config import DEFAULT_CONFIG_PATH, Configuration
from .database import Database
from .errors import ConfigError
from .tracker import StatsUpdater, TrackerService

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'

shutdown_event = threading.Event()


def configure_logging(level: str = 'INFO'):
    """Send all log records to stderr through a single handler."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level.upper())


def create_app(configuration: Configuration, database: Optional[Database] = None,
               tracker: Optional[TrackerService] = None, auth: Optional[Auth] = None) -> Flask:
    """
    Build the Flask application.

    Collaborators that are not passed in are built from the configuration.
    The database schema is created if it does not exist yet.
    """
    settings = configuration.snapshot()

    if database is None:
        database = Database(settings.database.path)
    database.initialize(settings.database.default_categories)

    if tracker is None:
        tracker = TrackerService(configuration, database)
    if auth is None:
        auth = Auth(database)

    app = Flask(__name__)
    app.extensions[handlers.EXTENSION_KEY] = handlers.AppData(
        configuration=configuration,
        database=database,
        tracker=tracker,
        auth=auth,
    )
    app.register_blueprint(handlers.bp)
    return app


def run_server(app: Flask, host: str, port: int):
    """Run the Flask app with its built-in threaded server."""
    app.run(host=host, port=port, threaded=True, use_reloader=False)


def signal_handler(signum, frame):
    logger.info("Received signal %s", signum)
    shutdown_event.set()


def main(argv=None):
    parser = argparse.ArgumentParser(description='Torrust index: torrent upload and download service')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help=f'Path to the TOML configuration (default: {DEFAULT_CONFIG_PATH})')
    parser.add_argument('--host', help='Override the listen address from the configuration')
    parser.add_argument('--port', type=int, help='Override the listen port from the configuration')
    parser.add_argument('--log-level', default='INFO', help='Logging level (default: INFO)')
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    try:
        configuration = Configuration.from_file(args.config)
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    settings = configuration.snapshot()
    host = args.host or settings.net.host
    port = args.port or settings.net.port

    app = create_app(configuration)
    app_data = app.extensions[handlers.EXTENSION_KEY]

    updater = None
    if settings.database.torrent_info_update_interval > 0:
        updater = StatsUpdater(app_data.tracker, settings.database.torrent_info_update_interval)
        updater.start()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("Starting torrust index on %s:%d", host, port)
    server_thread = threading.Thread(target=run_server, args=(app, host, port), daemon=True)
    server_thread.start()

    # Wait for shutdown signal
    while not shutdown_event.is_set() and server_thread.is_alive():
        time.sleep(1)

    logger.info("Shutting down")
    if updater is not None:
        updater.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
