import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


__version__ = '1.0.0'


def configure_logging(level=None, log_file=None):
    """
    Configure application logging.

    Args:
        level: Log level name (default: LOG_LEVEL environment variable or INFO)
        log_file: Optional log file (default: HOUSEKEEPER_LOG_FILE environment variable)
    """
    level_name = (level or os.environ.get('LOG_LEVEL') or 'INFO').upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    log_file = log_file or os.environ.get('HOUSEKEEPER_LOG_FILE')

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Health checks hit the probe every few seconds
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(max(log_level, logging.INFO))

    logging.getLogger(__name__).debug(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(readiness):
    """
    Flask application factory for the readiness probe.

    Args:
        readiness: Readiness state of the running Housekeeper
    """
    app = Flask(__name__)

    @app.route('/')
    @app.route('/health')
    def health():
        if readiness.is_ready:
            return {'status': 'ready'}, 200
        return '', 204

    return app
