"""
Readiness state and the health check endpoint.

The endpoint is only reachable through a unix socket; ``healthcheck()`` is
the client used by the ``healthcheck`` command (e.g. as docker HEALTHCHECK).
"""

import os
import socket
import logging
import threading
import http.client
from enum import Enum
from typing import Optional

from werkzeug.serving import make_server


logger = logging.getLogger(__name__)

DEFAULT_SOCKET = '/tmp/housekeeper.socket'


class HealthcheckError(Exception):
    """Raised when the health check fails."""
    pass


def socket_path() -> str:
    return os.environ.get('HOUSEKEEPER_SOCKET') or DEFAULT_SOCKET


class ReadinessState(Enum):
    NOT_READY = 'not_ready'
    READY = 'ready'


class Readiness:
    """Two state lifecycle flag, set once preparation completed."""

    def __init__(self):
        self._ready = threading.Event()

    @property
    def state(self) -> ReadinessState:
        return ReadinessState.READY if self._ready.is_set() else ReadinessState.NOT_READY

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def mark_ready(self):
        self._ready.set()


class HealthcheckServer:
    """Serves a Flask app on a unix socket in a background thread."""

    def __init__(self, app, path: Optional[str] = None):
        self.app = app
        self.path = path or socket_path()
        self._server = None
        self._thread = None

    def start(self):
        if os.path.exists(self.path):
            os.unlink(self.path)

        try:
            self._server = make_server(f"unix://{self.path}", 0, self.app, threaded=True)
        except OSError as e:
            raise HealthcheckError(f"failed to create socket {self.path}: {e}") from e

        self._thread = threading.Thread(target=self._server.serve_forever, name='healthcheck', daemon=True)
        self._thread.start()
        logger.debug(f"Health check listening on {self.path}")

    def stop(self):
        if self._server is None:
            return

        self._server.shutdown()
        self._server.server_close()
        self._server = None

        if os.path.exists(self.path):
            os.unlink(self.path)


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTP connection over a unix socket."""

    def __init__(self, path: str, timeout: float):
        super().__init__('localhost', timeout=timeout)
        self.unix_path = path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self.unix_path)


def healthcheck(path: Optional[str] = None, timeout: float = 0.1):
    """
    Ask the running Housekeeper whether it is ready.

    Raises:
        HealthcheckError: If the endpoint is unreachable or not ready
    """
    connection = UnixHTTPConnection(path or socket_path(), timeout)
    try:
        connection.request('GET', '/health')
        status = connection.getresponse().status
    except OSError as e:
        raise HealthcheckError(f"health check failed: {e}") from e
    finally:
        connection.close()

    if status != 200:
        raise HealthcheckError("housekeeper not ready")
