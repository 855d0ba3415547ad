"""
Housekeeper service: wires configuration, database, storage, executor,
scheduler and the health check together.
"""

import logging
from typing import Mapping, Optional

from housekeeper import create_app
from housekeeper.backup.executor import BackupExecutor
from housekeeper.backup.storage import create_storage
from housekeeper.config import Config, load_config
from housekeeper.database import DatabaseConnection, PostgresConnection
from housekeeper.health import HealthcheckServer, Readiness
from housekeeper.scheduler import BackupScheduler


logger = logging.getLogger(__name__)

CONNECTION_TIMEOUT = 60


class Housekeeper:
    """
    Top level service.

    Lifecycle: prepare() -> start_schedule() -> stop_schedule(), or
    prepare() -> backup() for a single run.
    """

    def __init__(self, config: Config, database: Optional[DatabaseConnection] = None, storage=None):
        self.config = config
        self.readiness = Readiness()

        if database is None and config.database.host:
            database = PostgresConnection(config.database)
        self.database = database

        self.storage = storage if storage is not None else create_storage(config.backup)
        self.executor = BackupExecutor(config.backup, self.storage, self.database)
        self.scheduler = BackupScheduler(self.executor, config.backup.schedule)
        self.health_server: Optional[HealthcheckServer] = None

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> 'Housekeeper':
        """
        Load the configuration and create the service.

        Raises:
            ConfigError: If the configuration is invalid
        """
        logger.info("Load config")
        return cls(load_config(environ))

    def start_healthcheck_server(self, path: Optional[str] = None):
        self.health_server = HealthcheckServer(create_app(self.readiness), path)
        self.health_server.start()

    def prepare(self, connection_timeout: float = CONNECTION_TIMEOUT, healthcheck: bool = True):
        """
        Prepare database and backup storage, then mark the service ready.

        Raises:
            HealthcheckError: If the health check socket can't be created
            DatabaseError: If the database is unreachable or can't be initialized
            StorageError: If the backup storage can't be prepared
        """
        if healthcheck:
            self.start_healthcheck_server()

        if self.database is not None:
            logger.info("Wait for database connection")
            self.database.wait_for_connection(connection_timeout)
            self.database.init()

        self.storage.prepare()
        logger.info(f"Backup storage: {self.storage}")

        self.readiness.mark_ready()

    def backup(self):
        """Run a single backup. Raises BackupError on failure."""
        return self.executor.execute()

    def start_schedule(self):
        self.scheduler.start()

    def stop_schedule(self, timeout: float) -> bool:
        return self.scheduler.stop(timeout)

    def shutdown(self):
        if self.health_server is not None:
            self.health_server.stop()
            self.health_server = None
