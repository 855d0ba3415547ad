"""
Database connections used to initialize and dump the backed up database.

DatabaseConnection is the capability the backup pipeline depends on; other
database engines plug in by implementing it.
"""

import os
import time
import shutil
import logging
import subprocess
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, BinaryIO, List

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from housekeeper.config import DatabaseConfig


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails."""
    pass


class DatabaseConnection(ABC):
    """Database that can be initialized and dumped."""

    @abstractmethod
    def init(self):
        """Create role, database and extensions if they don't exist yet."""

    @abstractmethod
    def wait_for_connection(self, timeout: float):
        """Block until the database accepts connections or ``timeout`` seconds passed."""

    @abstractmethod
    def backup(self, writer: BinaryIO):
        """Write a SQL dump of the database to ``writer``."""


class PostgresConnection(DatabaseConnection):
    """
    PostgreSQL connection.

    Connectivity checks and initialization run through SQLAlchemy with the
    root credentials if a root password is configured, with the user
    credentials otherwise. Dumps are created with ``pg_dump``.
    """

    poll_interval = 1.0
    connect_timeout = 5
    dump_command = 'pg_dump'

    def __init__(self, config: 'DatabaseConfig'):
        self.config = config

        if config.root_password:
            self.username = config.root_username
            self.password = config.root_password
            self.maintenance_database = 'postgres'
        else:
            self.username = config.username
            self.password = config.password
            self.maintenance_database = config.database

    def connection_url(self, database: str) -> URL:
        return URL.create(
            'postgresql+psycopg2',
            username=self.username,
            password=self.password,
            host=self.config.host,
            port=self.config.port,
            database=database
        )

    def _create_engine(self, database: str) -> Engine:
        # role and database creation can't run inside a transaction
        return create_engine(
            self.connection_url(database),
            isolation_level='AUTOCOMMIT',
            connect_args={'connect_timeout': self.connect_timeout}
        )

    def wait_for_connection(self, timeout: float):
        """
        Poll the database once per interval until it accepts connections.

        Raises:
            DatabaseError: If no connection succeeded within ``timeout`` seconds
        """
        engine = self._create_engine(self.maintenance_database)
        deadline = time.monotonic() + timeout
        last_error = None

        try:
            while True:
                try:
                    with engine.connect() as conn:
                        conn.execute(text('SELECT 1'))
                    return
                except SQLAlchemyError as e:
                    last_error = e

                if time.monotonic() >= deadline:
                    raise DatabaseError(f"timeout while trying to connect to database: {last_error}")
                time.sleep(self.poll_interval)
        finally:
            engine.dispose()

    def init(self):
        """
        Initialize role, database, privileges and extensions.

        Skipped when no root password is configured. Running it again only
        re-grants the privileges.

        Raises:
            DatabaseError: If any statement fails
        """
        if not self.config.root_password:
            logger.info("No root password given -> skip user and database creation")
            return

        logger.info("Initialize database ...")

        engine = self._create_engine(self.maintenance_database)
        try:
            with engine.connect() as conn:
                quote = conn.dialect.identifier_preparer.quote
                user = quote(self.config.username)
                database = quote(self.config.database)

                # create user if not exist
                exists = conn.execute(
                    text('SELECT usename FROM pg_catalog.pg_user WHERE usename = :name'),
                    {'name': self.config.username}
                ).scalar()
                if exists is None:
                    conn.execute(
                        text(f'CREATE ROLE {user} WITH LOGIN CREATEDB PASSWORD :password'),
                        {'password': self.config.password}
                    )
                    logger.info(f"> user {self.config.username} created")
                else:
                    logger.info(f"> user {self.config.username} already exist")

                # create database if not exist
                exists = conn.execute(
                    text('SELECT datname FROM pg_catalog.pg_database WHERE datname = :name'),
                    {'name': self.config.database}
                ).scalar()
                if exists is None:
                    conn.execute(text(f'CREATE DATABASE {database} OWNER {user}'))
                    logger.info(f"> database {self.config.database} created")
                else:
                    logger.info(f"> database {self.config.database} already exist")

                # ensure user has permissions in database
                conn.execute(text(f'GRANT ALL PRIVILEGES ON DATABASE {database} TO {user}'))
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to initialize database: {e}") from e
        finally:
            engine.dispose()

        self._create_extensions()

    def _create_extensions(self):
        extensions = self.config.extensions()
        if not extensions:
            return

        engine = self._create_engine(self.config.database)
        try:
            with engine.connect() as conn:
                quote = conn.dialect.identifier_preparer.quote
                for extension in extensions:
                    conn.execute(text(f'CREATE EXTENSION IF NOT EXISTS {quote(extension)}'))
                    logger.info(f"> extension {extension} available")
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to add extensions: {e}") from e
        finally:
            engine.dispose()

    def dump_arguments(self) -> List[str]:
        return [
            self.dump_command,
            '-h', self.config.host,
            '-p', str(self.config.port),
            '-U', self.config.username,
            self.config.database
        ]

    def backup(self, writer: BinaryIO):
        """
        Dump the database with pg_dump.

        The password is passed through the PGPASSWORD environment variable,
        stderr of pg_dump goes to the stderr of this process.

        Raises:
            DatabaseError: If pg_dump can't be started or exits non-zero
        """
        env = dict(os.environ)
        env['PGPASSWORD'] = self.config.password

        try:
            process = subprocess.Popen(self.dump_arguments(), stdout=subprocess.PIPE, env=env)
        except OSError as e:
            raise DatabaseError(f"Failed to start {self.dump_command}: {e}") from e

        with process:
            try:
                shutil.copyfileobj(process.stdout, writer)
            except BaseException:
                process.kill()
                raise
            returncode = process.wait()

        if returncode != 0:
            raise DatabaseError(f"{self.dump_command} exited with status {returncode}")
