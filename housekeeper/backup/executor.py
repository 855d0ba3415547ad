"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Generate archive filename (skip everything if nothing is enabled)
2. Open storage, wrap it with encryption and the zip container
3. Dump the database into the "database" entry
4. Archive each data directory into a "data_<index>" entry
5. Write the backup.yml manifest
6. Close container, encryption and storage (in that order, always)

The manifest is written last, so an archive without backup.yml is the
result of a failed run.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from housekeeper.database import DatabaseConnection, DatabaseError
from .compression import tar_directory, gzip_writer, generate_archive_filename, CompressionError
from .container import ArchiveWriter, ContainerError
from .encryption import encrypt_writer, EncryptionError
from .meta import BackupMeta, BackupMetaDirectory
from .storage import StorageError


logger = logging.getLogger(__name__)

DATABASE_ENTRY = 'database'
DIRECTORY_ENTRY = 'data_{}'
META_ENTRY = 'backup.yml'


class BackupError(Exception):
    """Raised when a backup run fails."""
    pass


class BackupExecutor:
    """
    Runs backups of the database and the data directories of a BackupConfig.
    """

    def __init__(self, config, storage, database: Optional[DatabaseConnection] = None):
        """
        Initialize backup executor.

        Args:
            config: BackupConfig
            storage: LocalStorage or S3Storage the archive is written to
            database: Connection used for the database dump
        """
        self.config = config
        self.storage = storage
        self.database = database
        self.logs: List[str] = []

    def is_backup_enabled(self) -> bool:
        return self.config.is_backup_enabled()

    def execute(self) -> Optional[BackupMeta]:
        """
        Execute one backup run.

        Returns:
            The manifest written to the archive, None if nothing is enabled

        Raises:
            BackupError: If any stage fails; earlier entries remain in the
                archive but no manifest is written
        """
        self.logs = []

        if not self.is_backup_enabled():
            self._log("Nothing to backup")
            return None

        started = datetime.now().astimezone().replace(microsecond=0)
        recipients = self.config.recipients()
        filename = generate_archive_filename(started, encrypted=bool(recipients))
        meta = BackupMeta(date=started)

        self._log(f"Create backup {filename} ...")

        # close functions, in opening order
        layers: List[Tuple[str, Callable[[], None]]] = []

        try:
            sink = self._open_storage(filename, layers)
            stream = self._open_encryption(sink, recipients, layers)
            archive = self._open_archive(stream, started, layers)

            self._backup_database(archive, meta)
            self._backup_directories(archive, meta)
            self._write_meta(archive, meta)

        except Exception as e:
            self._log(f"Backup failed: {e}", logging.ERROR)
            self._close_layers(layers, failed=True)
            raise

        self._close_layers(layers, failed=False)
        self._log("Backup finished")
        return meta

    def _open_storage(self, filename: str, layers: list):
        try:
            sink, close = self.storage.open(filename)
        except StorageError as e:
            raise BackupError(f"Failed to open storage for {filename}: {e}") from e
        layers.append(('storage', close))
        return sink

    def _open_encryption(self, sink, recipients: list, layers: list):
        try:
            stream, close = encrypt_writer(sink, recipients)
        except EncryptionError as e:
            raise BackupError(f"Failed age encryption: {e}") from e
        layers.append(('encryption', close))
        return stream

    def _open_archive(self, stream, started: datetime, layers: list) -> ArchiveWriter:
        try:
            archive = ArchiveWriter(stream, started)
        except ContainerError as e:
            raise BackupError(str(e)) from e
        layers.append(('archive', archive.close))
        return archive

    def _backup_database(self, archive: ArchiveWriter, meta: BackupMeta):
        if not self.config.database:
            return
        if self.database is None:
            raise BackupError("Database backup enabled but no database connection configured")

        self._log("> dump database")
        try:
            with archive.open_entry(DATABASE_ENTRY) as entry:
                with gzip_writer(entry, mtime=meta.date.timestamp()) as writer:
                    self.database.backup(writer)
        except (DatabaseError, ContainerError, OSError) as e:
            raise BackupError(f"Failed to create {DATABASE_ENTRY}: {e}") from e

        meta.database_backup = DATABASE_ENTRY

    def _backup_directories(self, archive: ArchiveWriter, meta: BackupMeta):
        directories = self.config.directories()
        if not directories:
            return

        self._log("> backup data directories")
        exclude_patterns = self.config.exclude_patterns()

        for index, directory in enumerate(directories):
            self._log(f"-> {directory}")
            filename = DIRECTORY_ENTRY.format(index)

            try:
                with archive.open_entry(filename) as entry:
                    tar_directory(entry, directory, exclude_patterns)
            except (CompressionError, ContainerError, OSError) as e:
                raise BackupError(f"Failed to create {filename}: {e}") from e

            meta.directories.append(BackupMetaDirectory(directory_path=directory, filename=filename))

    def _write_meta(self, archive: ArchiveWriter, meta: BackupMeta):
        try:
            with archive.open_entry(META_ENTRY) as entry:
                entry.write(meta.to_yaml().encode('utf-8'))
        except (ContainerError, OSError) as e:
            raise BackupError(f"Failed to write {META_ENTRY}: {e}") from e

    def _close_layers(self, layers: list, failed: bool):
        """
        Close all opened layers in reverse opening order.

        Every layer is closed even if an earlier close fails. After a failed
        run close errors are only logged, otherwise they fail the run.
        """
        errors = []

        for name, close in reversed(layers):
            try:
                close()
            except Exception as e:
                self._log(f"Failed to close {name}: {e}", logging.WARNING)
                errors.append((name, e))

        layers.clear()

        if errors and not failed:
            message = '; '.join(f"{name}: {error}" for name, error in errors)
            self._log(f"Backup failed: {message}", logging.ERROR)
            # the innermost layer (storage) usually carries the root cause
            raise BackupError(f"Failed to close {message}") from errors[-1][1]

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
