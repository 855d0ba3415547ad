"""
Backup module for Housekeeper.

This module handles the backup pipeline:
- Storage (local directory and S3 streaming)
- Encryption (age)
- Zip container and manifest
- Compression of database dumps and data directories
- Execution orchestration
"""

from .executor import BackupExecutor, BackupError
from .compression import tar_directory, CompressionError
from .container import ArchiveWriter, ContainerError
from .encryption import encrypt_writer, EncryptionError
from .meta import BackupMeta, BackupMetaDirectory
from .storage import S3Storage, LocalStorage, StorageError, create_storage

__all__ = [
    'BackupExecutor',
    'BackupError',
    'tar_directory',
    'CompressionError',
    'ArchiveWriter',
    'ContainerError',
    'encrypt_writer',
    'EncryptionError',
    'BackupMeta',
    'BackupMetaDirectory',
    'S3Storage',
    'LocalStorage',
    'StorageError',
    'create_storage'
]
