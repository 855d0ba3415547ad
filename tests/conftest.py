"""
Shared pytest fixtures for Housekeeper tests.

This module provides fixtures for:
- Backup configuration and storage
- Fake database connection
- Mock fixtures for external services (S3, APScheduler)
- Temporary data directories
"""

from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from housekeeper.backup.storage import LocalStorage
from housekeeper.config import BackupConfig, Config, DatabaseConfig
from housekeeper.database import DatabaseConnection, DatabaseError


class FakeDatabase(DatabaseConnection):
    """
    In-memory DatabaseConnection.

    ``dump`` is written by backup(); set ``error`` to make backup() fail.
    """

    def __init__(self, dump=b'-- PostgreSQL database dump\nCREATE TABLE test (id int);\n'):
        self.dump = dump
        self.error = None
        self.init_calls = 0
        self.wait_calls = []

    def init(self):
        self.init_calls += 1

    def wait_for_connection(self, timeout):
        self.wait_calls.append(timeout)

    def backup(self, writer):
        writer.write(self.dump)
        if self.error:
            raise DatabaseError(self.error)


@pytest.fixture
def fake_database():
    """Fake database connection returning a small SQL dump."""
    return FakeDatabase()


@pytest.fixture
def backup_dir(tmp_path):
    """Empty local backup storage directory."""
    path = tmp_path / 'backup'
    path.mkdir()
    return path


@pytest.fixture
def local_storage(backup_dir):
    return LocalStorage(str(backup_dir))


@pytest.fixture
def data_dirs(tmp_path):
    """
    Create two data directories.

    Creates:
    - data/A/a.txt
    - data/A/sub/b.txt
    - data/B/c.log
    - data/B/cache.pyc (excluded in tests)
    """
    a = tmp_path / 'data' / 'A'
    (a / 'sub').mkdir(parents=True)
    (a / 'a.txt').write_text('file a')
    (a / 'sub' / 'b.txt').write_text('file b')

    b = tmp_path / 'data' / 'B'
    b.mkdir(parents=True)
    (b / 'c.log').write_text('log c')
    (b / 'cache.pyc').write_bytes(b'compiled python')

    return a, b


@pytest.fixture
def make_config(backup_dir):
    """
    Factory for Config objects.

    Keyword arguments are BackupConfig fields; ``database`` is passed as
    ``database_config``.
    """
    def factory(database_config=None, **backup):
        backup.setdefault('storage', str(backup_dir))
        return Config(
            database=database_config or DatabaseConfig(),
            backup=BackupConfig(**backup)
        )
    return factory


@pytest.fixture
def database_config():
    return DatabaseConfig(
        host='db.example.com',
        port=5432,
        root_username='postgres',
        root_password='rootpass',
        username='app',
        password='apppass',
        database='appdb',
        pg_extensions='pg_trgm, uuid-ossp'
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('housekeeper.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = True
        scheduler_instance.get_jobs.return_value = []
        scheduler_instance.get_job.return_value = None

        yield mock_sched
