"""
Storage handlers for backup archives.

Supports:
- LocalStorage: Write archives into a local directory
- S3Storage: Stream archives to an S3 compatible object store

Both expose ``open(name) -> (stream, close)``: the archive is written to the
stream and is only complete once the close function returned without error.
"""

import os
import logging
import threading
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Tuple
from urllib.parse import urlparse

import boto3
from botocore.exceptions import ClientError, BotoCoreError


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def parse_remote(remote: str) -> Tuple[str, str]:
    """
    Parse a remote target descriptor.

    Args:
        remote: Target in the form s3://bucket[/prefix]

    Returns:
        Tuple of (bucket name, key prefix without surrounding slashes)

    Raises:
        StorageError: If the descriptor is malformed
    """
    parsed = urlparse(remote)
    if parsed.scheme != 's3' or not parsed.netloc:
        raise StorageError(f"Invalid remote target (expected s3://bucket/prefix): {remote}")
    return parsed.netloc, parsed.path.strip('/')


class LocalStorage:
    """
    Handler for storing backups in local filesystem.

    Archives are written directly to {base_path}/{filename}.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
        """
        self.base_path = Path(base_path)

    def prepare(self):
        """
        Create the base directory if it doesn't exist.

        Raises:
            StorageError: If the directory can't be created
        """
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create backup dir {self.base_path}: {e}")

    def open(self, name: str) -> Tuple[BinaryIO, Callable[[], None]]:
        """
        Create a backup file.

        Args:
            name: Filename of the archive

        Returns:
            Tuple of (writable file, close function)

        Raises:
            StorageError: If the file can't be created
        """
        path = self.base_path / name

        try:
            f = open(path, 'wb')
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to create backup file {name}: {e}")

        def close():
            try:
                f.close()
            except OSError as e:
                raise StorageError(f"Failed to write backup file {name}: {e}")

        return f, close

    def __str__(self):
        return str(self.base_path)


class _Upload:
    """Background upload of a pipe's read end, with its outcome."""

    def __init__(self, storage: 'S3Storage', reader: BinaryIO, key: str):
        self.storage = storage
        self.reader = reader
        self.key = key
        self.error: Optional[BaseException] = None
        self.thread = threading.Thread(target=self._run, name=f"upload-{key}", daemon=True)

    def _run(self):
        try:
            self.storage.s3_client.upload_fileobj(self.reader, self.storage.bucket_name, self.key)
            logger.debug(f"Upload of {self.key} completed")
        except Exception as e:
            # recorded for the close function, the writer sees a broken pipe
            self.error = e
        finally:
            self.reader.close()


class S3Storage:
    """
    Handler for streaming backups to AWS S3 or an S3 compatible service.

    Archives are stored with the key {prefix}/{filename}. The archive is
    streamed through an OS pipe into a multipart upload while it is being
    written; its size doesn't need to be known.
    """

    def __init__(
        self,
        bucket_name: str,
        prefix: str = '',
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix for stored archives
            region: AWS region (default: us-east-1)
            endpoint_url: Endpoint of an S3 compatible service (optional)
            access_key: AWS access key ID (optional, boto3 credential chain otherwise)
            secret_key: AWS secret access key (optional)
        """
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        self.region = region

        client_kwargs = {'region_name': region}
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def object_key(self, name: str) -> str:
        if self.prefix:
            return f"{self.prefix}/{name}"
        return name

    def prepare(self):
        """Check that the bucket is reachable."""
        self.test_connection()

    def open(self, name: str) -> Tuple[BinaryIO, Callable[[], None]]:
        """
        Start a streaming upload.

        Args:
            name: Filename of the archive

        Returns:
            Tuple of (writable pipe, close function). The close function ends
            the stream, waits until the upload finished and raises
            StorageError if it failed.
        """
        key = self.object_key(name)

        read_fd, write_fd = os.pipe()
        reader = os.fdopen(read_fd, 'rb')
        writer = os.fdopen(write_fd, 'wb')

        upload = _Upload(self, reader, key)
        upload.thread.start()

        def close():
            write_error = None
            try:
                writer.close()
            except OSError as e:
                write_error = e

            upload.thread.join()

            if upload.error is not None:
                raise StorageError(self._describe_error("S3 upload", key, upload.error)) from upload.error
            if write_error is not None:
                raise StorageError(f"S3 upload of {key} failed: {write_error}") from write_error

        return writer, close

    def _describe_error(self, operation: str, key: str, error: BaseException) -> str:
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            return f"{operation} of {key} failed ({error_code}): {error}"
        if isinstance(error, BotoCoreError):
            return f"{operation} of {key} failed: {error}"
        return f"Failed to upload {key} to S3: {error}"

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            # Try to head the bucket
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def __str__(self):
        return f"s3://{self.bucket_name}/{self.prefix}"


def create_storage(config):
    """
    Factory function to create the storage handler of a backup configuration.

    Args:
        config: BackupConfig

    Returns:
        S3Storage if a remote target is configured, LocalStorage otherwise
    """
    if config.remote:
        bucket_name, prefix = parse_remote(config.remote)
        return S3Storage(
            bucket_name=bucket_name,
            prefix=prefix,
            region=config.s3_region,
            endpoint_url=config.s3_endpoint_url or None,
            access_key=config.s3_access_key or None,
            secret_key=config.s3_secret_key or None
        )
    return LocalStorage(config.storage)
