"""
Compression handlers for backup archives.

- tar_directory: gzip compressed tar stream of a directory tree
- gzip_writer: gzip stream used for the database dump
- generate_archive_filename: name of the archive of a backup run
"""

import os
import gzip
import logging
import tarfile
from datetime import datetime
from fnmatch import fnmatch
from typing import BinaryIO, Iterator, List, Optional, Tuple

from .meta import format_rfc3339


logger = logging.getLogger(__name__)


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


def generate_archive_filename(started: datetime, encrypted: bool = False) -> str:
    """
    Generate the archive filename of a backup run.

    Format: backup_{RFC3339 timestamp}.zip[.age]

    Args:
        started: Start time of the run (timezone aware)
        encrypted: Whether the archive is age encrypted

    Returns:
        Filename (without path)
    """
    filename = f"backup_{format_rfc3339(started)}.zip"
    if encrypted:
        filename += '.age'
    return filename


def gzip_writer(fileobj: BinaryIO, mtime: Optional[float] = None) -> gzip.GzipFile:
    """Open a gzip compressing stream on top of ``fileobj``."""
    return gzip.GzipFile(fileobj=fileobj, mode='wb', mtime=mtime)


def should_exclude(relative_path: str, exclude_patterns: List[str]) -> bool:
    """
    Check if a path should be excluded based on exclude patterns.

    Args:
        relative_path: Slash separated path relative to the backed up directory
        exclude_patterns: Glob patterns (e.g., *.pyc, __pycache__, cache/*)

    Returns:
        True if path matches any exclude pattern, False otherwise
    """
    if not exclude_patterns:
        return False

    name = relative_path.rsplit('/', 1)[-1]

    for pattern in exclude_patterns:
        # Match against relative path or just the name
        if fnmatch(relative_path, pattern) or fnmatch(name, pattern):
            return True
        if pattern.startswith('**/') and fnmatch(name, pattern[3:]):
            return True

    return False


def _walk(directory: str, relative: str, exclude_patterns: List[str]) -> Iterator[Tuple[str, str]]:
    """Yield (path, relative path) below ``directory`` in lexical order."""
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda entry: entry.name)

    for entry in entries:
        entry_relative = f"{relative}/{entry.name}" if relative else entry.name

        if should_exclude(entry_relative, exclude_patterns):
            logger.debug(f"Excluded {entry.path}")
            continue

        yield entry.path, entry_relative

        # symlinks to directories are stored as links, never followed
        if entry.is_dir(follow_symlinks=False):
            yield from _walk(entry.path, entry_relative, exclude_patterns)


def tar_directory(writer: BinaryIO, directory: str, exclude_patterns: Optional[List[str]] = None):
    """
    Write a gzip compressed tar stream of a directory tree.

    Paths are stored relative to ``directory`` with forward slashes, the root
    itself as ``.``. Symlinks are stored with their target.

    Args:
        writer: Destination stream (does not need to be seekable)
        directory: Directory to archive
        exclude_patterns: Glob patterns of entries to skip

    Raises:
        CompressionError: If the directory can't be read completely
    """
    exclude_patterns = exclude_patterns or []

    if not os.path.isdir(directory):
        raise CompressionError(f"Directory does not exist: {directory}")

    try:
        with tarfile.open(fileobj=writer, mode='w|gz') as tar:
            _add_entry(tar, directory, '.')

            for path, relative_path in _walk(directory, '', exclude_patterns):
                _add_entry(tar, path, relative_path)

    except (OSError, tarfile.TarError) as e:
        raise CompressionError(f"Failed to archive {directory}: {e}") from e


def _add_entry(tar: tarfile.TarFile, path: str, arcname: str):
    info = tar.gettarinfo(path, arcname=arcname)

    if info is None:
        raise CompressionError(f"Unsupported file type (socket or door): {path}")

    if info.isreg():
        with open(path, 'rb') as f:
            tar.addfile(info, f)
    else:
        tar.addfile(info)
