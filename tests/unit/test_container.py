"""
Unit tests for the zip container (housekeeper/backup/container.py).
"""

import io
import os
import zipfile
from datetime import datetime, timezone

import pytest

from housekeeper.backup.container import ArchiveWriter, ContainerError


MODIFIED = datetime(2024, 1, 15, 12, 30, 45, tzinfo=timezone.utc)


class NonSeekable(io.RawIOBase):
    """Write-only stream without tell/seek, like a pipe."""

    def __init__(self):
        super().__init__()
        self.buffer = io.BytesIO()

    def writable(self):
        return True

    def write(self, data):
        return self.buffer.write(data)


class TestArchiveWriter:
    """Test sequential entry writing."""

    def test_entries_in_order(self):
        buffer = io.BytesIO()
        archive = ArchiveWriter(buffer, MODIFIED)

        with archive.open_entry('database') as entry:
            entry.write(b'dump')
        with archive.open_entry('data_0') as entry:
            entry.write(b'tar')
        archive.close()

        with zipfile.ZipFile(io.BytesIO(buffer.getvalue())) as zf:
            assert zf.namelist() == ['database', 'data_0']
            assert zf.read('database') == b'dump'
            assert zf.read('data_0') == b'tar'

    def test_entries_stored_with_modified_time(self):
        buffer = io.BytesIO()
        archive = ArchiveWriter(buffer, MODIFIED)

        with archive.open_entry('backup.yml') as entry:
            entry.write(b'version: 1\n')
        archive.close()

        with zipfile.ZipFile(io.BytesIO(buffer.getvalue())) as zf:
            info = zf.getinfo('backup.yml')
            assert info.compress_type == zipfile.ZIP_STORED
            assert info.date_time == (2024, 1, 15, 12, 30, 44)
            assert (info.external_attr >> 16) & 0o777 == 0o644

    def test_non_seekable_stream(self):
        """Test entries are written with data descriptors to a pipe-like stream."""
        stream = NonSeekable()
        payload = os.urandom(200000)
        archive = ArchiveWriter(stream, MODIFIED)

        with archive.open_entry('data_0') as entry:
            for i in range(0, len(payload), 8192):
                entry.write(payload[i:i + 8192])
        archive.close()

        assert not stream.closed
        with zipfile.ZipFile(io.BytesIO(stream.buffer.getvalue())) as zf:
            assert zf.read('data_0') == payload
            assert zf.testzip() is None

    def test_close_does_not_close_stream(self):
        buffer = io.BytesIO()
        archive = ArchiveWriter(buffer, MODIFIED)

        archive.close()

        assert not buffer.closed
        assert zipfile.is_zipfile(io.BytesIO(buffer.getvalue()))

    def test_open_entry_while_previous_open(self):
        archive = ArchiveWriter(io.BytesIO(), MODIFIED)
        entry = archive.open_entry('database')

        with pytest.raises(ContainerError, match="data_0"):
            archive.open_entry('data_0')

        entry.close()

    def test_open_entry_after_close(self):
        archive = ArchiveWriter(io.BytesIO(), MODIFIED)
        archive.close()

        with pytest.raises(ContainerError):
            archive.open_entry('database')
