"""
Zip container holding the entries of a backup run.

Entries are stored without compression, the producers already compress
their own streams.
"""

import zipfile
from datetime import datetime
from typing import BinaryIO, IO


class ContainerError(Exception):
    """Raised when the archive container can't be written."""
    pass


class ArchiveWriter:
    """
    Sequential writer for named archive entries.

    Works on non-seekable streams (pipes, encryption stage). Only one entry
    can be open at a time; an entry is finalized when its stream is closed.
    """

    def __init__(self, fileobj: BinaryIO, modified: datetime):
        """
        Args:
            fileobj: Destination stream
            modified: Modification time recorded for every entry
        """
        self.modified = modified
        try:
            self._zip = zipfile.ZipFile(fileobj, mode='w', compression=zipfile.ZIP_STORED)
        except (OSError, ValueError) as e:
            raise ContainerError(f"Failed to create archive: {e}") from e

    def open_entry(self, name: str) -> IO[bytes]:
        """
        Open a new entry for writing.

        Raises:
            ContainerError: If the entry can't be created
        """
        info = zipfile.ZipInfo(name, date_time=self.modified.timetuple()[:6])
        info.compress_type = zipfile.ZIP_STORED
        info.external_attr = 0o644 << 16

        try:
            # size is unknown up front, allow entries beyond 4 GiB
            return self._zip.open(info, mode='w', force_zip64=True)
        except (OSError, ValueError) as e:
            raise ContainerError(f"Failed to create {name}: {e}") from e

    def close(self):
        """Write the central directory. Does not close the underlying stream."""
        try:
            self._zip.close()
        except (OSError, ValueError) as e:
            raise ContainerError(f"Failed to finalize archive: {e}") from e
