"""
Backup manifest (backup.yml).

The manifest is the last entry of every complete archive and indexes the
entries written before it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml


META_VERSION = 1


def format_rfc3339(value: datetime) -> str:
    """Format a timezone aware datetime as RFC 3339 with seconds precision."""
    text = value.isoformat(timespec='seconds')
    if text.endswith('+00:00'):
        text = text[:-6] + 'Z'
    return text


def parse_rfc3339(value) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return datetime.fromisoformat(text)


@dataclass
class BackupMetaDirectory:
    directory_path: str
    filename: str


@dataclass
class BackupMeta:
    """Manifest record, filled in while a backup run progresses."""

    date: datetime
    version: int = META_VERSION
    database_backup: Optional[str] = None
    directories: List[BackupMetaDirectory] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'version': self.version,
            'date': format_rfc3339(self.date),
        }
        if self.database_backup:
            data['database_backup'] = self.database_backup
        if self.directories:
            data['directories'] = [
                {'directory_path': d.directory_path, 'filename': d.filename}
                for d in self.directories
            ]
        return data

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupMeta':
        return cls(
            version=int(data['version']),
            date=parse_rfc3339(data['date']),
            database_backup=data.get('database_backup') or None,
            directories=[
                BackupMetaDirectory(d['directory_path'], d['filename'])
                for d in data.get('directories') or []
            ]
        )

    @classmethod
    def from_yaml(cls, text: str) -> 'BackupMeta':
        return cls.from_dict(yaml.safe_load(text))
