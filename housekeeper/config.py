"""
Configuration loaded from environment variables.

Each section is described by a static table of ConfigField entries
(environment key, attribute, default, parser).
"""

import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from age.keys.agekey import AgePublicKey
from age.keys.password import PasswordKey

from housekeeper.backup.encryption import EncryptionError, parse_recipient, passphrase_recipient
from housekeeper.backup.storage import StorageError, parse_remote


class ConfigError(Exception):
    """Raised when the configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class ConfigField:
    key: str
    attribute: str
    default: Optional[str]
    parser: Callable[[str], Any]


def split_list(value: str) -> List[str]:
    """Split a comma separated value, dropping blank items."""
    return [item.strip() for item in value.split(',') if item.strip()]


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in ('1', 't', 'true', 'yes', 'on'):
        return True
    if normalized in ('', '0', 'f', 'false', 'no', 'off'):
        return False
    raise ConfigError(f"invalid boolean value: {value}")


def parse_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigError(f"invalid integer value: {value}")


def parse_recipients(value: str) -> Tuple[AgePublicKey, ...]:
    recipients = []
    for key in split_list(value):
        try:
            recipients.append(parse_recipient(key))
        except EncryptionError as e:
            raise ConfigError(f"invalid recipient given {key}: {e}")
    return tuple(recipients)


def parse_password(value: str) -> PasswordKey:
    try:
        return passphrase_recipient(value)
    except EncryptionError as e:
        raise ConfigError(f"invalid password given: {e}")


@dataclass(frozen=True)
class DatabaseConfig:
    host: str = ''
    port: int = 5432
    root_username: str = 'postgres'
    root_password: str = ''
    username: str = ''
    password: str = ''
    database: str = ''
    pg_extensions: str = ''

    def extensions(self) -> List[str]:
        return split_list(self.pg_extensions)


@dataclass(frozen=True)
class BackupConfig:
    database: bool = False
    data_directories: str = ''
    data_directories_exclude: str = ''
    schedule: str = '@daily'
    storage: str = '/backup'
    age_recipients: Tuple[AgePublicKey, ...] = ()
    age_password: Optional[PasswordKey] = None
    remote: str = ''
    s3_endpoint_url: str = ''
    s3_region: str = 'us-east-1'
    s3_access_key: str = ''
    s3_secret_key: str = ''

    def directories(self) -> List[str]:
        return split_list(self.data_directories)

    def exclude_patterns(self) -> List[str]:
        return split_list(self.data_directories_exclude)

    def recipients(self) -> list:
        recipients = list(self.age_recipients)
        if self.age_password is not None:
            recipients.append(self.age_password)
        return recipients

    def is_backup_enabled(self) -> bool:
        return self.database or bool(self.directories())


DATABASE_FIELDS = [
    ConfigField('DB_HOST', 'host', '', str),
    ConfigField('DB_PORT', 'port', '5432', parse_int),
    ConfigField('DB_ROOT_USER', 'root_username', 'postgres', str),
    ConfigField('DB_ROOT_PASSWORD', 'root_password', '', str),
    ConfigField('DB_USER_NAME', 'username', '', str),
    ConfigField('DB_USER_PASSWORD', 'password', '', str),
    ConfigField('DB_DATABASE', 'database', '', str),
    ConfigField('DB_PG_EXTENSIONS', 'pg_extensions', '', str),
]

BACKUP_FIELDS = [
    ConfigField('BACKUP_DATABASE', 'database', 'false', parse_bool),
    ConfigField('BACKUP_DATA_DIR', 'data_directories', '', str),
    ConfigField('BACKUP_DATA_EXCLUDE', 'data_directories_exclude', '', str),
    ConfigField('BACKUP_SCHEDULE', 'schedule', '@daily', str),
    ConfigField('BACKUP_STORAGE', 'storage', '/backup', str),
    ConfigField('BACKUP_AGE_RECIPIENTS', 'age_recipients', None, parse_recipients),
    ConfigField('BACKUP_AGE_PASSWORD', 'age_password', None, parse_password),
    ConfigField('BACKUP_REMOTE', 'remote', '', str),
    ConfigField('BACKUP_S3_ENDPOINT_URL', 's3_endpoint_url', '', str),
    ConfigField('BACKUP_S3_REGION', 's3_region', 'us-east-1', str),
    ConfigField('BACKUP_S3_ACCESS_KEY', 's3_access_key', '', str),
    ConfigField('BACKUP_S3_SECRET_KEY', 's3_secret_key', '', str),
]


def load_section(fields: List[ConfigField], environ: Mapping[str, str]) -> Dict[str, Any]:
    """
    Read the fields of one section from the environment.

    Fields without value and without default keep the dataclass default.
    """
    values = {}
    for config_field in fields:
        raw = environ.get(config_field.key)
        if raw is None:
            if config_field.default is None:
                continue
            raw = config_field.default
        values[config_field.attribute] = config_field.parser(raw)
    return values


@dataclass(frozen=True)
class Config:
    database: DatabaseConfig
    backup: BackupConfig

    def validate(self):
        """
        Check required and mutually exclusive settings.

        Raises:
            ConfigError: If the configuration is inconsistent
        """
        db = self.database
        if db.host:
            if not db.username:
                raise ConfigError("database host given but username is missing")
            if not db.password:
                raise ConfigError("database host given but user password is missing")
            if not db.database:
                raise ConfigError("database host given but database name is missing")

        if self.backup.database and not db.host:
            raise ConfigError("database config missing for backup")

        if self.backup.age_recipients and self.backup.age_password is not None:
            raise ConfigError("only age recipients OR a password is supported")

        if self.backup.remote:
            try:
                parse_remote(self.backup.remote)
            except StorageError as e:
                raise ConfigError(str(e))


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load and validate the configuration.

    Args:
        environ: Environment mapping (default: os.environ)

    Raises:
        ConfigError: If a value can't be parsed or the configuration is invalid
    """
    if environ is None:
        environ = os.environ

    config = Config(
        database=DatabaseConfig(**load_section(DATABASE_FIELDS, environ)),
        backup=BackupConfig(**load_section(BACKUP_FIELDS, environ))
    )
    config.validate()
    return config
