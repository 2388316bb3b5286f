"""
Runtime configuration for pgbackup.

All settings come from environment variables and are read exactly once, at
startup, into an immutable Config instance that is passed to each component.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional


DEFAULT_IGNORE_DATABASES = frozenset({'postgres', 'template0', 'template1'})

# Database name used for whole-cluster dumps
CLUSTER_SENTINEL = 'postgres'

STRATEGY_SEPARATE = 'separate'
STRATEGY_CLUSTER = 'cluster'


class ConfigError(Exception):
    """Raised when the environment does not describe a usable configuration."""
    pass


def _get(environ: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = environ.get(name)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def _require(environ: Mapping[str, str], name: str) -> str:
    value = _get(environ, name)
    if value is None:
        raise ConfigError(f"{name} is required")
    return value


def _flag(environ: Mapping[str, str], name: str, truthy: str = 'true') -> bool:
    value = _get(environ, name, '')
    return value.lower() == truthy


def _positive_int(environ: Mapping[str, str], name: str) -> Optional[int]:
    value = _get(environ, name)
    if value is None:
        return None
    try:
        number = int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if number <= 0:
        raise ConfigError(f"{name} must be a positive integer, got {number}")
    return number


@dataclass(frozen=True)
class Config:
    """Immutable configuration snapshot."""

    # S3
    s3_bucket: str
    s3_prefix: str = 'backup'
    s3_region: str = 'us-east-1'
    s3_access_key_id: Optional[str] = field(default=None, repr=False)
    s3_secret_access_key: Optional[str] = field(default=None, repr=False)
    s3_endpoint: Optional[str] = None
    s3_signature_v4: bool = False
    s3_latest_alias: bool = False

    # PostgreSQL
    postgres_host: str = 'localhost'
    postgres_port: int = 5432
    postgres_user: str = 'postgres'
    postgres_password: Optional[str] = field(default=None, repr=False)
    postgres_database: Optional[str] = None
    backup_all: bool = False
    backup_all_strategy: str = STRATEGY_SEPARATE
    pgdump_extra_opts: str = ''
    ignore_databases: FrozenSet[str] = DEFAULT_IGNORE_DATABASES

    # Retention
    keep_days: Optional[int] = None
    keep_hours: Optional[int] = None

    # Encryption
    passphrase: Optional[str] = field(default=None, repr=False)

    # Scheduling and logging
    schedule: Optional[str] = None
    log_level: str = 'INFO'
    log_dir: Optional[str] = None

    @property
    def encrypted(self) -> bool:
        """True when backups are encrypted end-to-end with PASSPHRASE."""
        return self.passphrase is not None

    @property
    def uses_cluster_dump(self) -> bool:
        return self.backup_all and self.backup_all_strategy == STRATEGY_CLUSTER

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """
        Build a Config from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Validated Config instance

        Raises:
            ConfigError: If a required variable is missing or a value is invalid
        """
        if environ is None:
            environ = os.environ

        backup_all = _flag(environ, 'POSTGRES_BACKUP_ALL')
        database = _get(environ, 'POSTGRES_DATABASE')
        if not backup_all and database is None:
            raise ConfigError("POSTGRES_DATABASE is required unless POSTGRES_BACKUP_ALL=true")

        strategy = _get(environ, 'POSTGRES_BACKUP_ALL_STRATEGY', STRATEGY_SEPARATE).lower()
        if strategy not in (STRATEGY_SEPARATE, STRATEGY_CLUSTER):
            raise ConfigError(
                f"POSTGRES_BACKUP_ALL_STRATEGY must be '{STRATEGY_SEPARATE}' or "
                f"'{STRATEGY_CLUSTER}', got {strategy!r}"
            )

        port = _get(environ, 'POSTGRES_PORT', '5432')
        try:
            port = int(port)
        except ValueError:
            raise ConfigError(f"POSTGRES_PORT must be an integer, got {port!r}")

        prefix = _get(environ, 'S3_PREFIX', 'backup').strip('/')
        if not prefix:
            raise ConfigError("S3_PREFIX must not be empty")

        extra_ignored = (_get(environ, 'IGNORE_DB_LIST', '') or '').split()

        return cls(
            s3_bucket=_require(environ, 'S3_BUCKET'),
            s3_prefix=prefix,
            s3_region=_get(environ, 'S3_REGION', 'us-east-1'),
            s3_access_key_id=_get(environ, 'S3_ACCESS_KEY_ID'),
            s3_secret_access_key=_get(environ, 'S3_SECRET_ACCESS_KEY'),
            s3_endpoint=_get(environ, 'S3_ENDPOINT'),
            s3_signature_v4=_flag(environ, 'S3_S3V4', truthy='yes'),
            s3_latest_alias=_flag(environ, 'S3_LATEST_ALIAS'),
            postgres_host=_require(environ, 'POSTGRES_HOST'),
            postgres_port=port,
            postgres_user=_require(environ, 'POSTGRES_USER'),
            postgres_password=_get(environ, 'POSTGRES_PASSWORD'),
            postgres_database=database,
            backup_all=backup_all,
            backup_all_strategy=strategy,
            pgdump_extra_opts=_get(environ, 'PGDUMP_EXTRA_OPTS', ''),
            ignore_databases=DEFAULT_IGNORE_DATABASES | frozenset(extra_ignored),
            keep_days=_positive_int(environ, 'BACKUP_KEEP_DAYS'),
            keep_hours=_positive_int(environ, 'BACKUP_KEEP_HOURS'),
            # An empty PASSPHRASE disables encryption, matching the shell tooling
            passphrase=environ.get('PASSPHRASE') or None,
            schedule=_get(environ, 'SCHEDULE'),
            log_level=_get(environ, 'LOG_LEVEL', 'INFO').upper(),
            log_dir=_get(environ, 'LOG_DIR'),
        )
