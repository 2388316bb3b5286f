"""
Object key naming and daily/hourly classification of backup artifacts.

Key layout:

    {prefix}/{database}_{YYYY-MM-DDTHH:MM:SS}[_daily].dump[.gpg]

Keys with no classification suffix are hourly. Keys carrying the
``_hourly`` suffix, as written by older shell-based tooling, decode as
hourly too.
"""

import enum
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

logger = logging.getLogger(__name__)


TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S'
DAY_FORMAT = '%Y-%m-%d'

DUMP_EXTENSION = '.dump'
ENCRYPTED_EXTENSION = '.gpg'

_KEY_PATTERN = re.compile(
    r'^(?P<database>.+)_'
    r'(?P<timestamp>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})'
    r'(?P<suffix>_daily|_hourly)?'
    r'\.dump(?P<gpg>\.gpg)?$'
)


class ParseError(ValueError):
    """Raised when an object key is not a backup artifact key."""
    pass


class Classification(enum.Enum):
    DAILY = 'daily'
    HOURLY = 'hourly'

    @property
    def suffix(self) -> str:
        return '_daily' if self is Classification.DAILY else ''


@dataclass(frozen=True)
class BackupArtifact:
    """One stored backup object, identified by its decoded key fields."""

    database: str
    timestamp: datetime
    classification: Classification
    encrypted: bool

    def key(self, prefix: str) -> str:
        return encode_key(prefix, self.database, self.timestamp, self.classification, self.encrypted)

    @property
    def day(self) -> date:
        return self.timestamp.date()


def file_extension(encrypted: bool) -> str:
    """Return '.dump' or '.dump.gpg'."""
    return DUMP_EXTENSION + (ENCRYPTED_EXTENSION if encrypted else '')


def format_timestamp(timestamp: datetime) -> str:
    return timestamp.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """
    Parse a key timestamp (YYYY-MM-DDTHH:MM:SS).

    Raises:
        ValueError: If the value is not in that exact format
    """
    return datetime.strptime(value, TIMESTAMP_FORMAT)


def encode_key(
    prefix: str,
    database: str,
    timestamp: datetime,
    classification: Classification,
    encrypted: bool
) -> str:
    """
    Build the canonical object key for a backup artifact.

    Args:
        prefix: Bucket prefix all artifacts live under
        database: Database name, or the cluster sentinel
        timestamp: When the dump was taken (truncated to seconds)
        classification: Daily or hourly
        encrypted: Whether the object is gpg-encrypted

    Returns:
        Object key
    """
    if not database:
        raise ValueError("database name must not be empty")

    return (
        f"{prefix.strip('/')}/{database}_{format_timestamp(timestamp)}"
        f"{classification.suffix}{file_extension(encrypted)}"
    )


def decode_key(key: str, prefix: Optional[str] = None) -> BackupArtifact:
    """
    Recover artifact fields from an object key.

    Args:
        key: Full object key
        prefix: If given, the key must live directly under this prefix

    Returns:
        BackupArtifact

    Raises:
        ParseError: If the key is not a backup artifact key
    """
    name = key
    if prefix is not None:
        expected = prefix.strip('/') + '/'
        if not key.startswith(expected):
            raise ParseError(f"Key is outside prefix {expected!r}: {key}")
        name = key[len(expected):]
    elif '/' in key:
        name = key.rsplit('/', 1)[1]

    match = _KEY_PATTERN.match(name)
    if not match or '/' in match.group('database'):
        raise ParseError(f"Not a backup artifact key: {key}")

    try:
        timestamp = parse_timestamp(match.group('timestamp'))
    except ValueError:
        raise ParseError(f"Invalid timestamp in key: {key}")

    classification = Classification.DAILY if match.group('suffix') == '_daily' else Classification.HOURLY

    return BackupArtifact(
        database=match.group('database'),
        timestamp=timestamp,
        classification=classification,
        encrypted=match.group('gpg') is not None
    )


def has_daily_artifact(storage, prefix: str, database: str, day: date) -> bool:
    """
    Check the bucket for a daily artifact of a database on a calendar day.

    Lists only keys starting with ``{prefix}/{database}_{YYYY-MM-DD}`` and
    decodes each; keys that do not decode are ignored.

    Raises:
        StorageError: If the listing fails
    """
    day_prefix = f"{prefix.strip('/')}/{database}_{day.strftime(DAY_FORMAT)}"

    for obj in storage.list_objects(day_prefix):
        try:
            artifact = decode_key(obj['Key'], prefix)
        except ParseError:
            logger.debug(f"Ignoring non-artifact key {obj['Key']}")
            continue

        if (
            artifact.classification is Classification.DAILY
            and artifact.database == database
            and artifact.day == day
        ):
            return True

    return False


def classify(storage, prefix: str, database: str, day: date) -> Classification:
    """The first backup of a database stored on a given day is the daily one."""
    if has_daily_artifact(storage, prefix, database, day):
        return Classification.HOURLY
    return Classification.DAILY
