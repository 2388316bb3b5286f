"""
Retention policy enforcement for backups.

Daily and hourly artifacts age out under two independent windows. Ages are
measured from the LastModified time reported by the bucket, not from the
timestamp in the key.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, Set, Iterable

from .naming import BackupArtifact, Classification, ParseError, decode_key
from .storage import StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """Lifetimes for daily (days) and hourly (hours) artifacts; None disables pruning."""

    keep_days: Optional[int] = None
    keep_hours: Optional[int] = None

    def __post_init__(self):
        for name in ('keep_days', 'keep_hours'):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value}")

    @property
    def is_empty(self) -> bool:
        return self.keep_days is None and self.keep_hours is None

    @classmethod
    def from_config(cls, config) -> 'RetentionPolicy':
        return cls(keep_days=config.keep_days, keep_hours=config.keep_hours)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _expired_artifacts(
    objects: Iterable[Dict[str, Any]],
    policy: RetentionPolicy,
    now: datetime,
    prefix: Optional[str]
) -> Dict[str, BackupArtifact]:
    now = _as_utc(now)
    daily_cutoff = now - timedelta(days=policy.keep_days) if policy.keep_days else None
    hourly_cutoff = now - timedelta(hours=policy.keep_hours) if policy.keep_hours else None

    expired = {}
    for obj in objects:
        key = obj['Key']
        try:
            artifact = decode_key(key, prefix)
        except ParseError:
            continue

        if artifact.classification is Classification.DAILY:
            cutoff = daily_cutoff
        else:
            cutoff = hourly_cutoff

        if cutoff is not None and _as_utc(obj['LastModified']) <= cutoff:
            expired[key] = artifact

    return expired


def compute_deletions(
    objects: Iterable[Dict[str, Any]],
    policy: RetentionPolicy,
    now: datetime,
    prefix: Optional[str] = None
) -> Set[str]:
    """
    Decide which stored objects have aged out.

    Args:
        objects: Listing entries with 'Key' and 'LastModified'
        policy: Retention windows
        now: Reference time (naive values are taken as UTC)
        prefix: If given, only keys directly under this prefix are considered

    Returns:
        Keys eligible for deletion. Keys that do not decode as backup
        artifacts are never included.
    """
    return set(_expired_artifacts(objects, policy, now, prefix))


class RetentionManager:
    """
    Prunes expired artifacts under one bucket prefix.
    """

    def __init__(self, storage, prefix: str):
        """
        Initialize retention manager.

        Args:
            storage: S3Storage-like handler
            prefix: Bucket prefix to sweep
        """
        self.storage = storage
        self.prefix = prefix.strip('/')
        self.logs = []

    def enforce(self, policy: RetentionPolicy, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Delete every artifact under the prefix that has aged out.

        A failed delete is logged and the sweep continues.

        Returns:
            Dict with summary of cleanup operations:
            {
                'daily_deleted': int,
                'hourly_deleted': int,
                'deleted': List[str],
                'errors': List[str],
                'logs': List[str]
            }

        Raises:
            StorageError: If the prefix cannot be listed
        """
        summary = {
            'daily_deleted': 0,
            'hourly_deleted': 0,
            'deleted': [],
            'errors': []
        }

        if policy.is_empty:
            self._log("Retention: not configured, skipping")
            summary['logs'] = self.logs
            return summary

        if now is None:
            now = datetime.now(timezone.utc)

        if policy.keep_days:
            self._log(f"Removing daily backups older than {policy.keep_days} days")
        if policy.keep_hours:
            self._log(f"Removing hourly (and legacy) backups older than {policy.keep_hours} hours")

        objects = self.storage.list_objects(self.prefix + '/')
        expired = _expired_artifacts(objects, policy, now, self.prefix)

        for key, artifact in sorted(expired.items()):
            try:
                self.storage.delete(key)
            except StorageError as e:
                error_msg = f"Failed to delete {key}: {e}"
                self._log(error_msg, level=logging.WARNING)
                summary['errors'].append(error_msg)
                continue

            summary['deleted'].append(key)
            if artifact.classification is Classification.DAILY:
                summary['daily_deleted'] += 1
                self._log(f"Removed old daily backup: {key}")
            else:
                summary['hourly_deleted'] += 1
                self._log(f"Removed old hourly backup: {key}")

        self._log(
            f"Retention cleanup complete. "
            f"Daily deleted: {summary['daily_deleted']}, "
            f"Hourly deleted: {summary['hourly_deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
