"""
Restore of stored backups.

RestoreSelector turns "latest" or an explicit timestamp into the object key
to fetch; RestoreExecutor downloads, decrypts and applies it.
"""

import os
import shutil
import tempfile
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Iterable

from pgbackup.config import CLUSTER_SENTINEL
from pgbackup.utils.crypto import GpgCipher, EncryptionError, build_cipher
from .naming import BackupArtifact, Classification, ParseError, decode_key, file_extension, format_timestamp
from .postgres import PostgresClient, DumpError
from .storage import S3Storage, StorageError

logger = logging.getLogger(__name__)


class BackupNotFoundError(Exception):
    """Raised when no stored backup matches a restore request."""
    pass


class RestoreSelector:
    """
    Resolves which stored object a restore should use.
    """

    def __init__(self, storage, prefix: str, encrypted: bool):
        """
        Args:
            storage: S3Storage-like handler
            prefix: Bucket prefix artifacts live under
            encrypted: Only artifacts with this encryption state are eligible
        """
        self.storage = storage
        self.prefix = prefix.strip('/')
        self.encrypted = encrypted

    def resolve(self, database: str, timestamp: Optional[datetime] = None, backup_all: bool = False) -> str:
        """
        Pick the object key to restore.

        Args:
            database: Database name
            timestamp: Exact backup time to restore; None means latest
            backup_all: Resolve the whole-cluster dump instead of one database

        Returns:
            Object key

        Raises:
            BackupNotFoundError: If no matching backup exists
            StorageError: If the bucket cannot be queried
        """
        name = CLUSTER_SENTINEL if backup_all else database
        if timestamp is not None:
            return self._resolve_timestamp(name, timestamp)
        return self._resolve_latest(name)

    def candidate_keys(self, name: str, timestamp: datetime) -> List[str]:
        """
        Every key a backup of `name` taken at `timestamp` may be stored under.

        Hourly first, then daily, then the '_hourly' form of older tooling.
        """
        timestamp = timestamp.replace(microsecond=0)
        hourly = BackupArtifact(name, timestamp, Classification.HOURLY, self.encrypted).key(self.prefix)
        daily = BackupArtifact(name, timestamp, Classification.DAILY, self.encrypted).key(self.prefix)
        legacy = f"{self.prefix}/{name}_{format_timestamp(timestamp)}_hourly{file_extension(self.encrypted)}"
        return [hourly, daily, legacy]

    def _resolve_timestamp(self, name: str, timestamp: datetime) -> str:
        candidates = self.candidate_keys(name, timestamp)
        for key in candidates:
            if self.storage.exists(key):
                return key
        raise BackupNotFoundError(
            f"No backup of {name} at {format_timestamp(timestamp)} (looked for {candidates[0]})"
        )

    def _resolve_latest(self, name: str) -> str:
        keys = [
            obj['Key'] for obj in self.storage.list_objects(f"{self.prefix}/{name}_")
            if self._matches(obj['Key'], name)
        ]
        if not keys:
            raise BackupNotFoundError(
                f"No {'encrypted ' if self.encrypted else ''}backup of {name} found under {self.prefix}/"
            )
        # ISO-8601 timestamps sort chronologically as strings
        return max(keys)

    def _matches(self, key: str, name: str) -> bool:
        try:
            artifact = decode_key(key, self.prefix)
        except ParseError:
            return False
        return artifact.database == name and artifact.encrypted == self.encrypted

    def stored_databases(self, ignore: Iterable[str] = (), timestamp: Optional[datetime] = None) -> List[str]:
        """
        Names of databases that have restorable backups in the bucket.

        Args:
            ignore: Names to leave out
            timestamp: Only count backups taken at exactly this time

        Returns:
            Sorted database names
        """
        ignored = set(ignore)
        names = set()
        for obj in self.storage.list_objects(self.prefix + '/'):
            try:
                artifact = decode_key(obj['Key'], self.prefix)
            except ParseError:
                continue
            if artifact.encrypted != self.encrypted or artifact.database in ignored:
                continue
            if timestamp is not None and artifact.timestamp != timestamp:
                continue
            names.add(artifact.database)
        return sorted(names)


@dataclass
class RestoreResult:
    """Outcome of one restore run."""

    restored: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return bool(self.restored) and not self.failures


class RestoreExecutor:
    """
    Fetches, decrypts and applies stored backups.
    """

    def __init__(self, config, storage, postgres, cipher: Optional[GpgCipher] = None):
        self.config = config
        self.storage = storage
        self.postgres = postgres
        self.cipher = cipher
        self.selector = RestoreSelector(storage, config.s3_prefix, encrypted=cipher is not None)

    def execute(self, timestamp: Optional[datetime] = None) -> RestoreResult:
        """
        Restore the configured database(s) from the latest backup or from
        the backup taken at `timestamp`.

        Returns:
            RestoreResult
        """
        result = RestoreResult()

        if not self.config.backup_all:
            self._restore_into(result, self.config.postgres_database, timestamp)
        elif self.config.uses_cluster_dump:
            self._restore_into(result, CLUSTER_SENTINEL, timestamp, cluster=True)
        else:
            try:
                databases = self.selector.stored_databases(self.config.ignore_databases, timestamp)
            except StorageError as e:
                result.failures['*'] = str(e)
                return result

            if not databases:
                when = format_timestamp(timestamp) if timestamp else 'any time'
                message = f"No database backups found under {self.selector.prefix}/ for {when}"
                logger.error(message)
                result.failures['*'] = message
                return result

            for database in databases:
                self._restore_into(result, database, timestamp, create=True)

        return result

    def _restore_into(
        self,
        result: RestoreResult,
        database: str,
        timestamp: Optional[datetime],
        cluster: bool = False,
        create: bool = False
    ):
        try:
            key = self.selector.resolve(database, timestamp, backup_all=cluster)
            self.restore_key(key, database, cluster=cluster, create=create)
            result.restored[database] = key
        except (BackupNotFoundError, StorageError, EncryptionError, DumpError) as e:
            logger.error(f"Restore of {database} failed: {e}")
            result.failures[database] = str(e)

    def restore_key(self, key: str, database: str, cluster: bool = False, create: bool = False):
        """
        Download one object and apply it to the server.

        With `create`, the database is dropped and recreated from the dump,
        so it need not exist on the server yet.

        Raises:
            ObjectNotFoundError: If the key is missing from the bucket
            StorageError, EncryptionError, DumpError
        """
        temp_dir = tempfile.mkdtemp(prefix='pgbackup_restore_')
        try:
            dump_path = os.path.join(temp_dir, 'db.dump')
            logger.info(f"Fetching backup from s3://{self.storage.bucket_name}/{key}")

            if self.cipher is not None:
                encrypted_path = self.storage.download(key, dump_path + '.gpg')
                logger.info("Decrypting backup")
                self.cipher.decrypt(encrypted_path, dump_path)
            else:
                self.storage.download(key, dump_path)

            if cluster:
                logger.info("Restoring all databases from backup")
                self.postgres.restore_cluster(dump_path)
            else:
                logger.info(f"Restoring {database} from backup")
                self.postgres.restore(dump_path, database, create=create)

            logger.info(f"Restore of {database} complete")
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)


def execute_restore(config, timestamp: Optional[datetime] = None) -> RestoreResult:
    """
    Run a restore with collaborators built from a Config.

    Args:
        config: pgbackup Config
        timestamp: Backup time to restore; None restores the latest

    Returns:
        RestoreResult
    """
    executor = RestoreExecutor(
        config,
        storage=S3Storage.from_config(config),
        postgres=PostgresClient.from_config(config),
        cipher=build_cipher(config)
    )
    return executor.execute(timestamp)
