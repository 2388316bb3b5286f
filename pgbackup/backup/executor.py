"""
Backup executor - orchestrates the complete backup workflow.

Workflow, per target database:
1. Classify the new artifact (daily if none stored yet for today, else hourly)
2. Dump the database to a temporary directory
3. Encrypt the dump (if a passphrase is configured)
4. Upload to S3
5. Cleanup temporary files

After all targets: enforce retention across the whole prefix.
"""

import os
import shutil
import tempfile
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from pgbackup.config import CLUSTER_SENTINEL
from pgbackup.utils.crypto import GpgCipher, EncryptionError, build_cipher
from .naming import BackupArtifact, Classification, classify, file_extension, format_timestamp
from .postgres import PostgresClient, DumpError
from .retention import RetentionManager, RetentionPolicy
from .storage import S3Storage, StorageError

logger = logging.getLogger(__name__)


@dataclass
class BackupResult:
    """Outcome of one backup run."""

    timestamp: datetime
    uploaded: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    retention: Optional[Dict[str, Any]] = None
    retention_error: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures and self.retention_error is None


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for every target database.
    """

    def __init__(self, config, storage, postgres, cipher: Optional[GpgCipher] = None):
        """
        Initialize backup executor.

        Args:
            config: pgbackup Config
            storage: S3Storage-like handler
            postgres: PostgresClient-like handler
            cipher: GpgCipher when backups are encrypted
        """
        self.config = config
        self.storage = storage
        self.postgres = postgres
        self.cipher = cipher
        self.prefix = config.s3_prefix
        self.logs = []

    def execute(self, now: Optional[datetime] = None) -> BackupResult:
        """
        Run one backup of every target, then prune.

        A failing target does not stop the others; it is recorded in the
        result and pruning is skipped for the run.

        Args:
            now: Local wall-clock time of the run (defaults to datetime.now())

        Returns:
            BackupResult
        """
        timestamp = (now or datetime.now()).replace(microsecond=0)
        self.logs = []
        result = BackupResult(timestamp=timestamp, logs=self.logs)

        try:
            targets = self._resolve_targets()
        except DumpError as e:
            self._log(f"Could not determine databases to back up: {e}", level=logging.ERROR)
            result.failures['*'] = str(e)
            return result

        if not targets:
            self._log("No databases to back up", level=logging.WARNING)

        for database in targets:
            try:
                key = self._backup_target(database, timestamp)
                result.uploaded.append(key)
            except (DumpError, EncryptionError, StorageError) as e:
                self._log(f"Backup of {database} failed: {e}", level=logging.ERROR)
                result.failures[database] = str(e)

        if result.failures:
            self._log(
                f"{len(result.failures)} backup(s) failed, skipping retention cleanup",
                level=logging.WARNING
            )
            return result

        self._log("All backups completed")

        policy = RetentionPolicy.from_config(self.config)
        manager = RetentionManager(self.storage, self.prefix)
        try:
            result.retention = manager.enforce(policy)
        except StorageError as e:
            self._log(f"Retention cleanup failed: {e}", level=logging.ERROR)
            result.retention_error = str(e)

        return result

    def _resolve_targets(self) -> List[str]:
        """
        Work out which databases this run backs up.

        Raises:
            DumpError: If the server's databases cannot be listed
        """
        if not self.config.backup_all:
            return [self.config.postgres_database]

        if self.config.uses_cluster_dump:
            self._log("Backing up the whole cluster in a single dump")
            return [CLUSTER_SENTINEL]

        self._log("Backing up all non-template databases individually")
        databases = self.postgres.list_databases(ignore=self.config.ignore_databases)
        self._log(f"Databases to back up: {', '.join(databases) or '(none)'}")
        return databases

    def _backup_target(self, database: str, timestamp: datetime) -> str:
        """
        Classify, dump, encrypt and upload one database.

        Returns:
            Object key of the uploaded artifact

        Raises:
            DumpError, EncryptionError, StorageError
        """
        self._log(f"Starting backup of database: {database}")
        temp_dir = tempfile.mkdtemp(prefix='pgbackup_')

        try:
            # Classification must be read before this target's upload
            classification = classify(self.storage, self.prefix, database, timestamp.date())
            day = timestamp.strftime('%Y-%m-%d')
            if classification is Classification.DAILY:
                self._log(f"No daily backup found yet for '{database}' on {day}. This backup will be tagged as daily.")
            else:
                self._log(f"Daily backup already exists for '{database}' on {day}. Proceeding with an hourly backup.")

            local_path = os.path.join(temp_dir, 'db.dump')
            if database == CLUSTER_SENTINEL and self.config.uses_cluster_dump:
                self.postgres.dump_cluster(local_path)
            else:
                self.postgres.dump(database, local_path)
            self._log(f"Dump created ({os.path.getsize(local_path) / 1024 / 1024:.2f} MB)")

            if self.cipher is not None:
                self._log("Encrypting backup")
                local_path = self.cipher.encrypt(local_path)

            artifact = BackupArtifact(database, timestamp, classification, encrypted=self.cipher is not None)
            key = artifact.key(self.prefix)
            self._log(f"Uploading backup to: s3://{self.storage.bucket_name}/{key}")
            self.storage.upload(local_path, key)
            os.remove(local_path)

            if self.config.s3_latest_alias:
                self._update_latest_alias(database, key)

            return key

        finally:
            self._cleanup(temp_dir)

    def _update_latest_alias(self, database: str, key: str):
        """Point the {database}_latest alias at a freshly uploaded artifact."""
        alias = f"{self.prefix}/{database}_latest{file_extension(self.cipher is not None)}"
        try:
            self.storage.copy(key, alias)
            self._log(f"Updated latest alias: {alias}")
        except StorageError as e:
            # The artifact itself is stored; only the convenience alias is stale
            self._log(f"Failed to update latest alias {alias}: {e}", level=logging.WARNING)

    def _cleanup(self, temp_dir: str):
        """Remove temporary directory and files."""
        if temp_dir and os.path.exists(temp_dir):
            try:
                shutil.rmtree(temp_dir)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory {temp_dir}: {e}", level=logging.WARNING)

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


def execute_backup(config) -> BackupResult:
    """
    Run one backup with collaborators built from a Config.

    Args:
        config: pgbackup Config

    Returns:
        BackupResult

    Raises:
        StorageError: If the bucket is not reachable
    """
    storage = S3Storage.from_config(config)
    storage.test_connection()

    executor = BackupExecutor(
        config,
        storage=storage,
        postgres=PostgresClient.from_config(config),
        cipher=build_cipher(config)
    )
    result = executor.execute()

    if result.succeeded:
        logger.info(f"Backup run {format_timestamp(result.timestamp)} completed: {len(result.uploaded)} uploaded")
    else:
        logger.error(f"Backup run {format_timestamp(result.timestamp)} failed for: {', '.join(result.failures) or 'retention'}")

    return result
