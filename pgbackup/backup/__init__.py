"""
Backup module for pgbackup.

This module handles the core backup functionality including:
- Artifact naming and daily/hourly classification
- Dumping and restoring PostgreSQL (pg_dump / pg_restore)
- Storage (S3)
- Execution orchestration
- Retention policy enforcement
- Restore selection
"""

from .executor import BackupExecutor, BackupResult, execute_backup
from .naming import BackupArtifact, Classification, ParseError, decode_key, encode_key
from .postgres import PostgresClient, DumpError
from .storage import S3Storage, StorageError, ObjectNotFoundError
from .retention import RetentionManager, RetentionPolicy, compute_deletions
from .restore import RestoreSelector, RestoreExecutor, BackupNotFoundError, execute_restore

__all__ = [
    'BackupExecutor',
    'BackupResult',
    'execute_backup',
    'BackupArtifact',
    'Classification',
    'ParseError',
    'decode_key',
    'encode_key',
    'PostgresClient',
    'DumpError',
    'S3Storage',
    'StorageError',
    'ObjectNotFoundError',
    'RetentionManager',
    'RetentionPolicy',
    'compute_deletions',
    'RestoreSelector',
    'RestoreExecutor',
    'BackupNotFoundError',
    'execute_restore'
]
