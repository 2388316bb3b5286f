"""
Shared pytest fixtures for pgbackup tests.

This module provides fixtures for:
- A baseline Config and environment mapping
- Mock S3 bucket (moto) and an S3Storage bound to it
- Fake PostgreSQL and gpg handlers that work on real temp files
"""

import shutil
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from pgbackup.config import Config
from pgbackup.backup.storage import S3Storage


BUCKET = 'test-bucket'

SERVER_DATABASES = ['analytics', 'app', 'billing', 'postgres']


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches real AWS."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def env():
    """Minimal valid environment for Config.from_env."""
    return {
        'S3_BUCKET': BUCKET,
        'S3_PREFIX': 'backup',
        'POSTGRES_HOST': 'db.example.com',
        'POSTGRES_USER': 'postgres',
        'POSTGRES_PASSWORD': 'secret',
        'POSTGRES_DATABASE': 'app',
    }


@pytest.fixture
def config():
    """Single-database, unencrypted configuration."""
    return Config(
        s3_bucket=BUCKET,
        s3_prefix='backup',
        postgres_host='db.example.com',
        postgres_user='postgres',
        postgres_password='secret',
        postgres_database='app'
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket=BUCKET)
        yield s3


@pytest.fixture
def bucket(mock_s3):
    return mock_s3.Bucket(BUCKET)


@pytest.fixture
def storage(mock_s3):
    return S3Storage(bucket_name=BUCKET, region='us-east-1')


@pytest.fixture
def isolated_tempdir(tmp_path, monkeypatch):
    """Point tempfile at a private directory so leftovers can be checked."""
    import tempfile

    temp_root = tmp_path / 'tmp'
    temp_root.mkdir()
    monkeypatch.setattr(tempfile, 'tempdir', str(temp_root))
    return temp_root


@pytest.fixture
def fake_postgres():
    """
    PostgresClient stand-in.

    Dumps write a small file; restores record what they were given.
    """
    postgres = MagicMock()

    def _dump(database, dest_path):
        with open(dest_path, 'wb') as f:
            f.write(f"dump of {database}".encode())
        return dest_path

    def _dump_cluster(dest_path):
        with open(dest_path, 'wb') as f:
            f.write(b"dump of cluster")
        return dest_path

    def _list_databases(ignore=()):
        return [name for name in SERVER_DATABASES if name not in set(ignore)]

    postgres.restored = []

    def _restore(dump_path, database, create=False):
        with open(dump_path, 'rb') as f:
            postgres.restored.append((database, f.read()))

    def _restore_cluster(dump_path):
        with open(dump_path, 'rb') as f:
            postgres.restored.append(('<cluster>', f.read()))

    postgres.dump.side_effect = _dump
    postgres.dump_cluster.side_effect = _dump_cluster
    postgres.list_databases.side_effect = _list_databases
    postgres.restore.side_effect = _restore
    postgres.restore_cluster.side_effect = _restore_cluster
    return postgres


@pytest.fixture
def fake_cipher():
    """GpgCipher stand-in that renames files instead of running gpg."""
    cipher = MagicMock()

    def _encrypt(source_path):
        dest_path = source_path + '.gpg'
        shutil.move(source_path, dest_path)
        return dest_path

    def _decrypt(source_path, dest_path):
        shutil.move(source_path, dest_path)
        return dest_path

    cipher.encrypt.side_effect = _encrypt
    cipher.decrypt.side_effect = _decrypt
    return cipher

