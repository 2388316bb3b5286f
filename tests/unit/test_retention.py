"""
Unit tests for retention policy management (pgbackup/backup/retention.py).

Tests compute_deletions and RetentionManager for pruning aged-out backups.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from pgbackup.backup.naming import decode_key
from pgbackup.backup.retention import RetentionManager, RetentionPolicy, compute_deletions
from pgbackup.backup.storage import StorageError


NOW = datetime(2024, 3, 10, 0, 0, 0, tzinfo=timezone.utc)


def _obj(key, last_modified):
    return {'Key': key, 'LastModified': last_modified, 'Size': 1}


class TestRetentionPolicy:
    """Test RetentionPolicy validation."""

    def test_empty_policy(self):
        assert RetentionPolicy().is_empty is True
        assert RetentionPolicy(keep_hours=1).is_empty is False

    @pytest.mark.parametrize('kwargs', [{'keep_days': 0}, {'keep_hours': -1}])
    def test_non_positive_windows_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetentionPolicy(**kwargs)

    def test_from_config(self, config):
        policy = RetentionPolicy.from_config(replace(config, keep_days=7, keep_hours=72))

        assert policy == RetentionPolicy(keep_days=7, keep_hours=72)


class TestComputeDeletions:
    """Test the pure deletion decision."""

    def test_daily_window_boundary_scenario(self):
        objects = [
            _obj('backup/app_2024-03-08T23:00:00_daily.dump', datetime(2024, 3, 8, 23, 0, tzinfo=timezone.utc)),
            _obj('backup/app_2024-03-09T01:00:00_daily.dump', datetime(2024, 3, 9, 1, 0, tzinfo=timezone.utc)),
        ]

        result = compute_deletions(objects, RetentionPolicy(keep_days=1), NOW)

        assert result == {'backup/app_2024-03-08T23:00:00_daily.dump'}

    def test_object_exactly_at_cutoff_is_deleted(self):
        objects = [_obj('backup/app_2024-03-09T23:00:00.dump', NOW - timedelta(hours=2))]

        result = compute_deletions(objects, RetentionPolicy(keep_hours=2), NOW)

        assert result == {'backup/app_2024-03-09T23:00:00.dump'}

    def test_keep_hours_only_never_deletes_daily(self):
        very_old = NOW - timedelta(days=365)
        objects = [
            _obj('backup/app_2023-03-10T00:00:00_daily.dump', very_old),
            _obj('backup/app_2023-03-10T01:00:00.dump', very_old),
        ]

        result = compute_deletions(objects, RetentionPolicy(keep_hours=1), NOW)

        assert result == {'backup/app_2023-03-10T01:00:00.dump'}

    def test_keep_days_only_never_deletes_hourly(self):
        very_old = NOW - timedelta(days=365)
        objects = [
            _obj('backup/app_2023-03-10T00:00:00_daily.dump', very_old),
            _obj('backup/app_2023-03-10T01:00:00.dump', very_old),
            _obj('backup/app_2023-03-10T02:00:00_hourly.dump', very_old),
        ]

        result = compute_deletions(objects, RetentionPolicy(keep_days=1), NOW)

        assert result == {'backup/app_2023-03-10T00:00:00_daily.dump'}

    def test_windows_are_independent(self):
        objects = [
            # daily, 3 days old: inside 7-day window
            _obj('backup/app_2024-03-07T00:00:00_daily.dump', NOW - timedelta(days=3)),
            # hourly, 3 days old: outside 24-hour window
            _obj('backup/app_2024-03-07T01:00:00.dump', NOW - timedelta(days=3)),
            # daily, 8 days old: outside 7-day window
            _obj('backup/app_2024-03-02T00:00:00_daily.dump', NOW - timedelta(days=8)),
            # hourly, 2 hours old: inside 24-hour window
            _obj('backup/app_2024-03-09T22:00:00.dump', NOW - timedelta(hours=2)),
        ]

        result = compute_deletions(objects, RetentionPolicy(keep_days=7, keep_hours=24), NOW)

        assert result == {
            'backup/app_2024-03-07T01:00:00.dump',
            'backup/app_2024-03-02T00:00:00_daily.dump',
        }

    def test_legacy_keys_follow_hourly_window(self):
        objects = [
            _obj('backup/app_2024-03-01T00:00:00.dump.gpg', NOW - timedelta(days=9)),
            _obj('backup/app_2024-03-01T01:00:00_hourly.dump.gpg', NOW - timedelta(days=9)),
        ]

        result = compute_deletions(objects, RetentionPolicy(keep_hours=48), NOW)

        assert len(result) == 2

    def test_unparseable_keys_are_never_deleted(self):
        ancient = NOW - timedelta(days=3650)
        objects = [
            _obj('backup/README.txt', ancient),
            _obj('backup/app_latest.dump', ancient),
            _obj('backup/app_2014-03-10.dump', ancient),
            _obj('backup/', ancient),
        ]

        result = compute_deletions(objects, RetentionPolicy(keep_days=1, keep_hours=1), NOW)

        assert result == set()

    def test_uses_last_modified_not_key_timestamp(self):
        # Key claims 2020 but the object was (re)written an hour ago
        objects = [_obj('backup/app_2020-01-01T00:00:00_daily.dump', NOW - timedelta(hours=1))]

        result = compute_deletions(objects, RetentionPolicy(keep_days=1), NOW)

        assert result == set()

    def test_naive_datetimes_are_utc(self):
        objects = [_obj('backup/app_2024-03-09T00:00:00.dump', datetime(2024, 3, 9, 21, 0))]

        result = compute_deletions(objects, RetentionPolicy(keep_hours=3), datetime(2024, 3, 10, 0, 0))

        assert result == {'backup/app_2024-03-09T00:00:00.dump'}

    def test_prefix_excludes_foreign_and_nested_keys(self):
        old = NOW - timedelta(days=30)
        objects = [
            _obj('backup/app_2024-02-01T00:00:00.dump', old),
            _obj('backup/archive/app_2024-02-01T00:00:00.dump', old),
            _obj('other/app_2024-02-01T00:00:00.dump', old),
        ]

        result = compute_deletions(objects, RetentionPolicy(keep_hours=1), NOW, prefix='backup')

        assert result == {'backup/app_2024-02-01T00:00:00.dump'}

    def test_empty_policy_deletes_nothing(self):
        objects = [_obj('backup/app_2000-01-01T00:00:00.dump', NOW - timedelta(days=9000))]

        assert compute_deletions(objects, RetentionPolicy(), NOW) == set()


class TestRetentionManager:
    """Test RetentionManager against a storage handler."""

    def test_retention_manager_initialization(self):
        manager = RetentionManager(MagicMock(), '/backup/')

        assert manager.prefix == 'backup'
        assert manager.logs == []

    def test_empty_policy_skips_listing(self):
        storage = MagicMock()
        manager = RetentionManager(storage, 'backup')

        summary = manager.enforce(RetentionPolicy())

        storage.list_objects.assert_not_called()
        assert summary['daily_deleted'] == 0
        assert summary['hourly_deleted'] == 0

    def test_lists_whole_prefix_once(self):
        storage = MagicMock()
        storage.list_objects.return_value = []

        RetentionManager(storage, 'backup').enforce(RetentionPolicy(keep_days=7, keep_hours=24), now=NOW)

        storage.list_objects.assert_called_once_with('backup/')

    def test_delete_failure_does_not_stop_batch(self):
        old = NOW - timedelta(days=30)
        storage = MagicMock()
        storage.list_objects.return_value = [
            _obj('backup/app_2024-02-01T00:00:00_daily.dump', old),
            _obj('backup/app_2024-02-01T01:00:00.dump', old),
            _obj('backup/billing_2024-02-01T00:00:00_daily.dump', old),
        ]

        def _delete(key):
            if key.startswith('backup/app_2024-02-01T00'):
                raise StorageError("AccessDenied")

        storage.delete.side_effect = _delete

        manager = RetentionManager(storage, 'backup')
        summary = manager.enforce(RetentionPolicy(keep_days=7, keep_hours=24), now=NOW)

        assert storage.delete.call_count == 3
        assert summary['daily_deleted'] == 1
        assert summary['hourly_deleted'] == 1
        assert len(summary['errors']) == 1
        assert 'AccessDenied' in summary['errors'][0]
        assert sorted(summary['deleted']) == [
            'backup/app_2024-02-01T01:00:00.dump',
            'backup/billing_2024-02-01T00:00:00_daily.dump',
        ]

    def test_each_key_is_decoded_once(self):
        """Test the sweep classifies deletions from the listing decode."""
        old = NOW - timedelta(days=30)
        storage = MagicMock()
        storage.list_objects.return_value = [
            _obj('backup/app_2024-02-01T00:00:00_daily.dump', old),
            _obj('backup/app_2024-02-01T01:00:00.dump.gpg', old),
            _obj('backup/notes.txt', old),
        ]

        with patch('pgbackup.backup.retention.decode_key', wraps=decode_key) as mock_decode:
            summary = RetentionManager(storage, 'backup').enforce(
                RetentionPolicy(keep_days=7, keep_hours=24), now=NOW
            )

        assert mock_decode.call_count == 3
        assert all(c.args[1] == 'backup' for c in mock_decode.call_args_list)
        assert summary['daily_deleted'] == 1
        assert summary['hourly_deleted'] == 1

    def test_listing_failure_propagates(self):
        storage = MagicMock()
        storage.list_objects.side_effect = StorageError("S3 list failed")

        with pytest.raises(StorageError):
            RetentionManager(storage, 'backup').enforce(RetentionPolicy(keep_days=1), now=NOW)

    def test_retention_manager_logging(self):
        storage = MagicMock()
        storage.list_objects.return_value = []

        manager = RetentionManager(storage, 'backup')
        summary = manager.enforce(RetentionPolicy(keep_days=7), now=NOW)

        assert any('older than 7 days' in log for log in manager.logs)
        assert summary['logs'] is manager.logs

    def test_prunes_real_bucket(self, storage, bucket):
        bucket.put_object(Key='backup/app_2024-03-01T00:00:00_daily.dump', Body=b'x')
        bucket.put_object(Key='backup/app_2024-03-01T01:00:00.dump', Body=b'x')
        bucket.put_object(Key='backup/app_latest.dump', Body=b'x')
        bucket.put_object(Key='backup/notes.txt', Body=b'x')

        # Far enough in the future that every object has aged out
        later = datetime.now(timezone.utc) + timedelta(days=30)
        summary = RetentionManager(storage, 'backup').enforce(
            RetentionPolicy(keep_days=7, keep_hours=24), now=later
        )

        remaining = sorted(obj.key for obj in bucket.objects.all())
        assert remaining == ['backup/app_latest.dump', 'backup/notes.txt']
        assert summary['daily_deleted'] == 1
        assert summary['hourly_deleted'] == 1

    def test_recent_objects_survive_in_real_bucket(self, storage, bucket):
        bucket.put_object(Key='backup/app_2024-03-01T00:00:00_daily.dump', Body=b'x')
        bucket.put_object(Key='backup/app_2024-03-01T01:00:00.dump', Body=b'x')

        summary = RetentionManager(storage, 'backup').enforce(RetentionPolicy(keep_days=7, keep_hours=24))

        assert summary['deleted'] == []
        assert len(list(bucket.objects.all())) == 2
