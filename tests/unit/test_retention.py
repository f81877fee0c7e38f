"""
Unit tests for retention (s3backup/backup/retention.py).

Uses the in-memory FakeStorage with explicit LastModified values.
"""

from datetime import datetime, timedelta, timezone

import pytest
from freezegun import freeze_time

from s3backup.backup.retention import PruneError, RetentionManager, age_in_days, should_delete
from s3backup.models import RemoteObject, RetentionPolicy, ValidationError


NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _obj(key, age_days, now=NOW):
    return RemoteObject(key=key, last_modified=now - timedelta(days=age_days, hours=1), size_bytes=10)


@pytest.fixture
def aged_storage(storage_factory):
    def _make(ages, project='myproject'):
        objects = [_obj(f"{project}/site/site_{age:03d}.tar.gz", age) for age in ages]
        return storage_factory(project=project, objects=objects)

    return _make


class TestAgeInDays:
    """Test age_in_days."""

    def test_whole_days_floor(self):
        assert age_in_days(NOW - timedelta(days=2, hours=23), NOW) == 2
        assert age_in_days(NOW - timedelta(days=3), NOW) == 3

    def test_naive_is_utc(self):
        naive = (NOW - timedelta(days=5)).replace(tzinfo=None)
        assert age_in_days(naive, NOW) == 5

    def test_future_object_is_negative(self):
        assert age_in_days(NOW + timedelta(hours=5), NOW) == -1


class TestShouldDelete:
    """Test the tier decision table."""

    @pytest.mark.parametrize('age, policy, expected', [
        (0, RetentionPolicy(7, 4, 12), False),
        (7, RetentionPolicy(7, 4, 12), False),
        (8, RetentionPolicy(7, 4, 12), False),
        (14, RetentionPolicy(7, 1, 12), True),
        (13, RetentionPolicy(7, 1, 12), False),
        (28, RetentionPolicy(7, 3, 12), True),
        (29, RetentionPolicy(7, 0, 0), False),
        (30, RetentionPolicy(7, 0, 0), True),
        (95, RetentionPolicy(7, 2, 1), True),
        (400, RetentionPolicy(7, 4, 12), True),
        (359, RetentionPolicy(7, 4, 11), False),
    ])
    def test_table(self, age, policy, expected):
        assert should_delete(age, policy) is expected

    def test_daily_window_wins_past_28_days(self):
        policy = RetentionPolicy(daily=60, weekly=0, monthly=0)

        assert should_delete(45, policy) is False
        assert should_delete(61, policy) is True

    def test_zero_policy_keeps_only_today(self):
        policy = RetentionPolicy(0, 0, 0)

        assert should_delete(0, policy) is False
        assert should_delete(1, policy) is False
        assert should_delete(7, policy) is True


class TestPruneExpired:
    """Test RetentionManager.prune_expired."""

    def test_only_expired_deleted(self, aged_storage):
        storage = aged_storage([3, 10, 20, 35, 95])
        manager = RetentionManager(storage)

        result = manager.prune_expired(RetentionPolicy(7, 2, 1), now=NOW)

        assert result.deleted_count == 1
        assert storage.deleted == ['myproject/site/site_095.tar.gz']
        assert result.deleted_keys == storage.deleted

    def test_second_pass_deletes_nothing(self, aged_storage):
        storage = aged_storage([3, 10, 20, 35, 95])
        manager = RetentionManager(storage)
        policy = RetentionPolicy(7, 2, 1)

        manager.prune_expired(policy, now=NOW)
        second = manager.prune_expired(policy, now=NOW)

        assert second.deleted_count == 0
        assert len(storage.objects) == 4

    def test_other_projects_untouched(self, storage_factory):
        storage = storage_factory(objects=[
            _obj('myproject/site/old.tar.gz', 500),
            _obj('otherproject/site/old.tar.gz', 500),
            _obj('myproject-archive/site/old.tar.gz', 500),
        ])

        RetentionManager(storage).prune_expired(RetentionPolicy(), now=NOW)

        assert storage.deleted == ['myproject/site/old.tar.gz']
        assert 'otherproject/site/old.tar.gz' in storage.objects
        assert 'myproject-archive/site/old.tar.gz' in storage.objects

    def test_find_expired_ignores_foreign_keys(self, storage_factory):
        manager = RetentionManager(storage_factory())
        objects = [_obj('otherproject/x', 999), _obj('myproject/x', 999)]

        assert [o.key for o in manager.find_expired(objects, RetentionPolicy(), NOW)] == ['myproject/x']

    def test_unknown_last_modified_is_kept(self, storage_factory):
        storage = storage_factory(objects=[RemoteObject('myproject/site/x', None, 1)])

        assert RetentionManager(storage).prune_expired(RetentionPolicy(0, 0, 0), now=NOW).deleted_count == 0

    def test_delete_failure_reports_progress(self, aged_storage):
        storage = aged_storage([100, 200, 300])
        storage.fail_deletes.add('myproject/site/site_200.tar.gz')

        with pytest.raises(PruneError) as exc_info:
            RetentionManager(storage).prune_expired(RetentionPolicy(7, 4, 1), now=NOW)

        error = exc_info.value
        assert error.deleted_count == 1
        assert error.key == 'myproject/site/site_200.tar.gz'
        assert 'AccessDenied' in str(error)
        assert storage.deleted == ['myproject/site/site_100.tar.gz']

    def test_invalid_policy_rejected(self, storage_factory):
        with pytest.raises(ValidationError):
            RetentionManager(storage_factory()).prune_expired(RetentionPolicy(daily=-1))

    @freeze_time('2024-06-01 12:00:00')
    def test_default_now_is_current_time(self, aged_storage):
        storage = aged_storage([5, 400])

        result = RetentionManager(storage).prune_expired(RetentionPolicy())

        assert result.deleted_keys == ['myproject/site/site_400.tar.gz']

    def test_against_moto(self, s3_storage, mock_s3):
        mock_s3.put_object(Bucket='test-bucket', Key='myproject/site/fresh.tar.gz', Body=b'x')
        later = datetime.now(timezone.utc) + timedelta(days=500)

        result = RetentionManager(s3_storage).prune_expired(RetentionPolicy(), now=later)

        assert result.deleted_keys == ['myproject/site/fresh.tar.gz']
        assert s3_storage.list_remote() == []
