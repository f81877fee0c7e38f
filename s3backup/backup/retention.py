"""
Retention policy enforcement for backups.

Remote archives are bucketed by age in whole days:
- age <= daily: kept
- daily < age <= 28: deleted when floor(age / 7) > weekly
- age > 28: deleted when floor(age / 30) > monthly

The 28/30 day boundaries approximate weeks and months without calendar
arithmetic.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from s3backup.models import PruneResult, RemoteObject, RetentionPolicy
from .storage import S3Storage, StorageError


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
WEEKLY_WINDOW_DAYS = 28
DAYS_PER_WEEK = 7
DAYS_PER_MONTH = 30


class PruneError(StorageError):
    """Raised when a retention pass stops on a failed listing or delete."""

    def __init__(self, message: str, deleted_count: int = 0, key: Optional[str] = None,
                 cause: Optional[Exception] = None):
        super().__init__(message)
        self.deleted_count = deleted_count
        self.key = key
        self.cause = cause


def age_in_days(last_modified: datetime, now: datetime) -> int:
    """Whole days between last_modified and now (naive datetimes are UTC)."""
    if last_modified.tzinfo is None:
        last_modified = last_modified.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int((now - last_modified).total_seconds() // SECONDS_PER_DAY)


def should_delete(age_days: int, policy: RetentionPolicy) -> bool:
    """
    Decide whether an object of the given age has expired.

    Args:
        age_days: Whole days since the object was written
        policy: Tier counts

    Returns:
        True if the object falls outside every retention tier
    """
    if age_days <= policy.daily:
        return False

    if age_days <= WEEKLY_WINDOW_DAYS:
        return age_days // DAYS_PER_WEEK > policy.weekly

    return age_days // DAYS_PER_MONTH > policy.monthly


class RetentionManager:
    """
    Prunes expired archives of one project from S3.
    """

    def __init__(self, storage: S3Storage):
        """
        Initialize retention manager.

        Args:
            storage: Storage handler scoped to the project
        """
        self.storage = storage

    def find_expired(self, objects: List[RemoteObject], policy: RetentionPolicy,
                     now: Optional[datetime] = None) -> List[RemoteObject]:
        """
        Select the objects a prune pass would delete.

        Keys outside {project}/ are never selected.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        prefix = self.storage.project_prefix
        expired = []

        for obj in objects:
            if not obj.key.startswith(prefix) or obj.last_modified is None:
                continue
            if should_delete(age_in_days(obj.last_modified, now), policy):
                expired.append(obj)

        return expired

    def prune_expired(self, policy: RetentionPolicy, now: Optional[datetime] = None) -> PruneResult:
        """
        Delete every expired archive of the project, one at a time.

        Args:
            policy: Tier counts
            now: Reference time (default: current UTC time)

        Returns:
            PruneResult with the number of deleted objects

        Raises:
            PruneError: On the first failed listing or delete; carries the
                number of objects deleted before it
        """
        policy.validate()

        try:
            objects = self.storage.list_remote(self.storage.project_prefix)
        except StorageError as e:
            raise PruneError(f"Failed to list backups: {e}", cause=e)

        result = PruneResult()

        for obj in self.find_expired(objects, policy, now):
            try:
                self.storage.delete(obj.key)
            except StorageError as e:
                raise PruneError(
                    f"Failed to delete backup {obj.key}: {e}",
                    deleted_count=result.deleted_count,
                    key=obj.key,
                    cause=e
                )
            result.deleted_count += 1
            result.deleted_keys.append(obj.key)

        if result.deleted_count > 0:
            logger.info(
                f"Cleaned up {result.deleted_count} old backup(s) for project: {self.storage.project}"
            )

        return result
