"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create the staging root
2. Archive directory targets, then dump database targets
3. Upload every artifact to S3
4. Prune expired archives (if a retention policy is configured)
5. Remove the staging root, whatever happened before
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, TypeVar

from s3backup.audit import AuditLogger
from s3backup.config import BackupConfig
from s3backup.models import (
    BackupArtifact,
    BackupTarget,
    DatabaseTarget,
    DirectoryTarget,
    MaintenanceOutcome,
    RemoteObject,
    RunResult,
    RunState,
    RunStatus,
    ValidationError,
)
from s3backup.utils.naming import generate_timestamp
from .database import MySQLDumpSource
from .retention import PruneError, RetentionManager
from .sources import DirectorySource
from .staging import create_staging_root, remove_staging_root
from .storage import S3Storage, UploadError


logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


class TaskSkipped(Exception):
    """Marks a task that never ran because an earlier one failed."""
    pass


def run_fail_fast(items: Sequence[T], worker: Callable[[T, threading.Event], R],
                  max_workers: int = 1) -> List[R]:
    """
    Run worker over items, stopping at the first failure.

    With max_workers=1 items run strictly in order. With more workers they
    run on a bounded pool sharing one cancel event: once a task fails, tasks
    that have not started yet are skipped.

    Returns:
        Results in the order of items

    Raises:
        The exception of the earliest failed item, in item order
    """
    cancel_event = threading.Event()

    if max_workers <= 1:
        return [worker(item, cancel_event) for item in items]

    def guarded(item):
        if cancel_event.is_set():
            raise TaskSkipped()
        try:
            return worker(item, cancel_event)
        except BaseException:
            cancel_event.set()
            raise

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='backup') as pool:
        futures = [pool.submit(guarded, item) for item in items]

    results = []
    first_error = None
    for future in futures:
        error = future.exception()
        if error is None:
            results.append(future.result())
        elif first_error is None and not isinstance(error, TaskSkipped):
            first_error = error

    if first_error is not None:
        raise first_error
    return results


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one configuration.
    """

    def __init__(self, config: BackupConfig, storage: Optional[S3Storage] = None,
                 audit: Optional[AuditLogger] = None):
        """
        Initialize backup executor.

        Args:
            config: Validated backup configuration
            storage: S3 handler (built from config.s3 when omitted)
            audit: Optional audit trail
        """
        self.config = config
        self.storage = storage or build_storage(config)
        self.audit = audit
        self.state = RunState.IDLE
        self.staging_root = None
        self.timestamp = None
        self.logs = []

    def execute(self) -> RunResult:
        """
        Execute the backup run.

        Capture and upload failures end the run as failed; the error is kept
        on the result rather than raised. Retention failures are reported on
        result.maintenance and leave the run status untouched.

        Returns:
            RunResult describing the run
        """
        started = time.monotonic()
        # One timestamp names every artifact of this run
        self.timestamp = generate_timestamp(datetime.now())
        result = RunResult(status=RunStatus.SUCCESS, timestamp=self.timestamp, logs=self.logs)

        self._log("Starting backup process...")
        self._log(f"Backup timestamp: {self.timestamp}")

        if self.audit:
            self.audit.log_backup_start(
                self.config.project_name, self.config.s3.bucket,
                len(self.config.directories), len(self.config.databases)
            )

        try:
            targets = self._load_targets()

            self._transition(RunState.STAGING)
            self.staging_root = create_staging_root(self.config.staging_dir)

            self._transition(RunState.CAPTURING_TARGETS)
            result.artifacts = self._capture_targets(targets)

            if not result.artifacts:
                self._log("No backups to process")
                result.status = RunStatus.NOTHING_TO_BACKUP
            else:
                self._transition(RunState.UPLOADING)
                self._log(f"Uploading {len(result.artifacts)} backups to S3...")
                result.uploads = self._upload(result.artifacts)

                policy = self.config.retention_policy
                if policy is not None:
                    self._transition(RunState.PRUNING)
                    result.maintenance = self._prune(policy)

        except Exception as e:
            result.status = RunStatus.FAILED
            result.error = e
            self._log(f"Backup failed: {e}", level=logging.ERROR)
            if self.audit:
                self.audit.log_backup_error(e, {'state': self.state.value})

        finally:
            self._transition(RunState.CLEANUP)
            self._cleanup()

        if result.status == RunStatus.FAILED:
            self._transition(RunState.FAILED)
        else:
            self._transition(RunState.DONE)
            self._log("Backup process completed successfully")
            if self.audit:
                self.audit.log_backup_complete(
                    len(result.artifacts), result.total_size,
                    len(result.uploads), round(time.monotonic() - started, 3)
                )

        return result

    def _load_targets(self) -> List[BackupTarget]:
        """
        Directory targets first, then databases, each in declaration order.

        Raises:
            ValidationError: If any target is invalid (checked before any I/O)
        """
        targets: List[BackupTarget] = []
        targets.extend(self.config.directory_targets())
        targets.extend(self.config.database_targets())

        seen = set()
        for target in targets:
            target.validate()
            if target.name in seen:
                raise ValidationError(f"Duplicate target name: {target.name}")
            seen.add(target.name)

        return targets

    def _capture_targets(self, targets: List[BackupTarget]) -> List[BackupArtifact]:
        directories = sum(1 for t in targets if isinstance(t, DirectoryTarget))
        databases = len(targets) - directories
        if directories:
            self._log(f"Backing up {directories} directories...")
        if databases:
            self._log(f"Backing up {databases} databases...")

        return run_fail_fast(targets, self._capture_one, self.config.backup.max_workers)

    def _capture_one(self, target: BackupTarget, cancel_event: threading.Event) -> BackupArtifact:
        """
        Produce the artifact of one target.

        Raises:
            SourceError, DatabaseBackupError: From the component
        """
        if isinstance(target, DirectoryTarget):
            try:
                artifact = DirectorySource(target).archive(self.staging_root, self.timestamp)
            except Exception:
                self._log(f"Failed to backup directory {target.name}", level=logging.ERROR)
                if self.audit:
                    self.audit.log_directory_backup(target.name, target.source_path,
                                                    len(target.exclude_patterns), False)
                raise
            if self.audit:
                self.audit.log_directory_backup(target.name, target.source_path,
                                                len(target.exclude_patterns), True, artifact.size_bytes)
            return artifact

        if isinstance(target, DatabaseTarget):
            source = MySQLDumpSource(
                target,
                executable=self.config.backup.dump_executable,
                timeout=self.config.backup.command_timeout
            )
            try:
                artifact = source.backup(self.staging_root, self.timestamp)
            except Exception:
                self._log(f"Failed to backup database {target.name}", level=logging.ERROR)
                if self.audit:
                    self.audit.log_database_backup(target.name, target.engine, target.host,
                                                   target.database, False)
                raise
            if self.audit:
                self.audit.log_database_backup(target.name, target.engine, target.host,
                                               target.database, True, artifact.size_bytes)
            return artifact

        raise ValidationError(f"Unknown target type: {type(target).__name__}")

    def _upload(self, artifacts: List[BackupArtifact]) -> List[RemoteObject]:
        """
        Upload artifacts, stopping at the first failure.

        Each staged archive is deleted once its upload is confirmed.

        Raises:
            UploadError: For the first artifact that fails
        """
        def upload_one(artifact: BackupArtifact, cancel_event: threading.Event) -> RemoteObject:
            try:
                remote = self.storage.upload_artifact(artifact, cancel_event)
            except UploadError as e:
                self._log(f"Failed to upload backup {artifact.name}: {e.cause}", level=logging.ERROR)
                if self.audit:
                    self.audit.log_s3_upload(os.path.basename(artifact.local_path),
                                             self.storage.key_for(artifact), False)
                raise

            self._log(f"Uploaded to S3: {remote.key}")
            if self.audit:
                self.audit.log_s3_upload(os.path.basename(artifact.local_path), remote.key,
                                         True, remote.size_bytes)
            try:
                os.unlink(artifact.local_path)
            except FileNotFoundError:
                pass
            return remote

        return run_fail_fast(artifacts, upload_one, self.config.backup.max_workers)

    def _prune(self, policy) -> MaintenanceOutcome:
        """Run the retention pass; its failure is reported, not raised."""
        self._log("Running retention cleanup...")
        manager = RetentionManager(self.storage)

        try:
            pruned = manager.prune_expired(policy)
        except PruneError as e:
            self._log(f"Failed to cleanup old backups: {e}", level=logging.WARNING)
            if self.audit:
                self.audit.log_retention_cleanup(e.deleted_count, e)
            return MaintenanceOutcome(ran=True, deleted_count=e.deleted_count, error=e)

        if self.audit:
            self.audit.log_retention_cleanup(pruned.deleted_count)
        return MaintenanceOutcome(ran=True, deleted_count=pruned.deleted_count)

    def _cleanup(self):
        """Remove the staging root and everything left in it."""
        if self.staging_root and remove_staging_root(self.staging_root):
            self._log("Cleaned up staging directory")
        elif self.staging_root:
            self._log("Warning: Failed to cleanup staging directory", level=logging.WARNING)

    def _transition(self, state: RunState):
        logger.debug(f"Run state: {self.state.value} -> {state.value}")
        self.state = state

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level used for the application logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def build_storage(config: BackupConfig) -> S3Storage:
    """S3 handler for a configuration."""
    s3 = config.s3
    return S3Storage(
        bucket_name=s3.bucket,
        project=config.project_name,
        access_key=s3.access_key_id,
        secret_key=s3.secret_access_key,
        region=s3.region,
        endpoint_url=s3.endpoint,
        force_path_style=s3.force_path_style,
        signature_version=s3.signature_version
    )


def run_backup(config: BackupConfig, audit: Optional[AuditLogger] = None) -> RunResult:
    """
    Execute one backup run for a configuration.

    Returns:
        RunResult with status success, nothing_to_backup or failed
    """
    executor = BackupExecutor(config, audit=audit)
    return executor.execute()
