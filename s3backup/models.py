"""
Data model for backup runs.

Targets are a closed set: a run backs up directories and MySQL-compatible
databases, nothing else.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union


NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')

SUPPORTED_ENGINES = ('mysql', 'mariadb')


class ValidationError(Exception):
    """Raised when a target or policy definition is invalid."""
    pass


def _check_name(kind: str, value: str, max_length: int = 100):
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{kind} must be a non-empty string")
    if len(value) > max_length:
        raise ValidationError(f"{kind} is longer than {max_length} characters: {value}")
    if not NAME_PATTERN.match(value):
        raise ValidationError(f"{kind} may only contain letters, digits, '-' and '_': {value}")


def _check_single_line(kind: str, value: Optional[str]):
    if value and ('\n' in value or '\r' in value):
        raise ValidationError(f"{kind} must not contain line breaks")


@dataclass
class DirectoryTarget:
    """A local directory archived as one tar.gz."""
    name: str
    source_path: str
    exclude_patterns: List[str] = field(default_factory=list)

    kind = 'directory'

    def validate(self):
        _check_name('Target name', self.name)
        if not self.source_path:
            raise ValidationError(f"Directory target {self.name} has no path")
        if '..' in self.source_path.replace('\\', '/').split('/'):
            raise ValidationError(f"Path traversal detected in path of {self.name}")


@dataclass
class DatabaseTarget:
    """A MySQL or MariaDB database dumped with mysqldump."""
    name: str
    engine: str
    host: str
    username: str
    database: str
    port: int = 3306
    password: str = ''
    credentials_file: Optional[str] = None
    charset: str = 'utf8mb4'

    kind = 'database'

    def validate(self):
        _check_name('Target name', self.name)
        _check_name('Database name', self.database, max_length=64)
        if not self.host:
            raise ValidationError(f"Database target {self.name} has no host")
        if not self.username:
            raise ValidationError(f"Database target {self.name} has no username")
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ValidationError(f"Invalid port for {self.name}: {self.port}")
        _check_single_line('Host', self.host)
        _check_single_line('Username', self.username)
        _check_single_line('Password', self.password)
        _check_single_line('Charset', self.charset)

    @property
    def has_password(self) -> bool:
        return bool(self.password)


BackupTarget = Union[DirectoryTarget, DatabaseTarget]


@dataclass
class BackupArtifact:
    """A finished archive waiting in the staging root for upload."""
    name: str
    local_path: str
    size_bytes: int


@dataclass
class RemoteObject:
    """What the object store reports for one key."""
    key: str
    last_modified: Optional[datetime]
    size_bytes: int
    location: Optional[str] = None


@dataclass
class RetentionPolicy:
    """Generation counts kept per tier."""
    daily: int = 7
    weekly: int = 4
    monthly: int = 12

    def validate(self):
        for tier in ('daily', 'weekly', 'monthly'):
            value = getattr(self, tier)
            if not isinstance(value, int) or value < 0:
                raise ValidationError(f"Retention {tier} count must be a non-negative integer, got {value!r}")


@dataclass
class PruneResult:
    deleted_count: int = 0
    deleted_keys: List[str] = field(default_factory=list)


class RunState(Enum):
    IDLE = 'idle'
    STAGING = 'staging'
    CAPTURING_TARGETS = 'capturing_targets'
    UPLOADING = 'uploading'
    PRUNING = 'pruning'
    CLEANUP = 'cleanup'
    DONE = 'done'
    FAILED = 'failed'


class RunStatus(str, Enum):
    SUCCESS = 'success'
    FAILED = 'failed'
    NOTHING_TO_BACKUP = 'nothing_to_backup'


@dataclass
class MaintenanceOutcome:
    """
    Result of the retention pass.

    Kept apart from the run status: a failed prune never turns a
    successful backup into a failed one.
    """
    ran: bool = False
    deleted_count: int = 0
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunResult:
    status: RunStatus
    timestamp: str
    artifacts: List[BackupArtifact] = field(default_factory=list)
    uploads: List[RemoteObject] = field(default_factory=list)
    error: Optional[Exception] = None
    maintenance: MaintenanceOutcome = field(default_factory=MaintenanceOutcome)
    logs: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status != RunStatus.FAILED

    @property
    def total_size(self) -> int:
        return sum(upload.size_bytes for upload in self.uploads)
