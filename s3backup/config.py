import json
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError
from pydantic.alias_generators import to_camel

from s3backup.models import SUPPORTED_ENGINES, DatabaseTarget, DirectoryTarget, RetentionPolicy, ValidationError


logger = logging.getLogger(__name__)


class Config:
    """Process settings, read from the environment"""

    # Staging
    STAGING_DIR = os.environ.get('S3BACKUP_STAGING_DIR') or os.path.join(tempfile.gettempdir(), 'backup-to-s3')

    # Logging
    LOG_LEVEL = os.environ.get('S3BACKUP_LOG_LEVEL', 'INFO').upper()
    LOG_DIR = os.environ.get('S3BACKUP_LOG_DIR')
    AUDIT_LOG = os.environ.get('S3BACKUP_AUDIT_LOG')

    # Default configuration file for the CLI
    CONFIG_FILE = os.environ.get('S3BACKUP_CONFIG') or './backup-config.json'


# ---------------------------------------------------------------------------
# Configuration file schema
# ---------------------------------------------------------------------------

_NAME = r'^[a-zA-Z0-9_-]+$'


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class ProjectSettings(_Schema):
    name: str = Field(min_length=1, max_length=50, pattern=_NAME)


class S3Settings(_Schema):
    region: str = Field(pattern=r'^[a-z0-9-]+$')
    bucket: str = Field(min_length=3, max_length=63, pattern=r'^[a-z0-9.-]+$')
    access_key_id: str = Field(min_length=1)
    secret_access_key: str = Field(min_length=1)
    endpoint: Optional[str] = None
    force_path_style: bool = False
    signature_version: str = Field(default='v4', pattern=r'^v[24]$')

    @field_validator('endpoint')
    @classmethod
    def validate_endpoint(cls, v):
        if v is not None and not v.startswith(('http://', 'https://')):
            raise ValueError('endpoint must be an http(s) URL')
        return v


class DirectorySettings(_Schema):
    name: str = Field(min_length=1, max_length=100, pattern=_NAME)
    path: str = Field(min_length=1, max_length=1000)
    exclude: List[str] = Field(default_factory=list)

    @field_validator('exclude')
    @classmethod
    def validate_exclude(cls, v):
        for pattern in v:
            if len(pattern) > 200:
                raise ValueError(f'exclude pattern longer than 200 characters: {pattern[:20]}...')
        return v

    def to_target(self) -> DirectoryTarget:
        return DirectoryTarget(name=self.name, source_path=_safe_path(self.path), exclude_patterns=list(self.exclude))


class DatabaseSettings(_Schema):
    name: str = Field(min_length=1, max_length=100, pattern=_NAME)
    type: str
    host: str = Field(min_length=1)
    port: int = Field(default=3306, ge=1, le=65535)
    username: str = Field(min_length=1, max_length=64, pattern=_NAME)
    password: str = ''
    database: str = Field(min_length=1, max_length=64, pattern=_NAME)
    config_file: Optional[str] = None
    charset: str = 'utf8mb4'

    @field_validator('type')
    @classmethod
    def validate_type(cls, v):
        if v not in SUPPORTED_ENGINES:
            raise ValueError(f'Unsupported database type: {v}. Only MySQL and MariaDB are supported.')
        return v

    def to_target(self) -> DatabaseTarget:
        return DatabaseTarget(
            name=self.name,
            engine=self.type,
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            database=self.database,
            credentials_file=_safe_path(self.config_file) if self.config_file else None,
            charset=self.charset
        )


class RetentionSettings(_Schema):
    daily: int = Field(default=7, ge=0, le=365)
    weekly: int = Field(default=4, ge=0, le=52)
    monthly: int = Field(default=12, ge=0, le=60)

    def to_policy(self) -> RetentionPolicy:
        return RetentionPolicy(daily=self.daily, weekly=self.weekly, monthly=self.monthly)


class BackupSettings(_Schema):
    retention: Optional[RetentionSettings] = Field(default_factory=RetentionSettings)
    temp_dir: Optional[str] = None
    max_workers: int = Field(default=1, ge=1, le=16)
    command_timeout: Optional[float] = Field(default=None, gt=0)
    dump_executable: str = 'mysqldump'


class BackupConfig(_Schema):
    """Validated content of a backup configuration file."""
    project: ProjectSettings
    s3: S3Settings
    directories: List[DirectorySettings] = Field(default_factory=list)
    databases: List[DatabaseSettings] = Field(default_factory=list)
    backup: BackupSettings = Field(default_factory=BackupSettings)

    @property
    def project_name(self) -> str:
        return self.project.name

    @property
    def retention_policy(self) -> Optional[RetentionPolicy]:
        if self.backup.retention is None:
            return None
        return self.backup.retention.to_policy()

    @property
    def staging_dir(self) -> str:
        return self.backup.temp_dir or Config.STAGING_DIR

    def directory_targets(self) -> List[DirectoryTarget]:
        return [d.to_target() for d in self.directories]

    def database_targets(self) -> List[DatabaseTarget]:
        return [d.to_target() for d in self.databases]


def _safe_path(path: str) -> str:
    """Resolve a configured path, refusing '..' components."""
    if '..' in Path(path).parts:
        raise ValidationError(f"Path traversal detected in file path: {path}")
    return str(Path(path).expanduser().absolute())


def check_file_permissions(config_path: str) -> bool:
    """
    Warn when the configuration file is readable by others.

    Returns:
        True if the mode is 0600 or narrower
    """
    mode = stat.S_IMODE(os.stat(config_path).st_mode)
    if mode & 0o177:
        logger.warning(
            f"Config file has overly permissive permissions ({oct(mode)[2:]}). "
            f"Run: chmod 600 {config_path}"
        )
        return False
    return True


def find_git_directory(start_path: str) -> Optional[Path]:
    """Closest parent directory holding a .git entry, if any."""
    current = Path(start_path).absolute().parent
    while current != current.parent:
        if (current / '.git').exists():
            return current
        current = current.parent
    return None


def check_git_ignore(config_path: str) -> bool:
    """
    Warn when the configuration file sits in a git work tree unignored.

    .gitignore is read, never written.

    Returns:
        False if a warning was issued
    """
    git_dir = find_git_directory(config_path)
    if git_dir is None:
        return True

    config_path = Path(config_path).absolute()
    relative = config_path.relative_to(git_dir).as_posix()
    gitignore = git_dir / '.gitignore'

    if gitignore.exists():
        for line in gitignore.read_text(encoding='utf-8').splitlines():
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            if line in (relative, config_path.name, f"/{relative}"):
                return True
            if '*' in line and line.replace('*', '') in str(config_path):
                return True

    logger.warning(
        f"Config file may not be ignored by git: {relative}. "
        f"It contains credentials; add it to {gitignore}"
    )
    return False


def load_config(config_path: str) -> BackupConfig:
    """
    Read and validate a backup configuration file.

    Args:
        config_path: Path to the JSON configuration

    Returns:
        Validated BackupConfig

    Raises:
        ValidationError: If the file is missing, unreadable or invalid
    """
    path = Path(config_path)
    if '..' in path.parts:
        raise ValidationError(f"Path traversal detected in file path: {config_path}")

    try:
        raw = path.read_text(encoding='utf-8')
    except FileNotFoundError:
        raise ValidationError(f"Configuration file not found: {config_path}")
    except OSError as e:
        raise ValidationError(f"Cannot read configuration file {config_path}: {e}")

    check_file_permissions(str(path))
    check_git_ignore(str(path))

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Configuration file is not valid JSON: {e}")

    try:
        config = BackupConfig.model_validate(data)
    except SchemaError as e:
        details = ', '.join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Configuration validation error: {details}")

    for database in config.databases:
        if not database.password:
            logger.warning(
                f"Database {database.name} has no password. "
                f"This is only recommended for local development."
            )

    return config
