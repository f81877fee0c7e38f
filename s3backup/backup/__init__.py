"""
Backup module for s3backup.

This module handles the core backup functionality including:
- Secure staging of temporary files
- Directory archiving
- MySQL/MariaDB dumps
- S3 upload
- Retention policy enforcement
- Execution orchestration
"""

from .executor import BackupExecutor, run_backup
from .sources import DirectorySource, archive_directory
from .database import MySQLDumpSource, dump_database
from .storage import S3Storage
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'run_backup',
    'DirectorySource',
    'archive_directory',
    'MySQLDumpSource',
    'dump_database',
    'S3Storage',
    'RetentionManager'
]
