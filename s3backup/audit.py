"""
Audit trail for backup runs.

Writes one JSON object per line to a size-rotated file. Values under any
key that looks like a credential are masked before they are written.
"""

import json
import logging
import os
import platform
import secrets
import socket
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ('password', 'secret', 'key', 'token', 'credential', 'connectionstring')

REDACTED = '[REDACTED]'


def _is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(field in lowered for field in SENSITIVE_FIELDS)


def sanitize_details(details: Any, path: str = '') -> Any:
    """
    Mask credential-like values, recursively.

    A value is masked when its key, or the dotted path leading to it,
    contains one of SENSITIVE_FIELDS. Empty values stay empty.
    """
    if isinstance(details, dict):
        result = {}
        for key, value in details.items():
            full_path = f"{path}.{key}" if path else str(key)
            if _is_sensitive(str(key)) or _is_sensitive(full_path):
                result[key] = REDACTED if value else value
            else:
                result[key] = sanitize_details(value, full_path)
        return result

    if isinstance(details, (list, tuple)):
        return [sanitize_details(item, path) for item in details]

    return details


class AuditLogger:
    """
    JSON-lines audit log with rotation.

    Write failures never interrupt a backup; they are reported through the
    regular application logger instead.
    """

    def __init__(self, log_file: str, max_bytes: int = 10 * 1024 * 1024, backup_count: int = 5):
        """
        Initialize audit logger.

        Args:
            log_file: Path of the audit log
            max_bytes: Size that triggers rotation (default: 10MB)
            backup_count: Rotated files to keep
        """
        self.log_file = os.path.abspath(log_file)
        self.session_id = secrets.token_hex(8)

        log_dir = os.path.dirname(self.log_file)
        os.makedirs(log_dir, mode=0o750, exist_ok=True)

        if not os.path.exists(self.log_file):
            fd = os.open(self.log_file, os.O_WRONLY | os.O_CREAT, 0o640)
            os.close(fd)

        self._logger = logging.getLogger(f"{__name__}.{self.session_id}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False

        self._handler = RotatingFileHandler(self.log_file, maxBytes=max_bytes, backupCount=backup_count)
        self._handler.setFormatter(logging.Formatter('%(message)s'))
        self._logger.addHandler(self._handler)

    def log_event(self, event_type: str, details: Optional[Dict[str, Any]] = None):
        """
        Append one audit event.

        Args:
            event_type: Event name, e.g. BACKUP_START
            details: Event specific fields (credentials are masked)
        """
        event = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'sessionId': self.session_id,
            'eventId': secrets.token_hex(4),
            'eventType': event_type,
            'process': {
                'pid': os.getpid(),
                'ppid': os.getppid(),
                'user': os.getuid() if hasattr(os, 'getuid') else 'unknown',
                'cwd': os.getcwd()
            },
            'system': {
                'hostname': socket.gethostname(),
                'platform': platform.system().lower(),
                'arch': platform.machine()
            },
            'details': sanitize_details(details or {})
        }

        try:
            self._logger.info(json.dumps(event, default=str))
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Audit logging failed: {e}")

    def close(self):
        self._logger.removeHandler(self._handler)
        self._handler.close()

    def log_backup_start(self, project: str, bucket: str, directory_count: int, database_count: int):
        self.log_event('BACKUP_START', {
            'project': project,
            's3Bucket': bucket,
            'directoryCount': directory_count,
            'databaseCount': database_count
        })

    def log_backup_complete(self, backup_count: int, total_size: int, upload_count: int, duration: float):
        self.log_event('BACKUP_COMPLETE', {
            'backupCount': backup_count,
            'totalSize': total_size,
            'uploadCount': upload_count,
            'duration': duration
        })

    def log_backup_error(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        self.log_event('BACKUP_ERROR', {
            'errorMessage': str(error),
            'errorType': type(error).__name__,
            'context': context or {}
        })

    def log_directory_backup(self, name: str, path: str, exclude_count: int, success: bool, size: int = 0):
        self.log_event('DIRECTORY_BACKUP', {
            'name': name,
            'path': os.path.normpath(path),
            'excludeCount': exclude_count,
            'success': success,
            'size': size
        })

    def log_database_backup(self, name: str, engine: str, host: str, database: str,
                            success: bool, size: int = 0):
        self.log_event('DATABASE_BACKUP', {
            'name': name,
            'type': engine,
            'host': host,
            'database': database,
            'success': success,
            'size': size
        })

    def log_s3_upload(self, file_name: str, s3_key: str, success: bool, size: int = 0):
        self.log_event('S3_UPLOAD', {
            'fileName': file_name,
            's3Object': s3_key,
            'success': success,
            'size': size
        })

    def log_retention_cleanup(self, deleted_count: int, error: Optional[Exception] = None):
        self.log_event('RETENTION_CLEANUP', {
            'deletedCount': deleted_count,
            'errorCount': 1 if error else 0
        })

    def log_config_validation(self, config_path: str, valid: bool, errors=None):
        errors = list(errors or [])
        self.log_event('CONFIG_VALIDATION', {
            'configPath': os.path.normpath(config_path),
            'valid': valid,
            'errorCount': len(errors),
            'errors': errors[:5]
        })
