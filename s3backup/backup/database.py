"""
Database sources for backup operations.

Supports MySQL and MariaDB through mysqldump. The dump tool is always run
from an argument vector (no shell) and reads its credentials from an
owner-only option file, so passwords never appear on a command line.
"""

import logging
import os
import subprocess
from typing import List, Optional

from s3backup.models import SUPPORTED_ENGINES, BackupArtifact, DatabaseTarget
from s3backup.utils.naming import sanitize_string, timestamped_filename
from .compression import ARCHIVE_EXTENSION, CompressionError, write_single_file_archive
from .staging import StagedFile, StagingError, copy_private, create_staging_file


logger = logging.getLogger(__name__)

DEFAULT_DUMP_EXECUTABLE = 'mysqldump'

BASE_DUMP_OPTIONS = [
    '--single-transaction',
    '--routines',
    '--triggers',
    '--events',
    '--add-drop-table',
    '--add-drop-database',
    '--create-options',
    '--disable-keys',
    '--extended-insert',
    '--quick',
    '--lock-tables=false',
]

MARIADB_OPTIONS = ['--skip-add-locks', '--skip-comments']

NO_PASSWORD_OPTION = '--skip-password'


class DatabaseBackupError(Exception):
    """Raised when a database backup fails. Messages never carry dump output."""
    pass


class UnsupportedEngineError(DatabaseBackupError):
    """Raised for an engine other than mysql or mariadb."""
    pass


class DumpCommandError(DatabaseBackupError):
    """
    Raised when the dump executable fails.

    stderr is kept on the exception for diagnostics but left out of the
    message, which is the only part that reaches logs and users.
    """

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def _quote_option_value(value: str) -> str:
    """Quote a value for a MySQL option file (\\ and " escaped)."""
    escaped = value.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


def _failure_message(target: DatabaseTarget) -> str:
    return f"{target.engine.upper()} backup failed for {target.name}: Command execution failed"


class MySQLCredentialsFile:
    """
    Ephemeral [client] option file for mysqldump.

    Owned by the caller: write() creates it, destroy() removes it. Used as
    a context manager, destroy() runs on every exit path.
    """

    def __init__(self, target: DatabaseTarget):
        self.target = target
        self._staged: Optional[StagedFile] = None

    @property
    def path(self) -> Optional[str]:
        return self._staged.path if self._staged else None

    def render(self) -> str:
        """
        Option file content. The password line is omitted when empty.

        The password is double quoted so that '#', surrounding spaces and
        backslashes reach the server unchanged.
        """
        target = self.target
        if target.has_password:
            password_line = f"password={_quote_option_value(target.password)}"
        else:
            password_line = '# No password required'

        return (
            "[client]\n"
            f"host={sanitize_string(target.host)}\n"
            f"port={target.port}\n"
            f"user={sanitize_string(target.username)}\n"
            f"{password_line}\n"
            f"default-character-set={target.charset or 'utf8mb4'}\n"
        )

    def write(self) -> str:
        """
        Create the option file (mode 0600) and fill it.

        Returns:
            Path of the option file
        """
        if self._staged is None:
            self._staged = create_staging_file(f"{self.target.engine}-config", '.cnf')
            try:
                with open(self._staged.path, 'w', encoding='utf-8') as f:
                    f.write(self.render())
            except OSError:
                self.destroy()
                raise
        return self._staged.path

    def destroy(self):
        if self._staged is not None:
            self._staged.remove()
            self._staged = None

    def __enter__(self):
        self.write()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.destroy()
        return False


class MySQLDumpSource:
    """
    Handler for MySQL and MariaDB database targets.

    Produces {staging_root}/{name}_{timestamp}.tar.gz holding exactly one
    entry, {name}_{timestamp}.sql, with the dump output byte for byte.
    """

    def __init__(self, target: DatabaseTarget, executable: str = DEFAULT_DUMP_EXECUTABLE,
                 timeout: Optional[float] = None):
        """
        Initialize database source handler.

        Args:
            target: Database target definition
            executable: Dump tool to run (default: mysqldump)
            timeout: Seconds before a running dump is killed (default: none)
        """
        self.target = target
        self.executable = executable
        self.timeout = timeout

    def build_command(self, defaults_file: str) -> List[str]:
        """
        Build the dump argument vector.

        Args:
            defaults_file: Option file holding host and credentials

        Returns:
            List of arguments, executable first
        """
        args = [self.executable, f"--defaults-file={defaults_file}"]
        args.extend(BASE_DUMP_OPTIONS)

        if self.target.engine == 'mariadb':
            args.extend(MARIADB_OPTIONS)

        if not self.target.has_password:
            args.append(NO_PASSWORD_OPTION)

        args.append(sanitize_string(self.target.database))
        return args

    def run_dump(self, defaults_file: str) -> bytes:
        """
        Run the dump tool and return its stdout.

        Raises:
            DumpCommandError: Non-zero exit, missing executable or timeout
        """
        command = self.build_command(defaults_file)

        try:
            result = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.debug(f"{self.executable} timed out after {self.timeout}s for {self.target.name}")
            raise DumpCommandError(_failure_message(self.target))
        except OSError as e:
            logger.debug(f"{self.executable} could not be started for {self.target.name}: {e}")
            raise DumpCommandError(_failure_message(self.target))

        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace')
            logger.debug(f"{self.executable} exited with {result.returncode}: {stderr}")
            raise DumpCommandError(_failure_message(self.target), returncode=result.returncode, stderr=stderr)

        return result.stdout

    def backup(self, staging_root: str, timestamp: str) -> BackupArtifact:
        """
        Dump the database into the staging root.

        Args:
            staging_root: Run staging directory receiving the final archive
            timestamp: Run timestamp shared by every artifact of the run

        Returns:
            BackupArtifact for the compressed dump

        Raises:
            UnsupportedEngineError: Engine is neither mysql nor mariadb
            DatabaseBackupError: Any failure while dumping or archiving
        """
        target = self.target
        if target.engine not in SUPPORTED_ENGINES:
            raise UnsupportedEngineError(
                f"Unsupported database type: {target.engine}. Only MySQL and MariaDB are supported."
            )

        safe_name = sanitize_string(target.name)
        label = target.engine.upper()
        final_path = os.path.join(staging_root, timestamped_filename(safe_name, ARCHIVE_EXTENSION, timestamp))
        sql_entry = timestamped_filename(safe_name, '.sql', timestamp)

        logger.info(f"Starting {label} backup: {target.name}")

        credentials = MySQLCredentialsFile(target) if not target.credentials_file else None
        staged_files: List[StagedFile] = []

        try:
            if credentials is not None:
                defaults_file = credentials.write()
            else:
                defaults_file = os.path.abspath(os.path.expanduser(target.credentials_file))

            payload = self.run_dump(defaults_file)

            dump_file = create_staging_file(f"{target.engine}-{safe_name}", '.sql')
            staged_files.append(dump_file)
            with open(dump_file.path, 'wb') as f:
                f.write(payload)

            archive_file = create_staging_file(f"{target.engine}-{safe_name}", ARCHIVE_EXTENSION)
            staged_files.append(archive_file)
            write_single_file_archive(archive_file.path, dump_file.path, sql_entry)

            size = copy_private(archive_file.path, final_path)

        except DatabaseBackupError as e:
            logger.error(str(e))
            raise
        except (StagingError, CompressionError, OSError) as e:
            if os.path.exists(final_path):
                os.unlink(final_path)
            logger.error(f"{label} backup failed for {target.name}: {type(e).__name__}")
            raise DatabaseBackupError(_failure_message(target)) from e
        finally:
            if credentials is not None:
                credentials.destroy()
            for staged in staged_files:
                staged.remove()

        logger.info(f"{label} backup completed: {target.name} ({size} bytes compressed)")
        return BackupArtifact(name=target.name, local_path=final_path, size_bytes=size)


def dump_database(target: DatabaseTarget, staging_root: str, timestamp: str,
                  executable: str = DEFAULT_DUMP_EXECUTABLE, timeout: Optional[float] = None) -> BackupArtifact:
    """Dump one database target. See MySQLDumpSource.backup."""
    return MySQLDumpSource(target, executable=executable, timeout=timeout).backup(staging_root, timestamp)
