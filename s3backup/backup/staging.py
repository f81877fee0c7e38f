"""
Secure staging for backup artifacts.

Every file produced while a backup runs lives in owner-only storage:
- StagedFile: randomly named 0600 file under the process temp directory
- Staging root: run-scoped 0700 directory holding the finished archives
"""

import logging
import os
import secrets
import shutil
import tempfile
from pathlib import Path


logger = logging.getLogger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o700


class StagingError(Exception):
    """Raised when staging storage cannot be created or written."""
    pass


class StagedFile:
    """
    Empty owner-only file that must be removed by whoever created it.

    Use as a context manager so removal happens on every exit path:

        with create_staging_file('dump', '.sql') as staged:
            ...
    """

    def __init__(self, path: str, mode: int = FILE_MODE):
        self.path = path
        self.mode = mode

    def exists(self) -> bool:
        return os.path.lexists(self.path)

    def remove(self):
        """Unlink the file. Safe to call more than once."""
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.remove()
        return False

    def __repr__(self):
        return f'<StagedFile {self.path} mode={oct(self.mode)}>'


def create_staging_file(prefix: str, suffix: str = '') -> StagedFile:
    """
    Create a zero-length file with a collision-resistant name.

    Args:
        prefix: Leading part of the name (e.g. 'mysql-shop')
        suffix: Trailing part of the name (e.g. '.sql')

    Returns:
        StagedFile for {tempdir}/{prefix}-{32 hex chars}{suffix}

    Raises:
        StagingError: If the file cannot be created
    """
    filename = f"{prefix}-{secrets.token_hex(16)}{suffix}"
    path = os.path.join(tempfile.gettempdir(), filename)

    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
    except OSError as e:
        raise StagingError(f"Failed to create staging file {filename}: {e}")

    staged = StagedFile(path)
    try:
        # umask can only narrow the mode, but make it exact
        os.fchmod(fd, FILE_MODE)
    except OSError as e:
        staged.remove()
        raise StagingError(f"Failed to secure staging file {filename}: {e}")
    finally:
        os.close(fd)

    return staged


def create_staging_root(path: str) -> str:
    """
    Create (or reuse) the run-scoped staging directory.

    Returns:
        Absolute path of the staging root

    Raises:
        StagingError: If the directory cannot be created or secured
    """
    root = Path(path).expanduser().resolve()

    try:
        root.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        os.chmod(root, DIR_MODE)
    except OSError as e:
        raise StagingError(f"Failed to prepare staging root {root}: {e}")

    return str(root)


def remove_staging_root(path: str) -> bool:
    """
    Recursively delete the staging root.

    Failure is logged and reported through the return value only.

    Returns:
        True if the directory is gone afterwards
    """
    if not path or not os.path.exists(path):
        return True

    try:
        shutil.rmtree(path)
        return True
    except OSError as e:
        logger.warning(f"Failed to cleanup staging root {path}: {e}")
        return False


def copy_private(source_path: str, dest_path: str) -> int:
    """
    Copy a file into place with owner-only permissions.

    The destination is opened 0600 before any byte is written, so the
    copy is never readable by others, even briefly.

    Returns:
        Size of the destination in bytes
    """
    fd = os.open(dest_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
    with open(fd, 'wb') as dest, open(source_path, 'rb') as source:
        shutil.copyfileobj(source, dest)

    os.chmod(dest_path, FILE_MODE)
    return os.path.getsize(dest_path)
