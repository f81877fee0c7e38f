"""
Compressed tar writers for backup archives.

All archives are gzip compressed tar (level 9):
- write_tree_archive: a directory walk, entries relative to its root
- write_single_file_archive: one file stored under a chosen entry name
"""

import os
import tarfile
from typing import Iterable, Tuple


ARCHIVE_EXTENSION = '.tar.gz'
COMPRESS_LEVEL = 9


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


def write_tree_archive(archive_path: str, root: str, entries: Iterable[str]) -> int:
    """
    Write entries of a directory tree into a tar.gz.

    Symbolic links are stored as links; their targets are never read.

    Args:
        archive_path: Existing (staged) file to overwrite with the archive
        root: Directory the entries are relative to
        entries: Relative paths, parents listed before children

    Returns:
        Number of entries written

    Raises:
        CompressionError: If the archive cannot be written
    """
    count = 0
    try:
        with tarfile.open(archive_path, 'w:gz', compresslevel=COMPRESS_LEVEL, dereference=False) as tar:
            for relative_path in entries:
                tar.add(os.path.join(root, relative_path), arcname=relative_path, recursive=False)
                count += 1
    except (OSError, tarfile.TarError) as e:
        raise CompressionError(f"Failed to create archive: {e}")

    return count


def write_single_file_archive(archive_path: str, source_path: str, entry_name: str):
    """
    Wrap one file into a tar.gz under entry_name.

    The entry name is written as given, independent of the source file's
    own (random) name.

    Raises:
        CompressionError: If the archive cannot be written
    """
    try:
        with tarfile.open(archive_path, 'w:gz', compresslevel=COMPRESS_LEVEL) as tar:
            tar.add(source_path, arcname=entry_name, recursive=False)
    except (OSError, tarfile.TarError) as e:
        raise CompressionError(f"Failed to create archive: {e}")


def list_archive(archive_path: str) -> Tuple[str, ...]:
    """Entry names of a tar.gz, in archive order."""
    try:
        with tarfile.open(archive_path, 'r:gz') as tar:
            return tuple(member.name for member in tar.getmembers())
    except (OSError, tarfile.TarError) as e:
        raise CompressionError(f"Failed to read archive {archive_path}: {e}")


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
