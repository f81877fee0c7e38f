"""
Directory source for backup operations.

Walks a local directory (dotfiles included, exclusion globs applied) and
streams it into one tar.gz in the staging root.
"""

import logging
import os
from fnmatch import fnmatch
from pathlib import Path
from typing import List

from s3backup.models import BackupArtifact, DirectoryTarget
from s3backup.utils.naming import sanitize_exclude_patterns, sanitize_string, timestamped_filename
from .compression import ARCHIVE_EXTENSION, CompressionError, write_tree_archive
from .staging import StagingError, copy_private, create_staging_file


logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when source acquisition fails."""
    pass


class SourceNotFoundError(SourceError, FileNotFoundError):
    """Raised when a source directory does not exist."""
    pass


class SourceNotADirectoryError(SourceError, NotADirectoryError):
    """Raised when a source path exists but is not a directory."""
    pass


class ArchiveError(SourceError):
    """Raised when a directory cannot be archived."""
    pass


def _raise_walk_error(error: OSError):
    raise error


class DirectorySource:
    """
    Handler for local directory targets.

    Symlinks are archived as links and never followed, so a link pointing
    outside the source tree cannot pull foreign files into the backup.
    """

    def __init__(self, target: DirectoryTarget):
        """
        Initialize directory source handler.

        Args:
            target: Directory target (name, source_path, exclude_patterns)
        """
        self.target = target
        self.source_path = Path(target.source_path).expanduser().absolute()
        self.exclude_patterns = sanitize_exclude_patterns(target.exclude_patterns)

    def _should_exclude(self, relative_path: str) -> bool:
        """
        Check if a path should be excluded based on exclude patterns.

        Args:
            relative_path: Path relative to the source root, '/' separated

        Returns:
            True if path matches any exclude pattern, False otherwise
        """
        if not self.exclude_patterns:
            return False

        name = relative_path.rsplit('/', 1)[-1]

        for pattern in self.exclude_patterns:
            # Match against relative path or just the name
            if fnmatch(relative_path, pattern) or fnmatch(name, pattern):
                return True
            # "**/x" also matches x at the top level
            if pattern.startswith('**/') and fnmatch(name, pattern[3:]):
                return True
            # "dir/**" excludes the directory entry itself
            if pattern.endswith('/**') and fnmatch(relative_path, pattern[:-3]):
                return True

        return False

    def collect_entries(self) -> List[str]:
        """
        Enumerate everything to archive, parents before children.

        Returns:
            Relative paths ('/' separated) of directories, files and links

        Raises:
            OSError: If any directory of the tree cannot be listed
        """
        entries = []

        # An unreadable subdirectory fails the archive instead of being skipped
        for current, dirnames, filenames in os.walk(self.source_path, onerror=_raise_walk_error,
                                                    followlinks=False):
            rel_dir = os.path.relpath(current, self.source_path)
            rel_dir = '' if rel_dir == '.' else rel_dir.replace(os.sep, '/')

            kept_dirs = []
            for dirname in sorted(dirnames):
                rel = f"{rel_dir}/{dirname}" if rel_dir else dirname
                if self._should_exclude(rel):
                    continue
                entries.append(rel)
                # os.walk lists symlinked directories here; keep the link, skip descent
                if not os.path.islink(os.path.join(current, dirname)):
                    kept_dirs.append(dirname)
            dirnames[:] = kept_dirs

            for filename in sorted(filenames):
                rel = f"{rel_dir}/{filename}" if rel_dir else filename
                if not self._should_exclude(rel):
                    entries.append(rel)

        return entries

    def _check_source(self):
        if not os.path.exists(self.source_path):
            raise SourceNotFoundError(f"Directory not found: {self.source_path}")
        if not os.path.isdir(self.source_path):
            raise SourceNotADirectoryError(f"Source path is not a directory: {self.source_path}")

    def archive(self, staging_root: str, timestamp: str) -> BackupArtifact:
        """
        Archive the directory into the staging root.

        Args:
            staging_root: Run staging directory receiving the final archive
            timestamp: Run timestamp shared by every artifact of the run

        Returns:
            BackupArtifact for {staging_root}/{name}_{timestamp}.tar.gz

        Raises:
            SourceNotFoundError, SourceNotADirectoryError: Bad source path
            ArchiveError: If the archive cannot be produced
        """
        name = self.target.name
        safe_name = sanitize_string(name)

        logger.info(f"Starting backup of directory: {name} ({self.source_path})")
        self._check_source()

        final_path = os.path.join(staging_root, timestamped_filename(safe_name, ARCHIVE_EXTENSION, timestamp))

        try:
            staged = create_staging_file(f"dir-{safe_name}", ARCHIVE_EXTENSION)
        except StagingError as e:
            raise ArchiveError(f"Archive creation failed for {name}: {e}")

        with staged:
            try:
                entries = self.collect_entries()
                count = write_tree_archive(staged.path, str(self.source_path), entries)
                size = copy_private(staged.path, final_path)
            except (CompressionError, OSError) as e:
                if os.path.exists(final_path):
                    os.unlink(final_path)
                raise ArchiveError(f"Archive creation failed for {name}: {e}")

        logger.info(f"Directory backup completed: {name} ({count} entries, {size} bytes)")
        return BackupArtifact(name=name, local_path=final_path, size_bytes=size)


def archive_directory(target: DirectoryTarget, staging_root: str, timestamp: str) -> BackupArtifact:
    """Archive one directory target. See DirectorySource.archive."""
    return DirectorySource(target).archive(staging_root, timestamp)
