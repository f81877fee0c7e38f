"""
Unit tests for secure staging (s3backup/backup/staging.py).

Tests StagedFile lifetime, permissions and the staging root.
"""

import os
import stat
from unittest.mock import patch

import pytest

from s3backup.backup.staging import (
    StagedFile,
    StagingError,
    copy_private,
    create_staging_file,
    create_staging_root,
    remove_staging_root
)


def _mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


class TestCreateStagingFile:
    """Test create_staging_file."""

    def test_creates_empty_owner_only_file(self, isolated_tempdir):
        staged = create_staging_file('dump', '.sql')

        assert os.path.dirname(staged.path) == str(isolated_tempdir)
        assert os.path.getsize(staged.path) == 0
        assert _mode(staged.path) == 0o600
        assert staged.mode == 0o600

    def test_name_layout(self):
        staged = create_staging_file('mysql-shop', '.sql')
        name = os.path.basename(staged.path)

        assert name.startswith('mysql-shop-')
        assert name.endswith('.sql')
        random_part = name[len('mysql-shop-'):-len('.sql')]
        assert len(random_part) == 32
        int(random_part, 16)

    def test_names_do_not_collide(self):
        paths = {create_staging_file('x').path for _ in range(50)}
        assert len(paths) == 50

    def test_mode_ignores_permissive_umask(self):
        old = os.umask(0)
        try:
            staged = create_staging_file('loose')
        finally:
            os.umask(old)
        assert _mode(staged.path) == 0o600

    def test_failure_raises_staging_error(self, isolated_tempdir):
        os.rmdir(isolated_tempdir)

        with pytest.raises(StagingError, match='Failed to create staging file'):
            create_staging_file('gone')

    def test_chmod_failure_removes_file(self, isolated_tempdir):
        with patch('s3backup.backup.staging.os.fchmod', side_effect=OSError('read-only file system')):
            with pytest.raises(StagingError, match='Failed to secure staging file'):
                create_staging_file('locked', '.sql')

        assert os.listdir(isolated_tempdir) == []


class TestStagedFile:
    """Test StagedFile removal."""

    def test_context_manager_removes_on_success(self):
        with create_staging_file('ctx') as staged:
            with open(staged.path, 'w') as f:
                f.write('data')
            assert staged.exists()

        assert not os.path.exists(staged.path)

    def test_context_manager_removes_on_error(self):
        with pytest.raises(RuntimeError):
            with create_staging_file('ctx') as staged:
                raise RuntimeError('boom')

        assert not os.path.exists(staged.path)

    def test_remove_is_idempotent(self, tmp_path):
        staged = StagedFile(str(tmp_path / 'missing'))
        staged.remove()
        staged.remove()
        assert not staged.exists()


class TestStagingRoot:
    """Test staging root lifecycle."""

    def test_create_staging_root(self, tmp_path):
        root = create_staging_root(str(tmp_path / 'stage'))

        assert os.path.isdir(root)
        assert _mode(root) == 0o700

    def test_create_staging_root_reuses_existing(self, tmp_path):
        existing = tmp_path / 'stage'
        existing.mkdir(mode=0o755)
        (existing / 'leftover').write_text('x')

        root = create_staging_root(str(existing))

        assert root == str(existing.resolve())
        assert (existing / 'leftover').exists()
        assert _mode(root) == 0o700

    def test_create_staging_root_failure(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('not a dir')

        with pytest.raises(StagingError):
            create_staging_root(str(blocker / 'stage'))

    def test_remove_staging_root(self, tmp_path):
        root = tmp_path / 'stage'
        (root / 'sub').mkdir(parents=True)
        (root / 'sub' / 'a.tar.gz').write_bytes(b'x')

        assert remove_staging_root(str(root)) is True
        assert not root.exists()

    def test_remove_missing_staging_root(self, tmp_path):
        assert remove_staging_root(str(tmp_path / 'never')) is True

    def test_remove_staging_root_failure_is_logged(self, tmp_path, caplog):
        root = tmp_path / 'stage'
        root.mkdir()

        with patch('s3backup.backup.staging.shutil.rmtree', side_effect=OSError('busy')):
            assert remove_staging_root(str(root)) is False

        assert 'Failed to cleanup staging root' in caplog.text


class TestCopyPrivate:
    """Test copy_private."""

    def test_copy_is_owner_only(self, tmp_path):
        source = tmp_path / 'src.bin'
        source.write_bytes(b'payload' * 10)
        dest = tmp_path / 'dest.bin'

        size = copy_private(str(source), str(dest))

        assert size == 70
        assert dest.read_bytes() == source.read_bytes()
        assert _mode(dest) == 0o600
        assert source.exists()

    def test_copy_tightens_existing_destination(self, tmp_path):
        source = tmp_path / 'src.bin'
        source.write_bytes(b'new')
        dest = tmp_path / 'dest.bin'
        dest.write_bytes(b'old content')
        os.chmod(dest, 0o644)

        copy_private(str(source), str(dest))

        assert dest.read_bytes() == b'new'
        assert _mode(dest) == 0o600
