"""
Shared pytest fixtures for s3backup tests.

This module provides fixtures for:
- An isolated process temp directory (where staged files are created)
- Source directory trees
- Backup configurations
- Mock S3 (moto) and an in-memory storage double
- A fake mysqldump (patched subprocess.run)
"""

import os
import subprocess
import tempfile
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import boto3
from moto import mock_aws

from s3backup.backup.storage import S3Storage, StorageError
from s3backup.config import BackupConfig
from s3backup.models import RemoteObject


@pytest.fixture(autouse=True)
def isolated_tempdir(tmp_path, monkeypatch):
    """
    Point tempfile.gettempdir() at a private directory.

    Tests inspect it to prove no staged file outlives its operation.
    """
    temp_dir = tmp_path / 'proc_tmp'
    temp_dir.mkdir()
    monkeypatch.setattr(tempfile, 'tempdir', str(temp_dir))
    return temp_dir


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so nothing can reach a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        client = boto3.client('s3', region_name='us-east-1')
        client.create_bucket(Bucket='test-bucket')
        yield client


@pytest.fixture
def s3_storage(mock_s3):
    """S3Storage for project 'myproject' against the moto bucket."""
    return S3Storage(
        bucket_name='test-bucket',
        project='myproject',
        access_key='testing',
        secret_key='testing',
        region='us-east-1'
    )


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a directory to back up.

    Creates:
    - file1.txt
    - .hidden
    - app.log (excluded in tests)
    - nested/file2.txt
    - nested/deep/file3.txt
    - node_modules/pkg/index.js (excluded in tests)
    """
    root = tmp_path / 'source'
    root.mkdir()
    (root / 'file1.txt').write_text('Content 1')
    (root / '.hidden').write_text('dotfile')
    (root / 'app.log').write_text('log line')

    nested = root / 'nested'
    nested.mkdir()
    (nested / 'file2.txt').write_text('Content 2')
    (nested / 'deep').mkdir()
    (nested / 'deep' / 'file3.txt').write_text('Content 3')

    modules = root / 'node_modules' / 'pkg'
    modules.mkdir(parents=True)
    (modules / 'index.js').write_text('module.exports = {}')

    return root


@pytest.fixture
def staging_root(tmp_path):
    root = tmp_path / 'staging'
    root.mkdir(mode=0o700)
    return str(root)


@pytest.fixture
def make_config(tmp_path):
    """
    Build a BackupConfig from keyword overrides.

    Staging goes to tmp_path/run-staging; retention is disabled unless
    given.
    """
    def _make(directories=None, databases=None, retention=None, **backup):
        backup.setdefault('tempDir', str(tmp_path / 'run-staging'))
        backup['retention'] = retention
        return BackupConfig.model_validate({
            'project': {'name': 'myproject'},
            's3': {
                'region': 'us-east-1',
                'bucket': 'test-bucket',
                'accessKeyId': 'testing',
                'secretAccessKey': 'testing'
            },
            'directories': directories or [],
            'databases': databases or [],
            'backup': backup
        })

    return _make


class FakeStorage:
    """
    In-memory stand-in for S3Storage.

    fail_uploads / fail_deletes hold artifact names / keys that raise.
    """

    def __init__(self, project='myproject', objects=None):
        self.project = project
        self.objects = {obj.key: obj for obj in (objects or [])}
        self.uploaded = []
        self.deleted = []
        self.fail_uploads = set()
        self.fail_deletes = set()

    @property
    def project_prefix(self):
        return f"{self.project}/"

    def key_for(self, artifact):
        return f"{self.project}/{artifact.name}/{os.path.basename(artifact.local_path)}"

    def upload_artifact(self, artifact, cancel_event=None):
        from s3backup.backup.storage import UploadError

        if artifact.name in self.fail_uploads:
            raise UploadError(artifact.name, StorageError('connection reset'))
        with open(artifact.local_path, 'rb') as f:
            data = f.read()
        remote = RemoteObject(
            key=self.key_for(artifact),
            last_modified=datetime.now(timezone.utc),
            size_bytes=len(data)
        )
        self.objects[remote.key] = remote
        self.uploaded.append((artifact.name, data))
        return remote

    def list_remote(self, prefix=None):
        prefix = prefix or self.project_prefix
        return [obj for key, obj in self.objects.items() if key.startswith(prefix)]

    def delete(self, key):
        if key in self.fail_deletes:
            raise StorageError(f"S3 delete failed (AccessDenied): {key}")
        self.objects.pop(key, None)
        self.deleted.append(key)


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def storage_factory():
    """FakeStorage constructor, for tests that seed remote objects."""
    return FakeStorage


@pytest.fixture
def fake_mysqldump():
    """
    Patch subprocess.run for the database module.

    The fixture records every call with the option file content seen at
    call time. Set .stdout / .stderr / .returncode to shape the result.
    """
    class Recorder:
        stdout = b'-- MySQL dump\nCREATE TABLE t (id INT);\n'
        stderr = b''
        returncode = 0

        def __init__(self):
            self.calls = []

        def __call__(self, command, **kwargs):
            defaults = next((a.split('=', 1)[1] for a in command if a.startswith('--defaults-file=')), None)
            content = None
            if defaults and os.path.exists(defaults):
                with open(defaults) as f:
                    content = f.read()
            self.calls.append({
                'command': command,
                'kwargs': kwargs,
                'defaults_file': defaults,
                'defaults_content': content,
                'defaults_mode': os.stat(defaults).st_mode & 0o777 if content is not None else None
            })
            return subprocess.CompletedProcess(command, self.returncode, stdout=self.stdout, stderr=self.stderr)

    recorder = Recorder()
    with patch('s3backup.backup.database.subprocess.run', side_effect=recorder) as mock_run:
        recorder.mock = mock_run
        yield recorder
