"""
S3 storage for backup archives.

Archives are published under a project-scoped key layout:
{project}/{target_name}/{filename}
"""

import logging
import os
import threading
from typing import List, Optional, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from s3backup.models import BackupArtifact, RemoteObject


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024
SERVER_SIDE_ENCRYPTION = 'AES256'


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class UploadError(StorageError):
    """Raised when an artifact cannot be uploaded."""

    def __init__(self, artifact_name: str, cause: Exception):
        super().__init__(f"Failed to upload {artifact_name}: {cause}")
        self.artifact_name = artifact_name
        self.cause = cause


class UploadCancelled(StorageError):
    """Raised when an upload is stopped through its cancel event."""
    pass


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for uploading, listing and deleting backups in S3.

    Works with AWS and S3-compatible endpoints (MinIO, Wasabi, ...) when
    endpoint_url is given.
    """

    def __init__(self, bucket_name: str, project: str, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None, force_path_style: bool = False,
                 signature_version: str = 'v4', connect_timeout: int = 60,
                 read_timeout: int = 60, client=None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            project: Project name, first component of every key
            access_key: AWS access key ID
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible stores
            force_path_style: Use path-style addressing (bucket in the path)
            signature_version: 'v4' (default) or 'v2'
            connect_timeout: Seconds to wait for a connection
            read_timeout: Seconds to wait for a response
            client: Pre-built boto3 S3 client (skips client creation)
        """
        self.bucket_name = bucket_name
        self.project = project
        self.region = region
        self.endpoint_url = endpoint_url
        self.force_path_style = force_path_style

        if client is not None:
            self.s3_client = client
            return

        boto_config = BotoConfig(
            signature_version='s3' if signature_version == 'v2' else 's3v4',
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            s3={'addressing_style': 'path' if force_path_style else 'auto'},
        )

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=boto_config
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @property
    def project_prefix(self) -> str:
        return f"{self.project}/"

    def key_for(self, artifact: BackupArtifact) -> str:
        """Remote key of an artifact: {project}/{name}/{basename}."""
        return f"{self.project}/{artifact.name}/{os.path.basename(artifact.local_path)}"

    def location_for(self, key: str) -> str:
        """URL of an object, path-style for custom endpoints."""
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket_name}/{key}"
        return f"https://{self.bucket_name}.s3.{self.region}.amazonaws.com/{key}"

    def upload_artifact(self, artifact: BackupArtifact,
                        cancel_event: Optional[threading.Event] = None) -> RemoteObject:
        """
        Upload one artifact.

        Args:
            artifact: Staged archive to publish
            cancel_event: Optional event; once set, the upload stops

        Returns:
            RemoteObject with the confirmed size and location

        Raises:
            UploadError: If the upload fails for any reason
        """
        local_path = artifact.local_path
        s3_key = self.key_for(artifact)
        filename = os.path.basename(local_path)

        logger.info(f"Uploading {filename} to S3...")

        try:
            if not os.path.exists(local_path):
                raise StorageError(f"Local file not found: {local_path}")

            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key, cancel_event)
            else:
                self._check_cancelled(cancel_event)
                self._simple_upload(local_path, s3_key)

            head = self.s3_client.head_object(Bucket=self.bucket_name, Key=s3_key)

        except ClientError as e:
            raise UploadError(artifact.name, StorageError(f"S3 upload failed ({_error_code(e)}): {e}"))
        except (BotoCoreError, StorageError, OSError) as e:
            raise UploadError(artifact.name, e)

        remote = RemoteObject(
            key=s3_key,
            last_modified=head.get('LastModified'),
            size_bytes=head.get('ContentLength', file_size),
            location=self.location_for(s3_key)
        )
        logger.info(f"Successfully uploaded {filename} to {remote.location}")
        return remote

    def upload_all(self, artifacts: Sequence[BackupArtifact],
                   cancel_event: Optional[threading.Event] = None) -> List[RemoteObject]:
        """
        Upload artifacts one after another, in order.

        Stops at the first failure; later artifacts are not attempted.

        Raises:
            UploadError: For the first artifact that fails
        """
        results = []
        for artifact in artifacts:
            try:
                results.append(self.upload_artifact(artifact, cancel_event))
            except UploadError as e:
                logger.error(f"Failed to upload backup {artifact.name}: {e.cause}")
                raise
        return results

    def _check_cancelled(self, cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise UploadCancelled("Upload cancelled")

    def _simple_upload(self, local_path: str, s3_key: str):
        """
        Upload file using simple put_object.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
        """
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                ServerSideEncryption=SERVER_SIDE_ENCRYPTION
            )

    def _multipart_upload(self, local_path: str, s3_key: str,
                          cancel_event: Optional[threading.Event] = None):
        """
        Upload large file using multipart upload with cancellation support.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
            cancel_event: Optional event checked between chunks
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            ServerSideEncryption=SERVER_SIDE_ENCRYPTION
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    self._check_cancelled(cancel_event)

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            # Abort multipart upload on error or cancellation
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {s3_key}: {abort_error}")
            raise

    def delete(self, s3_key: str):
        """
        Delete an object from S3. A key that is already gone counts as deleted.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=s3_key
            )
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('NoSuchKey', '404'):
                return
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

        logger.info(f"Deleted backup: {s3_key}")

    def list_remote(self, prefix: Optional[str] = None) -> List[RemoteObject]:
        """
        List objects under a prefix.

        Args:
            prefix: Key prefix (default: {project}/)

        Returns:
            RemoteObjects in the order S3 reports them

        Raises:
            StorageError: If listing fails
        """
        search_prefix = prefix or self.project_prefix

        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=search_prefix):
                for obj in page.get('Contents', []):
                    objects.append(RemoteObject(
                        key=obj['Key'],
                        last_modified=obj['LastModified'],
                        size_bytes=obj['Size']
                    ))

            return objects

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")
