"""
Storage handlers for backup artifacts.

Supports:
- S3Storage: Store artifacts in AWS S3
- LocalStorage: Store artifacts in a local directory

Both lay artifacts out as {tier}/{YYYY}/{MM}/{filename} and expose the same
store/delete/exists interface. The destination string returned by store() is
the only handle the rest of the system keeps.
"""

import os
import shutil
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class DeleteError(StorageError):
    """Raised when a stored artifact could not be removed."""

    def __init__(self, destination: str, reason: str):
        super().__init__(f"Failed to delete {destination}: {reason}")
        self.destination = destination
        self.reason = reason


def _dated_key(tier: str, filename: str) -> str:
    now = datetime.now(timezone.utc)
    return f"{tier}/{now.year}/{now.month:02d}/{filename}"


class S3Storage:
    """
    Handler for storing backup artifacts in AWS S3.

    Object keys: {prefix}/{tier}/{YYYY}/{MM}/{filename}
    """

    MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
    CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        prefix: str = ''
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (None = boto3 default credential chain)
            secret_key: AWS secret access key
            prefix: Key prefix under which all artifacts are stored
        """
        if not bucket_name:
            raise StorageError("S3 bucket name is not configured")

        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def store(self, local_path: str, tier: str) -> str:
        """
        Upload an artifact to S3.

        Args:
            local_path: Path to local archive file
            tier: Backup tier (used for key structure)

        Returns:
            S3 key of the uploaded artifact

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        key = _dated_key(tier, os.path.basename(local_path))
        if self.prefix:
            key = f"{self.prefix}/{key}"

        try:
            if self.exists(key):
                raise StorageError(f"Artifact already exists: {key}")

            file_size = os.path.getsize(local_path)

            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                with open(local_path, 'rb') as f:
                    self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f)

            return key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _multipart_upload(self, local_path: str, key: str):
        """
        Upload a large file in chunks. The upload is aborted on any failure so
        no partial object becomes visible.
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {key}: {abort_error}")
            raise

    def delete(self, destination: str):
        """
        Delete an artifact from S3.

        Args:
            destination: S3 object key

        Raises:
            DeleteError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=destination)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DeleteError(destination, f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise DeleteError(destination, f"S3 delete failed: {e}")

    def exists(self, destination: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=destination)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise StorageError(f"S3 head failed ({error_code}): {e}")


class LocalStorage:
    """
    Handler for storing backup artifacts in the local filesystem.

    Layout: {base_path}/{tier}/{YYYY}/{MM}/{filename}
    """

    PARTIAL_SUFFIX = '.partial'

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
        """
        self.base_path = Path(base_path).resolve()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _resolve(self, destination: str) -> Path:
        full_path = (self.base_path / destination).resolve()
        if full_path == self.base_path or self.base_path not in full_path.parents:
            raise StorageError(f"Destination outside storage root: {destination}")
        return full_path

    def store(self, source_path: str, tier: str) -> str:
        """
        Copy an artifact into local storage.

        The file is written under a temporary name and renamed into place, so a
        destination either holds a complete artifact or does not exist.

        Args:
            source_path: Path to source archive file
            tier: Backup tier

        Returns:
            Relative path of stored file (from base_path)

        Raises:
            StorageError: If storage fails
        """
        if not os.path.exists(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        relative_path = _dated_key(tier, os.path.basename(source_path))
        dest_path = self._resolve(relative_path)
        partial_path = dest_path.with_name(dest_path.name + self.PARTIAL_SUFFIX)

        if dest_path.exists():
            raise StorageError(f"Artifact already exists: {relative_path}")

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source_path, partial_path)
            os.replace(partial_path, dest_path)
            return relative_path

        except OSError as e:
            partial_path.unlink(missing_ok=True)
            if isinstance(e, PermissionError):
                raise StorageError(f"Permission denied writing to {dest_path}: {e}")
            raise StorageError(f"Failed to store locally: {e}")

    def delete(self, destination: str):
        """
        Delete an artifact from local storage.

        A missing artifact is reported as a failure: retention only reclaims
        entries whose artifact it actually removed.

        Args:
            destination: Relative path of file to delete

        Raises:
            DeleteError: If deletion fails
        """
        try:
            full_path = self._resolve(destination)
        except StorageError as e:
            raise DeleteError(destination, str(e))

        try:
            full_path.unlink()
        except FileNotFoundError:
            raise DeleteError(destination, "artifact not found")
        except PermissionError as e:
            raise DeleteError(destination, f"permission denied: {e}")
        except OSError as e:
            raise DeleteError(destination, str(e))

    def exists(self, destination: str) -> bool:
        return self._resolve(destination).is_file()

    def get_full_path(self, destination: str) -> str:
        """
        Get full filesystem path from a destination.

        Args:
            destination: Relative path from base_path

        Returns:
            Full filesystem path
        """
        return str(self._resolve(destination))


def create_storage(config):
    """
    Build the configured storage backend.

    Args:
        config: Mapping with BACKUP_STORAGE and backend settings (app.config)

    Returns:
        LocalStorage or S3Storage

    Raises:
        ValueError: If BACKUP_STORAGE names an unknown backend
    """
    backend = config.get('BACKUP_STORAGE', 'local')

    if backend == 'local':
        return LocalStorage(config['LOCAL_BACKUP_DIR'])

    if backend == 's3':
        return S3Storage(
            bucket_name=config.get('S3_BUCKET'),
            region=config.get('S3_REGION', 'us-east-1'),
            access_key=config.get('AWS_ACCESS_KEY_ID'),
            secret_key=config.get('AWS_SECRET_ACCESS_KEY'),
            prefix=config.get('S3_PREFIX', '')
        )

    raise ValueError(f"Invalid backup storage: {backend}. Valid options: ['local', 's3']")
