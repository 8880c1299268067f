"""
Artifact store for database dumps kept in S3.

Artifacts are plain objects in a bucket. A name is eligible for restore
when it starts with the configured prefix and ends with the configured
suffix, e.g. ``backup-2024-02-01T00-00-00.dump``.
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

logger = logging.getLogger(__name__)

ARTIFACT_TIMESTAMP_FORMAT = '%Y-%m-%dT%H-%M-%S'


class StorageError(Exception):
    """Raised when an artifact store operation fails."""
    pass


class StoreUnavailable(StorageError):
    """Raised when the bucket cannot be listed or reached."""
    pass


class TransferError(StorageError):
    """Raised when a download or upload fails."""
    pass


class NoArtifactsFound(StorageError):
    """Raised when the bucket holds no objects at all."""
    pass


class NoEligibleArtifact(StorageError):
    """Raised when no object matches the artifact naming convention."""
    pass


@dataclass(frozen=True)
class BackupArtifact:
    """A backup object in the bucket."""

    name: str
    created_at: datetime
    size: int = 0


def _error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


class S3ArtifactStore:
    """
    Lists, downloads and uploads backup artifacts in one S3 bucket.

    Works with any S3-compatible endpoint when ``endpoint_url`` is given.
    """

    def __init__(
        self,
        bucket_name: str,
        region: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize the store.

        Args:
            bucket_name: S3 bucket holding the artifacts
            region: AWS region (None = boto3 default resolution)
            access_key: AWS access key ID (None = default credential chain)
            secret_key: AWS secret access key
            endpoint_url: Custom endpoint for S3-compatible services
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StoreUnavailable(f"Failed to initialize S3 client: {e}") from e

    def list_artifacts(self) -> List[BackupArtifact]:
        """
        List every object in the bucket.

        Returns:
            List of BackupArtifact, empty if the bucket is empty

        Raises:
            StoreUnavailable: If the listing call fails
        """
        try:
            artifacts = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name):
                for obj in page.get('Contents', []):
                    artifacts.append(BackupArtifact(
                        name=obj['Key'],
                        created_at=obj['LastModified'],
                        size=obj.get('Size', 0)
                    ))

            return artifacts

        except ClientError as e:
            raise StoreUnavailable(f"S3 list failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"S3 list failed: {e}") from e

    def download(self, artifact: BackupArtifact, destination_path: str, cancellation_check: Optional[Callable[[], None]] = None):
        """
        Download an artifact to a local path.

        Args:
            artifact: Artifact to fetch
            destination_path: Local file to write; parent directories are created
            cancellation_check: Called before the transfer starts

        Raises:
            TransferError: If the download fails
        """
        if cancellation_check:
            cancellation_check()

        try:
            Path(destination_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TransferError(f"Failed to create download directory: {e}") from e

        try:
            self.s3_client.download_file(self.bucket_name, artifact.name, destination_path)
        except ClientError as e:
            raise TransferError(f"S3 download of {artifact.name} failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise TransferError(f"S3 download of {artifact.name} failed: {e}") from e
        except OSError as e:
            raise TransferError(f"Failed to write {destination_path}: {e}") from e

    def upload(self, source_path: str, destination_name: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload a local file, creating or overwriting ``destination_name``.

        Returns:
            The object key written

        Raises:
            TransferError: If the file is missing or the upload fails
        """
        if not os.path.exists(source_path):
            raise TransferError(f"Local file not found: {source_path}")

        if cancellation_check:
            cancellation_check()

        try:
            # upload_file switches to multipart for large dumps on its own
            self.s3_client.upload_file(source_path, self.bucket_name, destination_name)
            return destination_name
        except ClientError as e:
            raise TransferError(f"S3 upload failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise TransferError(f"S3 upload failed: {e}") from e
        except Exception as e:
            raise TransferError(f"Failed to upload to S3: {e}") from e

    def test_connection(self) -> bool:
        """
        Check that the bucket exists and is reachable.

        Raises:
            StoreUnavailable: If the bucket is missing or access is denied
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '404':
                raise StoreUnavailable(f"Bucket does not exist: {self.bucket_name}") from e
            elif error_code == '403':
                raise StoreUnavailable(f"Access denied to bucket: {self.bucket_name}") from e
            raise StoreUnavailable(f"S3 connection test failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StoreUnavailable(f"Failed to connect to S3: {e}") from e


def is_eligible(name: str, name_prefix: str, name_suffix: str) -> bool:
    return name.startswith(name_prefix) and name.endswith(name_suffix)


def select_latest(artifacts: Iterable[BackupArtifact], name_prefix: str, name_suffix: str) -> BackupArtifact:
    """
    Pick the newest artifact that follows the naming convention.

    Ordering is by creation time, newest first. Artifacts created at the
    same instant are ordered by name, highest first, so the choice does not
    depend on listing order.

    Raises:
        NoEligibleArtifact: If no artifact matches prefix and suffix
    """
    eligible = [a for a in artifacts if is_eligible(a.name, name_prefix, name_suffix)]

    if not eligible:
        raise NoEligibleArtifact(
            f"No artifacts matching '{name_prefix}*{name_suffix}' found in the bucket"
        )

    return max(eligible, key=lambda a: (a.created_at, a.name))


def generate_artifact_name(name_prefix: str, name_suffix: str, now: Optional[datetime] = None) -> str:
    """
    Build an artifact name for a new backup.

    Format: {prefix}{YYYY-MM-DDTHH-MM-SS}{suffix}, in UTC.
    """
    now = now or datetime.now(timezone.utc)
    return f"{name_prefix}{now.strftime(ARTIFACT_TIMESTAMP_FORMAT)}{name_suffix}"
