"""
Upload of finished archives to S3.

Objects are stored under {prefix}{run timestamp}/{relative path} with KMS
server side encryption, and shared through presigned GET URLs that expire
after seven days.
"""

import os
import logging
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from mongobackup.models import RunContext
from .compression import get_archive_size


logger = logging.getLogger(__name__)

PRESIGNED_URL_EXPIRY = 604800  # 7 days
MEBIBYTE = 1048576


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def format_size(size_bytes: int) -> str:
    """Size in mebibytes with three decimals (1048576 -> "1.000")."""
    return '%.3f' % (size_bytes / MEBIBYTE)


class S3Storage:
    """
    Handler for uploading backups to AWS S3.
    """

    def __init__(self, access_key: str, secret_key: str, bucket_name: str,
                 region: str = 'us-east-1', prefix: str = ''):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            prefix: Key prefix shared by every run
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def object_key(self, timestamp: str, path: str) -> str:
        return f"{self.prefix}{timestamp}/{path}"

    def upload(self, local_path: str, s3_key: str) -> str:
        """
        Upload a file with server side encryption.

        Returns:
            S3 key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            self.s3_client.upload_file(
                local_path,
                self.bucket_name,
                s3_key,
                ExtraArgs={'ServerSideEncryption': 'aws:kms'}
            )
            return s3_key
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except Exception as e:
            raise StorageError(f"Failed to upload to S3: {e}")

    def presigned_url(self, s3_key: str, expires_in: int = PRESIGNED_URL_EXPIRY) -> str:
        """
        Create a time limited GET URL for an object.

        Raises:
            StorageError: If signing fails
        """
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': s3_key},
                ExpiresIn=expires_in
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to presign {s3_key}: {e}")

class Uploader:
    """
    Uploads archives and produces the manifest line for each.

    Lines for a project are written into the shared registry; run level
    archives get their line returned to the caller.
    """

    def __init__(self, storage: S3Storage, context: RunContext):
        self.storage = storage
        self.context = context
        self.uploaded: List[str] = []

    def upload(self, display_name: str, path: str, file_path: str,
               project_id: Optional[str] = None) -> Optional[str]:
        """
        Upload file_path to {prefix}{timestamp}/{path}.

        Args:
            display_name: Name shown in the manifest line
            path: Path of the object below the run's prefix
            file_path: Local archive
            project_id: Registry entry that receives the line

        Returns:
            The manifest line, or None when it was stored on a project

        Raises:
            StorageError: If the upload or signing fails
            CompressionError: If the archive size cannot be read
        """
        s3_key = self.storage.object_key(self.context.timestamp, path)
        self.storage.upload(file_path, s3_key)
        url = self.storage.presigned_url(s3_key)

        size = format_size(get_archive_size(file_path))

        line = f"Backed up {display_name} ({size} MB) ({url})"
        logger.info(f"Uploaded {path} ({size} MB)")
        self.uploaded.append(s3_key)

        if project_id is not None:
            self.context.registry.set_email_line(project_id, line)
            return None
        return line
