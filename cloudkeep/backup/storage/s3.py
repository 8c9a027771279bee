"""
S3-compatible storage (AWS, Contabo, DigitalOcean Spaces, Wasabi, MinIO, Cloudflare R2).

All of them speak the S3 API; they differ only in endpoint URL, which the
factory derives from the provider name.
"""

import os
import logging
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from cloudkeep.backup.storage.base import StorageError, StorageItem, StorageProvider, as_utc


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


def _client_error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage(StorageProvider):
    """Handler for S3-compatible object storage."""

    name = 's3'

    def __init__(self, access_key: str, secret_key: str, bucket_name: str,
                 region: str = 'us-east-1', endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            endpoint_url: Custom endpoint, None for the AWS default
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}") from e

    def upload(self, key: str, local_file: str):
        """
        Upload a file to S3.

        Files over 100MB go through multipart upload.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_file):
            raise StorageError(f"Local file not found: {local_file}")

        try:
            file_size = os.path.getsize(local_file)
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_file, key)
            else:
                self._simple_upload(local_file, key)
        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_client_error_code(e)}): {e}") from e
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload failed: {e}") from e

        logger.info(f"Uploaded to s3://{self.bucket_name}/{key}")

    def _simple_upload(self, local_file: str, key: str):
        with open(local_file, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_file: str, key: str):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_file, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
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
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except (ClientError, BotoCoreError, OSError):
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def download(self, key: str, local_file: str):
        """
        Download an object to local_file.

        Raises:
            StorageError: If the object is missing or the download fails
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            with open(local_file, 'wb') as f:
                for chunk in response['Body'].iter_chunks(chunk_size=CHUNK_SIZE):
                    f.write(chunk)
        except ClientError as e:
            raise StorageError(f"S3 download failed ({_client_error_code(e)}): {e}") from e
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"Failed to download from S3: {e}") from e

    def list(self, prefix: str = '') -> List[StorageItem]:
        """
        List objects with the given prefix.

        Raises:
            StorageError: If listing fails
        """
        try:
            items = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    items.append(StorageItem(
                        key=obj['Key'],
                        size=obj['Size'],
                        last_modified=as_utc(obj.get('LastModified'))
                    ))

            return items

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_client_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}") from e

    def delete(self, key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_client_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}") from e
