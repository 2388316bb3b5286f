"""
S3 storage handler for backup artifacts.

Thin wrapper around a boto3 S3 client that speaks in object keys and local
file paths, and turns botocore failures into StorageError.
"""

import os
from typing import Optional, List, Dict, Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError


_NOT_FOUND_CODES = ('404', 'NoSuchKey', 'NotFound')


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class ObjectNotFoundError(StorageError):
    """Raised when a requested object does not exist in the bucket."""
    pass


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for backup objects in an S3 (or S3-compatible) bucket.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        signature_v4: bool = False
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (falls back to the boto3 credential chain)
            secret_key: AWS secret access key
            endpoint_url: Custom endpoint for S3-compatible stores
            signature_v4: Force s3v4 request signing
        """
        self.bucket_name = bucket_name
        self.region = region

        client_kwargs = {'region_name': region}
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url
        if signature_v4:
            client_kwargs['config'] = BotoConfig(signature_version='s3v4')

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @classmethod
    def from_config(cls, config) -> 'S3Storage':
        """Build a handler from a pgbackup Config."""
        return cls(
            bucket_name=config.s3_bucket,
            region=config.s3_region,
            access_key=config.s3_access_key_id,
            secret_key=config.s3_secret_access_key,
            endpoint_url=config.s3_endpoint,
            signature_v4=config.s3_signature_v4
        )

    def upload(self, local_path: str, key: str) -> str:
        """
        Upload a local file to the given key.

        Args:
            local_path: Path to local file
            key: Destination object key

        Returns:
            The object key

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            # upload_file switches to multipart for large dumps
            self.s3_client.upload_file(local_path, self.bucket_name, key)
            return key
        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except Exception as e:
            raise StorageError(f"Failed to upload to S3: {e}")

    def download(self, key: str, local_path: str) -> str:
        """
        Download an object to a local file.

        Args:
            key: Object key to fetch
            local_path: Destination path

        Returns:
            The local path

        Raises:
            ObjectNotFoundError: If the key does not exist
            StorageError: If download fails
        """
        try:
            self.s3_client.download_file(self.bucket_name, key, local_path)
            return local_path
        except ClientError as e:
            code = _error_code(e)
            if code in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(f"Backup object not found: s3://{self.bucket_name}/{key}")
            raise StorageError(f"S3 download failed ({code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")

    def exists(self, key: str) -> bool:
        """
        Check whether an object exists without listing.

        Raises:
            StorageError: If the check itself fails
        """
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            code = _error_code(e)
            if code in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"S3 head failed ({code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed: {e}")

    def copy(self, source_key: str, dest_key: str):
        """
        Server-side copy of an object within the bucket.

        Raises:
            StorageError: If the copy fails
        """
        try:
            self.s3_client.copy(
                {'Bucket': self.bucket_name, 'Key': source_key},
                self.bucket_name,
                dest_key
            )
        except ClientError as e:
            raise StorageError(f"S3 copy failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 copy failed: {e}")

    def delete(self, key: str):
        """
        Delete an object from S3.

        Args:
            key: S3 object key to delete

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        """
        List objects in S3 with given prefix.

        Follows continuation tokens, so listings larger than one page
        (1000 keys) are returned in full.

        Args:
            prefix: S3 key prefix to filter by

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

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
        except Exception as e:
            raise StorageError(f"Failed to connect to S3: {e}")
