"""
S3Client - S3/MinIO object store for the staging, permanent and derivative locations.
"""

import logging
from contextlib import contextmanager
from typing import Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ObjectNotFoundError, TransientStorageError
from .storage_config import Location, S3Config, join_key


NOT_FOUND_CODES = ('404', 'NoSuchKey', 'NotFound')


class S3Client:
    """
    Wrapper for S3/MinIO operations across the three storage locations.

    Keys passed in are relative to the location; the location's bucket and
    prefix are applied here. botocore failures surface as
    TransientStorageError.
    """

    def __init__(self, config: S3Config, logger: Optional[logging.Logger] = None):
        """
        Initialize S3 client.

        Args:
            config: S3 configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

        self._client = boto3.client(
            's3',
            endpoint_url=config.endpoint,
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
            region_name=config.region,
            config=Config(
                signature_version='s3v4',
                s3={'addressing_style': 'path'}
            ),
            verify=config.verify_ssl
        )

    def bucket_for(self, location: Location) -> str:
        return self.config.bucket_for(location)

    def object_key(self, location: Location, key: str) -> str:
        """Full object key for a location-relative key."""
        return join_key(self.config.prefix_for(location), key)

    def location_prefix(self, location: Location) -> str:
        """Object key prefix of a location, with trailing slash ('' if none)."""
        prefix = self.config.prefix_for(location).strip('/')
        return f"{prefix}/" if prefix else ''

    @contextmanager
    def _storage_errors(self, operation: str, location: Location, key: str):
        try:
            yield
        except ClientError as e:
            code = str(e.response.get('Error', {}).get('Code', ''))
            if code in NOT_FOUND_CODES:
                raise ObjectNotFoundError(f"{operation} {location.value}:{key}: object not found") from e
            self.logger.error(f"S3 {operation} failed for {location.value}:{key}: {e}")
            raise TransientStorageError(f"{operation} {location.value}:{key} failed: {e}") from e
        except BotoCoreError as e:
            self.logger.error(f"S3 {operation} failed for {location.value}:{key}: {e}")
            raise TransientStorageError(f"{operation} {location.value}:{key} failed: {e}") from e

    def exists(self, location: Location, key: str) -> bool:
        """Check if an object exists."""
        try:
            with self._storage_errors('head', location, key):
                self._client.head_object(Bucket=self.bucket_for(location), Key=self.object_key(location, key))
            return True
        except ObjectNotFoundError:
            return False

    def read(self, location: Location, key: str) -> bytes:
        """Download an object into memory."""
        with self._storage_errors('read', location, key):
            response = self._client.get_object(Bucket=self.bucket_for(location), Key=self.object_key(location, key))
            return response['Body'].read()

    def write(
        self,
        location: Location,
        key: str,
        data: bytes,
        content_type: str = 'application/octet-stream'
    ) -> None:
        """Upload an object."""
        with self._storage_errors('write', location, key):
            self._client.put_object(
                Bucket=self.bucket_for(location),
                Key=self.object_key(location, key),
                Body=data,
                ContentType=content_type
            )

    def copy(self, src_location: Location, src_key: str, dst_location: Location, dst_key: str) -> None:
        """Server-side copy between locations."""
        with self._storage_errors('copy', src_location, src_key):
            self._client.copy_object(
                Bucket=self.bucket_for(dst_location),
                Key=self.object_key(dst_location, dst_key),
                CopySource={
                    'Bucket': self.bucket_for(src_location),
                    'Key': self.object_key(src_location, src_key),
                },
            )
        self.logger.debug(f"Copied {src_location.value}:{src_key} -> {dst_location.value}:{dst_key}")

    def delete(self, location: Location, key: str) -> None:
        """Delete an object."""
        with self._storage_errors('delete', location, key):
            self._client.delete_object(Bucket=self.bucket_for(location), Key=self.object_key(location, key))

    def signed_write_url(self, location: Location, key: str, content_type: str, ttl_seconds: int) -> str:
        """Generate a v4 presigned PUT URL bound to the content type."""
        with self._storage_errors('presign', location, key):
            return self._client.generate_presigned_url(
                'put_object',
                Params={
                    'Bucket': self.bucket_for(location),
                    'Key': self.object_key(location, key),
                    'ContentType': content_type,
                },
                ExpiresIn=ttl_seconds
            )

    def public_url(self, location: Location, key: str) -> str:
        """Public (CDN) URL of an object."""
        bucket = self.bucket_for(location)
        full_key = quote(self.object_key(location, key))
        if self.config.public_base_url:
            return f"{self.config.public_base_url.rstrip('/')}/{bucket}/{full_key}"
        if self.config.endpoint:
            return f"{self.config.endpoint.rstrip('/')}/{bucket}/{full_key}"
        return f"https://{bucket}.s3.amazonaws.com/{full_key}"
