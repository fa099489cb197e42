"""
Storage configuration for the S3 and local object stores.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class Location(str, Enum):
    """Logical storage locations used by the pipeline."""

    STAGING = "staging"
    PERMANENT = "permanent"
    DERIVATIVE = "derivative"


DEFAULT_PREFIXES = {
    Location.STAGING: 'temp',
    Location.PERMANENT: 'uploads',
    Location.DERIVATIVE: '',
}


def join_key(prefix: str, key: str) -> str:
    """Join a location prefix and a relative key into an object key."""
    key = key.lstrip('/')
    prefix = (prefix or '').strip('/')
    return f"{prefix}/{key}" if prefix else key


@dataclass
class S3Config:
    """
    S3/MinIO configuration.

    Every location defaults to the shared ``bucket``. Setting a per-location
    bucket moves that location into its own bucket.

    Attributes:
        endpoint: S3 endpoint URL (None for AWS)
        bucket: Default bucket for all locations
        access_key: Access key id
        secret_key: Secret access key
        region: Region name
        staging_bucket: Bucket override for staged uploads
        permanent_bucket: Bucket override for promoted assets
        derivative_bucket: Bucket override for generated derivatives
        staging_prefix: Key prefix for staged uploads
        permanent_prefix: Key prefix for promoted assets
        derivative_prefix: Key prefix for derivatives
        public_base_url: Base URL used to build public read URLs
        verify_ssl: Verify TLS certificates
    """
    endpoint: Optional[str]
    bucket: Optional[str]
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    region: Optional[str] = None
    staging_bucket: Optional[str] = None
    permanent_bucket: Optional[str] = None
    derivative_bucket: Optional[str] = None
    staging_prefix: str = DEFAULT_PREFIXES[Location.STAGING]
    permanent_prefix: str = DEFAULT_PREFIXES[Location.PERMANENT]
    derivative_prefix: str = DEFAULT_PREFIXES[Location.DERIVATIVE]
    public_base_url: Optional[str] = None
    verify_ssl: bool = True

    @classmethod
    def from_env(cls) -> 'S3Config':
        """Build configuration from S3_* environment variables."""
        return cls(
            endpoint=os.getenv('S3_ENDPOINT') or None,
            bucket=os.getenv('S3_BUCKET'),
            access_key=os.getenv('S3_ACCESS_KEY'),
            secret_key=os.getenv('S3_SECRET_KEY'),
            region=os.getenv('S3_REGION'),
            staging_bucket=os.getenv('S3_STAGING_BUCKET') or None,
            permanent_bucket=os.getenv('S3_PERMANENT_BUCKET') or None,
            derivative_bucket=os.getenv('S3_DERIVATIVE_BUCKET') or None,
            staging_prefix=os.getenv('S3_STAGING_PREFIX', DEFAULT_PREFIXES[Location.STAGING]),
            permanent_prefix=os.getenv('S3_PERMANENT_PREFIX', DEFAULT_PREFIXES[Location.PERMANENT]),
            derivative_prefix=os.getenv('S3_DERIVATIVE_PREFIX', DEFAULT_PREFIXES[Location.DERIVATIVE]),
            public_base_url=os.getenv('S3_PUBLIC_BASE_URL') or None,
            verify_ssl=os.getenv('S3_VERIFY_SSL', 'true').lower() != 'false',
        )

    def bucket_for(self, location: Location) -> Optional[str]:
        overrides = {
            Location.STAGING: self.staging_bucket,
            Location.PERMANENT: self.permanent_bucket,
            Location.DERIVATIVE: self.derivative_bucket,
        }
        return overrides[location] or self.bucket

    def prefix_for(self, location: Location) -> str:
        return {
            Location.STAGING: self.staging_prefix,
            Location.PERMANENT: self.permanent_prefix,
            Location.DERIVATIVE: self.derivative_prefix,
        }[location]

    def validate(self) -> List[str]:
        """Return a list of configuration errors (empty if valid)."""
        errors = []
        for location in Location:
            if not self.bucket_for(location):
                errors.append(f"No bucket configured for {location.value} (set S3_BUCKET)")
        if not self.access_key:
            errors.append("S3_ACCESS_KEY is not set")
        if not self.secret_key:
            errors.append("S3_SECRET_KEY is not set")
        return errors


@dataclass
class LocalConfig:
    """
    Local filesystem configuration.

    Each location is a subdirectory of ``root_path``.

    Attributes:
        root_path: Root directory holding the location directories
        upload_base_url: Base URL of the server's staging upload endpoint
        public_base_url: Base URL serving permanent and derivative files
        signing_key: Secret used to sign staging upload URLs
    """
    root_path: str
    upload_base_url: str = 'http://localhost:8080'
    public_base_url: str = 'http://localhost:8080/static'
    signing_key: Optional[str] = None
    staging_prefix: str = DEFAULT_PREFIXES[Location.STAGING]
    permanent_prefix: str = DEFAULT_PREFIXES[Location.PERMANENT]
    derivative_prefix: str = DEFAULT_PREFIXES[Location.DERIVATIVE]

    def prefix_for(self, location: Location) -> str:
        return {
            Location.STAGING: self.staging_prefix,
            Location.PERMANENT: self.permanent_prefix,
            Location.DERIVATIVE: self.derivative_prefix,
        }[location]

    def validate(self) -> List[str]:
        errors = []
        if not self.root_path:
            errors.append("Local root path is not set")
        elif not os.path.isdir(self.root_path):
            errors.append(f"Local root path does not exist: {self.root_path}")
        return errors
