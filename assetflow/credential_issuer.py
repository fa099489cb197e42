"""
CredentialIssuer - Validates an upload request and hands out a signed staging write URL.
"""

import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional

from .asset_record import utcnow
from .errors import ValidationError
from .storage_config import Location

MAX_FILE_NAME_LENGTH = 100
MB = 1024 * 1024

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_.-]')
_REPEATED_UNDERSCORES = re.compile(r'_+')
_WHITESPACE = re.compile(r'\s+')


@dataclass(frozen=True)
class CategoryLimits:
    max_bytes: int
    allowed_types: List[str]

    @property
    def max_size_mb(self) -> float:
        return self.max_bytes / MB

    def allows(self, content_type: str) -> bool:
        return '*' in self.allowed_types or content_type in self.allowed_types

    @classmethod
    def from_dict(cls, data: Mapping) -> 'CategoryLimits':
        return cls(
            max_bytes=int(float(data['maxSizeMB']) * MB),
            allowed_types=list(data.get('allowedTypes') or ['*']),
        )


@dataclass
class UploadCredential:
    write_url: str
    staging_path: str
    read_url: str
    expires_at: datetime
    sanitized_file_name: str

    def to_dict(self) -> dict:
        return {
            'writeUrl': self.write_url,
            'stagingPath': self.staging_path,
            'readUrl': self.read_url,
            'expiresAt': self.expires_at.strftime('%Y-%m-%dT%H:%M:%SZ'),
            'sanitizedFileName': self.sanitized_file_name,
        }


def sanitize_file_name(file_name: str, max_length: int = MAX_FILE_NAME_LENGTH) -> str:
    """
    Make a client-supplied file name safe for use in an object key.

    Removes '..' sequences and directory components, maps anything outside
    [A-Za-z0-9_.-] to '_', collapses whitespace and repeated underscores,
    and caps the length while keeping the extension. Never returns ''.
    """
    name = (file_name or '').replace('\\', '/')
    name = name.replace('..', '')
    name = name.split('/')[-1]
    name = _WHITESPACE.sub('_', name.strip())
    name = _UNSAFE_CHARS.sub('_', name)
    name = _REPEATED_UNDERSCORES.sub('_', name)

    root, ext = os.path.splitext(name)
    if len(ext) > 16 or ext == '.':
        root, ext = name.rstrip('.'), ''
    root = root.strip('._')
    if not root:
        root = 'file'
    if len(root) + len(ext) > max_length:
        root = root[:max(1, max_length - len(ext))]
    return root + ext


class CredentialIssuer:
    """
    Issues short-lived upload credentials for the staging location.

    Does not create asset records; callers do that after the client has
    uploaded.
    """

    def __init__(
        self,
        object_store,
        category_limits: Mapping[str, Mapping],
        default_limits: Mapping,
        global_max_bytes: int,
        expires_minutes: int = 15,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            object_store: S3Client or LocalClient
            category_limits: category -> {'maxSizeMB', 'allowedTypes'}
            default_limits: limits for categories not in category_limits
            global_max_bytes: ceiling applied to every category
            expires_minutes: lifetime of the signed write URL
            logger: Optional logger instance
        """
        self.object_store = object_store
        self.category_limits: Dict[str, CategoryLimits] = {
            name: CategoryLimits.from_dict(data) for name, data in category_limits.items()
        }
        self.default_limits = CategoryLimits.from_dict(default_limits)
        self.global_max_bytes = global_max_bytes
        self.expires_minutes = expires_minutes
        self.logger = logger or logging.getLogger(__name__)

    def limits_for(self, category: str) -> CategoryLimits:
        return self.category_limits.get(category, self.default_limits)

    def validate(self, content_type: str, byte_size: int, category: str) -> None:
        if not category:
            raise ValidationError("category is required")
        if byte_size is None or byte_size <= 0:
            raise ValidationError("fileSize must be greater than 0")
        if byte_size > self.global_max_bytes:
            raise ValidationError(
                f"fileSize {byte_size} exceeds the global limit ({self.global_max_bytes / MB:g}MB)"
            )

        limits = self.limits_for(category)
        if not limits.allows(content_type):
            raise ValidationError(
                f"Unsupported content type {content_type} for {category}; "
                f"allowed types: {', '.join(limits.allowed_types)}"
            )
        if byte_size > limits.max_bytes:
            raise ValidationError(
                f"fileSize {byte_size} exceeds the {category} limit ({limits.max_size_mb:g}MB)"
            )

    @staticmethod
    def staging_path_for(entity: str, sanitized_file_name: str, now: datetime) -> str:
        """{entity}/{yyyyMM}/{uuid}-{name}; the uuid keeps identical names apart."""
        return f"{entity}/{now:%Y%m}/{uuid.uuid4()}-{sanitized_file_name}"

    def issue_upload_credential(
        self,
        file_name: str,
        content_type: str,
        byte_size: int,
        category: str,
        entity: Optional[str] = None
    ) -> UploadCredential:
        """
        Validate the request and return a signed write URL for a fresh staging key.

        Raises:
            ValidationError: size or type outside the category's limits
            TransientStorageError: the object store could not sign the URL
        """
        self.validate(content_type, byte_size, category)
        entity = sanitize_file_name(entity or category)
        sanitized = sanitize_file_name(file_name)

        now = utcnow()
        staging_path = self.staging_path_for(entity, sanitized, now)
        ttl_seconds = self.expires_minutes * 60
        write_url = self.object_store.signed_write_url(Location.STAGING, staging_path, content_type, ttl_seconds)

        credential = UploadCredential(
            write_url=write_url,
            staging_path=staging_path,
            read_url=self.object_store.public_url(Location.PERMANENT, staging_path),
            expires_at=now + timedelta(seconds=ttl_seconds),
            sanitized_file_name=sanitized,
        )
        self.logger.info(f"Issued upload credential for {staging_path} (expires {credential.expires_at})")
        return credential
