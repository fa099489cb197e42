"""
AssetRecord - Persisted metadata for one uploaded file and its derivatives.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Naive UTC timestamp, microsecond precision."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_time(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(TIME_FORMAT) if value else None


def parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.strptime(value, TIME_FORMAT) if value else None


class LifecycleState(str, Enum):
    """Where the authoritative copy of the asset lives."""

    STAGED = "staged"
    PROMOTED = "promoted"
    SOFT_DELETED = "soft_deleted"


class DerivativeState(str, Enum):
    """Progress of derivative generation for the asset."""

    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DerivativeDescriptor:
    """
    One generated variant.

    Attributes:
        size_name: SizeSpec name
        path: Key in the derivative location
        width: Output width in pixels
        height: Output height in pixels
        byte_size: Encoded size in bytes
        format: Output format ('jpeg', 'webp', 'png')
        url: Public URL of the derivative
    """
    size_name: str
    path: str
    width: int
    height: int
    byte_size: int
    format: str
    url: str = ''

    def to_dict(self) -> dict:
        return {
            'sizeName': self.size_name,
            'path': self.path,
            'url': self.url,
            'width': self.width,
            'height': self.height,
            'byteSize': self.byte_size,
            'format': self.format,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'DerivativeDescriptor':
        return cls(
            size_name=data['sizeName'],
            path=data['path'],
            width=data['width'],
            height=data['height'],
            byte_size=data['byteSize'],
            format=data['format'],
            url=data.get('url', ''),
        )


@dataclass
class AssetRecord:
    """
    Record for a single uploaded file.

    Field presence follows the two state enums: staging_path is set only
    while STAGED, permanent_path only once promoted; derivative_error only
    when FAILED; derivative_set is non-empty only when COMPLETED;
    deleted_at/deleted_by only when SOFT_DELETED.
    """
    original_file_name: str
    sanitized_file_name: str
    category: str
    entity: str
    content_type: str
    byte_size: int
    staging_path: str = ''
    permanent_path: str = ''
    lifecycle_state: LifecycleState = LifecycleState.STAGED
    derivative_state: DerivativeState = DerivativeState.NOT_REQUESTED
    derivative_error: Optional[str] = None
    derivative_set: Dict[str, DerivativeDescriptor] = field(default_factory=dict)
    derivative_event_id: Optional[str] = None
    derivative_started_at: Optional[datetime] = None
    derivative_generated_at: Optional[datetime] = None
    read_url: str = ''
    uploaded_by: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.lifecycle_state == LifecycleState.SOFT_DELETED

    def is_pending_stale(self, timeout_seconds: float, now: Optional[datetime] = None) -> bool:
        """True when generation has been PENDING for longer than timeout_seconds."""
        if self.derivative_state != DerivativeState.PENDING:
            return False
        if self.derivative_started_at is None:
            return True
        now = now or utcnow()
        return now - self.derivative_started_at > timedelta(seconds=timeout_seconds)

    def effective_derivative_state(self, timeout_seconds: float, now: Optional[datetime] = None) -> DerivativeState:
        """Derivative state as readers should see it: a stale PENDING counts as FAILED."""
        if self.is_pending_stale(timeout_seconds, now):
            return DerivativeState.FAILED
        return self.derivative_state

    def validate(self) -> None:
        """Raise ValueError if field presence disagrees with the state enums."""
        if not self.staging_path and not self.permanent_path:
            raise ValueError("staging_path and permanent_path are both empty")
        if self.lifecycle_state == LifecycleState.STAGED:
            if not self.staging_path or self.permanent_path:
                raise ValueError("staged asset must have only staging_path")
        elif not self.permanent_path or self.staging_path:
            raise ValueError(f"{self.lifecycle_state.value} asset must have only permanent_path")
        if self.is_deleted != (self.deleted_at is not None):
            raise ValueError("deleted_at must be set exactly when soft-deleted")
        if (self.derivative_state == DerivativeState.FAILED) != bool(self.derivative_error):
            raise ValueError("derivative_error must be set exactly when derivatives failed")
        if bool(self.derivative_set) != (self.derivative_state == DerivativeState.COMPLETED):
            raise ValueError("derivative_set must be non-empty exactly when derivatives completed")

    def copy(self, **changes) -> 'AssetRecord':
        return replace(self, **changes)

    def to_dict(self, pending_timeout_seconds: Optional[float] = None) -> dict:
        """Convert to the JSON shape served over HTTP."""
        data = {
            'id': self.id,
            'originalFileName': self.original_file_name,
            'sanitizedFileName': self.sanitized_file_name,
            'category': self.category,
            'entity': self.entity,
            'contentType': self.content_type,
            'byteSize': self.byte_size,
            'stagingPath': self.staging_path,
            'permanentPath': self.permanent_path,
            'readUrl': self.read_url,
            'lifecycleState': self.lifecycle_state.value,
            'derivativeState': self.derivative_state.value,
            'derivativeSet': {name: d.to_dict() for name, d in self.derivative_set.items()},
            'derivativeEventId': self.derivative_event_id,
            'derivativeStartedAt': format_time(self.derivative_started_at),
            'derivativeGeneratedAt': format_time(self.derivative_generated_at),
            'uploadedBy': self.uploaded_by,
            'description': self.description,
            'tags': list(self.tags),
            'createdAt': format_time(self.created_at),
            'updatedAt': format_time(self.updated_at),
            'deletedAt': format_time(self.deleted_at),
            'deletedBy': self.deleted_by,
        }
        if self.derivative_state == DerivativeState.FAILED:
            data['derivativeError'] = self.derivative_error
        if pending_timeout_seconds is not None:
            data['effectiveDerivativeState'] = self.effective_derivative_state(pending_timeout_seconds).value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'AssetRecord':
        """Create from the JSON shape produced by to_dict."""
        return cls(
            id=data.get('id'),
            original_file_name=data['originalFileName'],
            sanitized_file_name=data['sanitizedFileName'],
            category=data['category'],
            entity=data.get('entity') or data['category'],
            content_type=data['contentType'],
            byte_size=data['byteSize'],
            staging_path=data.get('stagingPath') or '',
            permanent_path=data.get('permanentPath') or '',
            read_url=data.get('readUrl') or '',
            lifecycle_state=LifecycleState(data.get('lifecycleState', LifecycleState.STAGED.value)),
            derivative_state=DerivativeState(data.get('derivativeState', DerivativeState.NOT_REQUESTED.value)),
            derivative_error=data.get('derivativeError'),
            derivative_set={
                name: DerivativeDescriptor.from_dict(d)
                for name, d in (data.get('derivativeSet') or {}).items()
            },
            derivative_event_id=data.get('derivativeEventId'),
            derivative_started_at=parse_time(data.get('derivativeStartedAt')),
            derivative_generated_at=parse_time(data.get('derivativeGeneratedAt')),
            uploaded_by=data.get('uploadedBy'),
            description=data.get('description'),
            tags=list(data.get('tags') or []),
            created_at=parse_time(data.get('createdAt')),
            updated_at=parse_time(data.get('updatedAt')),
            deleted_at=parse_time(data.get('deletedAt')),
            deleted_by=data.get('deletedBy'),
        )
