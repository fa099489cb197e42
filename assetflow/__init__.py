"""
Asset upload and derivative pipeline.

Clients upload to a staging location with a signed URL, an administrator
promotes the upload to permanent storage, and a storage-finalize event
drives generation of resized derivatives.

Supports both S3 and local filesystem storage.
"""

__version__ = "1.0.0"

from .errors import (
    AssetPipelineError,
    ValidationError,
    InvalidStateError,
    RecordNotFoundError,
    ConcurrentModificationError,
    UnsupportedMediaError,
    TransientStorageError,
    ObjectNotFoundError,
    DerivativeTimeoutError,
)
from .storage_config import Location, S3Config, LocalConfig
from .s3_client import S3Client
from .local_client import LocalClient
from .size_spec import SizeSpec, load_size_specs
from .asset_record import AssetRecord, DerivativeDescriptor, DerivativeState, LifecycleState
from .asset_db import AssetDb, DbConfig
from .credential_issuer import CredentialIssuer, UploadCredential, sanitize_file_name
from .lifecycle import AssetLifecycle
from .promotion import PromotionService
from .thumbnail_generator import ThumbnailGenerator
from .generation_result import GenerationResult
from .derivative_generator import DerivativeGenerator, derivative_path
from .event_ingress import EventIngress, IngressOutcome, StorageEvent

__all__ = [
    "AssetPipelineError",
    "ValidationError",
    "InvalidStateError",
    "RecordNotFoundError",
    "ConcurrentModificationError",
    "UnsupportedMediaError",
    "TransientStorageError",
    "ObjectNotFoundError",
    "DerivativeTimeoutError",
    "Location",
    "S3Config",
    "LocalConfig",
    "S3Client",
    "LocalClient",
    "SizeSpec",
    "load_size_specs",
    "AssetRecord",
    "DerivativeDescriptor",
    "DerivativeState",
    "LifecycleState",
    "AssetDb",
    "DbConfig",
    "CredentialIssuer",
    "UploadCredential",
    "sanitize_file_name",
    "AssetLifecycle",
    "PromotionService",
    "ThumbnailGenerator",
    "GenerationResult",
    "DerivativeGenerator",
    "derivative_path",
    "EventIngress",
    "IngressOutcome",
    "StorageEvent",
]
