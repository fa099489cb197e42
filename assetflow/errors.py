"""
Error kinds raised by the asset pipeline.

Synchronous operations (credential issuance, promotion, lifecycle
transitions) raise these to their caller. The event ingress records the
business-level ones on the asset instead of raising them.
"""


class AssetPipelineError(Exception):
    """Base class for all pipeline errors."""
    pass


class ValidationError(AssetPipelineError):
    """Raised when request input violates a size, type or naming limit."""
    pass


class InvalidStateError(AssetPipelineError):
    """Raised when a lifecycle transition is not allowed from the current state."""
    pass


class RecordNotFoundError(AssetPipelineError):
    """Raised when no asset record exists for the given id."""
    pass


class ConcurrentModificationError(AssetPipelineError):
    """Raised when a compare-and-set on updated_at matched no row."""
    pass


class UnsupportedMediaError(AssetPipelineError):
    """Raised when the source object cannot be decoded as an image."""
    pass


class TransientStorageError(AssetPipelineError):
    """Raised when an object store read, write, copy or delete fails."""
    pass


class ObjectNotFoundError(TransientStorageError):
    """Raised when the requested object does not exist."""
    pass


class DerivativeTimeoutError(AssetPipelineError, TimeoutError):
    """Raised when derivative generation overruns its wall-clock budget."""
    pass
