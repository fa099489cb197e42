"""
EventIngress - Turns storage-finalize notifications into derivative generation.

Notifications are delivered at least once and possibly out of order. The
asset record carries the id of the event that claimed the current
generation, so redeliveries are recognised and acknowledged without doing
the work twice.
"""

import logging
import posixpath
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .asset_record import AssetRecord, DerivativeState, utcnow
from .errors import (
    ConcurrentModificationError,
    DerivativeTimeoutError,
    ObjectNotFoundError,
    TransientStorageError,
    UnsupportedMediaError,
    ValidationError,
)
from .generation_result import GenerationResult

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif', '.webp', '.bmp', '.tif', '.tiff')

MAX_PERSIST_ATTEMPTS = 3


def _directory_prefix(prefix: str) -> str:
    """'uploads', '/uploads' and 'uploads/' all become 'uploads/'; '' stays ''."""
    prefix = (prefix or '').strip('/')
    return f"{prefix}/" if prefix else ''


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


@dataclass(frozen=True)
class StorageEvent:
    """
    One object-finalized notification.

    Attributes:
        bucket: Bucket the object was written to
        object_key: Full object key, location prefix included
        content_type: Content type reported by the store
        size_bytes: Object size
        event_id: Delivery-independent id used for dedup
    """
    bucket: str
    object_key: str
    content_type: str = ''
    size_bytes: int = 0
    event_id: str = ''

    @classmethod
    def from_request(cls, body: Mapping, headers: Mapping[str, str]) -> 'StorageEvent':
        """
        Build from the webhook JSON body and its CloudEvents headers.

        Raises:
            ValidationError: body is not an object or lacks 'name'
        """
        if not isinstance(body, Mapping) or not body.get('name'):
            raise ValidationError("Storage event must include 'name'")

        bucket = str(body.get('bucket') or '')
        name = str(body['name'])
        event_id = _header(headers, 'ce-id')
        if not event_id:
            generation = body.get('generation')
            event_id = f"{bucket}/{name}#{generation}" if generation else f"{bucket}/{name}"

        try:
            size_bytes = int(body.get('size') or 0)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid size in storage event: {body.get('size')!r}") from None

        return cls(
            bucket=bucket,
            object_key=name,
            content_type=str(body.get('contentType') or ''),
            size_bytes=size_bytes,
            event_id=event_id,
        )


class OutcomeStatus(str, Enum):
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IngressOutcome:
    status: OutcomeStatus
    event_id: str
    reason: str = ''
    asset_id: Optional[str] = None
    derivatives: Dict[str, dict] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'reason': self.reason,
            'assetId': self.asset_id,
            'eventId': self.event_id,
            'derivatives': self.derivatives,
            'failures': self.failures,
        }


class EventIngress:
    """
    Filters storage events, claims the asset for generation, runs the
    DerivativeGenerator and records the result.

    Business failures (undecodable media, every size failing, timeouts) are
    recorded on the asset and acknowledged. Transient storage errors and
    record-store errors propagate so the event is redelivered.
    """

    def __init__(
        self,
        asset_db,
        derivative_generator,
        source_prefixes: Iterable[str],
        source_buckets: Iterable[str] = (),
        derivative_prefix: str = 'thumbs/',
        pending_timeout_seconds: Optional[float] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            asset_db: AssetDb or compatible store
            derivative_generator: DerivativeGenerator
            source_prefixes: Key prefixes holding permanent objects; the
                matched prefix is stripped to get the permanent_path
            source_buckets: Buckets to accept; empty accepts any bucket
            derivative_prefix: Keys under this prefix are our own output
            pending_timeout_seconds: Age after which a PENDING claim is
                considered abandoned; defaults to the generator's timeout
            logger: Optional logger instance
        """
        self.asset_db = asset_db
        self.derivative_generator = derivative_generator
        # Longest first, so nested prefixes resolve to the most specific one.
        self.source_prefixes = sorted({_directory_prefix(p) for p in source_prefixes}, key=len, reverse=True)
        self.source_buckets = frozenset(b for b in source_buckets if b)
        self.derivative_prefix = _directory_prefix(derivative_prefix)
        if pending_timeout_seconds is None:
            pending_timeout_seconds = derivative_generator.timeout_seconds
        self.pending_timeout_seconds = pending_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def handle_storage_event(self, event: StorageEvent) -> IngressOutcome:
        """
        Process one delivery.

        Raises:
            TransientStorageError: the source could not be read; the claim
                is released so a redelivery is processed
            mysql.connector.Error, ConcurrentModificationError: record store
                failures
        """
        self.logger.info(f"Storage event {event.event_id}: {event.bucket}/{event.object_key}")

        skip_reason = self._filter(event)
        if skip_reason:
            return self._outcome(OutcomeStatus.SKIPPED, event, skip_reason)

        permanent_path = self.permanent_path_for(event.object_key)
        record = self.asset_db.find_by_permanent_path(permanent_path)
        if record is None:
            return self._outcome(OutcomeStatus.SKIPPED, event, "no asset record")

        claimed, duplicate_reason = self._claim(record, event.event_id)
        if claimed is None:
            self.logger.info(f"Duplicate event {event.event_id} for asset {record.id}: {duplicate_reason}")
            return self._outcome(OutcomeStatus.DUPLICATE, event, duplicate_reason, record.id)

        return self._generate(claimed, event)

    def permanent_path_for(self, object_key: str) -> str:
        key = object_key.lstrip('/')
        for prefix in self.source_prefixes:
            if key.startswith(prefix):
                return key[len(prefix):]
        return key

    def _filter(self, event: StorageEvent) -> Optional[str]:
        key = event.object_key.lstrip('/')
        if self.derivative_prefix and key.startswith(self.derivative_prefix):
            return "derivative output"
        if self.source_buckets and event.bucket not in self.source_buckets:
            return f"bucket {event.bucket} not watched"
        if not any(key.startswith(prefix) for prefix in self.source_prefixes):
            return "not under a source prefix"
        extension = posixpath.splitext(key)[1].lower()
        if not event.content_type.startswith('image/') and extension not in IMAGE_EXTENSIONS:
            return "not an image"
        return None

    def _duplicate_reason(self, record: AssetRecord, event_id: str) -> Optional[str]:
        state = record.derivative_state
        stale = record.is_pending_stale(self.pending_timeout_seconds)
        if event_id == record.derivative_event_id and state != DerivativeState.NOT_REQUESTED and not stale:
            return f"event already handled ({state.value})"
        if state == DerivativeState.COMPLETED:
            return "derivatives already completed"
        if state == DerivativeState.PENDING and not stale:
            return f"generation in progress for event {record.derivative_event_id}"
        return None

    def _claim(self, record: AssetRecord, event_id: str) -> Tuple[Optional[AssetRecord], str]:
        """Mark the record PENDING for event_id; (None, reason) for a duplicate."""
        for attempt in range(2):
            reason = self._duplicate_reason(record, event_id)
            if reason:
                return None, reason
            if record.is_pending_stale(self.pending_timeout_seconds):
                self.logger.warning(
                    f"Reclaiming stale generation of asset {record.id} "
                    f"(event {record.derivative_event_id}, started {record.derivative_started_at})"
                )
            try:
                claimed = self.asset_db.update_asset(
                    record.id,
                    {
                        'derivative_state': DerivativeState.PENDING,
                        'derivative_event_id': event_id,
                        'derivative_started_at': utcnow(),
                        'derivative_error': None,
                        'derivative_set': {},
                    },
                    expected_updated_at=record.updated_at,
                )
                return claimed, ''
            except ConcurrentModificationError:
                if attempt:
                    raise
                self.logger.info(f"Claim of asset {record.id} raced another writer, re-reading")
                record = self.asset_db.get_asset(record.id)
        return None, ''

    def _generate(self, claimed: AssetRecord, event: StorageEvent) -> IngressOutcome:
        path = claimed.permanent_path
        try:
            result = self.derivative_generator.generate_derivatives(path)
        except ObjectNotFoundError as e:
            return self._record_failure(claimed, event, f"source missing: {e}")
        except TransientStorageError:
            self.logger.warning(f"Source read failed for asset {claimed.id}, releasing claim for redelivery")
            self._persist(claimed, event.event_id, {
                'derivative_state': DerivativeState.NOT_REQUESTED,
                'derivative_event_id': None,
                'derivative_started_at': None,
            })
            raise
        except UnsupportedMediaError as e:
            return self._record_failure(claimed, event, f"unsupported media: {e}")
        except DerivativeTimeoutError as e:
            return self._record_failure(claimed, event, f"timeout: {e}")
        except Exception as e:
            self.logger.exception(f"Derivative generation crashed for asset {claimed.id}: {e}")
            return self._record_failure(claimed, event, f"generation error: {e}")

        if not result.succeeded:
            summary = result.failure_summary() or "no derivative sizes enabled"
            return self._record_failure(claimed, event, f"all sizes failed: {summary}", result)

        for size, message in result.failures.items():
            self.logger.warning(f"Asset {claimed.id}: size {size} failed: {message}")

        persisted = self._persist(claimed, event.event_id, {
            'derivative_state': DerivativeState.COMPLETED,
            'derivative_set': result.derivatives,
            'derivative_error': None,
            'derivative_generated_at': utcnow(),
        })
        if persisted is None:
            return self._superseded(claimed, event)

        self.logger.info(
            f"Asset {claimed.id}: {len(result.derivatives)} derivatives completed "
            f"({result.elapsed_seconds:.2f}s)"
        )
        return self._outcome(OutcomeStatus.COMPLETED, event, '', claimed.id, result)

    def _record_failure(
        self,
        claimed: AssetRecord,
        event: StorageEvent,
        error: str,
        result: Optional[GenerationResult] = None
    ) -> IngressOutcome:
        self.logger.error(f"Derivatives failed for asset {claimed.id}: {error}")
        persisted = self._persist(claimed, event.event_id, {
            'derivative_state': DerivativeState.FAILED,
            'derivative_set': {},
            'derivative_error': error,
        })
        if persisted is None:
            return self._superseded(claimed, event)
        return self._outcome(OutcomeStatus.FAILED, event, error, claimed.id, result)

    def _persist(self, claimed: AssetRecord, event_id: str, fields: dict) -> Optional[AssetRecord]:
        """
        Write derivative fields under CAS, re-reading on conflict.

        Returns None if another event has taken over the claim meanwhile.
        """
        current = claimed
        for attempt in range(1, MAX_PERSIST_ATTEMPTS + 1):
            try:
                return self.asset_db.update_asset(current.id, fields, expected_updated_at=current.updated_at)
            except ConcurrentModificationError:
                if attempt == MAX_PERSIST_ATTEMPTS:
                    raise
                current = self.asset_db.get_asset(current.id)
                if current.derivative_event_id != event_id:
                    self.logger.warning(
                        f"Asset {current.id} was reclaimed by event {current.derivative_event_id}; "
                        f"dropping result of {event_id}"
                    )
                    return None
                self.logger.info(f"Asset {current.id} changed during generation, retrying write ({attempt})")
        return None

    def _superseded(self, claimed: AssetRecord, event: StorageEvent) -> IngressOutcome:
        return self._outcome(OutcomeStatus.DUPLICATE, event, "superseded by a newer event", claimed.id)

    def _outcome(
        self,
        status: OutcomeStatus,
        event: StorageEvent,
        reason: str,
        asset_id: Optional[str] = None,
        result: Optional[GenerationResult] = None
    ) -> IngressOutcome:
        if status == OutcomeStatus.SKIPPED:
            self.logger.debug(f"Skipped {event.bucket}/{event.object_key}: {reason}")
        outcome = IngressOutcome(status=status, event_id=event.event_id, reason=reason, asset_id=asset_id)
        if result is not None:
            outcome.derivatives = {name: d.to_dict() for name, d in result.derivatives.items()}
            outcome.failures = dict(result.failures)
        return outcome
