"""
Lifecycle state machine for assets: staged -> promoted <-> soft_deleted.
"""

import logging
from enum import Enum
from typing import Any, Mapping, Optional

from .asset_record import AssetRecord, LifecycleState, utcnow
from .errors import InvalidStateError, ValidationError


class LifecycleEvent(str, Enum):
    CONFIRM = "confirm"
    SOFT_DELETE = "soft_delete"
    RESTORE = "restore"


# Fields an administrator may edit after creation.
EDITABLE_FIELDS = ('description', 'tags')

TRANSITIONS = {
    (LifecycleState.STAGED, LifecycleEvent.CONFIRM): LifecycleState.PROMOTED,
    (LifecycleState.PROMOTED, LifecycleEvent.SOFT_DELETE): LifecycleState.SOFT_DELETED,
    (LifecycleState.SOFT_DELETED, LifecycleEvent.RESTORE): LifecycleState.PROMOTED,
}


def next_state(state: LifecycleState, event: LifecycleEvent) -> LifecycleState:
    """Target state for event, or InvalidStateError if the table has no such transition."""
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidStateError(f"Cannot {event.value} an asset in state {state.value}") from None


class AssetLifecycle:
    """
    Soft-delete, restore and metadata edits. Promotion lives in
    PromotionService because it also moves the object.
    """

    def __init__(self, asset_db, logger: Optional[logging.Logger] = None):
        self.asset_db = asset_db
        self.logger = logger or logging.getLogger(__name__)

    def soft_delete(self, asset_id: str, deleted_by: str) -> AssetRecord:
        """Mark a promoted asset deleted; paths and derivatives are kept for restore."""
        record = self.asset_db.get_asset(asset_id)
        target = next_state(record.lifecycle_state, LifecycleEvent.SOFT_DELETE)
        updated = self.asset_db.update_asset(
            asset_id,
            {'lifecycle_state': target, 'deleted_at': utcnow(), 'deleted_by': deleted_by},
            expected_updated_at=record.updated_at,
        )
        self.logger.warning(f"Asset {asset_id} soft-deleted by {deleted_by}")
        return updated

    def restore(self, asset_id: str) -> AssetRecord:
        record = self.asset_db.get_asset(asset_id)
        target = next_state(record.lifecycle_state, LifecycleEvent.RESTORE)
        updated = self.asset_db.update_asset(
            asset_id,
            {'lifecycle_state': target, 'deleted_at': None, 'deleted_by': None},
            expected_updated_at=record.updated_at,
        )
        self.logger.info(f"Asset {asset_id} restored")
        return updated

    def update_metadata(self, asset_id: str, fields: Mapping[str, Any]) -> AssetRecord:
        """
        Edit the descriptive fields of a live asset.

        Raises:
            ValidationError: unknown field or wrong value type
            InvalidStateError: the asset is soft-deleted
            ConcurrentModificationError: the record changed since it was read
        """
        changes = _validate_metadata(fields)
        record = self.asset_db.get_asset(asset_id)
        if record.is_deleted:
            raise InvalidStateError(f"Cannot update metadata of asset {asset_id} in state {record.lifecycle_state.value}")
        updated = self.asset_db.update_asset(asset_id, changes, expected_updated_at=record.updated_at)
        self.logger.info(f"Asset {asset_id} metadata updated: {', '.join(sorted(changes))}")
        return updated


def _validate_metadata(fields: Mapping[str, Any]) -> dict:
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    if not fields:
        raise ValidationError(f"Nothing to update; editable fields are {', '.join(EDITABLE_FIELDS)}")

    changes = {}
    if 'description' in fields:
        description = fields['description']
        if description is not None and not isinstance(description, str):
            raise ValidationError("description must be a string")
        changes['description'] = description
    if 'tags' in fields:
        tags = fields['tags']
        if tags is None:
            tags = []
        if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
            raise ValidationError("tags must be a list of strings")
        changes['tags'] = list(tags)
    return changes
