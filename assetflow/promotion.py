"""
PromotionService - Moves a staged upload into permanent storage.
"""

import logging
from typing import Callable, Optional

from .asset_record import AssetRecord
from .errors import TransientStorageError
from .lifecycle import LifecycleEvent, next_state
from .storage_config import Location


class PromotionService:
    """
    Copies the staged object to the permanent location, drops the staging
    copy and flips the record to PROMOTED.

    The order is copy, record update, staging delete. The record is only
    written after the copy succeeded, and the staging copy is only dropped
    after the record points at the permanent one. Deleting before the
    update would leave a STAGED record without its object whenever the
    compare-and-set loses; this way a failure at any step leaves a record
    that matches storage.
    """

    def __init__(self, asset_db, object_store, logger: Optional[logging.Logger] = None):
        self.asset_db = asset_db
        self.object_store = object_store
        self.logger = logger or logging.getLogger(__name__)

    def _best_effort(self, description: str, action: Callable[[], None]) -> bool:
        """
        Run a cleanup step whose failure must not undo the promotion.

        Failures are logged and reported as False; the caller carries on.
        """
        try:
            action()
            return True
        except TransientStorageError as e:
            self.logger.warning(f"Best-effort step failed, continuing: {description}: {e}")
            return False

    def promote(self, asset_id: str) -> AssetRecord:
        """
        Promote a STAGED asset.

        Raises:
            RecordNotFoundError: no such asset
            InvalidStateError: asset is not STAGED (including already promoted)
            TransientStorageError: the copy failed; record untouched
            ConcurrentModificationError: the record changed during promotion
        """
        record = self.asset_db.get_asset(asset_id)
        target = next_state(record.lifecycle_state, LifecycleEvent.CONFIRM)

        staging_path = record.staging_path
        permanent_path = staging_path

        self.logger.info(f"Promoting asset {asset_id}: {staging_path}")
        self.object_store.copy(Location.STAGING, staging_path, Location.PERMANENT, permanent_path)

        promoted = self.asset_db.update_asset(
            asset_id,
            {
                'lifecycle_state': target,
                'permanent_path': permanent_path,
                'staging_path': '',
                'read_url': self.object_store.public_url(Location.PERMANENT, permanent_path),
            },
            expected_updated_at=record.updated_at,
        )

        # The permanent copy is authoritative from here on; a leaked staging
        # object is reclaimed by the staging sweep.
        self._best_effort(
            f"delete staging object {staging_path}",
            lambda: self.object_store.delete(Location.STAGING, staging_path),
        )
        self.logger.info(f"Asset {asset_id} promoted to {permanent_path}")
        return promoted
