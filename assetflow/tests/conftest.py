"""
Pytest fixtures for assetflow tests.
"""

import io
import uuid
from datetime import timedelta

import pytest
from PIL import Image

from assetflow.asset_record import AssetRecord, LifecycleState, utcnow
from assetflow.errors import ConcurrentModificationError, RecordNotFoundError
from assetflow.local_client import LocalClient
from assetflow.size_spec import SizeSpec
from assetflow.storage_config import Location, LocalConfig


class FakeAssetDb:
    """
    In-memory stand-in for AssetDb with the same compare-and-set contract.

    ``touch(asset_id)`` simulates another writer bumping updated_at.
    """

    def __init__(self):
        self.records = {}
        self.update_calls = []

    def _next_timestamp(self, previous=None):
        now = utcnow()
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    def create_asset(self, record):
        now = utcnow()
        record = record.copy(id=str(uuid.uuid4()), created_at=now, updated_at=now)
        record.validate()
        self.records[record.id] = record
        return record.copy()

    def get_asset(self, asset_id, include_deleted=True):
        record = self.records.get(asset_id)
        if record is None or (not include_deleted and record.is_deleted):
            raise RecordNotFoundError(f"Asset not found: {asset_id}")
        return record.copy()

    def find_by_permanent_path(self, permanent_path):
        for record in self.records.values():
            if record.permanent_path == permanent_path:
                return record.copy()
        return None

    def list_assets(self, category=None, include_deleted=False, limit=50):
        records = [
            r for r in self.records.values()
            if (category is None or r.category == category) and (include_deleted or not r.is_deleted)
        ]
        return [r.copy() for r in records[:limit]]

    def update_asset(self, asset_id, fields, expected_updated_at):
        self.update_calls.append(dict(fields))
        current = self.get_asset(asset_id)
        if current.updated_at != expected_updated_at:
            raise ConcurrentModificationError(f"Asset {asset_id} changed concurrently")
        updated = current.copy(**fields, updated_at=self._next_timestamp(current.updated_at))
        self.records[asset_id] = updated
        return updated.copy()

    def touch(self, asset_id, **fields):
        current = self.records[asset_id]
        self.records[asset_id] = current.copy(**fields, updated_at=self._next_timestamp(current.updated_at))


def make_image_bytes(width, height, image_format='JPEG', mode='RGB', color='red'):
    img = Image.new(mode, (width, height), color=color)
    buffer = io.BytesIO()
    img.save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def image_factory():
    """Fixture providing make_image_bytes(width, height, format, mode, color)."""
    return make_image_bytes


@pytest.fixture
def asset_db():
    """Fixture providing an in-memory asset store."""
    return FakeAssetDb()


@pytest.fixture
def local_config(tmp_path):
    """Fixture providing a local storage configuration under tmp_path."""
    return LocalConfig(
        root_path=str(tmp_path),
        upload_base_url='http://assets.test',
        public_base_url='http://assets.test/static',
        signing_key='test-signing-key',
    )


@pytest.fixture
def local_store(local_config):
    """Fixture providing a LocalClient on a temporary directory."""
    return LocalClient(local_config)


@pytest.fixture
def sample_image_bytes():
    """Fixture providing sample JPEG image bytes."""
    return make_image_bytes(100, 100)


@pytest.fixture
def sample_png_bytes():
    """Fixture providing sample PNG image bytes with transparency."""
    return make_image_bytes(100, 100, 'PNG', 'RGBA', (255, 0, 0, 128))


@pytest.fixture
def large_image_bytes():
    """Fixture providing a 1200x900 JPEG."""
    return make_image_bytes(1200, 900, color='blue')


@pytest.fixture
def size_specs():
    """Fixture providing a small size table."""
    return [
        SizeSpec('small', 150, 150, output_format='jpeg', output_quality=80),
        SizeSpec('medium', 400, 400, output_format='webp', output_quality=85),
        SizeSpec('large', 800, 800, output_format='png'),
    ]


@pytest.fixture
def staged_record(asset_db, local_store, large_image_bytes):
    """Fixture providing a STAGED record whose upload is in the staging location."""
    staging_path = f"product/202601/{uuid.uuid4()}-photo.jpg"
    local_store.write(Location.STAGING, staging_path, large_image_bytes, 'image/jpeg')
    return asset_db.create_asset(AssetRecord(
        original_file_name='photo.jpg',
        sanitized_file_name='photo.jpg',
        category='product',
        entity='product',
        content_type='image/jpeg',
        byte_size=len(large_image_bytes),
        staging_path=staging_path,
    ))


@pytest.fixture
def promoted_record(asset_db, local_store, large_image_bytes):
    """Fixture providing a PROMOTED record whose original is in the permanent location."""
    permanent_path = f"product/202601/{uuid.uuid4()}-photo.jpg"
    local_store.write(Location.PERMANENT, permanent_path, large_image_bytes, 'image/jpeg')
    return asset_db.create_asset(AssetRecord(
        original_file_name='photo.jpg',
        sanitized_file_name='photo.jpg',
        category='product',
        entity='product',
        content_type='image/jpeg',
        byte_size=len(large_image_bytes),
        permanent_path=permanent_path,
        lifecycle_state=LifecycleState.PROMOTED,
    ))
