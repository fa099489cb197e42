"""Tests for AssetDb with a mocked MySQL connection pool."""

import json
from datetime import datetime
from unittest.mock import MagicMock

import mysql.connector
import pytest

from assetflow.asset_db import COLUMNS, AssetDb, DbConfig, _to_column, init_pool_size
from assetflow.asset_record import (
    AssetRecord,
    DerivativeDescriptor,
    DerivativeState,
    LifecycleState,
)
from assetflow.errors import ConcurrentModificationError, RecordNotFoundError

UPDATED_AT = datetime(2026, 1, 5, 12, 0, 0, 500)


def make_record(**changes):
    record = AssetRecord(
        original_file_name='photo.jpg',
        sanitized_file_name='photo.jpg',
        category='product',
        entity='product',
        content_type='image/jpeg',
        byte_size=1234,
        permanent_path='product/202601/abc-photo.jpg',
        lifecycle_state=LifecycleState.PROMOTED,
        id='asset-1',
        created_at=UPDATED_AT,
        updated_at=UPDATED_AT,
    )
    return record.copy(**changes)


def make_row(record):
    return {name: _to_column(name, getattr(record, name)) for name in COLUMNS}


class TestDbConfig:
    """Tests for DbConfig."""

    def test_from_env(self, monkeypatch):
        """Test reading SQL_* variables."""
        monkeypatch.setenv('SQL_HOST', 'db.internal')
        monkeypatch.setenv('SQL_PORT', '3307')
        monkeypatch.setenv('SQL_POOL_SIZE', '8')

        config = DbConfig.from_env()

        assert config.host == 'db.internal'
        assert config.port == 3307
        assert config.pool_size == 8

    def test_init_pool_size_from_ini(self, tmp_path):
        """Test pool sizing from uwsgi workers and threads."""
        ini = tmp_path / 'uwsgi.ini'
        ini.write_text('[uwsgi]\nworkers = 2\nthreads = 3\n')

        assert init_pool_size(str(ini)) == 6
        assert init_pool_size(str(tmp_path / 'missing.ini')) == 32


class TestAssetDb:
    """Tests for AssetDb."""

    @pytest.fixture
    def cursor(self):
        """Fixture providing the mock cursor every query goes through."""
        return MagicMock()

    @pytest.fixture
    def connection(self, cursor):
        connection = MagicMock()
        connection.cursor.return_value = cursor
        return connection

    @pytest.fixture
    def db(self, mocker, connection):
        """Fixture providing an AssetDb on a mocked pool."""
        pool = MagicMock()
        pool.get_connection.return_value = connection
        mocker.patch('assetflow.asset_db.pooling.MySQLConnectionPool', return_value=pool)
        return AssetDb(DbConfig(pool_size=4))

    def test_create_tables(self, db, cursor, connection):
        """Test that the assets table DDL is executed."""
        db.create_tables()

        sql = cursor.execute.call_args[0][0]
        assert 'CREATE TABLE IF NOT EXISTS `assets`' in sql
        assert 'DATETIME(6)' in sql
        connection.commit.assert_called_once()

    def test_create_asset(self, db, cursor, connection):
        """Test inserting a record assigns id and timestamps."""
        record = make_record(id=None, created_at=None, updated_at=None)

        created = db.create_asset(record)

        assert len(created.id) == 36
        assert created.created_at == created.updated_at
        sql, values = cursor.execute.call_args[0]
        assert sql.startswith('INSERT INTO assets')
        assert values[COLUMNS.index('lifecycle_state')] == 'promoted'
        assert values[COLUMNS.index('derivative_set')] == '{}'
        connection.commit.assert_called_once()
        cursor.close.assert_called_once()
        connection.close.assert_called_once()

    def test_create_invalid_asset(self, db, cursor):
        """Test that an inconsistent record is never inserted."""
        with pytest.raises(ValueError):
            db.create_asset(make_record(derivative_state=DerivativeState.FAILED))

        cursor.execute.assert_not_called()

    def test_get_asset(self, db, cursor):
        """Test loading a record from a row."""
        descriptor = DerivativeDescriptor('small', 'thumbs/small/a.jpg', 150, 100, 10, 'jpeg')
        record = make_record(
            derivative_state=DerivativeState.COMPLETED,
            derivative_set={'small': descriptor},
            tags=['a'],
        )
        cursor.fetchone.return_value = make_row(record)

        loaded = db.get_asset('asset-1')

        assert loaded == record
        assert cursor.execute.call_args[0][1] == ('asset-1',)

    def test_get_asset_missing(self, db, cursor):
        """Test that a missing row raises RecordNotFoundError."""
        cursor.fetchone.return_value = None

        with pytest.raises(RecordNotFoundError):
            db.get_asset('nope')

    def test_get_asset_excluding_deleted(self, db, cursor):
        """Test that soft-deleted records can be hidden."""
        cursor.fetchone.return_value = make_row(make_record(
            lifecycle_state=LifecycleState.SOFT_DELETED,
            deleted_at=UPDATED_AT,
            deleted_by='admin',
        ))

        assert db.get_asset('asset-1').is_deleted
        with pytest.raises(RecordNotFoundError):
            db.get_asset('asset-1', include_deleted=False)

    def test_find_by_permanent_path(self, db, cursor):
        """Test lookup by permanent path."""
        cursor.fetchone.return_value = None

        assert db.find_by_permanent_path('product/202601/abc-photo.jpg') is None
        sql, params = cursor.execute.call_args[0]
        assert 'WHERE permanent_path = %s' in sql
        assert params == ('product/202601/abc-photo.jpg',)

    def test_list_assets_filters(self, db, cursor):
        """Test the listing query."""
        cursor.fetchall.return_value = [make_row(make_record())]

        records = db.list_assets(category='product', limit=10)

        sql, params = cursor.execute.call_args[0]
        assert 'category = %s' in sql
        assert 'deleted_at IS NULL' in sql
        assert params == ['product', 10]
        assert records[0].id == 'asset-1'

    def test_update_asset(self, db, cursor):
        """Test a successful compare-and-set."""
        cursor.rowcount = 1
        cursor.fetchone.return_value = make_row(make_record(derivative_state=DerivativeState.PENDING))

        updated = db.update_asset('asset-1', {'derivative_state': DerivativeState.PENDING}, UPDATED_AT)

        sql, params = cursor.execute.call_args_list[0][0]
        assert sql.startswith('UPDATE assets SET derivative_state = %s, updated_at = %s')
        assert sql.endswith('WHERE id = %s AND updated_at = %s')
        assert params[0] == 'pending'
        assert params[-2:] == ['asset-1', UPDATED_AT]
        assert updated.derivative_state == DerivativeState.PENDING

    def test_update_serializes_derivative_set(self, db, cursor):
        """Test that the derivative set is stored as JSON."""
        cursor.rowcount = 1
        cursor.fetchone.return_value = make_row(make_record())
        descriptor = DerivativeDescriptor('small', 'thumbs/small/a.jpg', 150, 100, 10, 'jpeg')

        db.update_asset('asset-1', {'derivative_set': {'small': descriptor}}, UPDATED_AT)

        params = cursor.execute.call_args_list[0][0][1]
        assert json.loads(params[0])['small']['sizeName'] == 'small'

    def test_update_conflict(self, db, cursor):
        """Test that a stale updated_at raises ConcurrentModificationError."""
        cursor.rowcount = 0
        cursor.fetchone.return_value = make_row(make_record(updated_at=datetime(2026, 1, 5, 12, 0, 1)))

        with pytest.raises(ConcurrentModificationError):
            db.update_asset('asset-1', {'derivative_state': DerivativeState.PENDING}, UPDATED_AT)

    def test_update_missing(self, db, cursor):
        """Test that updating a missing asset raises RecordNotFoundError."""
        cursor.rowcount = 0
        cursor.fetchone.return_value = None

        with pytest.raises(RecordNotFoundError):
            db.update_asset('nope', {'description': 'x'}, UPDATED_AT)

    def test_update_rejects_protected_columns(self, db, cursor):
        """Test that id and timestamps cannot be set through update_asset."""
        with pytest.raises(ValueError):
            db.update_asset('asset-1', {'id': 'other'}, UPDATED_AT)

        cursor.execute.assert_not_called()

    def test_get_cursor_retries(self, mocker, connection):
        """Test that connection acquisition is retried on MySQL errors."""
        mocker.patch('retrying.time.sleep')
        pool = MagicMock()
        pool.get_connection.side_effect = [mysql.connector.Error('gone away'), connection]
        mocker.patch('assetflow.asset_db.pooling.MySQLConnectionPool', return_value=pool)
        db = AssetDb(DbConfig(pool_size=4))

        cursor, conn = db.get_cursor()

        assert conn is connection
        assert pool.get_connection.call_count == 2

    def test_connect_reports_failure(self, mocker):
        """Test that connect() returns False when the database is down."""
        mocker.patch('retrying.time.sleep')
        mocker.patch(
            'assetflow.asset_db.pooling.MySQLConnectionPool',
            side_effect=mysql.connector.Error('refused')
        )

        assert AssetDb(DbConfig(pool_size=4)).connect() is False
