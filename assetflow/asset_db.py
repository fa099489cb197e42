"""
AssetDb - MySQL-backed store for asset records.

Every mutation after creation is a compare-and-set on updated_at, so two
writers racing on the same asset cannot silently overwrite each other.
"""

import configparser
import json
import logging
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import mysql.connector
from mysql.connector import pooling
from retrying import retry

from .asset_record import (
    AssetRecord,
    DerivativeDescriptor,
    DerivativeState,
    LifecycleState,
    utcnow,
)
from .errors import ConcurrentModificationError, RecordNotFoundError

MAX_POOL_SIZE = 32

TABLES = {
    'assets': (
        "CREATE TABLE IF NOT EXISTS `assets` ("
        "  id CHAR(36) NOT NULL PRIMARY KEY,"
        "  original_file_name VARCHAR(500) NOT NULL,"
        "  sanitized_file_name VARCHAR(200) NOT NULL,"
        "  category VARCHAR(50) NOT NULL,"
        "  entity VARCHAR(100) NOT NULL,"
        "  content_type VARCHAR(200) NOT NULL,"
        "  byte_size BIGINT NOT NULL,"
        "  staging_path VARCHAR(1000) NOT NULL DEFAULT '',"
        "  permanent_path VARCHAR(1000) NOT NULL DEFAULT '',"
        "  read_url VARCHAR(2000) NOT NULL DEFAULT '',"
        "  lifecycle_state VARCHAR(20) NOT NULL,"
        "  derivative_state VARCHAR(20) NOT NULL,"
        "  derivative_error TEXT,"
        "  derivative_set TEXT,"
        "  derivative_event_id VARCHAR(500),"
        "  derivative_started_at DATETIME(6),"
        "  derivative_generated_at DATETIME(6),"
        "  uploaded_by VARCHAR(200),"
        "  description TEXT,"
        "  tags TEXT,"
        "  created_at DATETIME(6) NOT NULL,"
        "  updated_at DATETIME(6) NOT NULL,"
        "  deleted_at DATETIME(6),"
        "  deleted_by VARCHAR(200),"
        "  INDEX idx_assets_permanent_path (permanent_path(255)),"
        "  INDEX idx_assets_category (category)"
        ") ENGINE=InnoDB"
    )
}

COLUMNS = (
    'id', 'original_file_name', 'sanitized_file_name', 'category', 'entity',
    'content_type', 'byte_size', 'staging_path', 'permanent_path', 'read_url',
    'lifecycle_state', 'derivative_state', 'derivative_error', 'derivative_set',
    'derivative_event_id', 'derivative_started_at', 'derivative_generated_at',
    'uploaded_by', 'description', 'tags', 'created_at', 'updated_at',
    'deleted_at', 'deleted_by',
)

# Columns a caller may change through update_asset.
UPDATABLE_COLUMNS = frozenset(COLUMNS) - {'id', 'created_at', 'updated_at'}

SELECT_ASSETS = f"SELECT {', '.join(COLUMNS)} FROM assets"


def init_pool_size(ini_path: str = "./uwsgi.ini") -> int:
    """Pool size from uwsgi workers * threads, capped at the connector's maximum."""
    config = configparser.ConfigParser()
    config.read(ini_path)
    workers = int(config.get("uwsgi", "workers", fallback=4))
    threads = int(config.get("uwsgi", "threads", fallback=8))
    return min(workers * threads, MAX_POOL_SIZE)


@dataclass
class DbConfig:
    """MySQL connection settings."""
    host: str = 'localhost'
    port: int = 3306
    user: str = 'root'
    password: str = ''
    database: str = 'assets'
    pool_size: Optional[int] = None

    @classmethod
    def from_env(cls) -> 'DbConfig':
        pool_size = os.getenv('SQL_POOL_SIZE')
        return cls(
            host=os.getenv('SQL_HOST', 'localhost'),
            port=int(os.getenv('SQL_PORT', '3306')),
            user=os.getenv('SQL_USER', 'root'),
            password=os.getenv('SQL_PASSWORD', ''),
            database=os.getenv('SQL_DATABASE', 'assets'),
            pool_size=int(pool_size) if pool_size else None,
        )


def _to_column(name: str, value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if name == 'derivative_set':
        return json.dumps({size: d.to_dict() for size, d in (value or {}).items()}, sort_keys=True)
    if name == 'tags':
        return json.dumps(list(value or []))
    return value


def _row_to_record(row: Dict[str, Any]) -> AssetRecord:
    derivative_set = {
        size: DerivativeDescriptor.from_dict(data)
        for size, data in json.loads(row['derivative_set'] or '{}').items()
    }
    return AssetRecord(
        id=row['id'],
        original_file_name=row['original_file_name'],
        sanitized_file_name=row['sanitized_file_name'],
        category=row['category'],
        entity=row['entity'],
        content_type=row['content_type'],
        byte_size=int(row['byte_size']),
        staging_path=row['staging_path'] or '',
        permanent_path=row['permanent_path'] or '',
        read_url=row['read_url'] or '',
        lifecycle_state=LifecycleState(row['lifecycle_state']),
        derivative_state=DerivativeState(row['derivative_state']),
        derivative_error=row['derivative_error'],
        derivative_set=derivative_set,
        derivative_event_id=row['derivative_event_id'],
        derivative_started_at=row['derivative_started_at'],
        derivative_generated_at=row['derivative_generated_at'],
        uploaded_by=row['uploaded_by'],
        description=row['description'],
        tags=json.loads(row['tags'] or '[]'),
        created_at=row['created_at'],
        updated_at=row['updated_at'],
        deleted_at=row['deleted_at'],
        deleted_by=row['deleted_by'],
    )


class AssetDb:
    def __init__(self, config: DbConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.pool_size = config.pool_size or init_pool_size()
        self.connection_pool = None

    def initialize_pool(self):
        """
        Initialize the connection pool lazily if it hasn't been created yet.
        """
        if not self.connection_pool:
            self.logger.info("Initializing connection pool...")
            try:
                self.connection_pool = pooling.MySQLConnectionPool(
                    pool_name="asset_db_pool",
                    pool_size=self.pool_size,
                    user=self.config.user,
                    password=self.config.password,
                    host=self.config.host,
                    port=self.config.port,
                    database=self.config.database,
                )
                self.logger.info("Connection pool initialized.")
            except mysql.connector.Error as err:
                self.logger.error(f"Failed to initialize connection pool: {err}")
                raise

    @retry(retry_on_exception=lambda e: isinstance(e, mysql.connector.Error), stop_max_attempt_number=3, wait_exponential_multiplier=1000)
    def get_cursor(self):
        """
        Get a connection from the pool and create a cursor.
        """
        try:
            self.initialize_pool()
            connection = self.connection_pool.get_connection()
            return connection.cursor(buffered=True, dictionary=True), connection
        except mysql.connector.Error as e:
            self.logger.warning(f"Error getting cursor: {e}")
            raise

    def close_connection(self, connection):
        """
        Return a connection to the pool.
        """
        if connection:
            try:
                connection.close()
            except mysql.connector.Error as e:
                self.logger.warning(f"Error closing connection: {e}")

    @contextmanager
    def cursor(self):
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            yield cursor, connection
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

    def connect(self) -> bool:
        """Return True once the database answers; used to wait at startup."""
        try:
            with self.cursor() as (cursor, _):
                cursor.execute("SELECT 1")
            return True
        except mysql.connector.Error as e:
            self.logger.warning(f"Database not reachable: {e}")
            return False

    def create_tables(self):
        """
        Create the required database tables if they do not exist.
        """
        with self.cursor() as (cursor, connection):
            for table_name, table_description in TABLES.items():
                self.logger.info(f"Creating table {table_name}...")
                cursor.execute(table_description)
            connection.commit()

    def create_asset(self, record: AssetRecord) -> AssetRecord:
        """Insert a new record; assigns id and timestamps."""
        now = utcnow()
        record = record.copy(id=str(uuid.uuid4()), created_at=now, updated_at=now)
        record.validate()
        values = [_to_column(name, getattr(record, name)) for name in COLUMNS]
        sql = (
            f"INSERT INTO assets ({', '.join(COLUMNS)}) "
            f"VALUES ({', '.join(['%s'] * len(COLUMNS))})"
        )
        with self.cursor() as (cursor, connection):
            cursor.execute(sql, values)
            connection.commit()
        self.logger.info(f"Created asset {record.id} staged at {record.staging_path}")
        return record

    def get_asset(self, asset_id: str, include_deleted: bool = True) -> AssetRecord:
        with self.cursor() as (cursor, _):
            cursor.execute(f"{SELECT_ASSETS} WHERE id = %s", (asset_id,))
            row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"Asset not found: {asset_id}")
        record = _row_to_record(row)
        if not include_deleted and record.is_deleted:
            raise RecordNotFoundError(f"Asset not found: {asset_id}")
        return record

    def find_by_permanent_path(self, permanent_path: str) -> Optional[AssetRecord]:
        """Record whose permanent copy lives at permanent_path, or None."""
        with self.cursor() as (cursor, _):
            cursor.execute(
                f"{SELECT_ASSETS} WHERE permanent_path = %s ORDER BY created_at LIMIT 1",
                (permanent_path,)
            )
            row = cursor.fetchone()
        return _row_to_record(row) if row else None

    def list_assets(
        self,
        category: Optional[str] = None,
        include_deleted: bool = False,
        limit: int = 50
    ) -> List[AssetRecord]:
        clauses, params = [], []
        if category:
            clauses.append("category = %s")
            params.append(category)
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        with self.cursor() as (cursor, _):
            cursor.execute(f"{SELECT_ASSETS}{where} ORDER BY created_at DESC LIMIT %s", params)
            rows = cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    def update_asset(self, asset_id: str, fields: Dict[str, Any], expected_updated_at) -> AssetRecord:
        """
        Apply a partial update if the row still carries expected_updated_at.

        Raises:
            ConcurrentModificationError: the row changed since it was read
            RecordNotFoundError: no such asset
        """
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")

        names = sorted(fields)
        assignments = ', '.join(f"{name} = %s" for name in names)
        params = [_to_column(name, fields[name]) for name in names]
        params.extend([utcnow(), asset_id, expected_updated_at])
        sql = f"UPDATE assets SET {assignments}, updated_at = %s WHERE id = %s AND updated_at = %s"

        with self.cursor() as (cursor, connection):
            cursor.execute(sql, params)
            matched = cursor.rowcount
            connection.commit()

        if matched == 0:
            current = self.get_asset(asset_id)
            raise ConcurrentModificationError(
                f"Asset {asset_id} changed concurrently "
                f"(expected updated_at {expected_updated_at}, found {current.updated_at})"
            )
        return self.get_asset(asset_id)
