#!/usr/bin/env python3

import hmac
import json
import logging
import os
import threading
import time
from functools import lru_cache, wraps
from time import sleep

import mysql.connector
from bottle import Bottle

import settings
from assetflow.asset_db import AssetDb, DbConfig
from assetflow.asset_record import AssetRecord
from assetflow.credential_issuer import CredentialIssuer, sanitize_file_name
from assetflow.derivative_generator import DerivativeGenerator
from assetflow.errors import (
    AssetPipelineError,
    ConcurrentModificationError,
    InvalidStateError,
    RecordNotFoundError,
    TransientStorageError,
    UnsupportedMediaError,
    ValidationError,
)
from assetflow.event_ingress import EventIngress, StorageEvent
from assetflow.lifecycle import AssetLifecycle
from assetflow.local_client import LocalClient
from assetflow.promotion import PromotionService
from assetflow.s3_client import S3Client
from assetflow.size_spec import load_size_specs
from assetflow.storage_config import Location, LocalConfig, S3Config
from assetflow.thumbnail_generator import ThumbnailGenerator
from assetflow.tokens import TokenException, get_timestamp, validate_token
from category_definitions import DEFAULT_LIMITS, load_category_limits

app = application = Bottle()

# Configure logging
level = logging.getLevelName(settings.LOG_LEVEL)
logging.basicConfig(
    filename=settings.LOG_FILE,
    level=level,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger('assetflow.server')

from bottle import BaseRequest, HTTPResponse, abort, request, response, static_file

BaseRequest.MEMFILE_MAX = 300 * 1024 * 1024

MB = 1024 * 1024

# Exception type -> HTTP status, most specific first.
ERROR_STATUS = (
    (ValidationError, 400),
    (RecordNotFoundError, 404),
    (InvalidStateError, 409),
    (ConcurrentModificationError, 409),
    (UnsupportedMediaError, 415),
    (TransientStorageError, 503),
)


def log(msg):
    logger.debug(msg)


# --- Wiring ---------------------------------------------------------------------
@lru_cache(maxsize=None)
def get_asset_db():
    return AssetDb(DbConfig(
        host=settings.SQL_HOST,
        port=settings.SQL_PORT,
        user=settings.SQL_USER,
        password=settings.SQL_PASSWORD,
        database=settings.SQL_DATABASE,
        pool_size=settings.SQL_POOL_SIZE,
    ))


def is_local_storage():
    return settings.STORAGE_BACKEND == 'local'


@lru_cache(maxsize=None)
def get_object_store():
    if is_local_storage():
        os.makedirs(settings.LOCAL_ROOT, exist_ok=True)
        base_url = settings.PUBLIC_BASE_URL.rstrip('/')
        return LocalClient(LocalConfig(
            root_path=settings.LOCAL_ROOT,
            upload_base_url=base_url,
            public_base_url=f"{base_url}/static",
            signing_key=settings.KEY,
        ))

    config = S3Config.from_env()
    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid S3 configuration: {'; '.join(errors)}")
    return S3Client(config)


@lru_cache(maxsize=None)
def get_credential_issuer():
    return CredentialIssuer(
        get_object_store(),
        category_limits=load_category_limits(settings.FILE_SIZE_LIMITS),
        default_limits=DEFAULT_LIMITS,
        global_max_bytes=int(settings.GLOBAL_MAX_FILE_SIZE_MB * MB),
        expires_minutes=settings.SIGNED_URL_EXPIRES_MINUTES,
    )


def get_promotion_service():
    return PromotionService(get_asset_db(), get_object_store())


def get_lifecycle():
    return AssetLifecycle(get_asset_db())


@lru_cache(maxsize=None)
def get_derivative_generator():
    return DerivativeGenerator(
        get_object_store(),
        ThumbnailGenerator(),
        load_size_specs(),
        max_workers=settings.DERIVATIVE_MAX_WORKERS,
        timeout_seconds=settings.DERIVATIVE_TIMEOUT_SECONDS,
    )


@lru_cache(maxsize=None)
def get_event_ingress():
    store = get_object_store()
    return EventIngress(
        get_asset_db(),
        get_derivative_generator(),
        source_prefixes=settings.SOURCE_PREFIXES or [store.location_prefix(Location.PERMANENT)],
        source_buckets=settings.SOURCE_BUCKETS,
        derivative_prefix=store.location_prefix(Location.DERIVATIVE) + settings.DERIVATIVE_PREFIX,
        pending_timeout_seconds=settings.DERIVATIVE_TIMEOUT_SECONDS,
    )


# --- Request helpers ------------------------------------------------------------
def json_response(data, status=200):
    return HTTPResponse(
        body=json.dumps(data, indent=4, sort_keys=True),
        status=status,
        headers={'Content-Type': 'application/json'}
    )


def error_response(e, status):
    return json_response({'error': e.__class__.__name__, 'message': str(e)}, status)


def status_for(e):
    for error_type, status in ERROR_STATUS:
        if isinstance(e, error_type):
            return status
    return 500


def str2bool(value, raise_exc=False):
    """converts diverse string values into boolean True or False,
       replaces deprecated distutils and str2bool."""
    true_set = {'yes', 'true', 't', 'y', '1'}
    false_set = {'no', 'false', 'f', 'n', '0'}

    if isinstance(value, str):
        value = value.lower()
        if value in true_set:
            return True
        if value in false_set:
            return False

    if raise_exc:
        raise ValueError('Expected "%s"' % '", "'.join(true_set | false_set))
    return None


def json_body():
    """Request body as a dict; ValidationError unless it is a JSON object."""
    body = request.json
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def required_field(body, name):
    value = body.get(name)
    if value is None or value == '':
        raise ValidationError(f"{name} is required")
    return value


def int_field(body, name):
    value = required_field(body, name)
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None


def include_timestamp(func):
    """Decorate a view function to include the X-Timestamp header to help clients
    maintain time synchronization.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        result = func(*args, **kwargs)
        (result if isinstance(result, HTTPResponse) else response) \
            .set_header('X-Timestamp', str(get_timestamp()))
        return result
    return wrapper


def require_token(func):
    """Decorate a view function to require an auth token for the request path.
    The token is read from the 'token' query or form parameter and must be
    signed over request.path. Skipped when settings.KEY is unset.
    Automatically adds the X-Timestamp header to responses to help clients stay
    syncronized.
    """
    @include_timestamp
    @wraps(func)
    def wrapper(*args, **kwargs):
        token = request.query.token or request.forms.token
        try:
            validate_token(token, request.path, settings.KEY, settings.TIME_TOLERANCE)
        except TokenException as e:
            log(f"Rejected token for {request.path}: {e}")
            return HTTPResponse(
                body=f"403 - forbidden. Invalid token: '{token}'",
                status=403,
                headers={'Content-Type': 'text/plain; charset=utf-8'}
            )
        return func(*args, **kwargs)
    return wrapper


def json_api(func):
    """Decorate a view function to serialise its result as JSON and map
    pipeline errors onto HTTP status codes.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            result = func(*args, **kwargs)
        except AssetPipelineError as e:
            status = status_for(e)
            (logger.warning if status < 500 else logger.error)(f"{request.method} {request.path}: {e}")
            return error_response(e, status)
        except mysql.connector.Error as e:
            logger.error(f"{request.method} {request.path}: database error: {e}")
            return error_response(e, 503)
        if isinstance(result, HTTPResponse):
            return result
        return json_response(result)
    return wrapper


def record_json(record: AssetRecord):
    return record.to_dict(pending_timeout_seconds=settings.DERIVATIVE_TIMEOUT_SECONDS)


# --- Local finalize events ------------------------------------------------------
def emit_local_finalize(record: AssetRecord):
    """S3 notifies us of finalized objects; the local store does not, so
    deliver the equivalent event ourselves after a promotion.
    """
    store = get_object_store()
    key = store.object_key(Location.PERMANENT, record.permanent_path)
    event = StorageEvent(
        bucket='local',
        object_key=key,
        content_type=record.content_type,
        size_bytes=record.byte_size,
        event_id=f"local/{key}#{time.time_ns()}",
    )
    thread = threading.Thread(target=deliver_local_event, args=(event,), name='local-finalize', daemon=True)
    thread.start()
    return thread


def deliver_local_event(event: StorageEvent):
    try:
        outcome = get_event_ingress().handle_storage_event(event)
        logger.info(f"Local finalize {event.object_key}: {outcome.status.value} {outcome.reason}")
    except (AssetPipelineError, mysql.connector.Error) as e:
        logger.error(f"Local finalize {event.object_key} failed: {e}")


# --- Routes ---------------------------------------------------------------------
@app.route('/storage/upload-url', method='POST')
@require_token
@json_api
def upload_url():
    """Issue a signed staging write URL for a new upload."""
    body = json_body()
    credential = get_credential_issuer().issue_upload_credential(
        file_name=required_field(body, 'fileName'),
        content_type=required_field(body, 'contentType'),
        byte_size=int_field(body, 'fileSize'),
        category=required_field(body, 'category'),
        entity=body.get('entity'),
    )
    return credential.to_dict()


@app.route('/upload/<key:path>', method='PUT')
def staging_upload(key):
    """Receive a staged upload for the local object store. The signed URL
    handed out by /storage/upload-url carries the token.
    """
    if not is_local_storage():
        abort(404)
    store = get_object_store()
    try:
        store.verify_write_token(key, request.query.token)
    except TokenException as e:
        log(f"Rejected staging upload {key}: {e}")
        response.content_type = 'text/plain; charset=utf-8'
        response.status = 403
        return f"403 - forbidden. {e}"

    data = request.body.read()
    try:
        store.write(Location.STAGING, key, data, request.content_type or 'application/octet-stream')
    except TransientStorageError as e:
        logger.error(f"Staging upload {key} failed: {e}")
        abort(503, str(e))
    logger.info(f"Staged upload {key} ({len(data)} bytes)")
    response.content_type = 'text/plain; charset=utf-8'
    return 'Ok.'


@app.route('/assets', method='POST')
@require_token
@json_api
def create_asset():
    """Create the record for an upload that has reached staging."""
    body = json_body()
    store = get_object_store()
    issuer = get_credential_issuer()

    staging_path = str(required_field(body, 'stagingPath')).lstrip('/')
    staging_prefix = store.location_prefix(Location.STAGING)
    if staging_prefix and staging_path.startswith(staging_prefix):
        staging_path = staging_path[len(staging_prefix):]
    if '..' in staging_path.split('/') or staging_path.count('/') < 2:
        raise ValidationError(f"Invalid stagingPath: {body['stagingPath']}")

    content_type = required_field(body, 'contentType')
    byte_size = int_field(body, 'fileSize')
    category = required_field(body, 'category')
    issuer.validate(content_type, byte_size, category)
    if not store.exists(Location.STAGING, staging_path):
        raise ValidationError(f"No staged upload at {staging_path}")

    original_file_name = required_field(body, 'originalFileName')
    tags = body.get('tags') or []
    if not isinstance(tags, list):
        raise ValidationError("tags must be a list")

    record = get_asset_db().create_asset(AssetRecord(
        original_file_name=original_file_name,
        sanitized_file_name=sanitize_file_name(original_file_name),
        category=category,
        entity=sanitize_file_name(body.get('entity') or category),
        content_type=content_type,
        byte_size=byte_size,
        staging_path=staging_path,
        read_url=store.public_url(Location.PERMANENT, staging_path),
        uploaded_by=body.get('uploadedBy'),
        description=body.get('description'),
        tags=[str(tag) for tag in tags],
    ))
    return json_response(record_json(record), 201)


@app.route('/assets', method='GET')
@require_token
@json_api
def list_assets():
    try:
        limit = int(request.query.get('limit', '50'))
    except ValueError:
        raise ValidationError("limit must be an integer") from None
    records = get_asset_db().list_assets(
        category=request.query.get('category') or None,
        include_deleted=bool(str2bool(request.query.get('includeDeleted', 'false'))),
        limit=max(1, min(limit, 500)),
    )
    return {'assets': [record_json(record) for record in records]}


@app.route('/assets/<asset_id>', method='GET')
@require_token
@json_api
def get_asset(asset_id):
    return record_json(get_asset_db().get_asset(asset_id))


@app.route('/assets/<asset_id>/confirm-upload', method='POST')
@require_token
@json_api
def confirm_upload(asset_id):
    """Promote a staged asset to permanent storage."""
    record = get_promotion_service().promote(asset_id)
    if is_local_storage():
        emit_local_finalize(record)
    return record_json(record)


@app.route('/assets/<asset_id>', method='DELETE')
@require_token
@json_api
def delete_asset(asset_id):
    deleted_by = request.query.get('deletedBy')
    if not deleted_by:
        raise ValidationError("deletedBy is required")
    return record_json(get_lifecycle().soft_delete(asset_id, deleted_by))


@app.route('/assets/<asset_id>', method='PATCH')
@require_token
@json_api
def update_asset_metadata(asset_id):
    """Edit description and tags of a live asset."""
    return record_json(get_lifecycle().update_metadata(asset_id, json_body()))


@app.route('/assets/<asset_id>/restore', method='POST')
@require_token
@json_api
def restore_asset(asset_id):
    return record_json(get_lifecycle().restore(asset_id))


@app.route('/webhooks/storage-finalized', method='POST')
def storage_finalized():
    """Storage-finalize notification. Business outcomes are acknowledged with
    200 so the event source stops redelivering; transport failures return
    503 so it tries again.
    """
    if settings.WEBHOOK_SECRET:
        expected = f"Bearer {settings.WEBHOOK_SECRET}"
        if not hmac.compare_digest(request.get_header('Authorization', ''), expected):
            return json_response({'error': 'Unauthorized'}, 401)

    try:
        event = StorageEvent.from_request(json_body(), request.headers)
    except ValidationError as e:
        return error_response(e, 400)

    try:
        outcome = get_event_ingress().handle_storage_event(event)
    except (TransientStorageError, ConcurrentModificationError, mysql.connector.Error) as e:
        logger.error(f"Storage event {event.event_id} not processed, requesting redelivery: {e}")
        return error_response(e, 503)
    return json_response(outcome.to_dict())


@app.route('/static/<path:path>')
def static(path):
    """Serve permanent and derivative files for the local object store."""
    if not is_local_storage():
        abort(404)
    staging_prefix = get_object_store().location_prefix(Location.STAGING)
    if staging_prefix and path.startswith(staging_prefix):
        abort(404)
    return static_file(path, root=settings.LOCAL_ROOT)


@app.route('/health')
@include_timestamp
def health():
    response.content_type = 'text/plain; charset=utf-8'
    return 'ok'


if __name__ == '__main__':
    from bottle import run
    log("Starting up....")
    asset_db = get_asset_db()
    while asset_db.connect() is not True:
        sleep(5)
        log("Retrying db connection....")
    asset_db.create_tables()
    get_object_store()
    logger.info(f"running server on port {settings.PORT} ({settings.STORAGE_BACKEND} storage)...")

    run(app=application,
        host='0.0.0.0',
        port=settings.PORT,
        server=settings.SERVER,
        debug=settings.DEBUG_APP,
        reloader=settings.DEBUG_APP
    )

    log("Exiting.")
