"""
Command Line Interface for operating the asset pipeline.
"""

import argparse
import json
import logging
import os
from typing import List, Optional

import mysql.connector
import urllib3

from .asset_db import AssetDb, DbConfig
from .derivative_generator import DerivativeGenerator
from .errors import AssetPipelineError
from .event_ingress import EventIngress, OutcomeStatus, StorageEvent
from .local_client import LocalClient
from .s3_client import S3Client
from .size_spec import load_size_specs
from .storage_config import Location, LocalConfig, S3Config
from .thumbnail_generator import ThumbnailGenerator


def setup_logging(verbose: bool) -> logging.Logger:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    return logging.getLogger('assetflow')


def get_s3_config(args: argparse.Namespace) -> S3Config:
    """Get S3 configuration from environment and CLI overrides."""
    config = S3Config.from_env()

    if getattr(args, 's3_endpoint', None):
        config.endpoint = args.s3_endpoint
    if getattr(args, 's3_bucket', None):
        config.bucket = args.s3_bucket
    if getattr(args, 's3_access_key', None):
        config.access_key = args.s3_access_key
    if getattr(args, 's3_secret_key', None):
        config.secret_key = args.s3_secret_key

    return config


def get_storage_client(args: argparse.Namespace, logger: logging.Logger):
    """
    Get the object store selected by the arguments.

    Raises:
        ValueError: configuration is incomplete
    """
    local_root = getattr(args, 'local_root', None)

    if local_root:
        config = LocalConfig(root_path=local_root)
        client_class = LocalClient
    else:
        config = get_s3_config(args)
        client_class = S3Client

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(error)
        raise ValueError("Storage configuration invalid")
    return client_class(config, logger)


def get_derivative_generator(args: argparse.Namespace, client, logger: logging.Logger) -> DerivativeGenerator:
    return DerivativeGenerator(
        client,
        ThumbnailGenerator(logger),
        load_size_specs(),
        max_workers=args.workers,
        timeout_seconds=args.timeout,
        logger=logger,
    )


def add_storage_arguments(parser: argparse.ArgumentParser) -> None:
    """Add storage configuration arguments to a parser."""
    local_group = parser.add_argument_group('Local Storage')
    local_group.add_argument('--local-root', metavar='PATH',
                             help='Use local filesystem instead of S3')

    s3_group = parser.add_argument_group('S3 Storage')
    s3_group.add_argument('--s3-endpoint', help='Override S3_ENDPOINT')
    s3_group.add_argument('--s3-bucket', help='Override S3_BUCKET')
    s3_group.add_argument('--s3-access-key', help='Override S3_ACCESS_KEY')
    s3_group.add_argument('--s3-secret-key', help='Override S3_SECRET_KEY')


def add_generation_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--workers', type=int,
                        default=int(os.getenv('DERIVATIVE_MAX_WORKERS', '4')),
                        help='Concurrent sizes (default: DERIVATIVE_MAX_WORKERS or 4)')
    parser.add_argument('--timeout', type=float,
                        default=float(os.getenv('DERIVATIVE_TIMEOUT_SECONDS', '120')),
                        help='Generation deadline in seconds (default: DERIVATIVE_TIMEOUT_SECONDS or 120)')


def cmd_sizes(args: argparse.Namespace) -> int:
    """Print the effective size table."""
    setup_logging(args.verbose)
    try:
        specs = load_size_specs()
    except ValueError as e:
        print(f"Invalid size table: {e}")
        return 1

    print(f"{'NAME':<10} {'WIDTH':>6} {'HEIGHT':>6} {'FORMAT':<6} {'QUALITY':>7}  ENABLED")
    for spec in specs:
        print(
            f"{spec.name:<10} {spec.max_width:>6} {spec.max_height:>6} "
            f"{spec.output_format:<6} {spec.output_quality:>7}  {'yes' if spec.enabled else 'no'}"
        )
    return 0


def cmd_regenerate(args: argparse.Namespace) -> int:
    """Run the derivative generator for one permanent object."""
    logger = setup_logging(args.verbose)
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    try:
        client = get_storage_client(args, logger)
        generator = get_derivative_generator(args, client, logger)
    except ValueError as e:
        logger.error(str(e))
        return 1

    if args.dry_run:
        for size, key in generator.plan(args.path).items():
            print(f"[DRY RUN] {size}: {client.object_key(Location.DERIVATIVE, key)}")
        return 0

    try:
        result = generator.generate_derivatives(args.path)
    except AssetPipelineError as e:
        logger.error(f"Regeneration failed for {args.path}: {e}")
        return 1

    print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
    return 0 if result.succeeded else 1


def cmd_ingest(args: argparse.Namespace) -> int:
    """Replay a storage event through the event ingress."""
    logger = setup_logging(args.verbose)
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    headers = {'ce-id': args.event_id} if args.event_id else {}
    body = {'bucket': args.bucket, 'name': args.name, 'contentType': args.content_type or ''}

    try:
        event = StorageEvent.from_request(body, headers)
        client = get_storage_client(args, logger)
        ingress = EventIngress(
            AssetDb(DbConfig.from_env(), logger),
            get_derivative_generator(args, client, logger),
            source_prefixes=args.source_prefix or [client.location_prefix(Location.PERMANENT)],
            source_buckets=args.source_bucket or (),
            derivative_prefix=client.location_prefix(Location.DERIVATIVE) + 'thumbs/',
            logger=logger,
        )
        outcome = ingress.handle_storage_event(event)
    except (AssetPipelineError, ValueError, mysql.connector.Error) as e:
        logger.error(f"Ingest failed for {args.bucket}/{args.name}: {e}")
        return 1

    print(json.dumps(outcome.to_dict(), indent=2, sort_keys=True))
    return 1 if outcome.status == OutcomeStatus.FAILED else 0


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the asset table."""
    logger = setup_logging(args.verbose)
    asset_db = AssetDb(DbConfig.from_env(), logger)
    try:
        asset_db.create_tables()
    except mysql.connector.Error as e:
        logger.error(f"Failed to create tables: {e}")
        return 1
    logger.info("Tables created")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog='assetflow',
        description='Operations tool for the asset upload and derivative pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m assetflow sizes
  python -m assetflow regenerate --path product/202601/photo.jpg --dry-run
  python -m assetflow ingest --bucket assets --name uploads/product/202601/photo.jpg
  python -m assetflow init-db

Storage options:
  Use --local-root for local filesystem, or S3 environment variables for S3.
"""
    )

    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    sizes_parser = subparsers.add_parser('sizes', help='Print the effective derivative size table')
    sizes_parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    regen_parser = subparsers.add_parser('regenerate', help='Generate derivatives for one permanent object')
    regen_parser.add_argument('-p', '--path', required=True, help='Key relative to the permanent location')
    regen_parser.add_argument('-n', '--dry-run', action='store_true', help='Show the keys that would be written')
    regen_parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    add_generation_arguments(regen_parser)
    add_storage_arguments(regen_parser)

    ingest_parser = subparsers.add_parser('ingest', help='Replay a storage-finalize event')
    ingest_parser.add_argument('--bucket', required=True, help='Bucket of the finalized object')
    ingest_parser.add_argument('--name', required=True, help='Full object key')
    ingest_parser.add_argument('--content-type', help='Content type of the object')
    ingest_parser.add_argument('--event-id', help='Event id (default: bucket/name)')
    ingest_parser.add_argument('--source-prefix', action='append', help='Source prefix(es) to watch')
    ingest_parser.add_argument('--source-bucket', action='append', help='Bucket(s) to watch')
    ingest_parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    add_generation_arguments(ingest_parser)
    add_storage_arguments(ingest_parser)

    init_parser = subparsers.add_parser('init-db', help='Create the asset table')
    init_parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    commands = {
        'sizes': cmd_sizes,
        'regenerate': cmd_regenerate,
        'ingest': cmd_ingest,
        'init-db': cmd_init_db,
    }
    return commands[parsed_args.command](parsed_args)
