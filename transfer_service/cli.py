"""
Command-line interface for the transfer service.
"""
import argparse
import json
import logging
import signal
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .cancellation import CancellationToken
from .errors import TransferError
from .models import ClientConfig, CopyRequest, RetryPolicy, TransferRequest, TransferResult
from .service import TransferService
from .tracker import TransferTracker

logger = logging.getLogger(__name__)

CLIENT_CONFIG_KEYS = {
    'endpoint_url', 'region_name', 'access_key_id', 'secret_access_key',
    'session_token', 'proxy_host', 'proxy_port', 'signer_override',
    'connect_timeout', 'read_timeout'
}
RETRY_CONFIG_KEYS = {'max_attempts', 'backoff_multiplier', 'backoff_min', 'backoff_max'}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        verbose: Whether to enable debug logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def load_config(config_file: Optional[Path] = None) -> dict:
    """Load configuration from a JSON file.

    Args:
        config_file: Path to config file

    Returns:
        Dictionary of configuration values

    Raises:
        ValueError: If the file cannot be read or is not valid JSON
    """
    if not config_file:
        return {}

    try:
        with open(config_file) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Error loading config file {config_file}: {e}") from e


def build_client_config(config: dict, args: argparse.Namespace) -> ClientConfig:
    values = {k: v for k, v in config.items() if k in CLIENT_CONFIG_KEYS}
    if getattr(args, 'endpoint_url', None):
        values['endpoint_url'] = args.endpoint_url
    if getattr(args, 'region', None):
        values['region_name'] = args.region
    return ClientConfig(**values)


def build_request(args: argparse.Namespace, config: dict, bucket: str, key_prefix: str = "",
                  local_path: Optional[str] = None) -> TransferRequest:
    """Create a transfer request from command line arguments and config values."""
    retry = RetryPolicy(**{k: v for k, v in config.items() if k in RETRY_CONFIG_KEYS})
    max_concurrency = getattr(args, 'concurrency', None) or config.get('max_concurrency', 10)
    return TransferRequest(
        bucket=bucket,
        key_prefix=key_prefix,
        local_path=Path(local_path) if local_path else None,
        client_config=build_client_config(config, args),
        max_concurrency=max_concurrency,
        retry=retry,
        multipart_threshold=config.get('multipart_threshold', 8 * 1024 * 1024),
        part_size=config.get('part_size', 8 * 1024 * 1024)
    )


def create_service(config: dict) -> TransferService:
    log_dir = config.get('log_dir')
    return TransferService(tracker=TransferTracker(Path(log_dir) if log_dir else None))


def install_interrupt_handler(token: CancellationToken) -> None:
    """Turn Ctrl-C into a cooperative cancellation of the running job."""
    def handler(signum, frame):
        logger.warning("Interrupted, cancelling transfer")
        token.cancel()

    signal.signal(signal.SIGINT, handler)


def report(result: TransferResult) -> int:
    print(f"Transferred {result.total_files} files, {result.total_bytes} bytes "
          f"in {result.elapsed_seconds:.2f}s")
    for outcome in result.failed:
        print(f"FAILED {outcome.local_path or outcome.key}: "
              f"{outcome.error_kind}: {outcome.error_message}")
    return 1 if result.failed else 0


def handle_upload(args: argparse.Namespace, service: TransferService, config: dict,
                  token: CancellationToken) -> int:
    request = build_request(args, config, args.bucket, args.key, args.source)
    source = Path(args.source)
    if source.is_dir():
        return report(service.upload_directory(request, token))
    return report(service.upload_file(request, token))


def handle_download(args: argparse.Namespace, service: TransferService, config: dict,
                    token: CancellationToken) -> int:
    request = build_request(args, config, args.bucket, args.key, args.destination)
    if args.recursive:
        return report(service.download_directory(request, token))
    return report(service.download_file(request, token))


def handle_list(args: argparse.Namespace, service: TransferService, config: dict,
                token: CancellationToken) -> int:
    request = build_request(args, config, args.bucket, args.prefix)
    for storage_file in service.list_directory(request, args.ignore_markers):
        print(f"{storage_file.file_size_bytes:>12}  {storage_file.file_path}")
    return 0


def handle_delete(args: argparse.Namespace, service: TransferService, config: dict,
                  token: CancellationToken) -> int:
    request = build_request(args, config, args.bucket, args.key)
    if args.recursive:
        service.delete_directory(request)
    else:
        service.delete_file(request)
    return 0


def handle_copy(args: argparse.Namespace, service: TransferService, config: dict,
                token: CancellationToken) -> int:
    retry = RetryPolicy(**{k: v for k, v in config.items() if k in RETRY_CONFIG_KEYS})
    request = CopyRequest(
        source_bucket=args.source_bucket,
        target_bucket=args.target_bucket,
        key=args.key,
        client_config=build_client_config(config, args),
        retry=retry
    )
    return report(service.copy_file(request, token))


def handle_mkdir(args: argparse.Namespace, service: TransferService, config: dict,
                 token: CancellationToken) -> int:
    service.create_directory(build_request(args, config, args.bucket, args.key))
    return 0


def handle_reap(args: argparse.Namespace, service: TransferService, config: dict,
                token: CancellationToken) -> int:
    request = build_request(args, config, args.bucket)
    threshold = datetime.now(timezone.utc) - timedelta(hours=args.older_than_hours)
    count = service.abort_stale_multipart_uploads(request, threshold)
    print(f"Aborted {count} multipart uploads")
    return 0


def handle_presign(args: argparse.Namespace, service: TransferService, config: dict,
                   token: CancellationToken) -> int:
    request = build_request(args, config, args.bucket)
    expiration = datetime.now(timezone.utc) + timedelta(seconds=args.expires_in)
    print(service.generate_presigned_get_url(args.bucket, args.key, expiration, request))
    return 0


HANDLERS = {
    'upload': handle_upload,
    'download': handle_download,
    'list': handle_list,
    'delete': handle_delete,
    'copy': handle_copy,
    'mkdir': handle_mkdir,
    'reap': handle_reap,
    'presign': handle_presign,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="S3 Transfer Service CLI")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="Enable verbose logging")
    parser.add_argument('-c', '--config', type=Path,
                        help="Path to config file")
    parser.add_argument('--endpoint-url', type=str,
                        help="Object store endpoint URL")
    parser.add_argument('--region', type=str,
                        help="Object store region")
    parser.add_argument('-j', '--concurrency', type=int,
                        help="Maximum concurrent network operations")

    subparsers = parser.add_subparsers(dest='command', required=True)

    upload_parser = subparsers.add_parser('upload', help="Upload a file or directory")
    upload_parser.add_argument('source', type=str, help="Local file or directory")
    upload_parser.add_argument('bucket', type=str, help="Destination bucket")
    upload_parser.add_argument('key', type=str, help="Target key or key prefix")

    download_parser = subparsers.add_parser('download', help="Download a key or prefix")
    download_parser.add_argument('bucket', type=str, help="Source bucket")
    download_parser.add_argument('key', type=str, help="Source key or key prefix")
    download_parser.add_argument('destination', type=str, help="Local file or directory")
    download_parser.add_argument('-r', '--recursive', action='store_true',
                                 help="Download every key under the prefix")

    list_parser = subparsers.add_parser('list', help="List keys under a prefix")
    list_parser.add_argument('bucket', type=str, help="Bucket")
    list_parser.add_argument('prefix', type=str, nargs='?', default="", help="Key prefix")
    list_parser.add_argument('--ignore-markers', action='store_true',
                             help="Hide zero-byte directory markers")

    delete_parser = subparsers.add_parser('delete', help="Delete a key or prefix")
    delete_parser.add_argument('bucket', type=str, help="Bucket")
    delete_parser.add_argument('key', type=str, help="Key or key prefix")
    delete_parser.add_argument('-r', '--recursive', action='store_true',
                               help="Delete every key under the prefix")

    copy_parser = subparsers.add_parser('copy', help="Copy a key between buckets")
    copy_parser.add_argument('source_bucket', type=str, help="Source bucket")
    copy_parser.add_argument('target_bucket', type=str, help="Target bucket")
    copy_parser.add_argument('key', type=str, help="Key to copy")

    mkdir_parser = subparsers.add_parser('mkdir', help="Create a directory marker")
    mkdir_parser.add_argument('bucket', type=str, help="Bucket")
    mkdir_parser.add_argument('key', type=str, help="Directory key")

    reap_parser = subparsers.add_parser('reap', help="Abort stale multipart uploads")
    reap_parser.add_argument('bucket', type=str, help="Bucket")
    reap_parser.add_argument('--older-than-hours', type=float, default=24,
                             help="Abort uploads started more than this many hours ago")

    presign_parser = subparsers.add_parser('presign', help="Generate a presigned GET URL")
    presign_parser.add_argument('bucket', type=str, help="Bucket")
    presign_parser.add_argument('key', type=str, help="Key")
    presign_parser.add_argument('--expires-in', type=int, default=3600,
                                help="Validity of the URL in seconds")

    return parser


def main(argv=None) -> None:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    token = CancellationToken()
    try:
        config = load_config(args.config)
        service = create_service(config)
        install_interrupt_handler(token)
        exit_code = HANDLERS[args.command](args, service, config, token)
    except (TransferError, ValueError) as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
