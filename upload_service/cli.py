import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from upload_service.client.api import UploadApiClient
from upload_service.client.scheduler import ClientSessionStatus, UploadProgress, UploadScheduler
from upload_service.client.snapshot import SnapshotStore
from upload_service.client.throughput import format_bytes, format_duration, format_speed
from upload_service.config import UploadConfig, settings


def _progress_line(progress: UploadProgress) -> str:
    return (
        f"\r[{progress.status.value:>10}] {progress.percent:3d}% "
        f"{format_bytes(progress.bytes_uploaded)} / {format_bytes(progress.total_bytes)} "
        f"{format_speed(progress.speed)} eta {format_duration(progress.eta)}   "
    )


def _print_progress(progress: UploadProgress) -> None:
    sys.stderr.write(_progress_line(progress))
    sys.stderr.flush()


async def _upload(args: argparse.Namespace) -> int:
    config = UploadConfig(
        chunk_size=args.chunk_size_bytes,
        max_concurrency=args.concurrency,
        max_retries=args.max_retries,
        request_timeout_seconds=args.timeout,
    )
    async with UploadApiClient(args.base_url, timeout=config.request_timeout_seconds) as api:
        scheduler = UploadScheduler(
            api,
            args.path,
            config=config,
            snapshot_store=SnapshotStore(args.snapshot_dir, max_age_seconds=config.snapshot_max_age_seconds),
            on_progress=None if args.quiet else _print_progress,
        )
        result = await scheduler.run()
    if not args.quiet:
        sys.stderr.write("\n")

    print(
        json.dumps(
            {
                "session_id": result.session_id,
                "status": result.status.value,
                "hash": result.hash,
                "content_listing": result.content_listing,
                "error": result.error,
                "failed_indices": result.failed_indices,
            },
            indent=2,
        )
    )
    if result.status == ClientSessionStatus.completed:
        return 0
    if result.status == ClientSessionStatus.cancelled:
        return 130
    return 1


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("upload_service.main:app", host=args.host, port=args.port, log_level=args.log_level)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="upload-service", description="Resumable chunked upload service and client.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the upload API server.")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)
    serve.add_argument("--log-level", default="info")

    upload = subparsers.add_parser("upload", help="Upload a file, resuming a previous attempt if one exists.")
    upload.add_argument("path", type=Path, help="File to upload")
    upload.add_argument("--base-url", default="http://127.0.0.1:8000", help="API base URL")
    upload.add_argument("--chunk-size-bytes", type=int, default=settings.chunk_size_bytes)
    upload.add_argument("--concurrency", type=int, default=3, help="Parallel chunk uploads")
    upload.add_argument("--max-retries", type=int, default=3, help="Retries per chunk on transient failures")
    upload.add_argument("--timeout", type=float, default=60.0, help="Per-request timeout in seconds")
    upload.add_argument(
        "--snapshot-dir",
        type=Path,
        default=Path.home() / ".upload-service",
        help="Where local resume snapshots are kept",
    )
    upload.add_argument("--quiet", action="store_true", help="Do not print the progress line")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        return _serve(args)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    return asyncio.run(_upload(args))


if __name__ == "__main__":
    raise SystemExit(main())
