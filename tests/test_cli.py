from pathlib import Path

from upload_service.cli import _progress_line, build_parser
from upload_service.client.scheduler import ClientSessionStatus, UploadProgress


def test_upload_arguments() -> None:
    args = build_parser().parse_args(["upload", "big.zip", "--concurrency", "5", "--chunk-size-bytes", "1024"])
    assert args.command == "upload"
    assert args.path == Path("big.zip")
    assert args.concurrency == 5
    assert args.chunk_size_bytes == 1024


def test_serve_arguments() -> None:
    args = build_parser().parse_args(["serve", "--port", "9000"])
    assert args.command == "serve"
    assert args.port == 9000


def test_progress_line() -> None:
    progress = UploadProgress(
        session_id="upload_x",
        status=ClientSessionStatus.uploading,
        percent=50,
        bytes_uploaded=1024,
        total_bytes=2048,
        speed=512.0,
        eta=2.0,
        chunks=(),
    )
    line = _progress_line(progress)
    assert "50%" in line
    assert "1 KB / 2 KB" in line
    assert "512 B/s" in line
    assert "eta 2s" in line
