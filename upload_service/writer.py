import os
import re
from pathlib import Path

from upload_service.config import settings
from upload_service.errors import StorageIOError, ValidationError

TEMP_DIR_NAME = "temp"
TEMP_SUFFIX = ".partial"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(name: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name)
    return cleaned or "upload"


def expected_length(index: int, total_size: int, chunk_size: int, total_chunks: int) -> int:
    if index < 0 or index >= total_chunks:
        raise ValidationError(f"chunk index {index} out of range [0, {total_chunks})")
    if index == total_chunks - 1:
        return total_size - index * chunk_size
    return chunk_size


class ChunkWriter:
    """Positional writer into one pre-sized temp file per session.

    Distinct indices land on disjoint byte ranges, so concurrent writers need
    no locking. Writing the same index twice with the same bytes is a no-op in
    effect.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.temp_root = self.root / TEMP_DIR_NAME
        self.temp_root.mkdir(parents=True, exist_ok=True)

    def temp_path(self, session_id: str) -> Path:
        return self.temp_root / f"{session_id}{TEMP_SUFFIX}"

    def final_path(self, session_id: str, filename: str) -> Path:
        return self.root / f"{session_id}_{sanitize_filename(filename)}"

    def open(self, session_id: str, total_size: int) -> Path:
        path = self.temp_path(session_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # "ab" creates without truncating an existing partial file.
            with open(path, "ab"):
                pass
            if path.stat().st_size != total_size:
                os.truncate(path, total_size)
        except OSError as exc:
            raise StorageIOError(f"failed to prepare temp file for {session_id}: {exc}") from exc
        return path

    def write_chunk(self, session_id: str, index: int, data: bytes, chunk_size: int, total_size: int) -> int:
        total_chunks = -(-total_size // chunk_size)
        expected = expected_length(index, total_size, chunk_size, total_chunks)
        if len(data) != expected:
            raise ValidationError(f"chunk {index} must be {expected} bytes, got {len(data)}")
        offset = index * chunk_size
        path = self.temp_path(session_id)
        try:
            with open(path, "r+b") as fh:
                fh.seek(offset)
                written = fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            raise StorageIOError(f"failed to write chunk {index} for {session_id}: {exc}") from exc
        if written != len(data):
            raise StorageIOError(f"short write for chunk {index}: {written} of {len(data)} bytes")
        return offset

    def publish(self, session_id: str, filename: str) -> Path:
        source = self.temp_path(session_id)
        target = self.final_path(session_id, filename)
        try:
            os.replace(source, target)
        except OSError as exc:
            raise StorageIOError(f"failed to publish {session_id}: {exc}") from exc
        return target

    def discard(self, session_id: str) -> bool:
        target = self.temp_path(session_id)
        if target.exists():
            target.unlink()
            return True
        return False

    def list_temp_session_ids(self, older_than: float | None = None) -> list[str]:
        if not self.temp_root.exists():
            return []
        session_ids: list[str] = []
        for path in self.temp_root.glob(f"*{TEMP_SUFFIX}"):
            if not path.is_file():
                continue
            if older_than is not None and path.stat().st_mtime >= older_than:
                continue
            session_ids.append(path.name[: -len(TEMP_SUFFIX)])
        return session_ids


def build_writer() -> ChunkWriter:
    return ChunkWriter(settings.storage_root)
