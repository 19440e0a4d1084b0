from __future__ import annotations

import logging
import time
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "chunk_upload_"
DEFAULT_MAX_AGE_SECONDS = 24 * 3600


class ChunkSnapshot(BaseModel):
    index: int
    status: str
    retries: int = 0


class SessionSnapshot(BaseModel):
    session_id: str
    filename: str
    total_size: int
    total_chunks: int
    chunk_size: int
    chunks: list[ChunkSnapshot] = Field(default_factory=list)
    saved_at: float = Field(default_factory=time.time)

    def succeeded_indices(self) -> set[int]:
        return {chunk.index for chunk in self.chunks if chunk.status == "success"}


class SnapshotStore:
    """Best-effort local persistence of scheduler state, one JSON file per session.

    Nothing here raises on I/O trouble: a broken snapshot only costs a
    fuller re-handshake.
    """

    def __init__(self, directory: str | Path, max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS) -> None:
        self.directory = Path(directory)
        self.max_age_seconds = max_age_seconds

    def path_for(self, session_id: str) -> Path:
        return self.directory / f"{SNAPSHOT_PREFIX}{session_id}.json"

    def save(self, snapshot: SessionSnapshot) -> bool:
        target = self.path_for(snapshot.session_id)
        tmp = target.with_suffix(".json.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text(snapshot.model_dump_json(), encoding="utf-8")
            tmp.replace(target)
        except OSError as exc:
            logger.warning("failed to save upload snapshot for %s: %s", snapshot.session_id, exc)
            return False
        return True

    def load(self, session_id: str) -> SessionSnapshot | None:
        target = self.path_for(session_id)
        try:
            raw = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("failed to read upload snapshot for %s: %s", session_id, exc)
            return None
        try:
            snapshot = SessionSnapshot.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("discarding unreadable upload snapshot for %s: %s", session_id, exc)
            self.clear(session_id)
            return None
        if time.time() - snapshot.saved_at > self.max_age_seconds:
            self.clear(session_id)
            return None
        return snapshot

    def clear(self, session_id: str) -> None:
        try:
            self.path_for(session_id).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("failed to clear upload snapshot for %s: %s", session_id, exc)
