from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from upload_service.config import settings
from upload_service.errors import Conflict, Incomplete, StorageIOError, ValidationError
from upload_service.ledger import SessionLedger
from upload_service.logs import audit_event, log_event
from upload_service.metrics import (
    bytes_received_total,
    chunk_write_failures_total,
    chunk_write_latency_seconds,
    chunks_received_total,
    duplicate_chunks_total,
    finalize_duration_seconds,
    finalize_total,
    sessions_created_total,
    sessions_resumed_total,
    sessions_swept_total,
)
from upload_service.models import SessionStatus, UploadSession, utc_now
from upload_service.pipeline import InspectionPipeline
from upload_service.tracing import session_span
from upload_service.writer import ChunkWriter

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")

# Held for the duration of a sweep; a second caller skips instead of waiting.
_sweep_lock = threading.Lock()


@dataclass(frozen=True)
class HandshakeResult:
    session: UploadSession
    received_indices: list[int]
    created: bool


@dataclass(frozen=True)
class ChunkOutcome:
    index: int
    duplicate: bool


@dataclass(frozen=True)
class FinalizeResult:
    status: str
    hash: str
    content_listing: list[str]
    replayed: bool = False


@dataclass(frozen=True)
class StatusView:
    session: UploadSession
    received_indices: list[int]


@dataclass
class SweepStats:
    sessions_deleted: int = 0
    temp_files_deleted: int = 0
    orphan_temp_files_deleted: int = 0
    skipped: bool = False
    deleted_session_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "sessions_deleted": self.sessions_deleted,
            "temp_files_deleted": self.temp_files_deleted,
            "orphan_temp_files_deleted": self.orphan_temp_files_deleted,
            "skipped": self.skipped,
        }


def validate_session_id(session_id: str) -> None:
    if not SESSION_ID_PATTERN.match(session_id or ""):
        raise ValidationError("session_id must be 1-64 characters of [A-Za-z0-9_.-]")


def _check_parameters(upload: UploadSession, total_size: int, total_chunks: int, chunk_size: int) -> None:
    if (upload.total_size, upload.total_chunks, upload.chunk_size) != (total_size, total_chunks, chunk_size):
        raise Conflict("session exists with different size or chunking parameters")


class SessionOrchestrator:
    """Handshake, chunk, status and finalize operations over one ledger."""

    def __init__(
        self,
        ledger: SessionLedger,
        writer: ChunkWriter,
        pipeline: InspectionPipeline,
        default_chunk_size: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.writer = writer
        self.pipeline = pipeline
        self.default_chunk_size = default_chunk_size or settings.chunk_size_bytes

    def handshake(
        self,
        session_id: str,
        filename: str,
        total_size: int,
        total_chunks: int,
        chunk_size: int | None = None,
    ) -> HandshakeResult:
        validate_session_id(session_id)
        chunk_size = chunk_size or self.default_chunk_size
        if not filename:
            raise ValidationError("filename must not be empty")
        if total_size <= 0:
            raise ValidationError("total_size must be positive")
        if chunk_size < settings.min_chunk_size_bytes or chunk_size > settings.max_chunk_size_bytes:
            raise ValidationError(
                f"chunk_size must be between {settings.min_chunk_size_bytes} and {settings.max_chunk_size_bytes}"
            )
        expected_chunks = -(-total_size // chunk_size)
        if total_chunks != expected_chunks:
            raise ValidationError(
                f"total_chunks must be {expected_chunks} for total_size={total_size} and chunk_size={chunk_size}"
            )

        existing = self.ledger.find_session(session_id)
        if existing is not None:
            _check_parameters(existing, total_size, total_chunks, chunk_size)

        upload, received, created = self.ledger.create_or_get_session(
            session_id, filename, total_size, total_chunks, chunk_size
        )
        if not created:
            # A concurrent handshake may have created the row between the lookup and the insert.
            _check_parameters(upload, total_size, total_chunks, chunk_size)
        if upload.status == SessionStatus.uploading.value:
            self.writer.open(session_id, upload.total_size)
        if created:
            sessions_created_total.inc()
        else:
            sessions_resumed_total.inc()
        audit_event(
            {
                "event": "audit",
                "action": "session_handshake",
                "session_id": session_id,
                "status": upload.status,
                "total_size": upload.total_size,
                "total_chunks": upload.total_chunks,
                "received_count": len(received),
                "resumed": not created,
            }
        )
        return HandshakeResult(session=upload, received_indices=received, created=created)

    def upload_chunk(self, session_id: str, index: int, data: bytes) -> ChunkOutcome:
        upload = self.ledger.get_session(session_id)
        if index < 0 or index >= upload.total_chunks:
            raise ValidationError(f"chunk index {index} out of range [0, {upload.total_chunks})")

        if upload.status != SessionStatus.uploading.value:
            return self._not_accepting(upload, index)

        # The temp file is created by handshake only; a chunk never recreates it.
        start = time.perf_counter()
        with session_span("upload.chunk_write", session_id, chunk_index=index, chunk_bytes=len(data)):
            try:
                self.writer.write_chunk(session_id, index, data, upload.chunk_size, upload.total_size)
            except StorageIOError:
                if not self.writer.temp_path(session_id).exists():
                    # Finalize published the file after our status read.
                    current = self.ledger.get_session(session_id)
                    if current.status != SessionStatus.uploading.value:
                        return self._not_accepting(current, index)
                chunk_write_failures_total.inc()
                raise
        chunk_write_latency_seconds.observe(time.perf_counter() - start)
        bytes_received_total.inc(len(data))

        transitioned = self.ledger.mark_chunk_received(session_id, index)
        if transitioned:
            chunks_received_total.inc()
        else:
            duplicate_chunks_total.inc()
        return ChunkOutcome(index=index, duplicate=not transitioned)

    def _not_accepting(self, upload: UploadSession, index: int) -> ChunkOutcome:
        if self.ledger.is_chunk_received(upload.id, index):
            duplicate_chunks_total.inc()
            return ChunkOutcome(index=index, duplicate=True)
        raise Conflict(f"session is {upload.status} and not accepting chunks")

    def status(self, session_id: str) -> StatusView:
        upload = self.ledger.get_session(session_id)
        return StatusView(session=upload, received_indices=self.ledger.received_indices(session_id))

    def finalize(self, session_id: str) -> FinalizeResult:
        for _ in range(max(1, settings.max_finalize_attempts)):
            upload = self.ledger.get_session(session_id)
            if upload.status == SessionStatus.completed.value:
                finalize_total.labels(outcome="replayed").inc()
                return FinalizeResult(
                    status=upload.status,
                    hash=upload.final_hash or "",
                    content_listing=list(upload.content_listing or []),
                    replayed=True,
                )
            if upload.status == SessionStatus.processing.value:
                finalize_total.labels(outcome="conflict").inc()
                raise Conflict("finalize already in progress for this session")

            pending = self.ledger.count_pending(session_id)
            if pending > 0:
                finalize_total.labels(outcome="incomplete").inc()
                raise Incomplete(pending)

            if self.ledger.transition_status(session_id, SessionStatus(upload.status), SessionStatus.processing):
                return self._run_finalize(upload)
            # Lost the race; the next pass sees the winner's status.

        finalize_total.labels(outcome="conflict").inc()
        raise Conflict("session status kept changing during finalize")

    def _run_finalize(self, upload: UploadSession) -> FinalizeResult:
        session_id = upload.id
        temp_path = self.writer.temp_path(session_id)
        start = time.perf_counter()
        with session_span("upload.finalize", session_id, total_size=upload.total_size):
            try:
                digest = self.pipeline.hash(temp_path)
                listing = self.pipeline.peek(temp_path)
                published = self.writer.publish(session_id, upload.filename)
            except Exception as exc:
                reason = exc.detail if isinstance(exc, StorageIOError) else f"{type(exc).__name__}: {exc}"
                self.ledger.record_failure(session_id, reason)
                finalize_total.labels(outcome="failed").inc()
                log_event(
                    {
                        "event": "finalize_failed",
                        "session_id": session_id,
                        "detail": reason,
                        "error_class": "storage_error",
                    }
                )
                raise StorageIOError(f"finalize failed: {reason}") from exc

            if not self.ledger.record_completion(session_id, digest, listing):
                # Only the CAS winner runs this; losing here means the sweep removed the session.
                finalize_total.labels(outcome="failed").inc()
                raise StorageIOError("session left PROCESSING while finalizing")

        finalize_duration_seconds.observe(time.perf_counter() - start)
        finalize_total.labels(outcome="completed").inc()
        audit_event(
            {
                "event": "audit",
                "action": "session_finalize",
                "session_id": session_id,
                "status": SessionStatus.completed.value,
                "hash": digest,
                "entries": len(listing),
                "published_path": str(published),
            }
        )
        return FinalizeResult(status=SessionStatus.completed.value, hash=digest, content_listing=listing)

    def sweep(self, now: datetime | None = None, ttl_seconds: int | None = None) -> SweepStats:
        if not _sweep_lock.acquire(blocking=False):
            return SweepStats(skipped=True)
        try:
            with session_span("upload.sweep"):
                return self._sweep_locked(now or utc_now(), ttl_seconds or settings.stale_session_ttl_seconds)
        finally:
            _sweep_lock.release()

    def _sweep_locked(self, now: datetime, ttl_seconds: int) -> SweepStats:
        stats = SweepStats()
        cutoff = now - timedelta(seconds=ttl_seconds)
        for upload in self.ledger.stale_sessions(cutoff):
            session_id = upload.id
            if not self.ledger.delete_session(session_id):
                continue
            stats.sessions_deleted += 1
            stats.deleted_session_ids.append(session_id)
            try:
                if self.writer.discard(session_id):
                    stats.temp_files_deleted += 1
            except OSError as exc:
                log_event(
                    {
                        "event": "sweep_error",
                        "session_id": session_id,
                        "detail": str(exc),
                        "error_class": "maintenance_error",
                    }
                )

        # A COMPLETED session has already published its data, so any temp file under its id is leftover.
        known = self.ledger.all_session_ids(exclude_status=SessionStatus.completed)
        # The age filter keeps a handshake that is creating its temp file right now out of reach.
        for session_id in self.writer.list_temp_session_ids(older_than=cutoff.timestamp()):
            if session_id in known:
                continue
            try:
                if self.writer.discard(session_id):
                    stats.orphan_temp_files_deleted += 1
            except OSError as exc:
                log_event(
                    {
                        "event": "sweep_error",
                        "session_id": session_id,
                        "detail": str(exc),
                        "error_class": "maintenance_error",
                    }
                )

        sessions_swept_total.inc(stats.sessions_deleted)
        audit_event({"event": "audit", "action": "orphan_sweep", **stats.as_dict()})
        return stats
