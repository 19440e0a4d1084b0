from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from upload_service.errors import NotFound
from upload_service.models import (
    SWEEPABLE_STATUSES,
    ChunkRecord,
    ChunkStatus,
    SessionStatus,
    UploadSession,
    is_legal_transition,
    utc_now,
)


class SessionLedger:
    """Durable session and chunk receipt state.

    Every mutation commits before returning. Status changes go through
    ``transition_status`` which is a conditional UPDATE, so two callers racing
    on the same session see exactly one winner.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_session(self, session_id: str) -> UploadSession:
        upload = self.db.get(UploadSession, session_id, populate_existing=True)
        if upload is None:
            raise NotFound(f"upload session {session_id} not found")
        return upload

    def find_session(self, session_id: str) -> UploadSession | None:
        return self.db.get(UploadSession, session_id, populate_existing=True)

    def create_or_get_session(
        self,
        session_id: str,
        filename: str,
        total_size: int,
        total_chunks: int,
        chunk_size: int,
    ) -> tuple[UploadSession, list[int], bool]:
        """Return the session, its received indices and whether this call created it."""
        existing = self.find_session(session_id)
        if existing is not None:
            return existing, self.received_indices(session_id), False

        now = utc_now()
        self.db.add(
            UploadSession(
                id=session_id,
                filename=filename,
                total_size=total_size,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                status=SessionStatus.uploading.value,
                created_at=now,
                updated_at=now,
            )
        )
        try:
            self.db.flush()
            if total_chunks:
                self.db.execute(
                    insert(ChunkRecord),
                    [
                        {"session_id": session_id, "chunk_index": idx, "status": ChunkStatus.pending.value}
                        for idx in range(total_chunks)
                    ],
                )
            self.db.commit()
        except IntegrityError:
            # Another handshake for the same id committed first; resume theirs.
            self.db.rollback()
            return self.get_session(session_id), self.received_indices(session_id), False
        return self.get_session(session_id), [], True

    def received_indices(self, session_id: str) -> list[int]:
        return list(
            self.db.scalars(
                select(ChunkRecord.chunk_index)
                .where(ChunkRecord.session_id == session_id, ChunkRecord.status == ChunkStatus.received.value)
                .order_by(ChunkRecord.chunk_index)
            ).all()
        )

    def is_chunk_received(self, session_id: str, chunk_index: int) -> bool:
        status = self.db.scalar(
            select(ChunkRecord.status).where(
                ChunkRecord.session_id == session_id, ChunkRecord.chunk_index == chunk_index
            )
        )
        return status == ChunkStatus.received.value

    def mark_chunk_received(self, session_id: str, chunk_index: int) -> bool:
        """Flip one chunk to RECEIVED. Returns False if it already was."""
        now = utc_now()
        result = self.db.execute(
            update(ChunkRecord)
            .where(
                ChunkRecord.session_id == session_id,
                ChunkRecord.chunk_index == chunk_index,
                ChunkRecord.status == ChunkStatus.pending.value,
            )
            .values(status=ChunkStatus.received.value, received_at=now)
        )
        transitioned = (result.rowcount or 0) == 1
        if transitioned:
            self.db.execute(update(UploadSession).where(UploadSession.id == session_id).values(updated_at=now))
        self.db.commit()
        return transitioned

    def count_pending(self, session_id: str) -> int:
        return (
            self.db.scalar(
                select(func.count(ChunkRecord.id)).where(
                    ChunkRecord.session_id == session_id, ChunkRecord.status != ChunkStatus.received.value
                )
            )
            or 0
        )

    def transition_status(
        self,
        session_id: str,
        expected_from: SessionStatus,
        to: SessionStatus,
        **values,
    ) -> bool:
        if not is_legal_transition(expected_from, to):
            raise ValueError(f"illegal session transition {SessionStatus(expected_from).value} -> {SessionStatus(to).value}")
        result = self.db.execute(
            update(UploadSession)
            .where(UploadSession.id == session_id, UploadSession.status == SessionStatus(expected_from).value)
            .values(status=SessionStatus(to).value, updated_at=utc_now(), **values)
        )
        self.db.commit()
        return (result.rowcount or 0) == 1

    def record_completion(self, session_id: str, final_hash: str, content_listing: list[str]) -> bool:
        return self.transition_status(
            session_id,
            SessionStatus.processing,
            SessionStatus.completed,
            final_hash=final_hash,
            content_listing=content_listing,
            failure_reason=None,
        )

    def record_failure(self, session_id: str, reason: str) -> bool:
        return self.transition_status(
            session_id, SessionStatus.processing, SessionStatus.failed, failure_reason=reason[:2000]
        )

    def stale_sessions(self, older_than: datetime) -> list[UploadSession]:
        return list(
            self.db.scalars(
                select(UploadSession).where(
                    UploadSession.status.in_([status.value for status in SWEEPABLE_STATUSES]),
                    UploadSession.updated_at < older_than,
                )
            ).all()
        )

    def all_session_ids(self, exclude_status: SessionStatus | None = None) -> set[str]:
        query = select(UploadSession.id)
        if exclude_status is not None:
            query = query.where(UploadSession.status != SessionStatus(exclude_status).value)
        return set(self.db.scalars(query).all())

    def delete_session(self, session_id: str) -> bool:
        # COMPLETED sessions are permanent; the status filter guards both deletes.
        deletable = select(UploadSession.id).where(
            UploadSession.id == session_id, UploadSession.status != SessionStatus.completed.value
        )
        self.db.execute(delete(ChunkRecord).where(ChunkRecord.session_id.in_(deletable)))
        result = self.db.execute(
            delete(UploadSession).where(
                UploadSession.id == session_id, UploadSession.status != SessionStatus.completed.value
            )
        )
        self.db.commit()
        return (result.rowcount or 0) == 1
