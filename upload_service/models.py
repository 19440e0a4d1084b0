import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from upload_service.db import Base


class SessionStatus(str, enum.Enum):
    uploading = "UPLOADING"
    processing = "PROCESSING"
    completed = "COMPLETED"
    failed = "FAILED"


class ChunkStatus(str, enum.Enum):
    pending = "PENDING"
    received = "RECEIVED"


# Every status change a session may go through. Anything else is rejected.
SESSION_TRANSITIONS: frozenset[tuple[SessionStatus, SessionStatus]] = frozenset(
    {
        (SessionStatus.uploading, SessionStatus.processing),
        (SessionStatus.processing, SessionStatus.completed),
        (SessionStatus.processing, SessionStatus.failed),
        (SessionStatus.failed, SessionStatus.processing),
    }
)

# Statuses the orphan sweep may reclaim once a session has been idle long enough.
SWEEPABLE_STATUSES: tuple[SessionStatus, ...] = (
    SessionStatus.uploading,
    SessionStatus.processing,
    SessionStatus.failed,
)


def is_legal_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return (SessionStatus(current), SessionStatus(target)) in SESSION_TRANSITIONS


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UploadSession(Base):
    __tablename__ = "upload_sessions"
    __table_args__ = (Index("idx_upload_sessions_status_updated", "status", "updated_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    total_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chunk_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=SessionStatus.uploading.value)
    final_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    content_listing: Mapped[list | None] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    chunks: Mapped[list["ChunkRecord"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def last_chunk_size(self) -> int:
        return self.total_size - (self.total_chunks - 1) * self.chunk_size


class ChunkRecord(Base):
    __tablename__ = "chunk_records"
    __table_args__ = (
        UniqueConstraint("session_id", "chunk_index", name="uq_session_chunk_index"),
        Index("idx_chunk_records_session_status", "session_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("upload_sessions.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ChunkStatus.pending.value)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    session: Mapped[UploadSession] = relationship(back_populates="chunks")
