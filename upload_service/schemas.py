from pydantic import BaseModel, Field


class HandshakeRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    filename: str = Field(min_length=1)
    total_size: int = Field(gt=0)
    total_chunks: int = Field(gt=0)
    chunk_size: int | None = Field(default=None, gt=0)


class HandshakeResponse(BaseModel):
    session_id: str
    status: str
    chunk_size: int
    total_chunks: int
    received_indices: list[int]


class ChunkUploadResponse(BaseModel):
    success: bool
    index: int
    duplicate: bool = False


class SessionStatusResponse(BaseModel):
    session_id: str
    filename: str
    total_size: int
    total_chunks: int
    status: str
    received_indices: list[int]
    final_hash: str | None = None
    content_listing: list[str] | None = None


class FinalizeResponse(BaseModel):
    status: str
    hash: str
    content_listing: list[str]


class SweepResponse(BaseModel):
    status: str
    sessions_deleted: int
    temp_files_deleted: int
    orphan_temp_files_deleted: int
    skipped: bool


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    session_id: str | None = None
    trace_id: str | None = None
    pending_count: int | None = None
