"""Client-side upload driver.

``UploadScheduler`` splits a local file into chunks, handshakes with the
service, and runs ``max_concurrency`` worker tasks that pull chunk indices
from a work queue. Each worker owns its retry loop and reports back through
an event queue; only the supervising loop in ``run`` mutates per-chunk state.
Finalize is requested once every index has been confirmed by the server.
"""

from __future__ import annotations

import asyncio
import enum
import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

from upload_service.client.api import FinalizeReply, UploadApiClient
from upload_service.client.retry import RetryPolicy
from upload_service.client.snapshot import ChunkSnapshot, SessionSnapshot, SnapshotStore
from upload_service.client.throughput import ThroughputMeter
from upload_service.config import UploadConfig
from upload_service.errors import Conflict, UploadError, ValidationError

logger = logging.getLogger(__name__)


class ClientChunkStatus(str, enum.Enum):
    pending = "pending"
    uploading = "uploading"
    success = "success"
    error = "error"


class ClientSessionStatus(str, enum.Enum):
    idle = "idle"
    uploading = "uploading"
    paused = "paused"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


@dataclass
class ClientChunkState:
    index: int
    status: ClientChunkStatus = ClientChunkStatus.pending
    retries: int = 0
    started_at: float | None = None
    finished_at: float | None = None
    error: str | None = None


class ChunkEventKind(str, enum.Enum):
    started = "started"
    retrying = "retrying"
    succeeded = "succeeded"
    failed = "failed"


@dataclass(frozen=True)
class ChunkEvent:
    kind: ChunkEventKind
    index: int
    nbytes: int = 0
    attempt: int = 0
    error: str | None = None


@dataclass(frozen=True)
class UploadProgress:
    session_id: str
    status: ClientSessionStatus
    percent: int
    bytes_uploaded: int
    total_bytes: int
    speed: float
    eta: float
    chunks: tuple[ClientChunkState, ...]


@dataclass(frozen=True)
class UploadResult:
    session_id: str
    status: ClientSessionStatus
    hash: str | None = None
    content_listing: list[str] = field(default_factory=list)
    error: str | None = None
    failed_indices: list[int] = field(default_factory=list)


def derive_session_id(filename: str, size: int, mtime: float) -> str:
    key = f"{filename}-{size}-{int(mtime * 1000)}"
    return "upload_" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def chunk_count(total_size: int, chunk_size: int) -> int:
    return -(-total_size // chunk_size)


def chunk_length(index: int, total_size: int, chunk_size: int) -> int:
    return min(chunk_size, total_size - index * chunk_size)


def read_chunk(path: Path, index: int, chunk_size: int, total_size: int) -> bytes:
    length = chunk_length(index, total_size, chunk_size)
    with open(path, "rb") as fh:
        fh.seek(index * chunk_size)
        data = fh.read(length)
    if len(data) != length:
        raise OSError(f"{path} changed size while uploading (chunk {index} short by {length - len(data)} bytes)")
    return data


class UploadScheduler:
    def __init__(
        self,
        api: UploadApiClient,
        path: str | Path,
        config: UploadConfig | None = None,
        snapshot_store: SnapshotStore | None = None,
        on_progress: Callable[[UploadProgress], None] | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.path = Path(path)
        self.config = config or UploadConfig()
        self.snapshot_store = snapshot_store
        self.on_progress = on_progress
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self._clock = clock

        stat = self.path.stat()
        if stat.st_size <= 0:
            raise ValidationError(f"{self.path} is empty")
        self.filename = self.path.name
        self.total_size = stat.st_size
        self.chunk_size = self.config.chunk_size
        self.session_id = derive_session_id(self.filename, stat.st_size, stat.st_mtime)
        self.total_chunks = chunk_count(self.total_size, self.chunk_size)
        self.chunks = [ClientChunkState(index=idx) for idx in range(self.total_chunks)]
        self.status = ClientSessionStatus.idle

        self._meter = ThroughputMeter(self.config.speed_window_seconds, clock=clock)
        self._running = asyncio.Event()
        self._running.set()
        self._cancelled = False
        self._run_task: asyncio.Task | None = None
        self._last_snapshot_at = float("-inf")
        self._failed_indices: list[int] = []

    # -- controls ---------------------------------------------------------

    def pause(self) -> None:
        """Stop handing out new chunks; uploads already in flight finish."""
        if self.status != ClientSessionStatus.uploading:
            return
        self._running.clear()
        self.status = ClientSessionStatus.paused
        self._save_snapshot(force=True)
        self._emit()

    def resume(self) -> None:
        if self.status != ClientSessionStatus.paused:
            return
        self.status = ClientSessionStatus.uploading
        self._running.set()
        self._emit()

    def cancel(self) -> None:
        """Abort in-flight requests and forget the local snapshot."""
        if self._cancelled:
            return
        self._cancelled = True
        self._running.set()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # Called from inside run() (a progress callback): the supervisor loop notices the flag.
        if self._run_task is not None and not self._run_task.done() and self._run_task is not current:
            self._run_task.cancel()

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError()

    # -- reporting --------------------------------------------------------

    def bytes_uploaded(self) -> int:
        return sum(
            chunk_length(state.index, self.total_size, self.chunk_size)
            for state in self.chunks
            if state.status == ClientChunkStatus.success
        )

    def progress(self) -> UploadProgress:
        done = sum(1 for state in self.chunks if state.status == ClientChunkStatus.success)
        uploaded = self.bytes_uploaded()
        return UploadProgress(
            session_id=self.session_id,
            status=self.status,
            percent=round(done * 100 / self.total_chunks) if self.total_chunks else 0,
            bytes_uploaded=uploaded,
            total_bytes=self.total_size,
            speed=self._meter.speed(),
            eta=self._meter.eta(self.total_size - uploaded),
            chunks=tuple(replace(state) for state in self.chunks),
        )

    def _emit(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self.progress())

    # -- main loop ----------------------------------------------------------

    async def run(self) -> UploadResult:
        self._run_task = asyncio.current_task()
        try:
            self._check_cancelled()
            return await self._run()
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            self.status = ClientSessionStatus.cancelled
            if self.snapshot_store is not None:
                self.snapshot_store.clear(self.session_id)
            self._emit()
            logger.info("upload %s cancelled", self.session_id)
            return UploadResult(session_id=self.session_id, status=self.status)

    async def _run(self) -> UploadResult:
        self.status = ClientSessionStatus.uploading
        self._rehydrate()
        try:
            reply = await self.retry_policy.run(
                lambda: self.api.handshake(
                    self.session_id, self.filename, self.total_size, self.total_chunks, chunk_size=self.chunk_size
                )
            )
        except UploadError as exc:
            return self._fail(f"handshake failed: {exc.detail}")
        if reply.total_chunks != self.total_chunks or reply.chunk_size != self.chunk_size:
            return self._fail(
                f"server expects {reply.total_chunks} chunks of {reply.chunk_size} bytes, "
                f"client has {self.total_chunks} of {self.chunk_size}"
            )
        self._check_cancelled()
        self._apply_server_state(reply.received_indices)
        self._emit()

        if not await self._dispatch():
            errors = sorted({self.chunks[idx].error or "chunk upload failed" for idx in self._failed_indices})
            return self._fail("; ".join(errors), sorted(self._failed_indices))
        self._check_cancelled()
        return await self._finalize()

    def _rehydrate(self) -> None:
        if self.snapshot_store is None:
            return
        snapshot = self.snapshot_store.load(self.session_id)
        if snapshot is None or snapshot.total_chunks != self.total_chunks or snapshot.chunk_size != self.chunk_size:
            return
        for saved in snapshot.chunks:
            if 0 <= saved.index < self.total_chunks:
                state = self.chunks[saved.index]
                state.retries = saved.retries
                if saved.status == ClientChunkStatus.success.value:
                    state.status = ClientChunkStatus.success
        logger.info(
            "rehydrated upload %s from snapshot (%d chunks done)", self.session_id, len(snapshot.succeeded_indices())
        )
        self._emit()

    def _apply_server_state(self, received_indices: list[int]) -> None:
        received = set(received_indices)
        for state in self.chunks:
            if state.index in received:
                state.status = ClientChunkStatus.success
            elif state.status == ClientChunkStatus.success:
                # Snapshot claimed success the server never recorded.
                state.status = ClientChunkStatus.pending
            else:
                state.status = ClientChunkStatus.pending
                state.error = None

    async def _dispatch(self) -> bool:
        work: asyncio.Queue[int] = asyncio.Queue()
        for state in self.chunks:
            if state.status != ClientChunkStatus.success:
                work.put_nowait(state.index)
        remaining = work.qsize()
        if remaining == 0:
            return True

        events: asyncio.Queue[ChunkEvent] = asyncio.Queue()
        workers = [
            asyncio.create_task(self._worker(work, events))
            for _ in range(min(self.config.max_concurrency, remaining))
        ]
        try:
            while remaining:
                event = await events.get()
                self._apply_event(event)
                self._check_cancelled()
                if event.kind == ChunkEventKind.succeeded:
                    remaining -= 1
                elif event.kind == ChunkEventKind.failed:
                    self._save_snapshot(force=True)
                    return False
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
        return True

    async def _worker(self, work: asyncio.Queue[int], events: asyncio.Queue[ChunkEvent]) -> None:
        while True:
            await self._running.wait()
            try:
                index = work.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._upload_one(index, events)

    async def _upload_one(self, index: int, events: asyncio.Queue[ChunkEvent]) -> None:
        events.put_nowait(ChunkEvent(kind=ChunkEventKind.started, index=index))

        def _on_retry(attempt: int, exc: UploadError) -> None:
            events.put_nowait(
                ChunkEvent(kind=ChunkEventKind.retrying, index=index, attempt=attempt, error=exc.detail)
            )

        try:
            data = await asyncio.to_thread(read_chunk, self.path, index, self.chunk_size, self.total_size)
            await self.retry_policy.run(lambda: self.api.upload_chunk(self.session_id, index, data), on_retry=_on_retry)
        except UploadError as exc:
            events.put_nowait(ChunkEvent(kind=ChunkEventKind.failed, index=index, error=exc.detail))
            return
        except OSError as exc:
            events.put_nowait(ChunkEvent(kind=ChunkEventKind.failed, index=index, error=str(exc)))
            return
        except Exception as exc:
            # The supervisor waits on the event queue; a worker must report before it exits.
            logger.exception("unexpected error uploading chunk %d of %s", index, self.session_id)
            events.put_nowait(ChunkEvent(kind=ChunkEventKind.failed, index=index, error=f"{type(exc).__name__}: {exc}"))
            return
        events.put_nowait(ChunkEvent(kind=ChunkEventKind.succeeded, index=index, nbytes=len(data)))

    def _apply_event(self, event: ChunkEvent) -> None:
        state = self.chunks[event.index]
        now = self._clock()
        if event.kind == ChunkEventKind.started:
            state.status = ClientChunkStatus.uploading
            state.started_at = now
            state.finished_at = None
        elif event.kind == ChunkEventKind.retrying:
            state.status = ClientChunkStatus.error
            state.retries += 1
            state.error = event.error
            logger.info("chunk %d of %s failed, retry %d: %s", event.index, self.session_id, event.attempt, event.error)
        elif event.kind == ChunkEventKind.succeeded:
            state.status = ClientChunkStatus.success
            state.finished_at = now
            state.error = None
            self._meter.record(event.nbytes)
            self._save_snapshot()
        elif event.kind == ChunkEventKind.failed:
            state.status = ClientChunkStatus.error
            state.finished_at = now
            state.error = event.error
            self._failed_indices.append(event.index)
            logger.warning("chunk %d of %s failed permanently: %s", event.index, self.session_id, event.error)
        self._emit()

    async def _finalize(self) -> UploadResult:
        self.status = ClientSessionStatus.processing
        self._emit()
        reply: FinalizeReply | None = None
        attempt = 0
        while reply is None:
            try:
                reply = await self.retry_policy.run(lambda: self.api.finalize(self.session_id))
            except Conflict as exc:
                # Another finalize owns the session; wait for it to settle.
                if attempt >= self.retry_policy.max_retries:
                    return self._fail(f"finalize failed: {exc.detail}")
                await self.retry_policy.backoff(attempt)
                attempt += 1
                try:
                    current = await self.retry_policy.run(lambda: self.api.status(self.session_id))
                except UploadError as status_exc:
                    return self._fail(f"finalize failed: {status_exc.detail}")
                if current.status == "COMPLETED":
                    reply = FinalizeReply(
                        status=current.status,
                        hash=current.final_hash or "",
                        content_listing=list(current.content_listing or []),
                    )
            except UploadError as exc:
                return self._fail(f"finalize failed: {exc.detail}")

        self.status = ClientSessionStatus.completed
        if self.snapshot_store is not None:
            self.snapshot_store.clear(self.session_id)
        self._emit()
        logger.info("upload %s completed hash=%s", self.session_id, reply.hash)
        return UploadResult(
            session_id=self.session_id,
            status=self.status,
            hash=reply.hash,
            content_listing=reply.content_listing,
        )

    def _fail(self, error: str, failed_indices: list[int] | None = None) -> UploadResult:
        self.status = ClientSessionStatus.failed
        self._save_snapshot(force=True)
        self._emit()
        logger.warning("upload %s failed: %s", self.session_id, error)
        return UploadResult(
            session_id=self.session_id,
            status=self.status,
            error=error,
            failed_indices=failed_indices or [],
        )

    def _save_snapshot(self, force: bool = False) -> None:
        if self.snapshot_store is None:
            return
        now = self._clock()
        if not force and now - self._last_snapshot_at < self.config.snapshot_interval_seconds:
            return
        self._last_snapshot_at = now
        self.snapshot_store.save(
            SessionSnapshot(
                session_id=self.session_id,
                filename=self.filename,
                total_size=self.total_size,
                total_chunks=self.total_chunks,
                chunk_size=self.chunk_size,
                chunks=[
                    ChunkSnapshot(
                        index=state.index,
                        # An in-flight chunk is not confirmed; restart it as pending.
                        status=state.status.value if state.status != ClientChunkStatus.uploading else "pending",
                        retries=state.retries,
                    )
                    for state in self.chunks
                ],
            )
        )
