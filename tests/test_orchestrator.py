import os
import threading
import time
from datetime import timedelta
from types import SimpleNamespace

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import update

from upload_service import orchestrator as orchestrator_module
from upload_service.db import Base, SessionLocal, engine
from upload_service.errors import Conflict, Incomplete, StorageIOError, ValidationError
from upload_service.ledger import SessionLedger
from upload_service.models import SessionStatus, UploadSession, utc_now
from upload_service.orchestrator import SessionOrchestrator
from upload_service.pipeline import InspectionPipeline
from upload_service.writer import ChunkWriter


class _CountingPipeline(InspectionPipeline):
    def __init__(self, delay: float = 0.0) -> None:
        super().__init__()
        self.delay = delay
        self.hash_calls = 0
        self._lock = threading.Lock()

    def hash(self, path) -> str:
        with self._lock:
            self.hash_calls += 1
        time.sleep(self.delay)
        return super().hash(path)


class _BrokenPipeline(InspectionPipeline):
    def hash(self, path) -> str:
        raise OSError("disk went away")


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _orchestrator(db, writer: ChunkWriter, pipeline: InspectionPipeline | None = None) -> SessionOrchestrator:
    return SessionOrchestrator(SessionLedger(db), writer, pipeline or InspectionPipeline(), default_chunk_size=4)


def _upload_all(orch: SessionOrchestrator, session_id: str, payload: bytes) -> None:
    orch.handshake(session_id, "sample.bin", len(payload), -(-len(payload) // 4))
    for index in range(-(-len(payload) // 4)):
        orch.upload_chunk(session_id, index, payload[index * 4 : (index + 1) * 4])


def test_handshake_validates_chunk_arithmetic(tmp_path) -> None:
    _reset_state()
    with SessionLocal() as db:
        orch = _orchestrator(db, ChunkWriter(str(tmp_path)))
        with pytest.raises(ValidationError):
            orch.handshake("h-1", "sample.bin", 10, 2)
        with pytest.raises(ValidationError):
            orch.handshake("bad id", "sample.bin", 10, 3)
        with pytest.raises(ValidationError):
            orch.handshake("h-1", "sample.bin", 0, 1)

        created = orch.handshake("h-1", "sample.bin", 10, 3)
        resumed = orch.handshake("h-1", "sample.bin", 10, 3)
        assert created.created is True
        assert resumed.created is False
        assert orch.writer.temp_path("h-1").stat().st_size == 10


def test_handshake_that_loses_the_create_race_checks_the_winner(tmp_path, monkeypatch) -> None:
    _reset_state()
    with SessionLocal() as winner_db:
        SessionLedger(winner_db).create_or_get_session("race-2", "sample.bin", 8, 2, 4)

    with SessionLocal() as db:
        orch = _orchestrator(db, ChunkWriter(str(tmp_path)))
        monkeypatch.setattr(orch.ledger, "find_session", lambda session_id: None)
        created_before = REGISTRY.get_sample_value("upload_sessions_created_total")

        with pytest.raises(Conflict):
            orch.handshake("race-2", "sample.bin", 8, 1, chunk_size=8)

        resumed = orch.handshake("race-2", "sample.bin", 8, 2)
        assert resumed.created is False
        assert REGISTRY.get_sample_value("upload_sessions_created_total") == created_before


def test_incomplete_finalize_leaves_status_unchanged(tmp_path) -> None:
    _reset_state()
    with SessionLocal() as db:
        orch = _orchestrator(db, ChunkWriter(str(tmp_path)))
        orch.handshake("inc-1", "sample.bin", 8, 2)
        orch.upload_chunk("inc-1", 0, b"abcd")
        with pytest.raises(Incomplete) as excinfo:
            orch.finalize("inc-1")
        assert excinfo.value.pending_count == 1
        assert orch.status("inc-1").session.status == SessionStatus.uploading.value


def test_concurrent_finalize_runs_pipeline_once(tmp_path) -> None:
    _reset_state()
    writer = ChunkWriter(str(tmp_path))
    pipeline = _CountingPipeline(delay=0.2)
    with SessionLocal() as db:
        _upload_all(_orchestrator(db, writer, pipeline), "race-1", b"abcdefghij")

    outcomes: list = []
    outcomes_lock = threading.Lock()

    def _finalize() -> None:
        with SessionLocal() as db:
            try:
                result = _orchestrator(db, writer, pipeline).finalize("race-1")
            except Conflict as exc:
                result = exc
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_finalize) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert pipeline.hash_calls == 1
    completed = [item for item in outcomes if not isinstance(item, Conflict)]
    assert [item.replayed for item in completed].count(False) == 1
    assert len({item.hash for item in completed}) == 1

    with SessionLocal() as db:
        assert SessionLedger(db).get_session("race-1").status == SessionStatus.completed.value


def test_failed_finalize_keeps_data_and_can_be_retried(tmp_path) -> None:
    _reset_state()
    writer = ChunkWriter(str(tmp_path))
    with SessionLocal() as db:
        orch = _orchestrator(db, writer, _BrokenPipeline())
        _upload_all(orch, "fail-1", b"abcdefgh")
        with pytest.raises(StorageIOError):
            orch.finalize("fail-1")
        upload = orch.status("fail-1").session
        assert upload.status == SessionStatus.failed.value
        assert "disk went away" in upload.failure_reason
        assert writer.temp_path("fail-1").read_bytes() == b"abcdefgh"

        retried = _orchestrator(db, writer).finalize("fail-1")
        assert retried.status == SessionStatus.completed.value
        assert retried.replayed is False


def test_chunk_for_session_not_accepting_uploads(tmp_path) -> None:
    _reset_state()
    with SessionLocal() as db:
        orch = _orchestrator(db, ChunkWriter(str(tmp_path)))
        orch.handshake("busy-1", "sample.bin", 8, 2)
        orch.upload_chunk("busy-1", 0, b"abcd")
        orch.ledger.transition_status("busy-1", SessionStatus.uploading, SessionStatus.processing)

        assert orch.upload_chunk("busy-1", 0, b"abcd").duplicate is True
        with pytest.raises(Conflict):
            orch.upload_chunk("busy-1", 1, b"efgh")
        with pytest.raises(Conflict):
            orch.finalize("busy-1")


def test_sweep_removes_stale_sessions_but_never_completed_ones(tmp_path) -> None:
    _reset_state()
    writer = ChunkWriter(str(tmp_path))
    with SessionLocal() as db:
        orch = _orchestrator(db, writer)
        orch.handshake("stale-1", "sample.bin", 8, 2)
        orch.handshake("fresh-1", "sample.bin", 8, 2)
        _upload_all(orch, "done-1", b"abcd")
        orch.finalize("done-1")

        old = utc_now() - timedelta(days=8)
        db.execute(
            update(UploadSession).where(UploadSession.id.in_(["stale-1", "done-1"])).values(updated_at=old)
        )
        db.commit()

        writer.open("orphan-1", 4)
        writer.open("orphan-new", 4)
        week_ago = time.time() - 8 * 86400
        os.utime(writer.temp_path("orphan-1"), (week_ago, week_ago))

        stats = orch.sweep()
        assert stats.skipped is False
        assert stats.deleted_session_ids == ["stale-1"]
        assert stats.temp_files_deleted == 1
        assert stats.orphan_temp_files_deleted == 1

        assert orch.ledger.all_session_ids() == {"fresh-1", "done-1"}
        assert not writer.temp_path("stale-1").exists()
        assert writer.temp_path("fresh-1").exists()
        assert not writer.temp_path("orphan-1").exists()
        assert writer.temp_path("orphan-new").exists()
        assert writer.final_path("done-1", "sample.bin").exists()


def test_sweep_skips_when_another_sweep_is_running(tmp_path) -> None:
    _reset_state()
    with SessionLocal() as db:
        orch = _orchestrator(db, ChunkWriter(str(tmp_path)))
        assert orchestrator_module._sweep_lock.acquire(blocking=False)
        try:
            assert orch.sweep().skipped is True
        finally:
            orchestrator_module._sweep_lock.release()
        assert orch.sweep().skipped is False


def test_chunk_racing_finalize_does_not_recreate_temp_file(tmp_path, monkeypatch) -> None:
    _reset_state()
    writer = ChunkWriter(str(tmp_path))
    with SessionLocal() as db:
        orch = _orchestrator(db, writer)
        _upload_all(orch, "late-1", b"abcdefgh")
        orch.finalize("late-1")
        assert not writer.temp_path("late-1").exists()

        # The duplicate read the session while it was still UPLOADING.
        stale = SimpleNamespace(
            id="late-1", status=SessionStatus.uploading.value, total_size=8, total_chunks=2, chunk_size=4
        )
        real_get_session = orch.ledger.get_session
        reads = []

        def _get_session(session_id):
            reads.append(session_id)
            return stale if len(reads) == 1 else real_get_session(session_id)

        monkeypatch.setattr(orch.ledger, "get_session", _get_session)
        outcome = orch.upload_chunk("late-1", 0, b"abcd")

        assert outcome.duplicate is True
        assert len(reads) == 2
        assert not writer.temp_path("late-1").exists()
        assert writer.final_path("late-1", "sample.bin").read_bytes() == b"abcdefgh"


def test_sweep_reclaims_temp_files_left_under_completed_sessions(tmp_path) -> None:
    _reset_state()
    writer = ChunkWriter(str(tmp_path))
    with SessionLocal() as db:
        orch = _orchestrator(db, writer)
        _upload_all(orch, "done-2", b"abcd")
        orch.finalize("done-2")
        orch.handshake("live-2", "sample.bin", 8, 2)

        writer.open("done-2", 4)
        week_ago = time.time() - 8 * 86400
        for session_id in ("done-2", "live-2"):
            os.utime(writer.temp_path(session_id), (week_ago, week_ago))

        stats = orch.sweep()
        assert stats.orphan_temp_files_deleted == 1
        assert not writer.temp_path("done-2").exists()
        assert writer.temp_path("live-2").exists()
        assert writer.final_path("done-2", "sample.bin").read_bytes() == b"abcd"
