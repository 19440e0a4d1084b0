import time

from upload_service.client.snapshot import ChunkSnapshot, SessionSnapshot, SnapshotStore


def _snapshot(**overrides) -> SessionSnapshot:
    values = {
        "session_id": "upload_abc",
        "filename": "a.zip",
        "total_size": 12,
        "total_chunks": 3,
        "chunk_size": 4,
        "chunks": [
            ChunkSnapshot(index=0, status="success"),
            ChunkSnapshot(index=1, status="error", retries=2),
            ChunkSnapshot(index=2, status="pending"),
        ],
    }
    values.update(overrides)
    return SessionSnapshot(**values)


def test_save_and_load(tmp_path) -> None:
    store = SnapshotStore(tmp_path)
    assert store.save(_snapshot()) is True
    assert store.path_for("upload_abc").name == "chunk_upload_upload_abc.json"

    loaded = store.load("upload_abc")
    assert loaded is not None
    assert loaded.succeeded_indices() == {0}
    assert loaded.chunks[1].retries == 2


def test_missing_snapshot_is_none(tmp_path) -> None:
    assert SnapshotStore(tmp_path).load("nothing-here") is None


def test_expired_snapshot_is_discarded(tmp_path) -> None:
    store = SnapshotStore(tmp_path, max_age_seconds=3600)
    store.save(_snapshot(saved_at=time.time() - 2 * 3600))
    assert store.load("upload_abc") is None
    assert not store.path_for("upload_abc").exists()


def test_corrupt_snapshot_is_discarded(tmp_path, caplog) -> None:
    store = SnapshotStore(tmp_path)
    store.path_for("upload_abc").write_text("{not json", encoding="utf-8")
    assert store.load("upload_abc") is None
    assert not store.path_for("upload_abc").exists()
    assert "unreadable upload snapshot" in caplog.text


def test_save_failure_is_reported_not_raised(tmp_path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("x")
    store = SnapshotStore(blocker)
    assert store.save(_snapshot()) is False
    store.clear("upload_abc")
