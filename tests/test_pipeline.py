import hashlib
import io
import lzma
import random
import tarfile
import zipfile
import zlib

import pytest

from upload_service import pipeline as pipeline_module
from upload_service.pipeline import InspectionPipeline

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def _write_zip(path, names) -> None:
    with zipfile.ZipFile(path, "w") as archive:
        for name in names:
            archive.writestr(name, f"contents of {name}")


def test_hash_of_empty_file(tmp_path) -> None:
    target = tmp_path / "empty.bin"
    target.write_bytes(b"")
    assert InspectionPipeline().hash(target) == EMPTY_SHA256


def test_hash_streams_in_blocks(tmp_path) -> None:
    payload = bytes(range(256)) * 41
    target = tmp_path / "payload.bin"
    target.write_bytes(payload)
    assert InspectionPipeline(block_size=7).hash(target) == hashlib.sha256(payload).hexdigest()


def test_peek_zip_returns_names_in_directory_order(tmp_path) -> None:
    target = tmp_path / "bundle.zip"
    _write_zip(target, ["a.txt", "nested/b.txt", "c.bin"])
    pipeline = InspectionPipeline()
    assert pipeline.peek(target) == ["a.txt", "nested/b.txt", "c.bin"]
    assert pipeline.peek(target, max_entries=2) == ["a.txt", "nested/b.txt"]
    assert pipeline.peek(target, max_entries=0) == []


def test_peek_gzipped_tar(tmp_path) -> None:
    target = tmp_path / "bundle.tar.gz"
    with tarfile.open(target, "w:gz") as archive:
        for name in ("one.txt", "two.txt"):
            data = name.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    assert InspectionPipeline(max_entries=1).peek(target) == ["one.txt"]
    assert InspectionPipeline().peek(target) == ["one.txt", "two.txt"]


def test_peek_non_archive_and_empty_archive_are_both_empty(tmp_path) -> None:
    plain = tmp_path / "notes.txt"
    plain.write_text("just some text, definitely not an archive\n" * 20)
    empty_zip = tmp_path / "empty.zip"
    _write_zip(empty_zip, [])

    pipeline = InspectionPipeline()
    assert pipeline.peek(plain) == []
    assert pipeline.peek(empty_zip) == []


def test_peek_truncated_zip_is_empty(tmp_path) -> None:
    source = tmp_path / "source.zip"
    _write_zip(source, ["a.txt", "b.txt"])
    data = source.read_bytes()
    broken = tmp_path / "broken.zip"
    # Keep the end-of-directory record but cut into the entries it points at.
    broken.write_bytes(data[:10] + data[-22:])
    assert InspectionPipeline().peek(broken) == []


def _write_random_tar(path, mode: str, rng: random.Random, members: int = 50) -> None:
    with tarfile.open(path, mode) as archive:
        for idx in range(members):
            data = rng.randbytes(rng.randint(200, 2000))
            info = tarfile.TarInfo(f"member-{idx:03d}.bin")
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))


@pytest.mark.parametrize("suffix,mode", [(".tar.gz", "w:gz"), (".tar.xz", "w:xz")])
def test_peek_damaged_compressed_tar_never_raises(tmp_path, suffix, mode) -> None:
    rng = random.Random(7)
    source = tmp_path / f"source{suffix}"
    _write_random_tar(source, mode, rng)
    original = source.read_bytes()
    assert len(InspectionPipeline().peek(source)) == 50

    pipeline = InspectionPipeline()
    damaged = tmp_path / f"damaged{suffix}"
    for _ in range(40):
        data = bytearray(original)
        # Leave the compression header intact so decoding starts and fails partway through.
        start = rng.randint(len(data) // 10, len(data) - 64)
        for offset in range(start, start + rng.randint(1, 64)):
            data[offset] = rng.randrange(256)
        damaged.write_bytes(bytes(data))
        listing = pipeline.peek(damaged)
        assert isinstance(listing, list)
        assert len(listing) <= 50


@pytest.mark.parametrize(
    "error", [zlib.error("invalid code lengths set"), lzma.LZMAError("Corrupt input data")]
)
def test_peek_decompressor_error_yields_empty_listing(tmp_path, monkeypatch, error) -> None:
    target = tmp_path / "bundle.tar.gz"
    with tarfile.open(target, "w:gz") as archive:
        info = tarfile.TarInfo("one.txt")
        info.size = 3
        archive.addfile(info, io.BytesIO(b"one"))

    def _fail(path, limit):
        raise error

    monkeypatch.setattr(pipeline_module, "_peek_tar", _fail)
    assert InspectionPipeline().peek(target) == []
