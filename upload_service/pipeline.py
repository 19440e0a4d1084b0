"""Hashing and shallow archive inspection for assembled uploads.

``peek`` only walks container directory records. It never extracts member
data, and anything it cannot parse yields an empty listing.
"""

from __future__ import annotations

import hashlib
import logging
import lzma
import tarfile
import zipfile
import zlib
from pathlib import Path

from upload_service.config import settings

logger = logging.getLogger(__name__)

DEFAULT_HASH_BLOCK_SIZE = 1024 * 1024


class InspectionPipeline:
    def __init__(self, block_size: int = DEFAULT_HASH_BLOCK_SIZE, max_entries: int = 1000) -> None:
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self.block_size = block_size
        self.max_entries = max_entries

    def hash(self, path: str | Path) -> str:
        digest = hashlib.sha256()
        with open(path, "rb") as fh:
            while True:
                block = fh.read(self.block_size)
                if not block:
                    break
                digest.update(block)
        return digest.hexdigest()

    def peek(self, path: str | Path, max_entries: int | None = None) -> list[str]:
        limit = self.max_entries if max_entries is None else max_entries
        if limit <= 0:
            return []
        try:
            if zipfile.is_zipfile(path):
                return _peek_zip(path, limit)
            if tarfile.is_tarfile(path):
                return _peek_tar(path, limit)
        except (
            OSError,
            EOFError,
            ValueError,
            zipfile.BadZipFile,
            tarfile.TarError,
            # tarfile surfaces decompressor errors unwrapped while walking a damaged stream.
            zlib.error,
            lzma.LZMAError,
        ) as exc:
            logger.info("archive inspection failed for %s: %s", path, exc)
            return []
        return []


def _peek_zip(path: str | Path, limit: int) -> list[str]:
    # ZipFile parses the central directory on open; member data is never read.
    with zipfile.ZipFile(path) as archive:
        names: list[str] = []
        for info in archive.infolist():
            names.append(info.filename)
            if len(names) >= limit:
                break
        return names


def _peek_tar(path: str | Path, limit: int) -> list[str]:
    names: list[str] = []
    with tarfile.open(path, mode="r:*") as archive:
        for member in archive:
            names.append(member.name)
            if len(names) >= limit:
                break
    return names


def build_pipeline() -> InspectionPipeline:
    return InspectionPipeline(block_size=settings.hash_block_size, max_entries=settings.peek_max_entries)
