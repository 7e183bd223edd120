# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Archive extraction and database payload resolution."""

from __future__ import annotations

import io
import logging
import zipfile
import zlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterable, Optional, Union

import zstandard as zstd

logger = logging.getLogger(__name__)

# Checked in this order; newer exports also ship a stub collection.anki2
DATABASE_CANDIDATES = ("collection.anki21b", "collection.anki21", "collection.anki2")
CANONICAL_DATABASE_NAME = "collection.sqlite"

SQLITE_MAGIC = b"SQLite"
SQLITE_HEADER_SIZE = 16
# File format write/read version bytes at offset 18 of the header
WAL_FORMAT = b"\x02\x02"
ROLLBACK_FORMAT = b"\x01\x01"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"

ArchiveSource = Union[str, Path, bytes, bytearray, BinaryIO]


# --- Exceptions ---


class AnkiImportError(Exception):
    pass


class ArchiveFileNotFoundError(AnkiImportError, FileNotFoundError):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(f"Anki file not found: {self.path}")


class InvalidArchiveError(AnkiImportError):
    def __init__(self, reason: str = ""):
        self.reason = reason
        msg = "Invalid or corrupted archive"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class DatabaseNotFoundError(AnkiImportError):
    def __init__(self, directory: Optional[Path] = None):
        self.directory = directory
        super().__init__("Could not find Anki database in archive")


class DecompressionFailedError(AnkiImportError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Decompression failed: {reason}")


class SchemaError(AnkiImportError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Database error: {reason}")


class MediaNotFoundError(AnkiImportError):
    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(f"Media file not found: {filename}")


# --- Probe Outcomes ---


class ProbeStatus(Enum):
    MATCHED = "matched"
    INVALID = "invalid"
    NO_MATCH = "no_match"


@dataclass
class ProbeResult:
    """Outcome of a single format probe."""

    status: ProbeStatus
    value: Any = None
    reason: str = ""

    @classmethod
    def matched(cls, value: Any) -> ProbeResult:
        return cls(ProbeStatus.MATCHED, value)

    @classmethod
    def invalid(cls, reason: str) -> ProbeResult:
        return cls(ProbeStatus.INVALID, reason=reason)

    @classmethod
    def no_match(cls) -> ProbeResult:
        return cls(ProbeStatus.NO_MATCH)


Probe = Callable[[bytes], ProbeResult]


def first_match(probes: Iterable[Probe], data: bytes) -> Optional[ProbeResult]:
    """Run probes in order and return the first MATCHED result, if any."""
    for probe in probes:
        result = probe(data)
        if result.status is ProbeStatus.MATCHED:
            return result
        if result.status is ProbeStatus.INVALID:
            logger.debug("%s rejected payload: %s", probe.__name__, result.reason)
    return None


# --- Compression ---


def is_sqlite_database(data: bytes) -> bool:
    return len(data) >= SQLITE_HEADER_SIZE and data[: len(SQLITE_MAGIC)] == SQLITE_MAGIC


def is_zstd_compressed(data: bytes) -> bool:
    return data[: len(ZSTD_MAGIC)] == ZSTD_MAGIC


def decompress_zstd(data: bytes) -> bytes:
    """Decompress a zstd frame, with or without a declared content size."""
    dobj = zstd.ZstdDecompressor().decompressobj()
    try:
        out = dobj.decompress(data)
    except zstd.ZstdError as e:
        raise DecompressionFailedError(str(e)) from e
    # decompressobj hands back partial output for a cut-off frame
    if not dobj.eof:
        raise DecompressionFailedError("truncated zstd frame")
    return out


# --- Archive Extraction ---


def _open_archive(source: ArchiveSource) -> zipfile.ZipFile:
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    try:
        return zipfile.ZipFile(source, "r")
    except zipfile.BadZipFile as e:
        raise InvalidArchiveError(str(e)) from e


def extract_archive(source: ArchiveSource, destination: str | Path) -> list[Path]:
    """
    Extract every readable entry of an .apkg/.colpkg container.

    Entries are written to destination/<entry-path>; unreadable entries and
    directory markers are skipped. The caller owns the destination directory.

    Args:
        source: Path to the archive, its raw bytes, or a binary file object.
        destination: Directory to extract into (created if missing).

    Returns:
        Paths of the extracted files.

    Raises:
        InvalidArchiveError: If the source is not a zip container.
    """
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)

    extracted = []
    with _open_archive(source) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            try:
                extracted.append(Path(zf.extract(info, destination)))
            except (
                zipfile.BadZipFile,
                zlib.error,
                EOFError,
                NotImplementedError,
                RuntimeError,  # encrypted entry
            ) as e:
                logger.warning("Skipping unreadable archive entry %s: %s", info.filename, e)
                partial = destination / info.filename
                if partial.is_file():
                    partial.unlink()

    logger.debug("Extracted %d entries to %s", len(extracted), destination)
    return extracted


# --- Database Payload Resolution ---


def _probe_sqlite(data: bytes) -> ProbeResult:
    if is_sqlite_database(data):
        return ProbeResult.matched(data)
    return ProbeResult.no_match()


def _probe_zstd_sqlite(data: bytes) -> ProbeResult:
    if not is_zstd_compressed(data):
        return ProbeResult.no_match()
    try:
        decompressed = decompress_zstd(data)
    except DecompressionFailedError as e:
        # The magic number is only a hint; treat a bad frame as a miss
        return ProbeResult.invalid(e.reason)
    if is_sqlite_database(decompressed):
        return ProbeResult.matched(decompressed)
    return ProbeResult.invalid("decompressed payload is not a SQLite database")


DATABASE_PROBES: tuple[Probe, ...] = (_probe_sqlite, _probe_zstd_sqlite)


def find_database_payload(directory: str | Path) -> bytes:
    """
    Return the SQLite bytes of the first valid database candidate.

    Raises:
        DatabaseNotFoundError: If no candidate holds a usable database.
    """
    directory = Path(directory)
    for name in DATABASE_CANDIDATES:
        path = directory / name
        if not path.is_file():
            continue
        result = first_match(DATABASE_PROBES, path.read_bytes())
        if result is not None:
            logger.info("Using database %s", name)
            return result.value
        logger.debug("Database candidate %s did not validate", name)

    raise DatabaseNotFoundError(directory)


def resolve_database(directory: str | Path) -> Path:
    """Write the resolved database to its canonical path and return it."""
    directory = Path(directory)
    data = find_database_payload(directory)
    if data[18:20] == WAL_FORMAT:
        # A read-only connection cannot open a WAL database without its -shm
        data = data[:18] + ROLLBACK_FORMAT + data[20:]
    db_path = directory / CANONICAL_DATABASE_NAME
    db_path.write_bytes(data)
    return db_path
