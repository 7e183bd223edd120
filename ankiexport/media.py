# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Media index decoding and lazy access to extracted media files.

Packages map their numbered media blobs ("0", "1", ...) to real filenames
through a `media` file. Depending on the Anki version that wrote it, this
is a JSON object, a zstd-compressed protobuf list, or something in between;
decode_media_index() tries each in turn.
"""

from __future__ import annotations

import functools
import json
import logging
import re
import shutil
import threading
import weakref
from pathlib import Path
from typing import Iterable, KeysView, Optional

from .archive import (
    MediaNotFoundError,
    Probe,
    ProbeResult,
    decompress_zstd,
    first_match,
    is_zstd_compressed,
)

logger = logging.getLogger(__name__)

MEDIA_INDEX_NAME = "media"

MEDIA_EXTENSIONS = (
    # audio
    "mp3", "wav", "ogg", "oga", "m4a", "flac", "aac", "opus", "spx",
    # images
    "png", "jpg", "jpeg", "gif", "webp", "svg", "bmp", "tif", "tiff", "avif",
    # video
    "mp4", "webm", "mov", "mkv", "avi", "ogv", "mpg", "mpeg",
)


# -------------------------------------------------------------------------
# Protobuf Helpers (strict parsing for Anki's MediaEntries message)
# -------------------------------------------------------------------------


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Read a varint from bytes, return (value, new_position)."""
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")


def _parse_protobuf_fields(data: bytes) -> dict[int, list]:
    """
    Parse protobuf wire format into a dict of field_number -> list of values.
    Raises ValueError on anything that is not well-formed.
    """
    fields: dict[int, list] = {}
    pos = 0
    while pos < len(data):
        tag, pos = _read_varint(data, pos)
        field_num = tag >> 3
        wire_type = tag & 0x07
        if field_num == 0:
            raise ValueError("invalid field number 0")

        if wire_type == 0:  # VARINT
            val, pos = _read_varint(data, pos)
        elif wire_type == 2:  # LEN
            length, pos = _read_varint(data, pos)
            if pos + length > len(data):
                raise ValueError("truncated length-delimited field")
            val = data[pos : pos + length]
            pos += length
        elif wire_type == 5:  # I32
            if pos + 4 > len(data):
                raise ValueError("truncated fixed32 field")
            val = int.from_bytes(data[pos : pos + 4], "little")
            pos += 4
        elif wire_type == 1:  # I64
            if pos + 8 > len(data):
                raise ValueError("truncated fixed64 field")
            val = int.from_bytes(data[pos : pos + 8], "little")
            pos += 8
        else:
            raise ValueError(f"unsupported wire type {wire_type}")
        fields.setdefault(field_num, []).append(val)
    return fields


def _get_int(fields: dict, num: int) -> Optional[int]:
    """Get int field from parsed protobuf."""
    vals = fields.get(num, [])
    if vals and isinstance(vals[0], int):
        return vals[0]
    return None


# -------------------------------------------------------------------------
# Media Index Decoding
# -------------------------------------------------------------------------


def _probe_json_map(data: bytes) -> ProbeResult:
    try:
        doc = json.loads(data)
    except ValueError:
        return ProbeResult.no_match()
    if not isinstance(doc, dict):
        return ProbeResult.invalid("JSON document is not an object")
    if not all(isinstance(v, str) for v in doc.values()):
        return ProbeResult.invalid("JSON map has non-string filenames")
    return ProbeResult.matched({str(k): v for k, v in doc.items()})


def _probe_media_entries(data: bytes) -> ProbeResult:
    """
    Decode MediaEntries { repeated MediaEntry entries = 1 }, where
    MediaEntry { string name = 1; uint32 size = 2; bytes sha1 = 3;
    optional uint32 legacy_zip_filename = 255 }.
    """
    try:
        top = _parse_protobuf_fields(data)
    except ValueError:
        return ProbeResult.no_match()
    entries = top.get(1, [])
    if set(top) != {1} or not all(isinstance(e, bytes) for e in entries):
        return ProbeResult.no_match()

    mapping = {}
    for index, raw in enumerate(entries):
        try:
            entry = _parse_protobuf_fields(raw)
            name = entry.get(1, [b""])[0]
            if not isinstance(name, bytes):
                raise ValueError("name is not a string")
            name = name.decode("utf-8")
        except ValueError as e:
            return ProbeResult.invalid(f"entry {index}: {e}")
        if not name:
            continue
        legacy_key = _get_int(entry, 255)
        key = str(legacy_key) if legacy_key is not None else str(index)
        mapping[key] = name
    return ProbeResult.matched(mapping)


@functools.lru_cache(maxsize=8)
def _filename_pattern(extensions: tuple[str, ...]) -> re.Pattern:
    exts = sorted({e.lower().lstrip(".") for e in extensions if e}, key=len, reverse=True)
    alternation = "|".join(re.escape(e) for e in exts)
    return re.compile(
        rf"([A-Za-z0-9_\-. ]+\.(?:{alternation}))(?![A-Za-z0-9])", re.IGNORECASE
    )


def _filename_scanner(extensions: tuple[str, ...]) -> Probe:
    def _probe_filename_scan(data: bytes) -> ProbeResult:
        # Best effort: keys are assigned in scan order, which only matches
        # the real storage keys when the encoder wrote entries in key order.
        if not extensions:
            return ProbeResult.matched({})
        text = data.decode("utf-8", errors="replace")
        names = (m.group(1).strip() for m in _filename_pattern(extensions).finditer(text))
        return ProbeResult.matched({str(i): name for i, name in enumerate(names)})

    return _probe_filename_scan


def decode_media_index(
    data: bytes, extensions: Iterable[str] = MEDIA_EXTENSIONS
) -> dict[str, str]:
    """Decode an (already decompressed) media index into key -> filename."""
    probes = (
        _probe_json_map,
        _probe_media_entries,
        _filename_scanner(tuple(extensions)),
    )
    result = first_match(probes, data)
    return result.value if result is not None else {}


def read_media_index(
    directory: str | Path, extensions: Iterable[str] = MEDIA_EXTENSIONS
) -> dict[str, str]:
    """
    Read the media index of an extracted package.

    Returns an empty index when the package has no `media` file.

    Raises:
        DecompressionFailedError: If the index is zstd-framed but corrupt.
    """
    path = Path(directory) / MEDIA_INDEX_NAME
    if not path.is_file():
        logger.debug("No media index in %s", directory)
        return {}

    data = path.read_bytes()
    if is_zstd_compressed(data):
        data = decompress_zstd(data)

    index = decode_media_index(data, extensions)
    logger.debug("Media index lists %d files", len(index))
    return index


# -------------------------------------------------------------------------
# Lazy Media Store
# -------------------------------------------------------------------------


class LazyMediaStore:
    """
    Media files of an extracted package, loaded on demand.

    Only load() and clear_cache() touch the cache, and they share a lock;
    everything else reads immutable state and the filesystem.

    Usage:
        store = LazyMediaStore(index, work_dir, owns_directory=True)
        data = store.load("cat.png")
        store.copy_to("bark.mp3", out_dir)
        store.close()  # removes work_dir
    """

    def __init__(
        self,
        index: dict[str, str],
        directory: str | Path,
        owns_directory: bool = False,
    ):
        """
        Args:
            index: Storage key -> logical filename, as read from the package.
            directory: Directory the storage keys are relative to.
            owns_directory: If True, the directory is removed on close().
        """
        self.directory = Path(directory)
        self._keys: dict[str, str] = {name: key for key, name in (index or {}).items()}
        self._cache: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self._closed = False

        if owns_directory:
            self._finalizer = weakref.finalize(
                self, shutil.rmtree, str(self.directory), ignore_errors=True
            )
        else:
            self._finalizer = None

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, filename: object) -> bool:
        return filename in self._keys

    def __enter__(self) -> LazyMediaStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Drop the cache and remove the working directory if owned."""
        self.clear_cache()
        if self._finalizer is not None:
            self._finalizer()
        self._closed = True

    def filenames(self) -> KeysView[str]:
        return self._keys.keys()

    def locate(self, filename: str) -> Optional[Path]:
        """Path of the extracted file, or None if unknown or not on disk."""
        key = self._keys.get(filename)
        if key is None or key in ("", ".", "..") or Path(key).name != key:
            return None
        path = self.directory / key
        return path if path.is_file() else None

    def _read_bytes(self, path: Path) -> bytes:
        return path.read_bytes()

    def load(self, filename: str) -> Optional[bytes]:
        """Return the file's bytes, reading from disk on first access."""
        with self._lock:
            cached = self._cache.get(filename)
        if cached is not None:
            return cached

        path = self.locate(filename)
        if path is None:
            return None
        try:
            data = self._read_bytes(path)
        except OSError as e:
            logger.warning("Could not read media file %s: %s", filename, e)
            return None

        with self._lock:
            self._cache[filename] = data
        return data

    def copy_to(self, filename: str, destination: str | Path) -> Path:
        """
        Stream a media file to destination without caching it.

        If destination is an existing directory, the file keeps its name.

        Raises:
            MediaNotFoundError: If the filename is unknown or not extracted.
        """
        source = self.locate(filename)
        if source is None:
            raise MediaNotFoundError(filename)

        destination = Path(destination)
        if destination.is_dir():
            destination = destination / Path(filename).name
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        return destination

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
