#!/usr/bin/env python3
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Shared test utilities: builders for collection databases and packages.
"""

from __future__ import annotations

import io
import json
import sqlite3
import zipfile
from pathlib import Path
from typing import Optional

import pytest
import zstandard as zstd

# Unicase collation for Anki compatibility
_unicase = lambda x, y: (x.lower() > y.lower()) - (x.lower() < y.lower())


def _connect_db(path: Path) -> sqlite3.Connection:
    """Connect to collection DB with required collation."""
    db = sqlite3.connect(str(path))
    db.create_collation("unicase", _unicase)
    return db


def create_collection(
    path: Path,
    decks: Optional[list[tuple[int, str]]] = None,
    legacy_decks: Optional[dict] = None,
    notes: tuple = (),
    cards: tuple = (),
    with_decks_table: bool = True,
    wal: bool = False,
) -> Path:
    """
    Create a minimal Anki collection database.

    Args:
        decks: (id, name) rows for the `decks` table; names use \\x1f.
        legacy_decks: JSON document stored in `col.decks`.
        notes: (id, flds, tags) rows.
        cards: (id, nid, did) rows.
        with_decks_table: False to mimic a pre-2.1.28 collection.
        wal: Leave the database in WAL journal mode.
    """
    if path.exists():
        path.unlink()

    db = _connect_db(path)
    db.executescript("""
        CREATE TABLE col (
            id INTEGER PRIMARY KEY, crt INTEGER, mod INTEGER, scm INTEGER,
            ver INTEGER, dty INTEGER, usn INTEGER, ls INTEGER,
            conf TEXT, models TEXT, decks TEXT, dconf TEXT, tags TEXT
        );
        CREATE TABLE notes (
            id INTEGER PRIMARY KEY, guid TEXT, mid INTEGER, mod INTEGER,
            usn INTEGER, tags TEXT, flds TEXT, sfld TEXT, csum INTEGER,
            flags INTEGER, data TEXT
        );
        CREATE TABLE cards (
            id INTEGER PRIMARY KEY, nid INTEGER, did INTEGER, ord INTEGER,
            mod INTEGER, usn INTEGER, type INTEGER, queue INTEGER,
            due INTEGER, ivl INTEGER, factor INTEGER, reps INTEGER,
            lapses INTEGER, left INTEGER, odue INTEGER, odid INTEGER,
            flags INTEGER, data TEXT
        );
    """)
    if with_decks_table:
        db.execute("""
            CREATE TABLE decks (
                id INTEGER PRIMARY KEY, name TEXT NOT NULL COLLATE unicase,
                mtime_secs INTEGER, usn INTEGER, common BLOB, kind BLOB
            )
        """)
        for did, name in decks or []:
            db.execute(
                "INSERT INTO decks (id, name, mtime_secs, usn, common, kind) VALUES (?, ?, 0, 0, x'', x'')",
                (did, name),
            )

    db.execute(
        "INSERT INTO col VALUES(1, 0, 0, 0, 11, 0, 0, 0, '{}', '{}', ?, '{}', '{}')",
        (json.dumps(legacy_decks) if legacy_decks is not None else "",),
    )
    for nid, flds, tags in notes:
        db.execute(
            "INSERT INTO notes (id,guid,mid,mod,usn,tags,flds,sfld,csum,flags,data) VALUES (?,'g',1,0,0,?,?,'',0,0,'')",
            (nid, tags, flds),
        )
    for cid, nid, did in cards:
        db.execute(
            "INSERT INTO cards (id,nid,did,ord,mod,usn,type,queue,due,ivl,factor,reps,lapses,left,odue,odid,flags,data) VALUES (?,?,?,0,0,0,0,0,0,0,0,0,0,0,0,0,0,'')",
            (cid, nid, did),
        )
    db.commit()
    if wal:
        db.execute("PRAGMA journal_mode=WAL")
    db.close()
    return path


def compress(data: bytes) -> bytes:
    return zstd.ZstdCompressor().compress(data)


def build_package(files: dict[str, bytes]) -> bytes:
    """Zip the given entries into an in-memory package."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


# -------------------------------------------------------------------------
# Protobuf Encoding Helpers
# -------------------------------------------------------------------------


def _encode_varint(value: int) -> bytes:
    """Encode an integer as a varint."""
    parts = []
    while value > 0x7F:
        parts.append((value & 0x7F) | 0x80)
        value >>= 7
    parts.append(value)
    return bytes(parts)


def _encode_field(field_num: int, wire_type: int, value: bytes) -> bytes:
    tag = (field_num << 3) | wire_type
    return _encode_varint(tag) + value


def _encode_bytes(field_num: int, value: bytes) -> bytes:
    return _encode_field(field_num, 2, _encode_varint(len(value)) + value)


def _encode_varint_field(field_num: int, value: int) -> bytes:
    return _encode_field(field_num, 0, _encode_varint(value))


def encode_media_entries(entries: list[tuple[str, Optional[int]]]) -> bytes:
    """Encode (name, legacy_zip_filename) pairs as a MediaEntries message."""
    out = b""
    for name, legacy in entries:
        entry = _encode_bytes(1, name.encode())
        entry += _encode_varint_field(2, 3)
        entry += _encode_bytes(3, b"\x01" * 20)
        if legacy is not None:
            entry += _encode_varint_field(255, legacy)
        out += _encode_bytes(1, entry)
    return out


# -------------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------------

SAMPLE_DECKS = [(1, "Default"), (1700000000001, "Lang\x1fSpanish"), (1700000000002, "Lang")]
SAMPLE_NOTES = (
    (100, 'Perro<img src="dog.png">\x1fDog\x1f[sound:dog.mp3]', " animals spanish "),
    (101, "Gato\x1fCat", ""),
    (102, "Uno\x1fOne", "numbers"),
)
SAMPLE_CARDS = (
    (1000, 100, 1700000000001),
    (1001, 101, 1700000000001),
    (1002, 102, 1),
    (1003, 999, 1),  # note 999 does not exist
)
SAMPLE_MEDIA = {"0": "dog.png", "1": "dog.mp3"}


@pytest.fixture
def sample_db(tmp_path) -> Path:
    return create_collection(
        tmp_path / "sample.anki2",
        decks=SAMPLE_DECKS,
        notes=SAMPLE_NOTES,
        cards=SAMPLE_CARDS,
    )


@pytest.fixture
def legacy_db(tmp_path) -> Path:
    return create_collection(
        tmp_path / "legacy.anki2",
        legacy_decks={
            str(did): {"id": did, "name": name.replace("\x1f", "::")}
            for did, name in SAMPLE_DECKS
        },
        notes=SAMPLE_NOTES,
        cards=SAMPLE_CARDS,
        with_decks_table=False,
    )


@pytest.fixture
def legacy_package(legacy_db) -> bytes:
    """An old-style .apkg: plain collection.anki2 and a JSON media index."""
    return build_package(
        {
            "collection.anki2": legacy_db.read_bytes(),
            "media": json.dumps(SAMPLE_MEDIA).encode(),
            "0": b"\x89PNG dog",
            "1": b"ID3 woof",
        }
    )


@pytest.fixture
def modern_package(sample_db, tmp_path) -> bytes:
    """A current .colpkg: zstd collection.anki21b, a stub anki2, protobuf media."""
    stub = create_collection(
        tmp_path / "stub.anki2",
        legacy_decks={"1": {"name": "Default"}},
        notes=((1, "Please update to the latest Anki version\x1f", ""),),
        cards=((1, 1, 1),),
        with_decks_table=False,
    )
    return build_package(
        {
            "collection.anki2": stub.read_bytes(),
            "collection.anki21b": compress(sample_db.read_bytes()),
            "media": compress(encode_media_entries([("dog.png", None), ("dog.mp3", None)])),
            "0": b"\x89PNG dog",
            "1": b"ID3 woof",
        }
    )
