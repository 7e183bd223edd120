# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
AnkiCollection - the read-only result of importing an Anki package.

This module also contains SchemaReader, which pulls decks and cards out of
a collection database regardless of whether it uses the current `decks`
table or the legacy JSON document stored in `col.decks`.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from .archive import SchemaError

if TYPE_CHECKING:
    from .media import LazyMediaStore

logger = logging.getLogger(__name__)

DECK_SEPARATOR = "::"
# Current schema stores deck hierarchy with the unit separator
NATIVE_DECK_SEPARATOR = "\x1f"
FIELD_SEPARATOR = "\x1f"

_IMAGE_REF = re.compile(r'src="([^"]+)"')
_SOUND_REF = re.compile(r"\[sound:([^\]]+)\]")

# Unicase collation for Anki compatibility
_unicase = lambda x, y: (x.lower() > y.lower()) - (x.lower() < y.lower())


# -------------------------------------------------------------------------
# Models
# -------------------------------------------------------------------------


@dataclass(frozen=True)
class Deck:
    """A deck; nested decks use "::" in their name (e.g. "Parent::Child")."""

    id: int
    name: str

    @property
    def path_components(self) -> list[str]:
        return self.name.split(DECK_SEPARATOR)

    @property
    def short_name(self) -> str:
        return self.path_components[-1]

    @property
    def parent_path(self) -> Optional[str]:
        parts = self.path_components
        if len(parts) < 2:
            return None
        return DECK_SEPARATOR.join(parts[:-1])

    @property
    def is_subdeck(self) -> bool:
        return DECK_SEPARATOR in self.name


@dataclass(frozen=True)
class Card:
    """A card joined with the fields and tags of its note."""

    id: int
    note_id: int
    deck_id: int
    fields: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()

    @property
    def front(self) -> str:
        return self.fields[0] if self.fields else ""

    @property
    def back(self) -> str:
        return self.fields[1] if len(self.fields) > 1 else ""

    @property
    def media_references(self) -> list[str]:
        """Filenames referenced by the fields: images first, then sounds."""
        content = " ".join(self.fields)
        return _IMAGE_REF.findall(content) + _SOUND_REF.findall(content)


@dataclass(frozen=True)
class _Note:
    id: int
    fields: tuple[str, ...]
    tags: tuple[str, ...]


def split_fields(flds: Optional[str]) -> tuple[str, ...]:
    """Split a note's field blob on the unit separator only."""
    return tuple((flds or "").split(FIELD_SEPARATOR))


def split_tags(tags: Optional[str]) -> tuple[str, ...]:
    return tuple(t for t in (tags or "").split(" ") if t)


@dataclass(frozen=True)
class AnkiCollection:
    """
    Decks, cards and media of an imported package.

    The collection owns the media store and, through it, the temporary
    directory the package was extracted to. Close it (or use it as a context
    manager) once all media access is finished.

    Usage:
        with AnkiImporter().import_collection("deck.apkg") as col:
            for deck in col.root_decks():
                print(deck.name, len(col.cards_in_deck(deck.id)))
    """

    decks: tuple[Deck, ...]
    cards: tuple[Card, ...]
    media: LazyMediaStore

    def __enter__(self) -> AnkiCollection:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.media.close()

    @property
    def deck_count(self) -> int:
        return len(self.decks)

    @property
    def card_count(self) -> int:
        return len(self.cards)

    @property
    def media_count(self) -> int:
        return len(self.media)

    def deck(self, deck_id: int) -> Optional[Deck]:
        return next((d for d in self.decks if d.id == deck_id), None)

    def cards_in_deck(self, deck_id: int) -> list[Card]:
        return [c for c in self.cards if c.deck_id == deck_id]

    def cards_by_deck(self) -> dict[int, list[Card]]:
        """Group cards by deck id, keeping scan order within each group."""
        groups: dict[int, list[Card]] = {}
        for card in self.cards:
            groups.setdefault(card.deck_id, []).append(card)
        return groups

    def root_decks(self) -> list[Deck]:
        return [d for d in self.decks if not d.is_subdeck]

    def subdecks(self, deck: Deck) -> list[Deck]:
        """Direct children of a deck."""
        return [d for d in self.decks if d.parent_path == deck.name]


# -------------------------------------------------------------------------
# Schema Reader
# -------------------------------------------------------------------------


def _connect_db(path: Path) -> sqlite3.Connection:
    """Open collection DB read-only with required collation."""
    db = sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True)
    db.row_factory = sqlite3.Row
    db.create_collation("unicase", _unicase)
    return db


class SchemaReader:
    """
    Reads decks and cards from a collection database.

    Usage:
        with SchemaReader(db_path) as reader:
            decks = reader.read_decks()
            cards = reader.read_cards()
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        try:
            self.db = _connect_db(self.db_path)
        except sqlite3.Error as e:
            raise SchemaError(str(e)) from e

    def __enter__(self) -> SchemaReader:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self):
        """Close the database connection."""
        self.db.close()

    def _query(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self.db.execute(sql, params)
        except sqlite3.Error as e:
            raise SchemaError(str(e)) from e

    def _rows(self, sql: str) -> Iterator[sqlite3.Row]:
        """Iterate a single forward cursor, wrapping engine errors."""
        cursor = self._query(sql)
        try:
            yield from cursor
        except sqlite3.Error as e:
            raise SchemaError(str(e)) from e

    # -------------------------------------------------------------------------
    # Decks
    # -------------------------------------------------------------------------

    def read_decks(self) -> list[Deck]:
        """Read decks from the `decks` table, falling back to `col.decks`."""
        decks = self._read_table_decks()
        if decks:
            logger.debug("Read %d decks from decks table", len(decks))
        else:
            decks = self._read_legacy_decks()
            logger.debug("Read %d decks from legacy col.decks", len(decks))
        return sorted(decks, key=lambda d: d.name)

    def _has_table(self, name: str) -> bool:
        row = self._query(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def _read_table_decks(self) -> list[Deck]:
        if not self._has_table("decks"):
            # Legacy databases have no decks table
            logger.debug("No decks table in %s", self.db_path.name)
            return []
        rows = list(self._rows("SELECT id, name FROM decks"))
        return [
            Deck(id=row["id"], name=row["name"].replace(NATIVE_DECK_SEPARATOR, DECK_SEPARATOR))
            for row in rows
        ]

    def _read_legacy_decks(self) -> list[Deck]:
        row = self._query("SELECT decks FROM col").fetchone()
        if not row or not row["decks"]:
            return []

        try:
            doc = json.loads(row["decks"])
        except ValueError as e:
            logger.warning("Unparseable col.decks document: %s", e)
            return []
        if not isinstance(doc, dict):
            return []

        decks = []
        for key, value in doc.items():
            try:
                did = int(key)
            except ValueError:
                logger.debug("Skipping legacy deck with non-numeric id %r", key)
                continue
            name = value.get("name") if isinstance(value, dict) else None
            if not isinstance(name, str):
                logger.debug("Skipping legacy deck %s without a name", key)
                continue
            decks.append(Deck(id=did, name=name))
        return decks

    # -------------------------------------------------------------------------
    # Cards
    # -------------------------------------------------------------------------

    def _read_notes(self) -> dict[int, _Note]:
        notes = {}
        for row in self._rows("SELECT id, flds, tags FROM notes"):
            notes[row["id"]] = _Note(
                id=row["id"],
                fields=split_fields(row["flds"]),
                tags=split_tags(row["tags"]),
            )
        return notes

    def read_cards(
        self, progress: Optional[Callable[[int, int], None]] = None
    ) -> list[Card]:
        """
        Read every card whose note exists.

        Args:
            progress: Optional callback receiving (cards scanned, total cards).

        Returns:
            Cards in database scan order; cards with a missing note are dropped.
        """
        notes = self._read_notes()
        total = self._query("SELECT COUNT(*) FROM cards").fetchone()[0]

        cards = []
        dropped = 0
        for current, row in enumerate(self._rows("SELECT id, nid, did FROM cards"), 1):
            note = notes.get(row["nid"])
            if note is None:
                dropped += 1
            else:
                cards.append(
                    Card(
                        id=row["id"],
                        note_id=note.id,
                        deck_id=row["did"],
                        fields=note.fields,
                        tags=note.tags,
                    )
                )
            if progress:
                progress(current, total)

        if dropped:
            logger.debug("Dropped %d cards without a note", dropped)
        return cards
