# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Anki Export - read decks, cards and media out of .apkg / .colpkg packages.

Handles both legacy (collection.anki2, JSON media index) and current
(zstd-compressed collection.anki21b, protobuf media index) packages.

Usage:
    from ankiexport import AnkiImporter, export_collection

    with AnkiImporter().import_collection("deck.apkg") as col:
        print(f"{col.deck_count} decks, {col.card_count} cards")
        png = col.media.load("cat.png")
        export_collection(col, "out/")
"""

from .archive import (
    # Exceptions
    AnkiImportError,
    ArchiveFileNotFoundError,
    InvalidArchiveError,
    DatabaseNotFoundError,
    DecompressionFailedError,
    SchemaError,
    MediaNotFoundError,
    # Pipeline stages
    extract_archive,
    find_database_payload,
    resolve_database,
)
from .collection import AnkiCollection, Card, Deck, SchemaReader
from .media import (
    MEDIA_EXTENSIONS,
    LazyMediaStore,
    decode_media_index,
    read_media_index,
)
from .importer import (
    AnkiImporter,
    ImportConfig,
    ImportProgress,
    ImportStage,
    import_collection,
)
from .export import export_collection, to_json, to_markdown

__all__ = [
    "AnkiImportError",
    "ArchiveFileNotFoundError",
    "InvalidArchiveError",
    "DatabaseNotFoundError",
    "DecompressionFailedError",
    "SchemaError",
    "MediaNotFoundError",
    "extract_archive",
    "find_database_payload",
    "resolve_database",
    "AnkiCollection",
    "Card",
    "Deck",
    "SchemaReader",
    "MEDIA_EXTENSIONS",
    "LazyMediaStore",
    "decode_media_index",
    "read_media_index",
    "AnkiImporter",
    "ImportConfig",
    "ImportProgress",
    "ImportStage",
    "import_collection",
    "export_collection",
    "to_json",
    "to_markdown",
]
