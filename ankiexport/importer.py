# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Importer implementation."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .archive import (
    ArchiveFileNotFoundError,
    ArchiveSource,
    extract_archive,
    resolve_database,
)
from .collection import AnkiCollection, SchemaReader
from .media import MEDIA_EXTENSIONS, LazyMediaStore, read_media_index

logger = logging.getLogger(__name__)

PACKAGE_EXTENSIONS = (".apkg", ".colpkg")


# --- Configuration ---


@dataclass
class ImportConfig:
    """Importer settings."""

    media_extensions: tuple[str, ...] = MEDIA_EXTENSIONS
    temp_dir: Optional[Path] = None

    @classmethod
    def from_env(cls) -> ImportConfig:
        """Build a config from ANKIEXPORT_TMPDIR / ANKIEXPORT_MEDIA_EXTENSIONS."""
        config = cls()
        if temp_dir := os.getenv("ANKIEXPORT_TMPDIR"):
            config.temp_dir = Path(temp_dir)
        if extensions := os.getenv("ANKIEXPORT_MEDIA_EXTENSIONS"):
            config.media_extensions = tuple(
                e.strip().lstrip(".") for e in extensions.split(",") if e.strip()
            )
        return config


# --- Progress ---


class ImportStage(Enum):
    EXTRACTING = "extracting"
    READING_DECKS = "reading_decks"
    READING_CARDS = "reading_cards"
    PARSING_MEDIA = "parsing_media"


@dataclass
class ImportProgress:
    """A progress notification; current/total are only set for cards."""

    stage: ImportStage
    current: int = 0
    total: int = 0


ProgressCallback = Callable[[ImportProgress], None]


# --- Importer ---


@dataclass
class AnkiImporter:
    """
    Imports .apkg / .colpkg packages into an AnkiCollection.

    Usage:
        importer = AnkiImporter()
        with importer.import_collection("deck.apkg") as col:
            print(col.deck_count, col.card_count, col.media_count)
    """

    config: ImportConfig = field(default_factory=ImportConfig)

    def import_collection(
        self, source: ArchiveSource, progress: Optional[ProgressCallback] = None
    ) -> AnkiCollection:
        """
        Import a package from a path, raw bytes or a binary file object.

        The package is extracted to a temporary directory that is owned by
        the returned collection's media store and removed when it is closed.
        Progress callbacks run synchronously on the calling thread.

        Raises:
            ArchiveFileNotFoundError: If a path is given and does not exist.
            InvalidArchiveError: If the package is not a zip container.
            DatabaseNotFoundError: If no usable collection database is found.
            DecompressionFailedError: If the media index cannot be decompressed.
            SchemaError: If the database cannot be queried.
        """
        if isinstance(source, (str, Path)):
            source = Path(source)
            if not source.is_file():
                raise ArchiveFileNotFoundError(source)
            if source.suffix.lower() not in PACKAGE_EXTENSIONS:
                logger.warning("Unexpected package extension: %s", source.name)

        notify = progress or (lambda _: None)
        work_dir = Path(tempfile.mkdtemp(prefix="ankiexport-", dir=self.config.temp_dir))
        try:
            return self._import(source, work_dir, notify)
        except BaseException:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

    def _import(
        self, source: ArchiveSource, work_dir: Path, notify: ProgressCallback
    ) -> AnkiCollection:
        notify(ImportProgress(ImportStage.EXTRACTING))
        logger.info("Extracting package to %s", work_dir)
        extract_archive(source, work_dir)
        db_path = resolve_database(work_dir)

        with SchemaReader(db_path) as reader:
            notify(ImportProgress(ImportStage.READING_DECKS))
            decks = reader.read_decks()
            logger.info("Read %d decks", len(decks))

            notify(ImportProgress(ImportStage.READING_CARDS))
            cards = reader.read_cards(
                lambda current, total: notify(
                    ImportProgress(ImportStage.READING_CARDS, current, total)
                )
            )
            logger.info("Read %d cards", len(cards))

        notify(ImportProgress(ImportStage.PARSING_MEDIA))
        index = read_media_index(work_dir, self.config.media_extensions)
        media = LazyMediaStore(index, work_dir, owns_directory=True)
        logger.info("Indexed %d media files", len(media))

        return AnkiCollection(decks=tuple(decks), cards=tuple(cards), media=media)


def import_collection(
    source: ArchiveSource,
    progress: Optional[ProgressCallback] = None,
    config: Optional[ImportConfig] = None,
) -> AnkiCollection:
    """Import a package with a one-off AnkiImporter."""
    return AnkiImporter(config or ImportConfig()).import_collection(source, progress)
