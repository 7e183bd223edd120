# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Markdown and JSON rendering of an imported collection."""

from __future__ import annotations

import html
import json
import logging
import re
from pathlib import Path

from .archive import MediaNotFoundError
from .collection import AnkiCollection, Card

logger = logging.getLogger(__name__)

MARKDOWN_FILENAME = "cards.md"
JSON_FILENAME = "cards.json"

_HTML_REPLACEMENTS = [
    (re.compile(r"<(?:b|strong)>([^<]*)</(?:b|strong)>"), r"**\1**"),
    (re.compile(r"<(?:i|em)>([^<]*)</(?:i|em)>"), r"*\1*"),
    (re.compile(r"<br\s*/?>"), "\n"),
]
_TAG = re.compile(r"<[^>]+>")
_IMG_TAG = re.compile(r'<img[^>]*src="([^"]*)"[^>]*>')
_SOUND_TAG = re.compile(r"\[sound:([^\]]*)\]")


def html_to_markdown(text: str) -> str:
    for pattern, replacement in _HTML_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    return html.unescape(_TAG.sub("", text)).replace("\xa0", " ")


def convert_media_references(text: str, media_folder: str = "media") -> str:
    text = _IMG_TAG.sub(lambda m: f"![]({media_folder}/{m.group(1)})", text)
    return _SOUND_TAG.sub(
        lambda m: f"[🔊 {m.group(1)}]({media_folder}/{m.group(1)})", text
    )


def _render_card(card: Card, media_folder: str) -> str:
    out = "## Card\n\n"
    for content in card.fields:
        if not content.strip():
            continue
        # <img> has to be rewritten before tags are stripped
        content = convert_media_references(content, media_folder)
        out += html_to_markdown(content) + "\n\n"
    if card.tags:
        out += f"*Tags: {', '.join(card.tags)}*\n\n"
    return out + "---\n\n"


def to_markdown(collection: AnkiCollection, media_folder: str = "media") -> str:
    """Render cards grouped under one heading per deck, in deck order."""
    groups = collection.cards_by_deck()
    output = ""

    for deck in collection.decks:
        cards = groups.pop(deck.id, [])
        if not cards:
            continue
        output += f"# {deck.name}\n\n"
        output += "".join(_render_card(c, media_folder) for c in cards)

    orphans = [c for cards in groups.values() for c in cards]
    if orphans:
        output += "# Unsorted\n\n"
        output += "".join(_render_card(c, media_folder) for c in orphans)

    return output


def to_json(collection: AnkiCollection) -> str:
    cards = []
    for card in collection.cards:
        deck = collection.deck(card.deck_id)
        cards.append(
            {
                "id": card.id,
                "noteId": card.note_id,
                "deckId": card.deck_id,
                "deck": deck.name if deck else None,
                "fields": list(card.fields),
                "tags": list(card.tags),
            }
        )
    return json.dumps(cards, indent=2, sort_keys=True, ensure_ascii=False)


def export_collection(
    collection: AnkiCollection, directory: str | Path, media_folder: str = "media"
) -> Path:
    """
    Write cards.md, cards.json and the media folder into directory.

    Media files are streamed from the extracted package; files listed in the
    index but missing from the package are skipped.

    Returns:
        The output directory.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    (directory / MARKDOWN_FILENAME).write_text(
        to_markdown(collection, media_folder), encoding="utf-8"
    )
    (directory / JSON_FILENAME).write_text(to_json(collection), encoding="utf-8")

    if len(collection.media):
        media_dir = directory / media_folder
        media_dir.mkdir(parents=True, exist_ok=True)
        copied = 0
        for filename in collection.media.filenames():
            try:
                collection.media.copy_to(filename, media_dir)
                copied += 1
            except MediaNotFoundError:
                logger.warning("Skipping media file missing from package: %s", filename)
        logger.info("Copied %d media files to %s", copied, media_dir)

    return directory
