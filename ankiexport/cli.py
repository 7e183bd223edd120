# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Command-line entry point: convert an Anki package to Markdown and JSON."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .archive import AnkiImportError
from .export import export_collection
from .importer import AnkiImporter, ImportConfig, ImportProgress, ImportStage


def build_argparser() -> argparse.ArgumentParser:
    """Build command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="anki-export",
        description="Export the decks, cards and media of an .apkg/.colpkg file",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="""
EXAMPLES:
  %(prog)s deck.apkg
  %(prog)s collection.colpkg ./notes -v
""",
    )
    parser.add_argument("input", help="Input .apkg or .colpkg file")
    parser.add_argument(
        "output",
        nargs="?",
        default="export",
        help="Output directory (default: ./export)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    return parser


def _print_progress(progress: ImportProgress) -> None:
    if progress.stage is ImportStage.EXTRACTING:
        print("  Extracting archive...")
    elif progress.stage is ImportStage.READING_DECKS:
        print("  Reading decks...")
    elif progress.stage is ImportStage.READING_CARDS:
        if progress.total:
            print(f"  Reading cards: {progress.current}/{progress.total}", end="\r")
            sys.stdout.flush()
    elif progress.stage is ImportStage.PARSING_MEDIA:
        print("\n  Parsing media...")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main program entry point."""
    args = build_argparser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    input_path = Path(args.input)
    if not input_path.is_file():
        print(f"Error: File not found: {input_path}", file=sys.stderr)
        return 1

    print(f"Importing {input_path}...")
    importer = AnkiImporter(ImportConfig.from_env())
    try:
        with importer.import_collection(input_path, _print_progress) as col:
            print(
                f"Found {col.deck_count} decks, {col.card_count} cards, "
                f"{col.media_count} media files"
            )
            print(f"Exporting to {args.output}...")
            export_collection(col, args.output)
    except AnkiImportError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Done! Exported to {args.output}/")
    return 0


if __name__ == "__main__":
    sys.exit(main())
