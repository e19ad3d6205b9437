#!/usr/bin/env python3
"""
podchapters - Podcast Chapter Converter

Reads chapter markers from JSON chapter files, MP3 ID3v2 tags or episode
show notes, and writes them back out in any of those formats.

Formats are picked from the file extension:
    .json                   JSON chapter file
    .mp3                    ID3v2 CHAP/CTOC frames
    .txt .md .html .htm     Show notes ("0:00 Intro" lines)

Usage:
    # List the chapters embedded in an episode
    podchapters show episode.mp3

    # Turn show notes into a JSON chapter file
    podchapters convert notes.txt chapters.json

    # Embed chapters into an MP3 (rewritten in place)
    podchapters convert chapters.json episode.mp3

    # Podcasting 2.0 JSON from the MP3 tags
    podchapters convert episode.mp3 chapters.json --podcast-namespace

    # Print show notes to stdout
    podchapters convert episode.mp3 - --to text
"""

import argparse
import logging
import sys
from pathlib import Path

from podchapters import DESCRIPTION_EXTENSIONS, JSON_EXTENSIONS, MP3_EXTENSIONS, __version__
from podchapters.chapter import ChapterList
from podchapters.description import from_description, to_description
from podchapters.errors import ChapterError
from podchapters.id3 import Id3Config, embed_chapters, from_mp3_file
from podchapters.json_format import from_json, to_json

FORMATS = ("json", "mp3", "text")
STDOUT = "-"


def detect_format(path: Path) -> str | None:
    """Guess the chapter format from a file extension."""
    suffix = path.suffix.lower()
    if suffix in JSON_EXTENSIONS:
        return "json"
    if suffix in MP3_EXTENSIONS:
        return "mp3"
    if suffix in DESCRIPTION_EXTENSIONS:
        return "text"
    return None


def resolve_format(path: Path, explicit: str | None) -> str:
    """Return the explicit format, or the one implied by the extension."""
    if explicit:
        return explicit
    fmt = detect_format(path)
    if fmt is None:
        raise ValueError(
            f"Can't tell the chapter format of '{path.name}', use --from/--to"
        )
    return fmt


def load_chapters(path: Path, fmt: str) -> ChapterList:
    """Read chapters from a file in the given format."""
    if fmt == "json":
        return from_json(path.read_bytes())
    if fmt == "mp3":
        return from_mp3_file(path)
    return from_description(path.read_text(encoding="utf-8"))


def render_chapters(chapters: ChapterList, fmt: str, args: argparse.Namespace) -> bytes:
    """Serialize chapters for the text based formats."""
    if fmt == "json":
        return to_json(
            chapters,
            indent=args.indent,
            podcast_namespace=args.podcast_namespace,
        )
    return to_description(chapters).encode("utf-8")


def format_chapter_table(chapters: ChapterList) -> str:
    """Human readable chapter listing used by 'show'."""
    lines = []
    for i, chapter in enumerate(chapters, start=1):
        line = f"{i:3d}. {chapter.time_str:>9}  {chapter.title or '(untitled)'}"
        if chapter.hidden:
            line += "  [hidden]"
        lines.append(line)
        if chapter.url:
            lines.append(f"{'':16}{chapter.url}")
    return "\n".join(lines)


def cmd_show(args: argparse.Namespace) -> None:
    """Handle the 'show' subcommand."""
    source = Path(args.source)
    fmt = resolve_format(source, args.source_format)

    chapters = load_chapters(source, fmt)
    print(f"{source.name}: {len(chapters)} chapter(s)")
    if len(chapters):
        print(format_chapter_table(chapters))


def cmd_convert(args: argparse.Namespace) -> None:
    """Handle the 'convert' subcommand."""
    source = Path(args.source)
    source_format = resolve_format(source, args.source_format)

    if args.output == STDOUT:
        target = None
        target_format = args.target_format or "text"
    else:
        target = Path(args.output)
        target_format = resolve_format(target, args.target_format)

    chapters = load_chapters(source, source_format)

    if target_format == "mp3":
        if target is None:
            raise ValueError("MP3 output needs a file path, not stdout")
        if not target.exists():
            raise ValueError(f"MP3 file not found: {target} (chapters are embedded in place)")
        config = Id3Config(v2_version=args.id3_version, padding=args.padding)
        embed_chapters(target, chapters, config)
        print(f"Embedded {len(chapters)} chapter(s) into {target.name}")
        return

    data = render_chapters(chapters, target_format, args)
    if target is None:
        sys.stdout.write(data.decode("utf-8"))
        return

    target.write_bytes(data)
    print(f"Wrote {len(chapters)} chapter(s) to {target.name}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="podchapters",
        description="Convert podcast chapters between JSON, MP3 ID3v2 tags and show notes.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s show episode.mp3                          # List embedded chapters
  %(prog)s convert notes.txt chapters.json           # Show notes -> JSON
  %(prog)s convert chapters.json episode.mp3         # Embed into MP3
  %(prog)s convert episode.mp3 - --to text           # MP3 -> show notes on stdout
""",
    )

    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", action="store_true", help="Show debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ─────────────────────────────────────────────────────────────────────────
    # 'show' subcommand - list chapters
    # ─────────────────────────────────────────────────────────────────────────
    show_parser = subparsers.add_parser("show", help="List the chapters of a file")
    show_parser.add_argument("source", help="JSON, MP3 or show-notes file")
    show_parser.add_argument(
        "--from",
        dest="source_format",
        choices=FORMATS,
        help="Source format (default: from the file extension)",
    )

    # ─────────────────────────────────────────────────────────────────────────
    # 'convert' subcommand - transcode chapters
    # ─────────────────────────────────────────────────────────────────────────
    convert_parser = subparsers.add_parser(
        "convert",
        help="Convert chapters from one format to another",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s notes.txt chapters.json
  %(prog)s chapters.json episode.mp3 --id3-version 3
  %(prog)s episode.mp3 chapters.json --podcast-namespace
""",
    )
    convert_parser.add_argument("source", help="File to read chapters from")
    convert_parser.add_argument(
        "output",
        help="File to write (an existing MP3 is updated in place), or '-' for stdout",
    )
    convert_parser.add_argument(
        "--from",
        dest="source_format",
        choices=FORMATS,
        help="Source format (default: from the file extension)",
    )
    convert_parser.add_argument(
        "--to",
        dest="target_format",
        choices=FORMATS,
        help="Output format (default: from the file extension)",
    )
    convert_parser.add_argument(
        "--podcast-namespace",
        action="store_true",
        help="Write a Podcasting 2.0 chapters document instead of a plain JSON array",
    )
    convert_parser.add_argument(
        "--indent",
        type=int,
        default=2,
        help="JSON indentation (default: 2)",
    )
    convert_parser.add_argument(
        "--id3-version",
        type=int,
        choices=(3, 4),
        default=None,
        help="ID3v2 version to write (default: keep the file's, else 4)",
    )
    convert_parser.add_argument(
        "--padding",
        type=int,
        default=Id3Config.padding,
        help=f"Bytes of padding after the ID3v2 frames (default: {Id3Config.padding})",
    )

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    # Handle case where no command specified
    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        if args.command == "show":
            cmd_show(args)
        elif args.command == "convert":
            cmd_convert(args)
    except (ChapterError, ValueError, OSError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
