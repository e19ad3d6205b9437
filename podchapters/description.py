"""
Chapter markers in free-text show notes.

Episode descriptions often list chapters informally, one per line:

    0:00 Intro
    (04:45) Plot summary
    1:02:03 - Listener mail https://example.com/mail

Each line is tried against a small ordered set of line grammars. Lines
that match none of them are ordinary prose and are skipped.
"""

import logging
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup

from podchapters.chapter import Chapter, ChapterList, format_timestamp
from podchapters.errors import NoChaptersError

logger = logging.getLogger(__name__)

_TIMESTAMP = (
    r"(?:(?P<hours>\d+):)?"
    r"(?P<minutes>\d{1,2}):(?P<seconds>\d{2})"
    r"(?:\.(?P<fraction>\d{1,3}))?"
)

# "-", "*", "•" bullets or "1." / "1)" numbering before the timestamp
_LIST_MARKER = r"(?:(?:[-*•]|\d+[.)])\s+)?"

_SEPARATOR_CHARS = "-–—:|"
_SEPARATOR = rf"(?:\s*[{_SEPARATOR_CHARS}]\s*|\s+|$)"

_URL_PREFIXES = ("http://", "https://")

# Elements that end a visual line in HTML show notes
_LINE_TAGS = ("p", "li", "div", "tr", "h1", "h2", "h3", "h4", "h5", "h6")
# Any of these marks the notes as HTML; a stray "<" in prose does not
_HTML_STRUCTURE = ("br", "ul", "ol", "table", *_LINE_TAGS)

# Always written between timestamp and title
DESCRIPTION_SEPARATOR = " - "


@dataclass(frozen=True)
class LineGrammar:
    """One accepted shape of a chapter line."""

    name: str
    pattern: re.Pattern[str]


# Tried in order; the first grammar with a valid timestamp wins
LINE_GRAMMARS = (
    LineGrammar(
        "bracketed",
        re.compile(
            rf"^\s*{_LIST_MARKER}[(\[]\s*{_TIMESTAMP}\s*[)\]]"
            rf"\s*(?:[{_SEPARATOR_CHARS}]\s*)?(?P<rest>.*)$"
        ),
    ),
    LineGrammar(
        "leading",
        re.compile(rf"^\s*{_LIST_MARKER}{_TIMESTAMP}{_SEPARATOR}(?P<rest>.*)$"),
    ),
)


def parse_timestamp(match: re.Match[str]) -> int | None:
    """
    Convert the timestamp groups of a grammar match to milliseconds.

    Returns:
        The offset, or None when minutes or seconds are out of range.
    """
    hours = int(match.group("hours") or 0)
    minutes = int(match.group("minutes"))
    seconds = int(match.group("seconds"))
    if minutes >= 60 or seconds >= 60:
        return None

    fraction = match.group("fraction") or ""
    millis = int(fraction.ljust(3, "0")) if fraction else 0
    return ((hours * 60 + minutes) * 60 + seconds) * 1000 + millis


def split_title_url(rest: str) -> tuple[str, str | None]:
    """Split a trailing http(s) URL token off the title text."""
    rest = rest.strip()
    parts = rest.rsplit(None, 1)
    if parts and parts[-1].lower().startswith(_URL_PREFIXES):
        url = parts[-1]
        title = parts[0] if len(parts) == 2 else ""
        # "Title - https://..." leaves a dangling separator behind
        return title.rstrip().rstrip(_SEPARATOR_CHARS).rstrip(), url
    return rest, None


def parse_line(line: str) -> Chapter | None:
    """
    Parse a single show-notes line.

    Returns:
        A Chapter when the line starts with a valid timestamp, else None.
    """
    for grammar in LINE_GRAMMARS:
        match = grammar.pattern.match(line)
        if not match:
            continue

        start_ms = parse_timestamp(match)
        if start_ms is None:
            logger.debug("Skipping line with out-of-range timestamp: %r", line)
            continue

        title, url = split_title_url(match.group("rest"))
        return Chapter(start_ms=start_ms, title=title, url=url)

    return None


def _soup_text(soup: BeautifulSoup) -> str:
    for element in soup.find_all(("script", "style")):
        element.extract()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for cell in soup.find_all(("td", "th")):
        cell.append(" ")
    for block in soup.find_all(_LINE_TAGS):
        block.append("\n")
    return soup.get_text()


def html_to_text(text: str) -> str:
    """Flatten HTML show notes into plain text lines."""
    return _soup_text(BeautifulSoup(text, "html.parser"))


def from_description(text: str) -> ChapterList:
    """
    Extract chapters from an episode description.

    Duplicate start times keep the first line that used them. The result
    is sorted by start, since hand-written show notes are sometimes out
    of order.

    Notes are treated as HTML only when they contain line structure
    (paragraphs, list items, breaks and the like). Plain text that merely
    has "<" or ">" in a title is parsed as it is.

    Args:
        text: Plain text or HTML show notes.

    Returns:
        The chapters found, ascending by start.

    Raises:
        NoChaptersError: If no line carries a chapter marker.
    """
    soup = BeautifulSoup(text, "html.parser")
    if soup.find(_HTML_STRUCTURE):
        text = _soup_text(soup)

    chapters: list[Chapter] = []
    seen_starts: set[int] = set()

    for line in text.splitlines():
        chapter = parse_line(line)
        if chapter is None:
            continue
        if chapter.start_ms in seen_starts:
            logger.debug(
                "Dropping duplicate chapter at %s: %r",
                format_timestamp(chapter.start_ms),
                chapter.title,
            )
            continue
        seen_starts.add(chapter.start_ms)
        chapters.append(chapter)

    if not chapters:
        raise NoChaptersError("No chapter markers found in description")

    chapters.sort(key=lambda c: c.start_ms)
    logger.debug("Parsed %d chapter(s) from description", len(chapters))
    return ChapterList(chapters)


def to_description(chapters: ChapterList) -> str:
    """
    Render chapters as show-notes lines ("H:MM:SS - Title URL").

    The separator is always written, so a title that itself starts with
    "-" or ":" reads back unchanged. Hidden chapters are left out. End
    times, images and link text have no text form.
    """
    lines = []
    for chapter in chapters:
        if chapter.hidden:
            continue
        text = " ".join(p for p in (chapter.title, chapter.url) if p)
        line = format_timestamp(chapter.start_ms) + DESCRIPTION_SEPARATOR + text
        lines.append(line.rstrip())
    return "\n".join(lines) + "\n" if lines else ""
