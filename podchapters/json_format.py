"""
JSON chapter files.

Two document shapes are read:

    [{"start": 0, "title": "Intro"}, {"start": 30.5, "title": "Main"}]

and the Podcasting 2.0 chapters document:

    {"version": "1.2.0", "chapters": [{"startTime": 0, "title": "Intro"}]}

Times are seconds on the wire and milliseconds in memory.
"""

import json
import logging
import math

from podchapters.chapter import Chapter, ChapterList, ms_to_seconds, seconds_to_ms
from podchapters.errors import InvariantViolationError, MalformedError, SchemaViolationError

logger = logging.getLogger(__name__)

PODCAST_NAMESPACE_VERSION = "1.2.0"

# (model attribute, plain key, podcast namespace key)
_FIELDS = (
    ("start", "start", "startTime"),
    ("end", "end", "endTime"),
    ("title", "title", "title"),
    ("url", "url", "url"),
    ("url_title", "url_title", None),  # plain format only
    ("image", "image", "img"),
)


def _is_number(value: object) -> bool:
    # bool is an int subclass, but true/false are not times
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _read_time(item: dict, key: str, index: int, required: bool) -> int | None:
    if key not in item:
        if required:
            raise SchemaViolationError(f"Chapter {index}: missing required field '{key}'")
        return None
    value = item[key]
    if not _is_number(value):
        raise SchemaViolationError(f"Chapter {index}: '{key}' must be a number, got {value!r}")
    return seconds_to_ms(value)


def _read_text(item: dict, key: str, index: int) -> str | None:
    value = item.get(key)
    if value is not None and not isinstance(value, str):
        raise SchemaViolationError(f"Chapter {index}: '{key}' must be a string, got {value!r}")
    return value


def _chapter_from_item(item: object, index: int, podcast_namespace: bool) -> Chapter:
    """Build a Chapter from one decoded JSON object."""
    if not isinstance(item, dict):
        raise SchemaViolationError(f"Chapter {index}: expected an object, got {type(item).__name__}")

    keys = {attr: (ns_key if podcast_namespace else key) for attr, key, ns_key in _FIELDS}

    start_ms = _read_time(item, keys["start"], index, required=True)
    end_ms = _read_time(item, keys["end"], index, required=False)

    title = _read_text(item, keys["title"], index)
    if title is None:
        # The podcast namespace makes titles optional; the plain format does not
        if not podcast_namespace:
            raise SchemaViolationError(f"Chapter {index}: missing required field 'title'")
        title = ""

    if podcast_namespace:
        toc = item.get("toc", True)
        if not isinstance(toc, bool):
            raise SchemaViolationError(f"Chapter {index}: 'toc' must be a boolean, got {toc!r}")
        hidden = not toc
    else:
        hidden = item.get("hidden", False)
        if not isinstance(hidden, bool):
            raise SchemaViolationError(
                f"Chapter {index}: 'hidden' must be a boolean, got {hidden!r}"
            )

    return Chapter(
        start_ms=start_ms,
        end_ms=end_ms,
        title=title,
        url=_read_text(item, keys["url"], index),
        url_title=_read_text(item, keys["url_title"], index) if keys["url_title"] else None,
        image=_read_text(item, keys["image"], index),
        hidden=hidden,
    )


def from_json(data: bytes | str) -> ChapterList:
    """
    Parse a JSON chapter document.

    Args:
        data: UTF-8 encoded bytes or already decoded text.

    Returns:
        The chapters, in document order. An empty array yields an empty list.

    Raises:
        MalformedError: If the data is not valid UTF-8 / JSON.
        SchemaViolationError: If the document does not have the expected shape.
        InvariantViolationError: If the chapters are unsorted, overlap, etc.
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise MalformedError(f"JSON chapters are not valid UTF-8: {e}") from e

    try:
        document = json.loads(data)
    except json.JSONDecodeError as e:
        raise MalformedError(f"Invalid JSON: {e}") from e

    podcast_namespace = isinstance(document, dict) and "chapters" in document
    items = document["chapters"] if podcast_namespace else document

    if not isinstance(items, list):
        raise SchemaViolationError(
            f"Expected a JSON array of chapters, got {type(items).__name__}"
        )

    chapters = ChapterList(
        [_chapter_from_item(item, i, podcast_namespace) for i, item in enumerate(items)]
    )

    violations = chapters.validate()
    if violations:
        raise InvariantViolationError(violations)

    logger.debug(
        "Parsed %d chapter(s) from %s JSON",
        len(chapters),
        "podcast namespace" if podcast_namespace else "plain",
    )
    return chapters


def _chapter_to_item(chapter: Chapter, podcast_namespace: bool) -> dict:
    """Build the JSON object for one chapter, omitting absent fields."""
    values = {
        "start": ms_to_seconds(chapter.start_ms),
        "end": None if chapter.end_ms is None else ms_to_seconds(chapter.end_ms),
        "title": chapter.title,
        "url": chapter.url,
        "url_title": chapter.url_title,
        "image": chapter.image,
    }
    if podcast_namespace:
        # Namespace order: startTime, endTime, title, img, url, toc
        order = ("start", "end", "title", "image", "url")
        names = {attr: ns_key for attr, _, ns_key in _FIELDS}
    else:
        order = ("start", "end", "title", "url", "url_title", "image")
        names = {attr: key for attr, key, _ in _FIELDS}

    item = {names[attr]: values[attr] for attr in order if values[attr] is not None}

    if chapter.hidden:
        if podcast_namespace:
            item["toc"] = False
        else:
            item["hidden"] = True
    return item


def to_json(
    chapters: ChapterList,
    indent: int | None = 2,
    podcast_namespace: bool = False,
) -> bytes:
    """
    Serialize chapters to deterministic UTF-8 JSON.

    Args:
        chapters: Chapters to write.
        indent: Indentation passed to json.dumps (None for compact output).
        podcast_namespace: Write a Podcasting 2.0 chapters document instead
            of a plain array.

    Returns:
        The encoded document, newline terminated.
    """
    items = [_chapter_to_item(c, podcast_namespace) for c in chapters]

    document: list | dict
    if podcast_namespace:
        document = {"version": PODCAST_NAMESPACE_VERSION, "chapters": items}
    else:
        document = items

    text = json.dumps(document, indent=indent, ensure_ascii=False)
    return (text + "\n").encode("utf-8")
