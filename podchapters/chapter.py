"""
Chapter model shared by every codec.

Times are stored as integer milliseconds so that repeated conversions
between the seconds-based JSON/text surfaces and the millisecond-based
ID3 frames never drift.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterator


def seconds_to_ms(seconds: float) -> int:
    """Convert a seconds value to whole milliseconds (nearest)."""
    return int(round(seconds * 1000))


def ms_to_seconds(ms: int) -> int | float:
    """Convert milliseconds to seconds, as an int when there is no fraction."""
    if ms % 1000 == 0:
        return ms // 1000
    return ms / 1000


def format_timestamp(ms: int, always_hours: bool = True) -> str:
    """
    Format a millisecond offset as H:MM:SS (or M:SS).

    A ".mmm" suffix is appended only when the offset is not a whole second.

    Args:
        ms: Offset in milliseconds.
        always_hours: Always include the hour field, zero-padded minutes
            and seconds. When False, the hour is dropped for offsets
            under one hour.

    Returns:
        The formatted timestamp.
    """
    total_seconds, millis = divmod(ms, 1000)
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    secs = total_seconds % 60

    if always_hours or hours > 0:
        text = f"{hours}:{minutes:02d}:{secs:02d}"
    else:
        text = f"{minutes}:{secs:02d}"

    if millis:
        text += f".{millis:03d}"
    return text


@dataclass
class Chapter:
    """A single named segment of a media file."""

    start_ms: int  # milliseconds from start
    title: str
    end_ms: int | None = None
    url: str | None = None
    url_title: str | None = None  # link text, the WXXX description in ID3
    image: str | None = None  # URL, or data: URI for embedded artwork
    hidden: bool = False  # not listed in the table of contents

    @property
    def start(self) -> int | float:
        """Start offset in seconds."""
        return ms_to_seconds(self.start_ms)

    @property
    def end(self) -> int | float | None:
        """End offset in seconds, if known."""
        if self.end_ms is None:
            return None
        return ms_to_seconds(self.end_ms)

    @property
    def time_str(self) -> str:
        """Format start as H:MM:SS or M:SS."""
        return format_timestamp(self.start_ms, always_hours=False)


@dataclass(frozen=True)
class Violation:
    """One broken invariant found by ChapterList.validate()."""

    index: int
    kind: str
    message: str


@dataclass
class ChapterList:
    """An ordered list of chapters, ascending by start."""

    chapters: list[Chapter] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.chapters)

    def __iter__(self) -> Iterator[Chapter]:
        return iter(self.chapters)

    def __getitem__(self, index: int) -> Chapter:
        return self.chapters[index]

    def validate(self) -> list[Violation]:
        """
        Check the list invariants without raising.

        Returns:
            Every violation found, in chapter order. An empty list means
            the chapter list is well formed.
        """
        violations: list[Violation] = []
        chapters = self.chapters

        for i, chapter in enumerate(chapters):
            if chapter.start_ms < 0:
                violations.append(
                    Violation(i, "negative_start", f"chapter {i} starts before 0")
                )

            if i > 0:
                previous = chapters[i - 1]
                if chapter.start_ms == previous.start_ms:
                    violations.append(
                        Violation(
                            i,
                            "duplicate_start",
                            f"chapter {i} has the same start as chapter {i - 1} "
                            f"({format_timestamp(chapter.start_ms)})",
                        )
                    )
                elif chapter.start_ms < previous.start_ms:
                    violations.append(
                        Violation(
                            i,
                            "unsorted",
                            f"chapter {i} starts before chapter {i - 1}",
                        )
                    )

            if chapter.end_ms is None:
                continue

            if chapter.end_ms < 0:
                violations.append(Violation(i, "negative_end", f"chapter {i} ends before 0"))
            elif chapter.end_ms < chapter.start_ms:
                violations.append(
                    Violation(i, "end_before_start", f"chapter {i} ends before it starts")
                )

            if i + 1 < len(chapters) and chapter.end_ms > chapters[i + 1].start_ms:
                violations.append(
                    Violation(
                        i,
                        "overlap",
                        f"chapter {i} ends after chapter {i + 1} starts",
                    )
                )

        return violations

    @property
    def is_well_formed(self) -> bool:
        """Check that no invariant is violated."""
        return not self.validate()

    def with_implied_ends(self, media_end_ms: int | None = None) -> ChapterList:
        """
        Return a copy where missing end offsets are made explicit.

        A chapter without an end runs until the next chapter starts; the
        last chapter runs until media_end_ms when that is known.
        """
        resolved = []
        for i, chapter in enumerate(self.chapters):
            end_ms = chapter.end_ms
            if end_ms is None:
                if i + 1 < len(self.chapters):
                    end_ms = self.chapters[i + 1].start_ms
                elif media_end_ms is not None and media_end_ms >= chapter.start_ms:
                    end_ms = media_end_ms
            resolved.append(replace(chapter, end_ms=end_ms))
        return ChapterList(resolved)
