"""
Exceptions raised by the chapter codecs.

Parsing problems derive from ParseError, writing problems from WriteError,
so callers can tell "nothing to read" (NoTagFoundError, NoChaptersError)
apart from "input is corrupt" (MalformedError and friends).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from podchapters.chapter import Violation


class ChapterError(Exception):
    """Base class for all podchapters errors."""

    pass


class ParseError(ChapterError):
    """Raised when chapters cannot be read from a source."""

    pass


class MalformedError(ParseError):
    """Raised when the input is syntactically or structurally invalid."""

    pass


class SchemaViolationError(ParseError):
    """Raised when a required field is missing or has the wrong type."""

    pass


class InvariantViolationError(ParseError):
    """Raised when the decoded chapters break the chapter list invariants."""

    def __init__(self, violations: list[Violation]):
        self.violations = list(violations)
        summary = "; ".join(v.message for v in self.violations)
        super().__init__(f"Invalid chapter list: {summary}")


class NoTagFoundError(ParseError):
    """Raised when an MP3 file has no ID3v2 tag."""

    pass


class NoChaptersError(ParseError):
    """Raised when a source is readable but contains no chapters."""

    pass


class WriteError(ChapterError):
    """Raised when chapters cannot be written."""

    pass


class IoFailureError(WriteError):
    """Raised when the underlying storage fails during a write."""

    pass


class EncodingOverflowError(WriteError):
    """Raised when a value does not fit into the target frame size."""

    pass
