"""Tests for podchapters.json_format module."""

import json

import pytest

from podchapters.chapter import Chapter, ChapterList
from podchapters.errors import (
    InvariantViolationError,
    MalformedError,
    ParseError,
    SchemaViolationError,
)
from podchapters.json_format import from_json, to_json


class TestFromJson:
    """Tests for from_json function."""

    def test_basic_array(self):
        """Test parsing the plain chapter array."""
        chapters = from_json(b'[{"start":0,"title":"Intro"},{"start":30.5,"title":"Main"}]')

        assert len(chapters) == 2
        assert chapters[0].start_ms == 0
        assert chapters[0].title == "Intro"
        assert chapters[1].start_ms == 30_500
        assert chapters[1].start == 30.5
        assert chapters[1].title == "Main"

    def test_optional_fields(self):
        """Test end, url, image and hidden are read."""
        data = json.dumps(
            [
                {
                    "start": 0,
                    "end": 60,
                    "title": "Intro",
                    "url": "https://example.com",
                    "image": "https://example.com/a.jpg",
                },
                {"start": 60, "title": "Ad", "hidden": True},
            ]
        )
        chapters = from_json(data)

        assert chapters[0].end_ms == 60_000
        assert chapters[0].url == "https://example.com"
        assert chapters[0].image == "https://example.com/a.jpg"
        assert chapters[0].hidden is False
        assert chapters[1].hidden is True

    def test_accepts_str(self):
        """Test already decoded text is accepted."""
        chapters = from_json('[{"start": 1, "title": "Café"}]')
        assert chapters[0].title == "Café"

    def test_utf8_bom(self):
        """Test a leading byte order mark is tolerated."""
        chapters = from_json(b'\xef\xbb\xbf[{"start": 0, "title": "Intro"}]')
        assert chapters[0].title == "Intro"

    def test_empty_array(self):
        """Test an empty array yields an empty list."""
        assert len(from_json(b"[]")) == 0

    def test_podcast_namespace_document(self):
        """Test the Podcasting 2.0 chapters document."""
        data = json.dumps(
            {
                "version": "1.2.0",
                "chapters": [
                    {"startTime": 0, "title": "Intro", "img": "https://example.com/i.png"},
                    {"startTime": 12.25, "endTime": 20, "url": "https://example.com"},
                    {"startTime": 20, "title": "Silent", "toc": False},
                ],
            }
        )
        chapters = from_json(data)

        assert chapters[0].image == "https://example.com/i.png"
        assert chapters[1].start_ms == 12_250
        assert chapters[1].end_ms == 20_000
        assert chapters[1].title == ""  # titles are optional in the namespace
        assert chapters[1].url == "https://example.com"
        assert chapters[2].hidden is True

    def test_invalid_json(self):
        """Test syntax errors are reported as malformed."""
        with pytest.raises(MalformedError):
            from_json(b'[{"start": 0,')

    def test_invalid_utf8(self):
        """Test undecodable bytes are reported as malformed."""
        with pytest.raises(MalformedError):
            from_json(b'[{"start": 0, "title": "\xff"}]')

    def test_not_an_array(self):
        """Test a top level object without chapters is rejected."""
        with pytest.raises(SchemaViolationError):
            from_json(b'{"start": 0, "title": "Intro"}')

    def test_missing_start(self):
        """Test start is required."""
        with pytest.raises(SchemaViolationError, match="start"):
            from_json(b'[{"title": "Intro"}]')

    def test_missing_title(self):
        """Test title is required in the plain format."""
        with pytest.raises(SchemaViolationError, match="title"):
            from_json(b'[{"start": 0}]')

    def test_wrong_types(self):
        """Test fields with the wrong JSON type are rejected."""
        with pytest.raises(SchemaViolationError):
            from_json(b'[{"start": "0:00", "title": "Intro"}]')
        with pytest.raises(SchemaViolationError):
            from_json(b'[{"start": true, "title": "Intro"}]')
        with pytest.raises(SchemaViolationError):
            from_json(b'[{"start": 0, "title": 5}]')
        with pytest.raises(SchemaViolationError):
            from_json(b'[{"start": 0, "title": "A", "hidden": "yes"}]')
        with pytest.raises(SchemaViolationError):
            from_json(b'[42]')

    def test_unsorted_chapters(self):
        """Test out of order chapters violate the list invariants."""
        with pytest.raises(InvariantViolationError) as exc_info:
            from_json(b'[{"start": 10, "title": "B"}, {"start": 0, "title": "A"}]')

        assert [v.kind for v in exc_info.value.violations] == ["unsorted"]

    def test_duplicate_start(self):
        """Test shared starts violate the list invariants."""
        with pytest.raises(InvariantViolationError):
            from_json(b'[{"start": 0, "title": "A"}, {"start": 0, "title": "B"}]')

    def test_errors_are_parse_errors(self):
        """Test every read failure shares the ParseError base."""
        with pytest.raises(ParseError):
            from_json(b"not json")


class TestToJson:
    """Tests for to_json function."""

    def test_compact_output(self):
        """Test the exact plain array output."""
        chapters = ChapterList(
            [Chapter(start_ms=0, title="Intro"), Chapter(start_ms=30_500, title="Main")]
        )
        data = to_json(chapters, indent=None)

        assert data == b'[{"start": 0, "title": "Intro"}, {"start": 30.5, "title": "Main"}]\n'

    def test_field_order_and_omission(self):
        """Test keys come out in a fixed order and absent fields are omitted."""
        chapters = ChapterList(
            [
                Chapter(
                    start_ms=0,
                    end_ms=5_000,
                    title="Intro",
                    url="https://example.com",
                    image="https://example.com/i.png",
                    hidden=True,
                ),
                Chapter(start_ms=5_000, title="Main"),
            ]
        )
        items = json.loads(to_json(chapters))

        assert list(items[0]) == ["start", "end", "title", "url", "image", "hidden"]
        assert list(items[1]) == ["start", "title"]

    def test_deterministic(self, sample_chapters):
        """Test the same list always gives the same bytes."""
        assert to_json(sample_chapters) == to_json(sample_chapters)

    def test_non_ascii_kept(self):
        """Test titles are written as UTF-8, not escaped."""
        data = to_json(ChapterList([Chapter(start_ms=0, title="Café ☕")]))
        assert "Café ☕".encode("utf-8") in data

    def test_podcast_namespace(self):
        """Test the Podcasting 2.0 document shape."""
        chapters = ChapterList(
            [
                Chapter(start_ms=0, title="Intro", image="https://example.com/i.png"),
                Chapter(start_ms=1_500, title="Ad", hidden=True),
            ]
        )
        document = json.loads(to_json(chapters, podcast_namespace=True))

        assert document["version"] == "1.2.0"
        assert document["chapters"][0] == {
            "startTime": 0,
            "title": "Intro",
            "img": "https://example.com/i.png",
        }
        assert document["chapters"][1] == {"startTime": 1.5, "title": "Ad", "toc": False}

    def test_round_trip(self, sample_chapters):
        """Test writing and reading back gives the same chapters."""
        assert from_json(to_json(sample_chapters)) == sample_chapters

    def test_round_trip_podcast_namespace(self, sample_chapters):
        """Test the namespace document reads back to the same chapters."""
        data = to_json(sample_chapters, podcast_namespace=True)
        assert from_json(data) == sample_chapters

    def test_empty_list(self):
        """Test an empty list writes an empty array."""
        assert to_json(ChapterList(), indent=None) == b"[]\n"

    def test_url_title(self):
        """Test the link text is kept in plain JSON and dropped in the namespace."""
        chapters = ChapterList(
            [
                Chapter(
                    start_ms=0,
                    title="Start",
                    url="https://example.com/",
                    url_title="Example",
                ),
            ]
        )
        items = json.loads(to_json(chapters))

        assert list(items[0]) == ["start", "title", "url", "url_title"]
        assert from_json(to_json(chapters)) == chapters

        document = json.loads(to_json(chapters, podcast_namespace=True))
        assert "url_title" not in document["chapters"][0]
        assert from_json(json.dumps(document))[0].url_title is None
