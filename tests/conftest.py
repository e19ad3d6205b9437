"""Shared pytest fixtures for podchapters tests."""

import tempfile
from pathlib import Path

import pytest

from podchapters.chapter import Chapter, ChapterList


def make_silent_mp3(path: Path, duration_seconds: float = 10.0) -> Path:
    """
    Create a minimal valid MP3 file with silence.

    Creates a file with valid MP3 frame headers containing silent audio.
    """
    # MPEG1 Layer 3, 128kbps, 44100Hz, stereo
    # Frame size = 144 * 128000 / 44100 = 417 bytes (without padding)
    frame_size = 417
    samples_per_frame = 1152
    frames_needed = int(duration_seconds * 44100 / samples_per_frame) + 1

    with open(path, "wb") as f:
        for _ in range(frames_needed):
            f.write(b"\xff\xfb\x90\x04")
            f.write(b"\x00" * (frame_size - 4))

    return path


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def silent_mp3(temp_dir):
    """A five minute silent MP3 without any tag."""
    return make_silent_mp3(temp_dir / "episode.mp3", duration_seconds=300.0)


@pytest.fixture
def sample_chapters():
    """A ChapterList with a few chapters, some with links."""
    return ChapterList(
        [
            Chapter(start_ms=0, title="Intro"),
            Chapter(start_ms=90_000, title="News", url="https://example.com/news"),
            Chapter(start_ms=210_500, title="Listener mail"),
        ]
    )


@pytest.fixture
def sample_notes():
    """Sample show notes with chapter lines mixed into prose."""
    return """Welcome to episode 42!

Chapters:
0:00 Intro
01:30 - News https://example.com/news
(3:30.5) Listener mail

Thanks for listening.
"""
