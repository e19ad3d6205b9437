"""
MP3 chapter markers using ID3v2 CHAP/CTOC frames.

Reads and writes chapters following the ID3v2 Chapter Frame Addendum
v1.0. mutagen decodes tags and re-encodes the frames that are not
chapters; CHAP and CTOC frames are encoded here so that their order in
the tag follows the chapter list.

An MP3 is handled as two independent byte ranges: the ID3v2 tag at the
front and the payload (audio, ID3v1 trailer, anything else) after it.
Writing builds a new tag range and copies the payload untouched.
"""

import base64
import io
import logging
import os
import re
import shutil
import struct
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from mutagen import MutagenError
from mutagen.id3 import ID3, CTOCFlags, Encoding, ID3NoHeaderError, ID3v1SaveOptions, PictureType, UrlFrame
from mutagen.mp3 import MPEGInfo

from podchapters.chapter import Chapter, ChapterList
from podchapters.errors import (
    EncodingOverflowError,
    InvariantViolationError,
    IoFailureError,
    MalformedError,
    NoChaptersError,
    NoTagFoundError,
)

logger = logging.getLogger(__name__)

HEADER_SIZE = 10
MAX_SYNCHSAFE = 0x0FFFFFFF  # largest 28-bit synchsafe integer
MAX_FRAME_SIZE = MAX_SYNCHSAFE
MAX_TAG_SIZE = MAX_SYNCHSAFE
MAX_TIME_MS = 0xFFFFFFFE
MAX_TOC_ENTRIES = 0xFF
NO_VALUE = 0xFFFFFFFF  # unset CHAP end time or byte offset
LINKED_IMAGE_MIME = "-->"

# Frame format flags that change how a payload is stored
_FORMAT_FLAGS = {3: 0x00E0, 4: 0x004F}

# Zero padding requested from mutagen when re-encoding kept frames
_RENDER_PADDING = 256

_FRAME_ID = re.compile(rb"[A-Z0-9]{4}")
_DATA_URI = re.compile(r"^data:(?P<mime>[^;,]*);base64,(?P<data>.*)$", re.DOTALL)

Source = bytes | str | os.PathLike


@dataclass
class Id3Config:
    """Options for writing chapter frames."""

    v2_version: int | None = None  # 3 or 4; None keeps the existing tag's version
    padding: int = 1024
    toc_title: str = "Table of Contents"
    toc_element_id: str = "toc"
    element_id_prefix: str = "chp"


@dataclass
class TagHeader:
    """The fixed 10-byte ID3v2 tag header."""

    major: int
    revision: int
    flags: int
    body_size: int

    @property
    def unsynchronised(self) -> bool:
        return bool(self.flags & 0x80)

    @property
    def extended(self) -> bool:
        return bool(self.flags & 0x40)

    @property
    def has_footer(self) -> bool:
        return self.major == 4 and bool(self.flags & 0x10)

    @property
    def tag_size(self) -> int:
        """Size of the whole tag region: header, body and footer."""
        size = HEADER_SIZE + self.body_size
        if self.has_footer:
            size += HEADER_SIZE
        return size


@dataclass
class RawFrame:
    """A frame located by walking declared sizes, not yet decoded."""

    frame_id: str
    flags: int
    payload: bytes


def decode_synchsafe(data: bytes) -> int:
    """Decode a synchsafe integer (7 significant bits per byte)."""
    value = 0
    for byte in data:
        if byte & 0x80:
            raise ValueError(f"{data.hex()} is not synchsafe")
        value = (value << 7) | byte
    return value


def encode_synchsafe(value: int) -> bytes:
    """Encode a 28-bit value as 4 synchsafe bytes."""
    if not 0 <= value <= MAX_SYNCHSAFE:
        raise EncodingOverflowError(f"{value} does not fit in a synchsafe size")
    return bytes(
        [(value >> 21) & 0x7F, (value >> 14) & 0x7F, (value >> 7) & 0x7F, value & 0x7F]
    )


def read_tag_header(data: bytes) -> TagHeader | None:
    """
    Parse the ID3v2 header at the start of data.

    Returns:
        The header, or None when data does not start with an ID3v2 tag.

    Raises:
        MalformedError: If the header is present but unusable.
    """
    if len(data) < HEADER_SIZE or data[:3] != b"ID3":
        return None

    major, revision, flags = data[3], data[4], data[5]
    if major not in (2, 3, 4) or revision == 0xFF:
        raise MalformedError(f"Unsupported ID3v2 version 2.{major}.{revision}")

    try:
        body_size = decode_synchsafe(data[6:10])
    except ValueError as e:
        raise MalformedError("ID3v2 tag size is not synchsafe") from e

    return TagHeader(major=major, revision=revision, flags=flags, body_size=body_size)


def split_tag(data: bytes) -> tuple[bytes, bytes]:
    """
    Split an MP3 buffer into (tag region, payload).

    The tag region is empty when the buffer has no ID3v2 tag.
    """
    header = read_tag_header(data[:HEADER_SIZE])
    if header is None:
        return b"", data
    if header.tag_size > len(data):
        raise MalformedError(
            f"ID3v2 tag declares {header.tag_size} bytes but the file has only {len(data)}"
        )
    return data[: header.tag_size], data[header.tag_size :]


def _read_tag_region(fileobj) -> bytes:
    """Read only the ID3v2 tag region from an open file."""
    start = fileobj.read(HEADER_SIZE)
    header = read_tag_header(start)
    if header is None:
        return b""

    remaining = header.tag_size - HEADER_SIZE
    rest = fileobj.read(remaining)
    if len(rest) < remaining:
        raise MalformedError(
            f"ID3v2 tag declares {header.tag_size} bytes but the file ends after "
            f"{HEADER_SIZE + len(rest)}"
        )
    return start + rest


def _read_tag(source: Source) -> bytes:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return split_tag(bytes(source))[0]
    with open(source, "rb") as f:
        return _read_tag_region(f)


def _plain_size(raw: bytes) -> int:
    return struct.unpack(">I", raw)[0]


def _walk(data: bytes, size_of) -> list[RawFrame]:
    frames = []
    offset = 0

    while offset < len(data):
        if data[offset] == 0:
            break  # padding

        if offset + HEADER_SIZE > len(data):
            raise MalformedError(f"Truncated frame header at byte {offset} of the tag")

        frame_id, raw_size, flags = struct.unpack(">4s4sH", data[offset : offset + HEADER_SIZE])
        name = frame_id.decode("latin-1")
        try:
            size = size_of(raw_size)
        except ValueError as e:
            raise MalformedError(f"Frame {name} has an invalid size") from e

        start = offset + HEADER_SIZE
        end = start + size
        if end > len(data):
            raise MalformedError(
                f"Frame {name} declares {size} bytes but only {len(data) - start} remain"
            )

        frames.append(RawFrame(frame_id=name, flags=flags, payload=data[start:end]))
        offset = end

    return frames


def walk_frames(data: bytes, major: int) -> list[RawFrame]:
    """
    Split a run of ID3v2.3/2.4 frames by their declared sizes.

    Raises:
        MalformedError: If a frame claims more bytes than are left.
    """
    if major < 4:
        return _walk(data, _plain_size)

    try:
        return _walk(data, decode_synchsafe)
    except MalformedError:
        # Some taggers write plain 32-bit sizes into v2.4 tags
        return _walk(data, _plain_size)


def _extended_header_size(body: bytes, major: int) -> int:
    if _FRAME_ID.fullmatch(body[:4]):
        # Flag set without an actual extended header
        return 0
    if len(body) < 4:
        raise MalformedError("Truncated extended header")
    if major == 4:
        return decode_synchsafe(body[:4])
    return 4 + struct.unpack(">I", body[:4])[0]


def _check_structure(tag: bytes, header: TagHeader) -> int:
    """
    Walk every declared frame size in the tag, including CHAP sub-frames.

    Returns:
        The number of CHAP frames declared in the tag.
    """
    if header.major < 3:
        # ID3v2.2 predates chapter frames
        return 0

    body = tag[HEADER_SIZE : HEADER_SIZE + header.body_size]
    if header.major == 3 and header.unsynchronised:
        body = body.replace(b"\xff\x00", b"\xff")

    if header.extended:
        try:
            body = body[_extended_header_size(body, header.major) :]
        except ValueError as e:
            raise MalformedError("Extended header size is not synchsafe") from e

    chapters = [f for f in walk_frames(body, header.major) if f.frame_id == "CHAP"]

    for frame in chapters:
        if frame.flags & _FORMAT_FLAGS[header.major]:
            # Compressed, encrypted or unsynchronised; mutagen decodes these
            continue
        end_of_id = frame.payload.find(b"\x00")
        if end_of_id < 0 or len(frame.payload) < end_of_id + 1 + 16:
            raise MalformedError("CHAP frame is too short")
        walk_frames(frame.payload[end_of_id + 17 :], header.major)

    return len(chapters)


def _load_tags(tag: bytes, v2_version: int = 4) -> ID3:
    try:
        return ID3(io.BytesIO(tag), load_v1=False, v2_version=v2_version)
    except ID3NoHeaderError as e:
        raise NoTagFoundError("No ID3v2 tag found") from e
    except MutagenError as e:
        raise MalformedError(f"Unreadable ID3v2 tag: {e}") from e


def _toc_order(tags: ID3, chapter_ids: set[str]) -> list[str] | None:
    """
    Chapter ids listed by the table of contents, nested tables expanded.

    Returns:
        The ids in table order, or None when the tag has no CTOC frame.
    """
    tocs = {toc.element_id: toc for toc in tags.getall("CTOC")}
    if not tocs:
        return None

    root = next(
        (toc for toc in tocs.values() if toc.flags & CTOCFlags.TOP_LEVEL),
        next(iter(tocs.values())),
    )

    ordered: list[str] = []

    def visit(toc, seen: set[str]) -> None:
        for child in toc.child_element_ids:
            if child in chapter_ids:
                if child not in ordered:
                    ordered.append(child)
            elif child in tocs:
                if child not in seen:
                    visit(tocs[child], seen | {child})
            else:
                raise MalformedError(
                    f"Table of contents '{toc.element_id}' references unknown element '{child}'"
                )

    visit(root, {root.element_id})
    return ordered


def _chapter_link(sub_frames) -> tuple[str | None, str | None]:
    """Return the chapter link and its description, if any."""
    links = [f for f in sub_frames.values() if isinstance(f, UrlFrame)]
    if not links:
        return None, None
    # WXXX is the conventional chapter link; other W*** frames are fallbacks
    links.sort(key=lambda f: f.FrameID != "WXXX")
    link = links[0]
    return link.url, getattr(link, "desc", "") or None


def _chapter_image(sub_frames) -> str | None:
    pictures = sub_frames.getall("APIC")
    if not pictures:
        return None
    picture = pictures[0]
    if picture.mime == LINKED_IMAGE_MIME:
        return picture.data.decode("latin-1")
    mime = picture.mime or "image/jpeg"
    return f"data:{mime};base64,{base64.b64encode(picture.data).decode('ascii')}"


def _chapter_from_frame(frame, hidden: bool) -> Chapter:
    """Convert a decoded CHAP frame into a Chapter."""
    titles = frame.sub_frames.getall("TIT2")
    if not titles:
        raise MalformedError(f"Chapter '{frame.element_id}' has no TIT2 title sub-frame")

    text = titles[0].text
    url, url_title = _chapter_link(frame.sub_frames)
    return Chapter(
        start_ms=frame.start_time,
        end_ms=None if frame.end_time == NO_VALUE else frame.end_time,
        title=str(text[0]) if text else "",
        url=url,
        url_title=url_title,
        image=_chapter_image(frame.sub_frames),
        hidden=hidden,
    )


def from_mp3_file(source: Source) -> ChapterList:
    """
    Read chapter markers from an MP3 file or buffer.

    Only the ID3v2 tag region is read from disk, never the audio. Chapters
    listed by the table of contents come first in table order, followed by
    unlisted chapters (returned as hidden); the result is then ordered by
    start time.

    Args:
        source: MP3 bytes or a path to an MP3 file.

    Returns:
        The chapters, ascending by start.

    Raises:
        NoTagFoundError: If there is no ID3v2 tag.
        NoChaptersError: If the tag has no CHAP frames.
        MalformedError: If frame sizes or chapter frames are invalid.
        InvariantViolationError: If chapters share a start or overlap.
    """
    tag = _read_tag(source)
    header = read_tag_header(tag)
    if header is None:
        raise NoTagFoundError("No ID3v2 tag found")

    declared = _check_structure(tag, header)
    tags = _load_tags(tag)
    frames = tags.getall("CHAP")

    if not frames and not declared:
        raise NoChaptersError(f"ID3v2.{header.major} tag has no chapter frames")
    if len(frames) < declared:
        raise MalformedError(
            f"{declared - len(frames)} CHAP frame(s) could not be decoded or reuse an element id"
        )

    logger.debug("Found %d CHAP frame(s) in ID3v2.%d tag", len(frames), header.major)

    by_id = {frame.element_id: frame for frame in frames}
    listed = _toc_order(tags, set(by_id))

    if listed is None:
        chapters = [_chapter_from_frame(frame, hidden=False) for frame in frames]
    else:
        chapters = [_chapter_from_frame(by_id[eid], hidden=False) for eid in listed]
        chapters.extend(
            _chapter_from_frame(frame, hidden=True)
            for frame in frames
            if frame.element_id not in listed
        )

    chapters.sort(key=lambda c: c.start_ms)
    result = ChapterList(chapters)

    violations = result.validate()
    if violations:
        raise InvariantViolationError(violations)
    return result


def _encode_frame(frame_id: str, payload: bytes, version: int) -> bytes:
    """Prefix a frame payload with its 10-byte header."""
    if len(payload) > MAX_FRAME_SIZE:
        raise EncodingOverflowError(
            f"{frame_id} frame needs {len(payload)} bytes, the limit is {MAX_FRAME_SIZE}"
        )
    if version == 4:
        size = encode_synchsafe(len(payload))
    else:
        size = struct.pack(">I", len(payload))
    return struct.pack(">4s4sH", frame_id.encode("ascii"), size, 0) + payload


def _encode_text(text: str, version: int) -> tuple[int, bytes, bytes]:
    """
    Choose a text encoding for the tag version.

    Returns:
        (encoding byte, encoded text, string terminator)
    """
    if version == 4:
        return Encoding.UTF8, text.encode("utf-8"), b"\x00"
    # ID3v2.3 only knows Latin-1 and UTF-16
    try:
        return Encoding.LATIN1, text.encode("latin-1"), b"\x00"
    except UnicodeEncodeError:
        return Encoding.UTF16, text.encode("utf-16"), b"\x00\x00"


def _encode_latin1_url(url: str) -> bytes:
    try:
        return url.encode("latin-1")
    except UnicodeEncodeError:
        logger.debug("Percent-encoding non Latin-1 URL %r", url)
        return quote(url, safe=":/?#[]@!$&'()*+,;=%~").encode("latin-1")


def _text_frame(frame_id: str, text: str, version: int) -> bytes:
    encoding, data, terminator = _encode_text(text, version)
    # mutagen drops text frames with no bytes after the encoding
    return _encode_frame(frame_id, bytes([encoding]) + (data or terminator), version)


def _url_frame(url: str, description: str, version: int) -> bytes:
    encoding, desc, terminator = _encode_text(description, version)
    payload = bytes([encoding]) + desc + terminator + _encode_latin1_url(url)
    return _encode_frame("WXXX", payload, version)


def _picture_frame(image: str, description: str, version: int) -> bytes:
    match = _DATA_URI.match(image)
    if match:
        mime = match.group("mime") or "image/jpeg"
        try:
            data = base64.b64decode(match.group("data"), validate=True)
        except ValueError as e:
            raise ValueError(f"Chapter image is not valid base64: {e}") from e
    else:
        mime = LINKED_IMAGE_MIME
        data = _encode_latin1_url(image)

    encoding, desc, terminator = _encode_text(description, version)
    payload = (
        bytes([encoding])
        + mime.encode("latin-1")
        + b"\x00"
        + bytes([PictureType.COVER_FRONT])
        + desc
        + terminator
        + data
    )
    return _encode_frame("APIC", payload, version)


def _chapter_frame(element_id: str, chapter: Chapter, index: int, version: int) -> bytes:
    end_ms = chapter.end_ms if chapter.end_ms is not None else chapter.start_ms
    if chapter.start_ms > MAX_TIME_MS or end_ms > MAX_TIME_MS:
        raise EncodingOverflowError(f"Chapter {index} time does not fit in a CHAP frame")

    body = element_id.encode("latin-1") + b"\x00"
    body += struct.pack(">IIII", chapter.start_ms, end_ms, NO_VALUE, NO_VALUE)
    body += _text_frame("TIT2", chapter.title, version)
    if chapter.url:
        body += _url_frame(chapter.url, chapter.url_title or "", version)
    if chapter.image:
        body += _picture_frame(chapter.image, f"Chapter {index + 1}", version)
    return _encode_frame("CHAP", body, version)


def _toc_frame(config: Id3Config, child_ids: list[str], version: int) -> bytes:
    if len(child_ids) > MAX_TOC_ENTRIES:
        raise EncodingOverflowError(
            f"A table of contents holds at most {MAX_TOC_ENTRIES} entries, got {len(child_ids)}"
        )
    flags = int(CTOCFlags.TOP_LEVEL | CTOCFlags.ORDERED)
    body = config.toc_element_id.encode("latin-1") + b"\x00"
    body += bytes([flags, len(child_ids)])
    body += b"".join(child.encode("latin-1") + b"\x00" for child in child_ids)
    body += _text_frame("TIT2", config.toc_title, version)
    return _encode_frame("CTOC", body, version)


def chapter_frames(
    chapters: ChapterList,
    config: Id3Config,
    version: int,
    media_end_ms: int | None = None,
) -> bytes:
    """
    Encode one CHAP frame per chapter plus the CTOC frame, in list order.

    Missing end times become the next chapter's start, the media end for
    the last chapter when known, or the chapter's own start otherwise.
    """
    resolved = chapters.with_implied_ends(media_end_ms)
    element_ids = [f"{config.element_id_prefix}{i:03d}" for i in range(len(resolved))]

    data = bytearray()
    for i, (element_id, chapter) in enumerate(zip(element_ids, resolved)):
        data += _chapter_frame(element_id, chapter, i, version)

    visible = [eid for eid, chapter in zip(element_ids, resolved) if not chapter.hidden]
    data += _toc_frame(config, visible, version)
    return bytes(data)


def remove_chapters(tags: ID3) -> None:
    """Remove any existing CHAP and CTOC frames from the tag."""
    # Collect keys first, the tag can't change size during iteration
    to_delete = [key for key in tags if key.startswith(("CHAP:", "CTOC:"))]
    for key in to_delete:
        del tags[key]


def _kept_frames(tag: bytes, version: int) -> bytes:
    """Re-encode every non-chapter frame of an existing tag."""
    tags = _load_tags(tag, v2_version=version)
    remove_chapters(tags)

    buffer = io.BytesIO()
    try:
        # Trailing zero padding keeps mutagen's ID3v1 lookup off the frame data
        tags.save(
            buffer,
            v1=ID3v1SaveOptions.REMOVE,
            v2_version=version,
            padding=lambda info: _RENDER_PADDING,
        )
    except ValueError as e:
        raise EncodingOverflowError(f"Existing frames do not fit in a tag: {e}") from e
    except MutagenError as e:
        raise MalformedError(f"Could not re-encode existing frames: {e}") from e

    rendered = buffer.getvalue()
    return rendered[HEADER_SIZE : len(rendered) - _RENDER_PADDING]


def build_tag(
    old_tag: bytes,
    chapters: ChapterList,
    config: Id3Config,
    media_end_ms: int | None = None,
) -> bytes:
    """
    Build a replacement tag region holding the chapters.

    Frames of old_tag other than CHAP/CTOC are kept. The version of the
    old tag is kept unless the config asks for a specific one.
    """
    header = read_tag_header(old_tag)

    version = config.v2_version
    if version is None:
        version = header.major if header is not None and header.major in (3, 4) else 4
    if version not in (3, 4):
        raise ValueError(f"Only ID3v2.3 and ID3v2.4 can be written, not 2.{version}")

    kept = _kept_frames(old_tag, version) if header is not None else b""
    body = kept + chapter_frames(chapters, config, version, media_end_ms)

    size = len(body) + config.padding
    if size > MAX_TAG_SIZE:
        raise EncodingOverflowError(f"Tag needs {size} bytes, the limit is {MAX_TAG_SIZE}")

    logger.debug(
        "Built ID3v2.%d tag: %d chapter(s), %d byte(s) of kept frames",
        version,
        len(chapters),
        len(kept),
    )
    return b"ID3" + bytes([version, 0, 0]) + encode_synchsafe(size) + body + b"\x00" * config.padding


def _media_end_ms(fileobj, offset: int) -> int | None:
    """Length of the MPEG stream starting at offset, when mutagen can tell."""
    try:
        info = MPEGInfo(fileobj, offset)
    except MutagenError:
        return None
    return int(info.length * 1000)


def _check_writable(chapters: ChapterList) -> None:
    if not chapters:
        raise ValueError("No chapters to embed")
    violations = chapters.validate()
    if violations:
        raise ValueError(
            "Cannot embed an invalid chapter list: " + "; ".join(v.message for v in violations)
        )


def write_chapters(data: bytes, chapters: ChapterList, config: Id3Config | None = None) -> bytes:
    """
    Return a copy of an MP3 buffer with the chapters in its ID3v2 tag.

    The payload after the tag is copied byte for byte.
    """
    config = config or Id3Config()
    _check_writable(chapters)

    old_tag, payload = split_tag(bytes(data))
    media_end_ms = _media_end_ms(io.BytesIO(payload), 0)
    return build_tag(old_tag, chapters, config, media_end_ms) + payload


def embed_chapters(
    audio_path: Path,
    chapters: ChapterList,
    config: Id3Config | None = None,
) -> Path:
    """
    Embed chapter markers into an MP3 file in place.

    The new tag and the untouched payload are streamed into a temporary
    file next to the original, which then replaces it.

    Args:
        audio_path: Path to the MP3 file to modify.
        chapters: Chapters to embed (non-empty, well formed).
        config: Write options.

    Returns:
        The audio_path (for convenience).

    Raises:
        IoFailureError: If the file can't be read or written.
        EncodingOverflowError: If a chapter does not fit into its frame.
        ValueError: If the chapter list is empty or invalid.
    """
    config = config or Id3Config()
    audio_path = Path(audio_path)
    _check_writable(chapters)

    tmp_path: Path | None = None
    try:
        with open(audio_path, "rb") as source:
            old_tag = _read_tag_region(source)
            new_tag = build_tag(old_tag, chapters, config, _media_end_ms(source, len(old_tag)))

            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{audio_path.name}.", suffix=".tmp", dir=audio_path.parent
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "wb") as target:
                target.write(new_tag)
                source.seek(len(old_tag))
                shutil.copyfileobj(source, target)

        shutil.copymode(audio_path, tmp_path)
        os.replace(tmp_path, audio_path)
        tmp_path = None
    except OSError as e:
        raise IoFailureError(f"Could not write chapters to {audio_path}: {e}") from e
    finally:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)

    logger.debug("Embedded %d chapter(s) into %s", len(chapters), audio_path)
    return audio_path


def to_mp3_file(
    chapters: ChapterList,
    target: Source,
    config: Id3Config | None = None,
) -> bytes | Path:
    """
    Write chapters into an MP3 buffer or file.

    Args:
        chapters: Chapters to write.
        target: MP3 bytes, or a path to an MP3 file rewritten in place.
        config: Write options.

    Returns:
        The new MP3 bytes for a bytes target, the path for a file target.
    """
    if isinstance(target, (bytes, bytearray, memoryview)):
        return write_chapters(bytes(target), chapters, config)
    return embed_chapters(Path(target), chapters, config)
