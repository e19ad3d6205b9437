"""podchapters - Convert podcast chapters between JSON, ID3v2 tags and show notes."""

from importlib.metadata import version

__version__ = version("podchapters")

# File extensions understood by the command line front end
JSON_EXTENSIONS = {".json"}
MP3_EXTENSIONS = {".mp3"}
DESCRIPTION_EXTENSIONS = {".txt", ".md", ".html", ".htm"}
