"""
Format sniffing — map a declared media type onto an extraction route.

Pure and I/O-free. Parameters (``; charset=utf-8``) and case are ignored;
anything not listed is UNSUPPORTED and must be rejected by the caller
before any extraction work starts.
"""

from __future__ import annotations

from enum import Enum


class MediaKind(str, Enum):
    PLAIN_TEXT  = "plain_text"
    PDF         = "pdf"
    EPUB        = "epub"
    UNSUPPORTED = "unsupported"


_MEDIA_TYPES: dict[str, MediaKind] = {
    "text/plain":           MediaKind.PLAIN_TEXT,
    "text/markdown":        MediaKind.PLAIN_TEXT,
    "application/pdf":      MediaKind.PDF,
    "application/epub+zip": MediaKind.EPUB,
}


def normalize_media_type(declared: str | None) -> str:
    if not declared:
        return ""
    return declared.split(";", 1)[0].strip().lower()


def classify(declared_media_type: str | None) -> MediaKind:
    return _MEDIA_TYPES.get(normalize_media_type(declared_media_type), MediaKind.UNSUPPORTED)
