"""
Structural Extractor
════════════════════

Fast-path text recovery that needs no external model call.

Routing by MediaKind:
  plain_text → lenient UTF-8 decode (invalid bytes replaced, BOM dropped)
  pdf        → PDF_PENDING_PLACEHOLDER; real PDF text comes from the
               metered OCR path
  epub       → processing/epub.py structural parse

EPUB structure errors never escape this module: they are logged and the
result degrades to EPUB_PENDING_PLACEHOLDER so document creation is never
interrupted. UNSUPPORTED is the caller's job to reject before getting here.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from docingest.core.errors import EpubStructureError, UnsupportedMediaType
from docingest.processing.epub import EpubMetadata, parse_epub
from docingest.processing.sniffer import MediaKind

logger = logging.getLogger(__name__)

PDF_PENDING_PLACEHOLDER  = "[PDF content extraction pending]"
EPUB_PENDING_PLACEHOLDER = "[EPUB content extraction pending]"

_UTF8_BOM = "\ufeff"


@dataclass
class StructuralResult:
    """
    text           : extracted text, or a placeholder
    kind           : route that produced it
    is_placeholder : True when text is a placeholder, not document content
    epub_metadata  : title/author/language/chapters for EPUBs that parsed
    elapsed_ms     : wall time of the extraction (ms)
    """
    text:           str
    kind:           MediaKind
    is_placeholder: bool = False
    epub_metadata:  Optional[EpubMetadata] = None
    elapsed_ms:     float = 0.0


class StructuralExtractor:
    """Stateless. Safe to share between requests."""

    def extract(self, media_kind: MediaKind, raw: bytes) -> StructuralResult:
        t0 = time.monotonic()

        if media_kind is MediaKind.PLAIN_TEXT:
            result = StructuralResult(text=self._decode_text(raw), kind=media_kind)

        elif media_kind is MediaKind.PDF:
            result = StructuralResult(
                text=PDF_PENDING_PLACEHOLDER,
                kind=media_kind,
                is_placeholder=True,
            )

        elif media_kind is MediaKind.EPUB:
            result = self._extract_epub(raw)

        else:
            raise UnsupportedMediaType(media_kind.value)

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Structural extraction | kind=%s bytes=%d chars=%d placeholder=%s elapsed_ms=%.1f",
            media_kind.value, len(raw), len(result.text), result.is_placeholder, result.elapsed_ms,
        )
        return result

    @staticmethod
    def _decode_text(raw: bytes) -> str:
        text = raw.decode("utf-8", errors="replace")
        if text.startswith(_UTF8_BOM):
            text = text[len(_UTF8_BOM):]
        return text

    @staticmethod
    def _extract_epub(raw: bytes) -> StructuralResult:
        try:
            parsed = parse_epub(raw)
        except EpubStructureError as exc:
            logger.warning(
                "EPUB extraction degraded to placeholder | error_code=%s reason=%s",
                exc.error_code, exc.message,
            )
            return StructuralResult(
                text=EPUB_PENDING_PLACEHOLDER,
                kind=MediaKind.EPUB,
                is_placeholder=True,
            )

        return StructuralResult(
            text=parsed.text,
            kind=MediaKind.EPUB,
            epub_metadata=parsed.metadata,
        )
