"""
Document Processing Package
════════════════════════════

Turns stored document bytes into readable text:

  FormatSniffer → StructuralExtractor (fast path)
               ↘ OCR providers      (metered slow path, driven by services/ocr.py)

Modules
───────
  sniffer.py    Declared media type → MediaKind
  extractor.py  Structural extraction (plain text, PDF placeholder, EPUB)
  epub.py       Zip/OPF/spine parser for EPUB packages
  ocr.py        Vision-LLM primary + Textract fallback providers and the chain

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Structural extraction never raises for a bad EPUB; it degrades to a placeholder.
  • Providers raise on failure; only the chain decides about the fallback.
"""

from docingest.processing.extractor import (
    EPUB_PENDING_PLACEHOLDER,
    PDF_PENDING_PLACEHOLDER,
    StructuralExtractor,
    StructuralResult,
)
from docingest.processing.ocr import (
    OCROptions,
    OCRProviderChain,
    OCRProviderResult,
    TextractProvider,
    VisionLLMProvider,
)
from docingest.processing.sniffer import MediaKind, classify

__all__ = [
    "EPUB_PENDING_PLACEHOLDER",
    "PDF_PENDING_PLACEHOLDER",
    "StructuralExtractor",
    "StructuralResult",
    "OCROptions",
    "OCRProviderChain",
    "OCRProviderResult",
    "TextractProvider",
    "VisionLLMProvider",
    "MediaKind",
    "classify",
]
