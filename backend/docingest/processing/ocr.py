"""
OCR Providers  —  Metered Text Extraction from Scanned PDFs
═══════════════════════════════════════════════════════════

Design: Strategy + Fallback Chain
─────────────────────────────────
  Primary:  VisionLLMProvider
    - Vision-capable chat model via LangChain ChatOpenAI
    - PDF sent inline as a base64 data URL
    - Prompt shaped by OCROptions (formatting, tables, language)

  Fallback: TextractProvider
    - AWS Textract DetectDocumentText
    - boto3 is blocking → runs in a thread executor
    - Confidence = mean WORD confidence

OCRProviderChain tries the primary, then the fallback exactly once. Each
attempt is bounded by asyncio.wait_for. An attempt that raises, times out,
or returns no text is a failed attempt; when both fail the chain raises
ProviderFailure(can_retry=True) carrying one entry per attempt.

Both providers return the same OCRProviderResult, so the orchestrator never
needs to know which backend produced the text.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import math
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from docingest.core.config import settings
from docingest.core.errors import ProviderFailure, is_retryable

logger = logging.getLogger(__name__)

VISION_LLM_CONFIDENCE = 0.95

_PAGE_BREAK_PATTERNS = (
    re.compile(r"(?:^|\n)---PAGE \d+---(?:\n|$)", re.IGNORECASE),
    re.compile(r"(?:^|\n)\[Page \d+\](?:\n|$)", re.IGNORECASE),
    re.compile(r"\f"),
)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class OCROptions:
    preserve_formatting: bool = True
    extract_tables:      bool = True
    language:            Optional[str] = None


@dataclass
class OCRUsage:
    """
    tokens_used        : provider tokens billed to the operator (0 for Textract)
    processing_time_ms : wall-clock time of the successful attempt
    confidence         : 0.0–1.0
    pages_processed    : pages the provider reports having read
    """
    tokens_used:        int
    processing_time_ms: int
    confidence:         float
    pages_processed:    int


@dataclass
class OCRProviderResult:
    text:       str
    page_texts: list[str]
    usage:      OCRUsage
    provider:   str


def split_text_into_pages(text: str, page_count: int) -> list[str]:
    """
    Best-effort page split of provider output.

    Tries ``---PAGE n---``, ``[Page n]`` and form-feed markers in that order;
    the first marker that yields more than one non-blank page wins. Without
    markers the text is cut into page_count equal character slices.
    """
    pages: list[str] = []
    for pattern in _PAGE_BREAK_PATTERNS:
        if pattern.search(text):
            pages = [p for p in pattern.split(text) if p.strip()]
            if len(pages) > 1:
                return pages

    if pages:
        return pages

    if page_count <= 1 or not text:
        return [text]

    chars_per_page = math.ceil(len(text) / page_count)
    return [text[i * chars_per_page:(i + 1) * chars_per_page] for i in range(page_count)]


def build_system_prompt(options: OCROptions) -> str:
    parts = ["You are an OCR engine. Extract all text from the provided PDF document with high accuracy."]
    if options.preserve_formatting:
        parts.append(
            "Preserve the original formatting, including paragraph breaks, headings, and list structures."
        )
    if options.extract_tables:
        parts.append("When you encounter tables, extract them in markdown table format.")
    if options.language:
        parts.append(f"The document is written in {options.language}.")
    parts.append("Mark the start of each page with a line '---PAGE n---'.")
    parts.append("Return ONLY the extracted text without any additional commentary.")
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Abstract provider
# ---------------------------------------------------------------------------

class BaseOCRProvider(ABC):
    """
    All implementations:
      - Accept raw PDF bytes (never a file path)
      - Return OCRProviderResult
      - RAISE on failure; the chain decides what happens next
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name for logging and ocr_metadata.provider."""

    @abstractmethod
    async def extract(self, data: bytes, page_count: int, options: OCROptions) -> OCRProviderResult:
        ...


# ---------------------------------------------------------------------------
# Primary: vision LLM
# ---------------------------------------------------------------------------

class VisionLLMProvider(BaseOCRProvider):
    """
    OCR through a vision-capable chat model.

    max_tokens scales with the declared page count (tokens_per_page each),
    capped at max_tokens. Temperature stays low: transcription, not prose.
    """

    def __init__(
        self,
        model:           str | None = None,
        api_key:         str | None = None,
        temperature:     float | None = None,
        tokens_per_page: int | None = None,
        max_tokens:      int | None = None,
        llm_factory:     Callable[[int], BaseChatModel] | None = None,
    ) -> None:
        self._model           = model or settings.ocr_primary_model
        self._api_key         = api_key if api_key is not None else settings.openai_api_key
        self._temperature     = settings.ocr_temperature if temperature is None else temperature
        self._tokens_per_page = tokens_per_page or settings.ocr_tokens_per_page
        self._max_tokens      = max_tokens or settings.ocr_max_tokens
        self._llm_factory     = llm_factory or self._build_llm

    @property
    def name(self) -> str:
        return f"openai:{self._model}"

    def token_budget(self, page_count: int) -> int:
        return min(page_count * self._tokens_per_page, self._max_tokens)

    def _build_llm(self, max_tokens: int) -> BaseChatModel:
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=self._model,
            api_key=self._api_key,
            temperature=self._temperature,
            max_tokens=max_tokens,
        )

    def build_messages(self, data: bytes, page_count: int, options: OCROptions) -> list:
        data_url = "data:application/pdf;base64," + base64.b64encode(data).decode("ascii")
        return [
            SystemMessage(content=build_system_prompt(options)),
            HumanMessage(content=[
                {"type": "text", "text": f"Extract all text from this {page_count}-page PDF document."},
                {"type": "file", "file": {"filename": "document.pdf", "file_data": data_url}},
            ]),
        ]

    async def extract(self, data: bytes, page_count: int, options: OCROptions) -> OCRProviderResult:
        t0 = time.monotonic()
        llm = self._llm_factory(self.token_budget(page_count))

        response = await llm.ainvoke(self.build_messages(data, page_count, options))

        text = _message_text(response.content).strip()
        usage_metadata = getattr(response, "usage_metadata", None) or {}
        elapsed_ms = int((time.monotonic() - t0) * 1000)

        logger.info(
            "VisionLLM OCR | model=%s pages=%d chars=%d tokens=%s elapsed_ms=%d",
            self._model, page_count, len(text), usage_metadata.get("total_tokens", 0), elapsed_ms,
        )
        return OCRProviderResult(
            text=text,
            page_texts=split_text_into_pages(text, page_count) if text else [],
            usage=OCRUsage(
                tokens_used=int(usage_metadata.get("total_tokens", 0)),
                processing_time_ms=elapsed_ms,
                confidence=VISION_LLM_CONFIDENCE,
                pages_processed=page_count,
            ),
            provider=self.name,
        )


def _message_text(content: Any) -> str:
    """AIMessage.content is either a string or a list of content blocks."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


# ---------------------------------------------------------------------------
# Fallback: AWS Textract
# ---------------------------------------------------------------------------

class TextractProvider(BaseOCRProvider):
    """
    AWS Textract DetectDocumentText (synchronous API).

    Cost model: billed per page by AWS; tokens_used is reported as 0.

    IAM permissions required on the API task role:
      textract:DetectDocumentText
    """

    def __init__(self, region: str | None = None, client: Any = None) -> None:
        self._region = region or settings.effective_textract_region
        self._client = client

    @property
    def name(self) -> str:
        return "textract"

    def _get_client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("textract", region_name=self._region)
        return self._client

    async def extract(self, data: bytes, page_count: int, options: OCROptions) -> OCRProviderResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        response = await loop.run_in_executor(None, self._detect_sync, data)
        pages, confidence = self.parse_blocks(response.get("Blocks", []))

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        text = "\n\n".join(p for p in pages if p.strip())

        logger.info(
            "Textract OCR | pages=%d chars=%d confidence=%.3f elapsed_ms=%d",
            len(pages), len(text), confidence, elapsed_ms,
        )
        return OCRProviderResult(
            text=text,
            page_texts=pages,
            usage=OCRUsage(
                tokens_used=0,
                processing_time_ms=elapsed_ms,
                confidence=confidence,
                pages_processed=len(pages),
            ),
            provider=self.name,
        )

    def _detect_sync(self, data: bytes) -> dict:
        """Blocking Textract call — runs in thread executor."""
        return self._get_client().detect_document_text(Document={"Bytes": data})

    @staticmethod
    def parse_blocks(blocks: list[dict]) -> tuple[list[str], float]:
        """Group LINE blocks by page; confidence is the mean WORD confidence (0–1)."""
        lines_by_page: dict[int, list[str]] = {}
        word_confidences: list[float] = []

        for block in blocks:
            block_type = block.get("BlockType")
            if block_type == "LINE":
                lines_by_page.setdefault(block.get("Page", 1), []).append(block.get("Text", ""))
            elif block_type == "WORD":
                word_confidences.append(block.get("Confidence", 0.0) / 100.0)

        pages = ["\n".join(lines_by_page[pn]) for pn in sorted(lines_by_page)]
        confidence = (
            round(sum(word_confidences) / len(word_confidences), 3) if word_confidences else 0.0
        )
        return pages, confidence


# ---------------------------------------------------------------------------
# Fallback chain
# ---------------------------------------------------------------------------

@dataclass
class ProviderAttempt:
    provider:   str
    error:      str
    error_type: str
    retryable:  bool
    elapsed_ms: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider":   self.provider,
            "error":      self.error,
            "error_type": self.error_type,
            "retryable":  self.retryable,
            "elapsed_ms": self.elapsed_ms,
        }


class EmptyOCRResult(Exception):
    """Provider answered but produced no text."""


@dataclass
class OCRProviderChain:
    """
    Primary provider, then exactly one fallback.

    The fallback is never called after a primary success.
    """
    primary:         BaseOCRProvider
    fallback:        Optional[BaseOCRProvider] = None
    timeout_seconds: float = field(default_factory=lambda: settings.ocr_provider_timeout_seconds)

    @property
    def providers(self) -> list[BaseOCRProvider]:
        return [p for p in (self.primary, self.fallback) if p is not None]

    async def extract(self, data: bytes, page_count: int, options: OCROptions) -> OCRProviderResult:
        attempts: list[ProviderAttempt] = []

        for provider in self.providers:
            t0 = time.monotonic()
            try:
                logger.debug("OCRProviderChain | trying provider=%s", provider.name)
                result = await asyncio.wait_for(
                    provider.extract(data, page_count, options),
                    timeout=self.timeout_seconds,
                )
                if not result.text.strip():
                    raise EmptyOCRResult(f"{provider.name} returned no text")
                if attempts:
                    logger.info(
                        "OCRProviderChain | fallback succeeded provider=%s after=%s",
                        provider.name, attempts[-1].provider,
                    )
                return result

            except asyncio.TimeoutError:
                attempt = ProviderAttempt(
                    provider=provider.name,
                    error=f"timed out after {self.timeout_seconds}s",
                    error_type="TimeoutError",
                    retryable=True,
                )
            except Exception as exc:
                attempt = ProviderAttempt(
                    provider=provider.name,
                    error=str(exc) or type(exc).__name__,
                    error_type=type(exc).__name__,
                    retryable=is_retryable(exc),
                )

            attempt.elapsed_ms = int((time.monotonic() - t0) * 1000)
            logger.warning(
                "OCRProviderChain | attempt failed provider=%s error_type=%s retryable=%s error=%s",
                attempt.provider, attempt.error_type, attempt.retryable, attempt.error,
            )
            attempts.append(attempt)

        raise ProviderFailure(
            "All OCR providers failed: "
            + "; ".join(f"{a.provider}: {a.error}" for a in attempts),
            can_retry=True,
            attempts=[a.as_dict() for a in attempts],
        )
