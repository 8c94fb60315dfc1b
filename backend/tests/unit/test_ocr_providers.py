"""
Unit Tests — OCR Providers & Fallback Chain
══════════════════════════════════════════
Tests for:
  • split_text_into_pages — marker detection, equal-slice fallback
  • build_system_prompt   — options shape the prompt
  • VisionLLMProvider     — message shape, token budget, usage parsing
  • TextractProvider      — block parsing, executor call
  • OCRProviderChain      — primary → fallback once, timeouts, empty text
  • is_retryable          — transient-fault vocabulary

No model or AWS calls: the LLM is an AsyncMock returned by llm_factory and
Textract is a MagicMock client.
"""

from __future__ import annotations

import asyncio
import base64
import socket
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from docingest.core.errors import ProviderFailure, is_retryable
from docingest.processing.ocr import (
    OCROptions,
    OCRProviderChain,
    TextractProvider,
    VisionLLMProvider,
    build_system_prompt,
    split_text_into_pages,
)
from tests.fakes import StubOCRProvider


# ─────────────────────────────────────────────────────────────────────────────
# Page splitting
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSplitTextIntoPages:

    def test_page_markers(self):
        text = "intro\n---PAGE 1---\nalpha\n---PAGE 2---\nbeta"
        assert split_text_into_pages(text, 2) == ["intro", "alpha", "beta"]

    def test_bracket_markers(self):
        text = "one\n[Page 2]\ntwo\n[page 3]\nthree"
        assert split_text_into_pages(text, 3) == ["one", "two", "three"]

    def test_form_feed(self):
        assert split_text_into_pages("a\fb\fc", 3) == ["a", "b", "c"]

    def test_marker_that_yields_one_page_is_kept(self):
        text = "only\n---PAGE 1---\n   "
        assert split_text_into_pages(text, 4) == ["only"]

    def test_equal_slices_without_markers(self):
        assert split_text_into_pages("abcdefghij", 3) == ["abcd", "efgh", "ij"]

    def test_single_page_or_empty(self):
        assert split_text_into_pages("whole text", 1) == ["whole text"]
        assert split_text_into_pages("", 5) == [""]


# ─────────────────────────────────────────────────────────────────────────────
# Prompt
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSystemPrompt:

    def test_default_options(self):
        prompt = build_system_prompt(OCROptions())

        assert "Preserve the original formatting" in prompt
        assert "markdown table" in prompt
        assert "---PAGE n---" in prompt

    def test_options_toggle_sections(self):
        prompt = build_system_prompt(
            OCROptions(preserve_formatting=False, extract_tables=False, language="German"),
        )

        assert "Preserve the original formatting" not in prompt
        assert "markdown table" not in prompt
        assert "written in German" in prompt


# ─────────────────────────────────────────────────────────────────────────────
# VisionLLMProvider
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestVisionLLMProvider:

    def _provider(self, response: AIMessage):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=response)
        factory = MagicMock(return_value=llm)
        provider = VisionLLMProvider(
            model="gpt-test",
            api_key="sk-test",
            tokens_per_page=2000,
            max_tokens=10_000,
            llm_factory=factory,
        )
        return provider, llm, factory

    def test_token_budget_is_capped(self):
        provider, _, _ = self._provider(AIMessage(content="x"))

        assert provider.token_budget(3) == 6_000
        assert provider.token_budget(50) == 10_000

    def test_messages_embed_pdf_as_data_url(self):
        provider, _, _ = self._provider(AIMessage(content="x"))

        system, human = provider.build_messages(b"%PDF-1.4", 2, OCROptions())

        assert isinstance(system, SystemMessage)
        assert isinstance(human, HumanMessage)
        text_block, file_block = human.content
        assert "2-page" in text_block["text"]
        data_url = file_block["file"]["file_data"]
        assert data_url.startswith("data:application/pdf;base64,")
        assert base64.b64decode(data_url.split(",", 1)[1]) == b"%PDF-1.4"

    async def test_extract_reads_text_and_usage(self):
        response = AIMessage(
            content="---PAGE 1---\nHello\n---PAGE 2---\nWorld",
            usage_metadata={"input_tokens": 900, "output_tokens": 100, "total_tokens": 1000},
        )
        provider, llm, factory = self._provider(response)

        result = await provider.extract(b"%PDF", 2, OCROptions())

        factory.assert_called_once_with(4_000)
        llm.ainvoke.assert_awaited_once()
        assert result.page_texts == ["Hello", "World"]
        assert result.usage.tokens_used == 1000
        assert result.usage.pages_processed == 2
        assert result.usage.confidence == pytest.approx(0.95)
        assert result.provider == "openai:gpt-test"

    async def test_block_list_content_is_flattened(self):
        response = AIMessage(content=[{"type": "text", "text": "Block "}, {"type": "text", "text": "text"}])
        provider, _, _ = self._provider(response)

        result = await provider.extract(b"%PDF", 1, OCROptions())

        assert result.text == "Block text"
        assert result.usage.tokens_used == 0


# ─────────────────────────────────────────────────────────────────────────────
# TextractProvider
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestTextractProvider:

    BLOCKS = [
        {"BlockType": "PAGE", "Page": 1},
        {"BlockType": "LINE", "Page": 1, "Text": "First line"},
        {"BlockType": "WORD", "Page": 1, "Text": "First", "Confidence": 90.0},
        {"BlockType": "LINE", "Page": 1, "Text": "Second line"},
        {"BlockType": "WORD", "Page": 2, "Text": "Next", "Confidence": 80.0},
        {"BlockType": "LINE", "Page": 2, "Text": "Next page"},
    ]

    def test_parse_blocks(self):
        pages, confidence = TextractProvider.parse_blocks(self.BLOCKS)

        assert pages == ["First line\nSecond line", "Next page"]
        assert confidence == pytest.approx(0.85)

    def test_parse_no_blocks(self):
        assert TextractProvider.parse_blocks([]) == ([], 0.0)

    async def test_extract_calls_detect_document_text(self):
        client = MagicMock()
        client.detect_document_text.return_value = {"Blocks": self.BLOCKS}
        provider = TextractProvider(region="us-east-1", client=client)

        result = await provider.extract(b"%PDF", 2, OCROptions())

        client.detect_document_text.assert_called_once_with(Document={"Bytes": b"%PDF"})
        assert result.text == "First line\nSecond line\n\nNext page"
        assert result.usage.tokens_used == 0
        assert result.usage.pages_processed == 2
        assert result.provider == "textract"


# ─────────────────────────────────────────────────────────────────────────────
# OCRProviderChain
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestOCRProviderChain:

    async def test_primary_success_never_calls_fallback(self):
        primary, fallback = StubOCRProvider("primary"), StubOCRProvider("fallback")
        chain = OCRProviderChain(primary=primary, fallback=fallback, timeout_seconds=1)

        result = await chain.extract(b"%PDF", 1, OCROptions())

        assert result.provider == "primary"
        assert (primary.calls, fallback.calls) == (1, 0)

    async def test_fallback_is_tried_exactly_once(self):
        primary = StubOCRProvider("primary", error=RuntimeError("model refused"))
        fallback = StubOCRProvider("fallback", text="from textract")
        chain = OCRProviderChain(primary=primary, fallback=fallback, timeout_seconds=1)

        result = await chain.extract(b"%PDF", 1, OCROptions())

        assert result.text == "from textract"
        assert (primary.calls, fallback.calls) == (1, 1)

    async def test_empty_primary_text_counts_as_failure(self):
        primary = StubOCRProvider("primary", text="   ")
        fallback = StubOCRProvider("fallback", text="real text")
        chain = OCRProviderChain(primary=primary, fallback=fallback, timeout_seconds=1)

        result = await chain.extract(b"%PDF", 1, OCROptions())

        assert result.provider == "fallback"

    async def test_both_fail_raises_provider_failure_with_attempts(self):
        primary = StubOCRProvider("primary", delay=1.0)
        fallback = StubOCRProvider("fallback", error=ValueError("bad document"))
        chain = OCRProviderChain(primary=primary, fallback=fallback, timeout_seconds=0.05)

        with pytest.raises(ProviderFailure) as exc_info:
            await chain.extract(b"%PDF", 1, OCROptions())

        err = exc_info.value
        assert err.can_retry is True
        assert [a["provider"] for a in err.attempts] == ["primary", "fallback"]
        assert err.attempts[0]["error_type"] == "TimeoutError"
        assert err.attempts[0]["retryable"] is True
        assert err.attempts[1]["error_type"] == "ValueError"
        assert err.attempts[1]["retryable"] is False
        assert fallback.calls == 1

    async def test_without_fallback_single_attempt(self):
        primary = StubOCRProvider("primary", error=RuntimeError("boom"))
        chain = OCRProviderChain(primary=primary, timeout_seconds=1)

        with pytest.raises(ProviderFailure) as exc_info:
            await chain.extract(b"%PDF", 1, OCROptions())

        assert len(exc_info.value.attempts) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Retry classification
# ─────────────────────────────────────────────────────────────────────────────

class _CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


@pytest.mark.unit
class TestIsRetryable:

    @pytest.mark.parametrize("exc", [
        asyncio.TimeoutError(),
        TimeoutError("read timed out"),
        ConnectionResetError(104, "Connection reset by peer"),
        socket.gaierror(-3, "Temporary failure in name resolution"),
        _CodedError("connect failed", "ETIMEDOUT"),
        _CodedError("dns", "ENOTFOUND"),
        _CodedError("dns", "EAI_AGAIN"),
        Exception("Error code: 429 - rate_limit_exceeded"),
        ClientError({"Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"}}, "DetectDocumentText"),
        ClientError({"Error": {"Code": "SlowDown", "Message": "Reduce your request rate"}}, "GetObject"),
    ])
    def test_transient_faults(self, exc):
        assert is_retryable(exc) is True

    @pytest.mark.parametrize("exc", [
        ValueError("bad document"),
        KeyError("Blocks"),
        ClientError({"Error": {"Code": "InvalidParameterException", "Message": "bad"}}, "DetectDocumentText"),
        _CodedError("nope", "invalid_request_error"),
    ])
    def test_permanent_faults(self, exc):
        assert is_retryable(exc) is False

    def test_cause_chain_is_followed(self):
        try:
            try:
                raise ConnectionResetError("reset")
            except ConnectionResetError as inner:
                raise RuntimeError("wrapped") from inner
        except RuntimeError as outer:
            assert is_retryable(outer) is True
