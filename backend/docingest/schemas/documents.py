"""
Document Ingestion — Pydantic Request/Response Schemas

Covers:
  POST /api/v1/documents/{id}/extract   → ExtractionResponse
  POST /api/v1/documents/{id}/ocr       → OCRRequestBody / OCRResponse
  GET  /api/v1/documents/{id}/ocr       → OCRStatusResponse
  All structured error bodies (400, 401, 402, 403, 404, 409, 415, 422, 500, 502, 503)

Design decisions:
  - owner_id never appears in a request body; it comes from the verified token.
  - Credit figures are Decimals serialised as strings (no float rounding).
  - credits_remaining / ocr_count_remaining are null when unlimited.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_serializer

from docingest.core.errors import IngestionError, format_credits
from docingest.processing.ocr import OCROptions


# ---------------------------------------------------------------------------
# OCR state machine
# ---------------------------------------------------------------------------

class OCRStatus(str, Enum):
    """
    Maps to saas.documents.ocr_status.
    Transitions: none|failed → processing → completed | failed
    """
    NONE       = "none"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


# ---------------------------------------------------------------------------
# Structural extraction: POST /documents/{id}/extract
# ---------------------------------------------------------------------------

class EpubChapterSchema(BaseModel):
    id:    str
    href:  str
    title: Optional[str] = None


class EpubMetadataSchema(BaseModel):
    title:    Optional[str] = None
    author:   Optional[str] = None
    language: Optional[str] = None
    chapters: list[EpubChapterSchema] = Field(default_factory=list)


class ExtractionResponse(BaseModel):
    document_id:    UUID
    media_kind:     str  = Field(..., description="plain_text | pdf | epub")
    extraction_kind: str = Field("structural")
    content_length: int  = Field(..., description="Characters of extracted text")
    is_placeholder: bool = Field(..., description="True when content is a pending placeholder")
    content:        str
    epub_metadata:  Optional[EpubMetadataSchema] = None


# ---------------------------------------------------------------------------
# OCR request: POST /documents/{id}/ocr
# ---------------------------------------------------------------------------

class OCROptionsSchema(BaseModel):
    preserve_formatting: bool = True
    extract_tables:      bool = True
    language:            Optional[str] = Field(None, max_length=64)

    def to_options(self) -> OCROptions:
        return OCROptions(
            preserve_formatting=self.preserve_formatting,
            extract_tables=self.extract_tables,
            language=self.language,
        )


class OCRRequestBody(BaseModel):
    storage_key: str = Field(..., min_length=1, description="Object key recorded at upload")
    page_count:  int = Field(..., description="Declared page count (must be positive)")
    options:     OCROptionsSchema = Field(default_factory=OCROptionsSchema)


class OCRUsageSchema(BaseModel):
    tokens_used:        int
    processing_time_ms: int
    confidence:         float
    pages_processed:    int


class OCRResponse(BaseModel):
    document_id:         UUID
    ocr_status:          OCRStatus = OCRStatus.COMPLETED
    text:                str
    page_texts:          list[str]
    provider:            str
    usage:               OCRUsageSchema
    credits_charged:     Decimal
    credits_remaining:   Optional[Decimal] = Field(None, description="null = unlimited")
    ocr_count_remaining: Optional[int]     = Field(None, description="null = unlimited")

    @field_serializer("credits_charged", "credits_remaining")
    def _decimal_as_string(self, value: Optional[Decimal]) -> Optional[str]:
        return None if value is None else format_credits(value)


# ---------------------------------------------------------------------------
# OCR status: GET /documents/{id}/ocr
# ---------------------------------------------------------------------------

class OCRStatusResponse(BaseModel):
    document_id:  UUID
    ocr_status:   OCRStatus
    ocr_metadata: dict[str, Any] = Field(default_factory=dict)
    content:      Optional[str]  = Field(None, description="Present only when ocr_status=completed")


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling and read
    `context` for the figures behind it (limit vs current, can_retry, ...).
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    context:    dict[str, Any]    = Field(default_factory=dict)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class IngestionErrors:
    """Factories for every documented error case."""

    @staticmethod
    def from_exception(exc: IngestionError, request_id: str | None = None) -> ErrorResponse:
        body = exc.to_dict()
        field = body["context"].get("field")
        return ErrorResponse(
            error_code=body["error_code"],
            message=body["message"],
            details=[ErrorDetail(field=field, message=body["message"], code=body["error_code"])],
            context=body["context"],
            request_id=request_id,
        )

    @staticmethod
    def validation_error(errors: list[dict], request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(p) for p in err.get("loc", ()) if p != "body") or None,
                    message=err.get("msg", "invalid value"),
                    code="VALIDATION_ERROR",
                )
                for err in errors
            ],
            request_id=request_id,
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )


# ---------------------------------------------------------------------------
# HTTP status code → error code mapping (for OpenAPI documentation)
# ---------------------------------------------------------------------------

HTTP_ERROR_MAP: dict[int, str] = {
    400: "INVALID_REQUEST",          # missing ids, non-positive page_count
    401: "UNAUTHORIZED",             # missing token (INVALID_TOKEN for bad ones)
    402: "INSUFFICIENT_CREDITS",     # balance below the OCR price
    403: "QUOTA_EXCEEDED",           # monthly cap or page cap
    404: "NOT_FOUND",                # absent OR not owned
    409: "CONFLICT",                 # OCR already in flight / completed
    415: "UNSUPPORTED_MEDIA_TYPE",   # declared type has no extraction route
    422: "VALIDATION_ERROR",         # FastAPI Pydantic validation failure
    500: "UNEXPECTED_FAILURE",       # unhandled exception
    502: "PROVIDER_FAILURE",         # both OCR providers failed
    503: "STORAGE_UNAVAILABLE",      # object store unreachable / object missing
}
