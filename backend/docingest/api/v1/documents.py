"""
Document Ingestion API Router

  POST /api/v1/documents/{document_id}/extract   structural extraction
  POST /api/v1/documents/{document_id}/ocr       metered OCR (synchronous)
  GET  /api/v1/documents/{document_id}/ocr       OCR state + metadata

Request lifecycle:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → owner_id (never client-supplied)  │
  │ 2. Body validation (Pydantic, 422 on shape errors)      │
  │ 3. IngestionFacade call                                 │
  │ 4. IngestionError → ErrorResponse (app-level handler)   │
  └─────────────────────────────────────────────────────────┘

Handlers stay thin: every business rule lives behind the facade and every
taxonomy error is rendered once, by the exception handler in main.py.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, status

from docingest.auth.dependencies import Facade, OwnerId
from docingest.schemas.documents import (
    EpubMetadataSchema,
    ErrorResponse,
    ExtractionResponse,
    OCRRequestBody,
    OCRResponse,
    OCRStatusResponse,
    OCRUsageSchema,
)
from docingest.services.ocr import OCRRequest

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Ingestion"],
)

_AUTH_ERRORS = {
    401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
    404: {"model": ErrorResponse, "description": "Document absent or owned by someone else"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/extract
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/extract",
    response_model=ExtractionResponse,
    summary="Run structural extraction on an uploaded document",
    description=(
        "Plain text is decoded, EPUB is unpacked chapter by chapter. "
        "PDF (and EPUB that cannot be parsed) store a placeholder; "
        "request OCR to obtain real text."
    ),
    responses={
        **_AUTH_ERRORS,
        415: {"model": ErrorResponse, "description": "Declared media type not supported"},
        503: {"model": ErrorResponse, "description": "Object store unavailable"},
    },
)
async def submit_for_extraction(
    document_id: UUID,
    owner_id:    OwnerId,
    facade:      Facade,
) -> ExtractionResponse:
    result = await facade.submit_for_extraction(document_id, owner_id)
    return ExtractionResponse(
        document_id=result.document_id,
        media_kind=result.media_kind.value,
        content_length=len(result.content),
        is_placeholder=result.is_placeholder,
        content=result.content,
        epub_metadata=(
            EpubMetadataSchema.model_validate(asdict(result.epub_metadata))
            if result.epub_metadata is not None else None
        ),
    )


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/ocr
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/ocr",
    response_model=OCRResponse,
    status_code=status.HTTP_200_OK,
    summary="Run metered OCR on a document",
    description=(
        "Checks the monthly OCR allowance and page cap for the caller's tier, "
        "prices the request in credits, runs the primary OCR provider with one "
        "fallback, and charges only on success."
    ),
    responses={
        **_AUTH_ERRORS,
        400: {"model": ErrorResponse, "description": "Missing storage key or non-positive page_count"},
        402: {"model": ErrorResponse, "description": "Credit balance below the OCR price"},
        403: {"model": ErrorResponse, "description": "Monthly OCR cap or page cap exceeded"},
        409: {"model": ErrorResponse, "description": "OCR already running or completed"},
        502: {"model": ErrorResponse, "description": "Both OCR providers failed"},
        503: {"model": ErrorResponse, "description": "Object store unavailable"},
    },
)
async def request_ocr(
    document_id: UUID,
    body:        OCRRequestBody,
    owner_id:    OwnerId,
    facade:      Facade,
) -> OCRResponse:
    outcome = await facade.request_ocr(
        OCRRequest(
            document_id=document_id,
            owner_id=owner_id,
            storage_key=body.storage_key,
            page_count=body.page_count,
            options=body.options.to_options(),
        )
    )
    return OCRResponse(
        document_id=outcome.document_id,
        text=outcome.text,
        page_texts=outcome.page_texts,
        provider=outcome.provider,
        usage=OCRUsageSchema.model_validate(asdict(outcome.usage)),
        credits_charged=outcome.credits_charged,
        credits_remaining=outcome.credits_remaining,
        ocr_count_remaining=outcome.ocr_count_remaining,
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/ocr
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/ocr",
    response_model=OCRStatusResponse,
    summary="Poll OCR status",
    responses=_AUTH_ERRORS,
)
async def query_status(
    document_id: UUID,
    owner_id:    OwnerId,
    facade:      Facade,
) -> OCRStatusResponse:
    view = await facade.query_status(document_id, owner_id)
    return OCRStatusResponse(
        document_id=view.document_id,
        ocr_status=view.ocr_status,
        ocr_metadata=view.ocr_metadata,
        content=view.content,
    )
