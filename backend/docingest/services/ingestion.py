"""
Ingestion Facade

The single entry point the API layer talks to. Exactly three operations,
each taking the authenticated owner id:

  submit_for_extraction(document_id, owner_id)
      load owned document → classify declared media type → fetch bytes →
      StructuralExtractor → persist content (extraction_kind=structural)
      Conflict once OCR is processing or completed; OCR text is never replaced.

  request_ocr(OCRRequest)
      validate (ids present, storage key present, page_count > 0) →
      OCROrchestrator.request_ocr

  query_status(document_id, owner_id)
      OCROrchestrator.query_status

No business logic lives here beyond argument validation and translating
unknown exceptions into UnexpectedFailure. owner_id is
always taken from the verified token, never from a request body.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docingest.core.errors import (
    Conflict,
    IngestionError,
    InvalidRequest,
    UnexpectedFailure,
    UnsupportedMediaType,
)
from docingest.db.documents import RESTARTABLE_STATES, DocumentRepository
from docingest.processing.epub import EpubMetadata
from docingest.processing.extractor import StructuralExtractor
from docingest.processing.sniffer import MediaKind, classify
from docingest.services.ocr import OCROrchestrator, OCROutcome, OCRRequest, OCRStatusView
from docingest.storage.s3 import ObjectStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class SubmitResult:
    document_id:    UUID
    media_kind:     MediaKind
    content:        str
    is_placeholder: bool
    epub_metadata:  Optional[EpubMetadata] = None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _require_uuid(value: Any, field_name: str = "document_id") -> UUID:
    if isinstance(value, UUID):
        return value
    if not value:
        raise InvalidRequest(f"{field_name} is required.", field=field_name)
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise InvalidRequest(f"{field_name} is not a valid id.", field=field_name) from exc


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{field_name} is required.", field=field_name)
    return value


def _require_positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidRequest(f"{field_name} must be a positive integer.", field=field_name)
    return value


def _ocr_owns_content(document_id: UUID, ocr_status: str) -> Conflict:
    return Conflict(
        f"Structural extraction is not allowed while OCR is '{ocr_status}'.",
        document_id=str(document_id),
        ocr_status=ocr_status,
    )


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------

class IngestionFacade:
    """
    Composition root for the ingestion use cases.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        sessions:     async_sessionmaker[AsyncSession],
        documents:    DocumentRepository,
        storage:      ObjectStore,
        extractor:    StructuralExtractor,
        orchestrator: OCROrchestrator,
    ) -> None:
        self._sessions     = sessions
        self._documents    = documents
        self._storage      = storage
        self._extractor    = extractor
        self._orchestrator = orchestrator

    # ------------------------------------------------------------------
    # SubmitForExtraction
    # ------------------------------------------------------------------

    async def submit_for_extraction(self, document_id: Any, owner_id: str) -> SubmitResult:
        doc_id = _require_uuid(document_id)
        owner_id = _require_text(owner_id, "owner_id")

        try:
            async with self._sessions() as session:
                doc = await self._documents.get_owned(session, doc_id, owner_id)
                content_type, storage_key = doc.content_type, doc.storage_key
                ocr_status = doc.ocr_status

            kind = classify(content_type)
            if kind is MediaKind.UNSUPPORTED:
                raise UnsupportedMediaType(content_type)
            if ocr_status not in RESTARTABLE_STATES:
                raise _ocr_owns_content(doc_id, ocr_status)

            raw = await self._storage.get(storage_key)
            result = self._extractor.extract(kind, raw)

            async with self._sessions.begin() as session:
                if not await self._documents.set_structural_content(
                    session, doc_id, owner_id, result.text,
                ):
                    # OCR started between the read and the write
                    raise _ocr_owns_content(doc_id, "processing")

        except IngestionError:
            raise
        except Exception as exc:
            logger.exception("Structural extraction failed | document=%s", doc_id)
            raise UnexpectedFailure(f"Extraction failed: {exc}", document_id=str(doc_id)) from exc

        logger.info(
            "Structural extraction stored | owner=%s document=%s kind=%s chars=%d placeholder=%s",
            owner_id, doc_id, kind.value, len(result.text), result.is_placeholder,
        )
        return SubmitResult(
            document_id=doc_id,
            media_kind=kind,
            content=result.text,
            is_placeholder=result.is_placeholder,
            epub_metadata=result.epub_metadata,
        )

    # ------------------------------------------------------------------
    # RequestOCR
    # ------------------------------------------------------------------

    async def request_ocr(self, req: OCRRequest) -> OCROutcome:
        req = replace(
            req,
            document_id=_require_uuid(req.document_id),
            owner_id=_require_text(req.owner_id, "owner_id"),
            storage_key=_require_text(req.storage_key, "storage_key"),
            page_count=_require_positive_int(req.page_count, "page_count"),
        )
        try:
            return await self._orchestrator.request_ocr(req)
        except IngestionError:
            raise
        except Exception as exc:
            logger.exception("RequestOCR failed unexpectedly | document=%s", req.document_id)
            raise UnexpectedFailure(f"OCR request failed: {exc}", document_id=str(req.document_id)) from exc

    # ------------------------------------------------------------------
    # QueryStatus
    # ------------------------------------------------------------------

    async def query_status(self, document_id: Any, owner_id: str) -> OCRStatusView:
        doc_id = _require_uuid(document_id)
        owner_id = _require_text(owner_id, "owner_id")
        try:
            return await self._orchestrator.query_status(doc_id, owner_id)
        except IngestionError:
            raise
        except Exception as exc:
            logger.exception("QueryStatus failed unexpectedly | document=%s", doc_id)
            raise UnexpectedFailure(f"Status lookup failed: {exc}", document_id=str(doc_id)) from exc
