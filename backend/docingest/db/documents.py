"""
Document datastore access.

All OCR state transitions are single conditional UPDATEs (compare-and-set
on ocr_status), never read-then-write, so two API instances handling
requests for the same document cannot both move it to `processing`:

    none | failed ──begin_ocr──► processing ──complete_ocr──► completed
                                     │
                                     └──────mark_failed─────► failed

Every method runs inside the caller's session and returns whether the row
was actually updated; the caller owns commit/rollback.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docingest.core.errors import NotFound
from docingest.models.documents import Document

logger = logging.getLogger(__name__)

RESTARTABLE_STATES = ("none", "failed")


class DocumentRepository:

    async def get_owned(self, session: AsyncSession, document_id: UUID, owner_id: str) -> Document:
        """
        Load a document owned by owner_id.

        Absent and not-owned are the same NotFound so a caller cannot probe
        for other owners' document ids.
        """
        doc = (
            await session.execute(
                select(Document)
                .where(Document.id == document_id, Document.owner_id == owner_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if doc is None:
            raise NotFound(document_id=str(document_id))
        return doc

    async def add(self, session: AsyncSession, **fields: Any) -> Document:
        doc = Document(**fields)
        session.add(doc)
        await session.flush()
        return doc

    async def set_structural_content(
        self,
        session:     AsyncSession,
        document_id: UUID,
        owner_id:    str,
        content:     str,
    ) -> bool:
        """
        Write structural text. ocr_status is left alone.

        Only applies while no OCR run is in flight or stored, so OCR content
        is never replaced by structural text.
        """
        result = await session.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.owner_id == owner_id,
                Document.ocr_status.in_(RESTARTABLE_STATES),
            )
            .values(content=content, extraction_kind="structural")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def begin_ocr(
        self,
        session:     AsyncSession,
        document_id: UUID,
        owner_id:    str,
        started_at:  datetime,
        page_count:  int,
    ) -> bool:
        """none|failed → processing. False if another request got there first."""
        result = await session.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.owner_id == owner_id,
                Document.ocr_status.in_(RESTARTABLE_STATES),
            )
            .values(
                ocr_status="processing",
                page_count=page_count,
                ocr_metadata={
                    "started_at": started_at.isoformat(),
                    "page_count": page_count,
                },
            )
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        logger.info(
            "OCR transition | document=%s to=processing applied=%s", document_id, moved,
        )
        return moved

    async def complete_ocr(
        self,
        session:     AsyncSession,
        document_id: UUID,
        content:     str,
        metadata:    dict[str, Any],
    ) -> bool:
        """processing → completed, writing the OCR text."""
        result = await session.execute(
            update(Document)
            .where(Document.id == document_id, Document.ocr_status == "processing")
            .values(
                ocr_status="completed",
                content=content,
                extraction_kind="ocr",
                ocr_metadata=metadata,
            )
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        logger.info("OCR transition | document=%s to=completed applied=%s", document_id, moved)
        return moved

    async def mark_failed(
        self,
        session:     AsyncSession,
        document_id: UUID,
        metadata:    dict[str, Any],
    ) -> bool:
        """processing → failed. A completed document is never downgraded."""
        result = await session.execute(
            update(Document)
            .where(Document.id == document_id, Document.ocr_status == "processing")
            .values(ocr_status="failed", ocr_metadata=metadata)
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        logger.info("OCR transition | document=%s to=failed applied=%s", document_id, moved)
        return moved
