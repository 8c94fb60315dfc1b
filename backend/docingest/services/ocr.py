"""
OCR Orchestrator

Drives one metered OCR request through the document state machine:

  1. Refresh the owner's monthly window (committed before any check)
  2. check_quota → QuotaExceeded                      (no mutation)
  3. price_ocr   → InsufficientCredits               (no mutation)
  4. Ownership + storage key check → NotFound
  5. CAS none|failed → processing, committed on its own
  6. Fetch bytes from the object store
  7. Provider chain (primary, then one fallback; each attempt time-bounded)
  8. ONE transaction: CAS processing → completed + ledger commit + UsageRecord
  9. Both providers failed → document failed (can_retry=true), ledger untouched
 10. Anything else after step 5 → best-effort mark failed with
     can_retry = is_retryable(exc); a cleanup failure is logged, never raised

Credits are charged only in step 8, after the provider succeeded. A failed
attempt costs the owner nothing, so there is no refund path.

Transactions: the orchestrator owns them. Collaborators (DocumentRepository,
QuotaLedger) only ever run inside a session handed to them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docingest.core.errors import (
    Conflict,
    IngestionError,
    InsufficientCredits,
    NotFound,
    ProviderFailure,
    QuotaExceeded,
    UnexpectedFailure,
    format_credits,
    is_retryable,
)
from docingest.db.documents import DocumentRepository
from docingest.processing.ocr import OCROptions, OCRProviderChain, OCRUsage
from docingest.quota.ledger import (
    QuotaLedger,
    QuotaLimitKind,
    check_quota,
    estimate_ocr_cost,
    price_ocr,
)
from docingest.quota.tiers import Tier
from docingest.storage.s3 import ObjectStore

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Request / result types
# ---------------------------------------------------------------------------

@dataclass
class OCRRequest:
    document_id: UUID
    owner_id:    str
    storage_key: str
    page_count:  int
    options:     OCROptions = field(default_factory=OCROptions)


@dataclass
class OCROutcome:
    """
    credits_remaining   : post-commit balance; None = unlimited (enterprise)
    ocr_count_remaining : post-commit monthly allowance; None = unlimited
    """
    document_id:         UUID
    text:                str
    page_texts:          list[str]
    usage:               OCRUsage
    provider:            str
    credits_charged:     Decimal
    credits_remaining:   Optional[Decimal]
    ocr_count_remaining: Optional[int]


@dataclass
class OCRStatusView:
    document_id:  UUID
    ocr_status:   str
    ocr_metadata: dict[str, Any]
    content:      Optional[str] = None   # only when ocr_status == completed


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class OCROrchestrator:
    """
    Stateless between requests; every collaborator is injected.

    Constructor args:
        sessions  : async_sessionmaker — one short transaction per step
        documents : DocumentRepository (conditional state transitions)
        ledger    : QuotaLedger (conditional debit)
        storage   : ObjectStore holding the raw upload
        providers : OCRProviderChain
        clock     : returns an aware "now"; injectable for tests
    """

    def __init__(
        self,
        sessions:  async_sessionmaker[AsyncSession],
        documents: DocumentRepository,
        ledger:    QuotaLedger,
        storage:   ObjectStore,
        providers: OCRProviderChain,
        clock:     Callable[[], datetime] = utc_now,
    ) -> None:
        self._sessions  = sessions
        self._documents = documents
        self._ledger    = ledger
        self._storage   = storage
        self._providers = providers
        self._clock     = clock

    # ------------------------------------------------------------------
    # RequestOCR
    # ------------------------------------------------------------------

    async def request_ocr(self, req: OCRRequest) -> OCROutcome:
        now = self._clock()

        # ── Step 1: monthly reset strictly before any check ──────────────
        async with self._sessions.begin() as session:
            snapshot = await self._ledger.refresh_period(session, req.owner_id, now)

        tier = snapshot.tier
        estimate = estimate_ocr_cost(req.page_count, tier)

        # ── Step 2: quota ────────────────────────────────────────────────
        decision = check_quota(snapshot.ocr_count_monthly, tier, req.page_count)
        if not decision.allowed:
            logger.info(
                "OCR rejected | owner=%s document=%s reason=quota kind=%s count=%d limit=%s tier=%s",
                req.owner_id, req.document_id, decision.limit_kind.value,
                snapshot.ocr_count_monthly, decision.limit, tier.value,
            )
            page_figures = (
                {"page_count": req.page_count, "max_pages": decision.limit}
                if decision.limit_kind is QuotaLimitKind.PAGES else {}
            )
            raise QuotaExceeded(
                reason=decision.reason or "OCR quota exceeded.",
                current_count=snapshot.ocr_count_monthly,
                limit=decision.limit,
                tier=tier.value,
                limit_kind=decision.limit_kind.value,
                estimate=estimate.as_dict(),
                **page_figures,
            )

        # ── Step 3: credits ──────────────────────────────────────────────
        credits_needed = price_ocr(req.page_count, tier)
        if tier is not Tier.ENTERPRISE and snapshot.credits < credits_needed:
            logger.info(
                "OCR rejected | owner=%s document=%s reason=credits required=%s available=%s",
                req.owner_id, req.document_id, credits_needed, snapshot.credits,
            )
            raise InsufficientCredits(
                required=credits_needed,
                available=snapshot.credits,
                estimate=estimate.as_dict(),
            )

        # ── Step 4: ownership + storage key ──────────────────────────────
        async with self._sessions() as session:
            doc = await self._documents.get_owned(session, req.document_id, req.owner_id)
            current_status = doc.ocr_status
            if doc.storage_key != req.storage_key:
                raise NotFound(document_id=str(req.document_id))

        # ── Step 5: none|failed → processing, durable before any network call
        started_at = self._clock()
        async with self._sessions.begin() as session:
            moved = await self._documents.begin_ocr(
                session, req.document_id, req.owner_id, started_at, req.page_count,
            )
        if not moved:
            raise Conflict(
                f"OCR cannot start while the document is '{current_status}'.",
                document_id=str(req.document_id),
                ocr_status=current_status,
            )

        logger.info(
            "OCR started | owner=%s document=%s pages=%d tier=%s credits_needed=%s "
            "est_tokens=%d est_cost_usd=%s",
            req.owner_id, req.document_id, req.page_count, tier.value, credits_needed,
            estimate.estimated_tokens, estimate.estimated_cost_usd,
        )

        base_failure = {
            "started_at": started_at.isoformat(),
            "page_count": req.page_count,
        }

        try:
            # ── Step 6: bytes ────────────────────────────────────────────
            data = await self._storage.get(req.storage_key)

            # ── Step 7: providers ────────────────────────────────────────
            result = await self._providers.extract(data, req.page_count, req.options)

            # ── Step 8: complete + charge + record, atomically ───────────
            completed_at = self._clock()
            completion = {
                "completed_at":       completed_at.isoformat(),
                "started_at":         started_at.isoformat(),
                "tokens_used":        result.usage.tokens_used,
                "processing_time_ms": result.usage.processing_time_ms,
                "confidence":         result.usage.confidence,
                "pages_processed":    result.usage.pages_processed,
                "provider":           result.provider,
                "credits_charged":    format_credits(credits_needed),
            }

            async with self._sessions.begin() as session:
                if not await self._documents.complete_ocr(
                    session, req.document_id, result.text, completion,
                ):
                    raise Conflict(
                        "Document left the processing state before OCR completed.",
                        document_id=str(req.document_id),
                    )
                after = await self._ledger.commit(session, req.owner_id, credits_needed, tier)
                await self._ledger.record_usage(
                    session,
                    req.owner_id,
                    credits_needed,
                    {
                        "document_id":        str(req.document_id),
                        "page_count":         req.page_count,
                        "tokens_used":        result.usage.tokens_used,
                        "processing_time_ms": result.usage.processing_time_ms,
                        "tier":               tier.value,
                        "provider":           result.provider,
                    },
                )

        except Conflict:
            # Someone else moved the row; nothing was charged and it is not ours to fail
            raise

        except (ProviderFailure, InsufficientCredits) as exc:
            # ── Step 9 / concurrent debit failure ────────────────────────
            await self._mark_failed(req.document_id, base_failure, exc, can_retry=True)
            raise

        except asyncio.CancelledError as exc:
            await self._mark_failed(req.document_id, base_failure, exc, can_retry=True)
            raise

        except Exception as exc:
            # ── Step 10 ──────────────────────────────────────────────────
            can_retry = is_retryable(exc)
            await self._mark_failed(req.document_id, base_failure, exc, can_retry=can_retry)
            if isinstance(exc, IngestionError):
                raise
            logger.exception("OCR unexpected failure | document=%s", req.document_id)
            raise UnexpectedFailure(
                f"OCR processing failed: {exc}",
                can_retry=can_retry,
                document_id=str(req.document_id),
            ) from exc

        outcome = OCROutcome(
            document_id=req.document_id,
            text=result.text,
            page_texts=result.page_texts,
            usage=result.usage,
            provider=result.provider,
            credits_charged=credits_needed,
            credits_remaining=after.credits_remaining,
            ocr_count_remaining=after.ocr_count_remaining,
        )
        logger.info(
            "OCR completed | owner=%s document=%s provider=%s tokens=%d charged=%s "
            "credits_remaining=%s ocr_count_remaining=%s",
            req.owner_id, req.document_id, result.provider, result.usage.tokens_used,
            credits_needed, outcome.credits_remaining, outcome.ocr_count_remaining,
        )
        return outcome

    async def _mark_failed(
        self,
        document_id: UUID,
        base:        dict[str, Any],
        exc:         BaseException,
        can_retry:   bool,
    ) -> None:
        """Compensating write. Never raises: a failure here is only logged."""
        metadata = {
            **base,
            "error":      getattr(exc, "message", None) or str(exc) or type(exc).__name__,
            "error_type": getattr(exc, "error_code", None) or type(exc).__name__,
            "failed_at":  self._clock().isoformat(),
            "can_retry":  can_retry,
        }
        if isinstance(exc, ProviderFailure):
            metadata["attempts"] = exc.attempts

        try:
            async with self._sessions.begin() as session:
                await self._documents.mark_failed(session, document_id, metadata)
        except Exception:
            logger.exception("OCR cleanup failed | document=%s", document_id)
            return

        logger.warning(
            "OCR failed | document=%s error_type=%s can_retry=%s error=%s",
            document_id, metadata["error_type"], can_retry, metadata["error"],
        )

    # ------------------------------------------------------------------
    # QueryStatus
    # ------------------------------------------------------------------

    async def query_status(self, document_id: UUID, owner_id: str) -> OCRStatusView:
        async with self._sessions() as session:
            doc = await self._documents.get_owned(session, document_id, owner_id)

        completed = doc.ocr_status == "completed"
        return OCRStatusView(
            document_id=doc.id,
            ocr_status=doc.ocr_status,
            ocr_metadata=dict(doc.ocr_metadata or {}),
            content=doc.content if completed else None,
        )
