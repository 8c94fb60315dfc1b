"""
Quota Ledger
════════════

Per-owner OCR economy: monthly OCR counter, spendable credit balance and
tier limits.

Pure decisions (no I/O):
  ensure_fresh_period  monthly window reset, idempotent
  check_quota          monthly cap + per-request page cap
  price_ocr            credits for one request
  estimate_ocr_cost    credits + token/USD estimate for display

Storage operations (QuotaLedger, all take the caller's AsyncSession):
  refresh_period  conditional UPDATE applying the monthly reset
  commit          single conditional UPDATE:
                    credits = credits - N, ocr_count_monthly + 1
                    WHERE credits >= N
                  enterprise only increments the counter
  record_usage    append one UsageRecord

Credits are charged only after a confirmed provider success, so there is no
refund operation. Read-modify-write never happens in application code: two
concurrent commits for the same owner are serialised by the database row.
"""

from __future__ import annotations

import calendar
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docingest.core.errors import InsufficientCredits, NotFound, format_credits
from docingest.models.documents import QuotaProfile, UsageRecord
from docingest.quota.tiers import Pricing, Tier, limits_for, parse_tier

logger = logging.getLogger(__name__)

OCR_ACTION_TYPE = "ocr_processing"

# Token / price assumptions used for the cost estimate shown to clients
ESTIMATED_TOKENS_PER_PAGE   = 2000
USD_PER_MILLION_INPUT       = Decimal("0.05")
USD_PER_MILLION_OUTPUT      = Decimal("0.40")


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QuotaSnapshot:
    """Point-in-time view of one QuotaProfile row."""
    owner_id:          str
    tier:              Tier
    credits:           Decimal
    ocr_count_monthly: int
    ocr_period_start:  datetime

    @property
    def credits_remaining(self) -> Optional[Decimal]:
        """None = unlimited (enterprise)."""
        if self.tier is Tier.ENTERPRISE:
            return None
        return self.credits

    @property
    def ocr_count_remaining(self) -> Optional[int]:
        """None = unlimited monthly cap."""
        cap = limits_for(self.tier).monthly_ocr
        if cap is None:
            return None
        return max(cap - self.ocr_count_monthly, 0)


class QuotaLimitKind(str, Enum):
    """Which cap rejected a request."""
    MONTHLY = "monthly"
    PAGES   = "pages"


@dataclass(frozen=True)
class QuotaDecision:
    allowed:    bool
    reason:     Optional[str] = None
    limit:      Optional[int] = None
    limit_kind: Optional[QuotaLimitKind] = None


@dataclass(frozen=True)
class OCRCostEstimate:
    credits:            Decimal
    estimated_tokens:   int
    estimated_cost_usd: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "credits":            format_credits(self.credits),
            "estimated_tokens":   self.estimated_tokens,
            "estimated_cost_usd": str(self.estimated_cost_usd),
        }


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------

def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_calendar_month(value: datetime) -> datetime:
    """Same day next month, clamped to the last day of shorter months."""
    year, month = (value.year + 1, 1) if value.month == 12 else (value.year, value.month + 1)
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_elapsed(period_start: datetime, now: datetime) -> bool:
    return as_utc(now) >= add_calendar_month(as_utc(period_start))


def ensure_fresh_period(snapshot: QuotaSnapshot, now: datetime) -> QuotaSnapshot:
    """
    Reset the monthly counter if the window starting at ocr_period_start has
    elapsed. Calling it again inside the new window returns the snapshot
    unchanged.
    """
    if not period_elapsed(snapshot.ocr_period_start, now):
        return snapshot
    return replace(snapshot, ocr_count_monthly=0, ocr_period_start=as_utc(now))


def check_quota(current_count: int, tier: str | Tier, page_count: int) -> QuotaDecision:
    """Monthly cap first, then the per-request page cap."""
    tier = parse_tier(tier)
    limits = limits_for(tier)

    if limits.monthly_ocr is not None and current_count >= limits.monthly_ocr:
        return QuotaDecision(
            allowed=False,
            reason=(
                f"Monthly OCR limit reached ({limits.monthly_ocr} for {tier.value} tier). "
                "Upgrade or wait until next month."
            ),
            limit=limits.monthly_ocr,
            limit_kind=QuotaLimitKind.MONTHLY,
        )

    if limits.max_pages is not None and page_count > limits.max_pages:
        return QuotaDecision(
            allowed=False,
            reason=f"Document exceeds page limit ({limits.max_pages} pages for {tier.value} tier).",
            limit=limits.max_pages,
            limit_kind=QuotaLimitKind.PAGES,
        )

    return QuotaDecision(allowed=True)


def price_ocr(page_count: int, tier: str | Tier) -> Decimal:
    """
    Credits for one OCR request.

      ≤ 20 pages  → 1
      ≤ 50 pages  → 2
      ≤ 100 pages → 3
      otherwise   → ceil(pages / 50)

    Waived-pricing tiers (enterprise) always cost 0.
    """
    if limits_for(tier).pricing is Pricing.WAIVED:
        return Decimal("0")
    if page_count <= 20:
        return Decimal("1")
    if page_count <= 50:
        return Decimal("2")
    if page_count <= 100:
        return Decimal("3")
    return Decimal(math.ceil(page_count / 50))


def estimate_ocr_cost(page_count: int, tier: str | Tier) -> OCRCostEstimate:
    tokens = page_count * ESTIMATED_TOKENS_PER_PAGE
    millions = Decimal(tokens) / Decimal(1_000_000)
    usd = millions * USD_PER_MILLION_INPUT + millions * USD_PER_MILLION_OUTPUT
    return OCRCostEstimate(
        credits=price_ocr(page_count, tier),
        estimated_tokens=tokens,
        estimated_cost_usd=usd.quantize(Decimal("0.000001")),
    )


# ---------------------------------------------------------------------------
# Storage-backed ledger
# ---------------------------------------------------------------------------

_SNAPSHOT_COLUMNS = (
    QuotaProfile.owner_id,
    QuotaProfile.tier,
    QuotaProfile.credits,
    QuotaProfile.ocr_count_monthly,
    QuotaProfile.ocr_period_start,
)


class QuotaLedger:
    """
    Stateless wrapper around the quota_profiles / usage_records tables.

    Transactions belong to the caller: every method runs inside the session
    it is given and never commits on its own.
    """

    async def snapshot(self, session: AsyncSession, owner_id: str) -> QuotaSnapshot:
        # Column select, not entity select: never served from a stale identity map
        row = (
            await session.execute(
                select(*_SNAPSHOT_COLUMNS).where(QuotaProfile.owner_id == owner_id)
            )
        ).first()
        if row is None:
            raise NotFound("Quota profile not found.", owner_id=owner_id)

        return QuotaSnapshot(
            owner_id=row.owner_id,
            tier=parse_tier(row.tier),
            credits=Decimal(str(row.credits)),
            ocr_count_monthly=int(row.ocr_count_monthly),
            ocr_period_start=as_utc(row.ocr_period_start),
        )

    async def refresh_period(
        self,
        session:  AsyncSession,
        owner_id: str,
        now:      datetime,
    ) -> QuotaSnapshot:
        """
        Apply the monthly reset if due and return the fresh snapshot.

        The UPDATE is conditional on the period_start that was read, so two
        requests racing across the boundary reset the counter once.
        """
        current = await self.snapshot(session, owner_id)
        fresh = ensure_fresh_period(current, now)
        if fresh is current:
            return current

        result = await session.execute(
            update(QuotaProfile)
            .where(
                QuotaProfile.owner_id == owner_id,
                QuotaProfile.ocr_period_start == current.ocr_period_start,
            )
            .values(ocr_count_monthly=0, ocr_period_start=fresh.ocr_period_start)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Quota period reset | owner=%s previous_start=%s applied=%s",
            owner_id, current.ocr_period_start.isoformat(), result.rowcount == 1,
        )
        return await self.snapshot(session, owner_id)

    async def commit(
        self,
        session:        AsyncSession,
        owner_id:       str,
        credits_needed: Decimal,
        tier:           str | Tier,
    ) -> QuotaSnapshot:
        """
        Charge one OCR operation. Returns the post-commit snapshot.

        Raises InsufficientCredits if the balance no longer covers the price
        (another request spent it since the pre-check).
        """
        tier = parse_tier(tier)

        if tier is Tier.ENTERPRISE:
            stmt = (
                update(QuotaProfile)
                .where(QuotaProfile.owner_id == owner_id)
                .values(ocr_count_monthly=QuotaProfile.ocr_count_monthly + 1)
            )
        else:
            stmt = (
                update(QuotaProfile)
                .where(
                    QuotaProfile.owner_id == owner_id,
                    QuotaProfile.credits >= credits_needed,
                )
                .values(
                    credits=QuotaProfile.credits - credits_needed,
                    ocr_count_monthly=QuotaProfile.ocr_count_monthly + 1,
                )
            )

        result = await session.execute(stmt.execution_options(synchronize_session=False))

        if result.rowcount != 1:
            current = await self.snapshot(session, owner_id)   # raises NotFound if gone
            logger.warning(
                "Quota commit rejected | owner=%s required=%s available=%s",
                owner_id, credits_needed, current.credits,
            )
            raise InsufficientCredits(required=credits_needed, available=current.credits)

        after = await self.snapshot(session, owner_id)
        logger.info(
            "Quota committed | owner=%s tier=%s charged=%s credits_left=%s ocr_count=%d",
            owner_id, tier.value, credits_needed, after.credits, after.ocr_count_monthly,
        )
        return after

    async def record_usage(
        self,
        session:      AsyncSession,
        owner_id:     str,
        credits_used: Decimal,
        metadata:     dict[str, Any],
        action_type:  str = OCR_ACTION_TYPE,
    ) -> UsageRecord:
        record = UsageRecord(
            owner_id=owner_id,
            action_type=action_type,
            credits_used=credits_used,
            usage_metadata=metadata,
        )
        session.add(record)
        await session.flush()
        return record
