"""
Subscription tiers and their OCR limits.

The tier set is closed: every Tier member must have an explicit TierLimits
entry, checked when this module is imported. A string that is not a tier
raises instead of falling back to some default limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Tier(str, Enum):
    FREE       = "free"
    PRO        = "pro"
    PREMIUM    = "premium"
    ENTERPRISE = "enterprise"


class Pricing(str, Enum):
    BANDED = "banded"   # credits by page-count band
    WAIVED = "waived"   # always 0 credits


@dataclass(frozen=True)
class TierLimits:
    """
    monthly_ocr : OCR operations allowed per monthly window (None = unlimited)
    max_pages   : pages allowed in a single OCR request (None = unlimited)
    pricing     : how credits are computed for one request
    """
    monthly_ocr: Optional[int]
    max_pages:   Optional[int]
    pricing:     Pricing

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_ocr is None


TIER_LIMITS: dict[Tier, TierLimits] = {
    Tier.FREE:       TierLimits(monthly_ocr=5,    max_pages=20,   pricing=Pricing.BANDED),
    Tier.PRO:        TierLimits(monthly_ocr=100,  max_pages=50,   pricing=Pricing.BANDED),
    Tier.PREMIUM:    TierLimits(monthly_ocr=500,  max_pages=100,  pricing=Pricing.BANDED),
    Tier.ENTERPRISE: TierLimits(monthly_ocr=None, max_pages=None, pricing=Pricing.WAIVED),
}

_missing = set(Tier) - set(TIER_LIMITS)
if _missing:
    raise RuntimeError(f"TIER_LIMITS missing entries for: {sorted(t.value for t in _missing)}")


def parse_tier(value: str | Tier) -> Tier:
    """Coerce a stored tier string. Unknown values raise ValueError."""
    if isinstance(value, Tier):
        return value
    return Tier(value.strip().lower())


def limits_for(tier: str | Tier) -> TierLimits:
    return TIER_LIMITS[parse_tier(tier)]
