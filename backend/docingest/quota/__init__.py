"""
Quota Package
═════════════

Tier limits and the per-owner OCR ledger (monthly counter + credit balance).

Modules
───────
  tiers.py   Closed Tier enum and the TierLimits table
  ledger.py  Pure quota decisions and the storage-backed QuotaLedger
"""

from docingest.quota.ledger import (
    OCRCostEstimate,
    QuotaDecision,
    QuotaLimitKind,
    QuotaLedger,
    QuotaSnapshot,
    check_quota,
    ensure_fresh_period,
    estimate_ocr_cost,
    price_ocr,
)
from docingest.quota.tiers import TIER_LIMITS, Pricing, Tier, TierLimits

__all__ = [
    "OCRCostEstimate",
    "QuotaDecision",
    "QuotaLimitKind",
    "QuotaLedger",
    "QuotaSnapshot",
    "check_quota",
    "ensure_fresh_period",
    "estimate_ocr_cost",
    "price_ocr",
    "TIER_LIMITS",
    "Pricing",
    "Tier",
    "TierLimits",
]
