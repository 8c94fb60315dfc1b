"""
SQLAlchemy ORM Models — Documents, Quota Profiles & Usage Records

Using SQLAlchemy mapped classes (2.x style) for full async support.

Portability note: column types stay dialect-neutral (Uuid, JSON with a JSONB
variant on PostgreSQL) so the same metadata can be created on an in-memory
SQLite database for tests via schema_translate_map={"saas": None}.

Schema: saas (set via __table_args__)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: saas.documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded document and whatever text has been extracted from it.

    OCR state machine (ocr_status column):
        none       — OCR never requested
        processing — exactly one OCR attempt in flight
        completed  — content holds OCR text, credits charged
        failed     — last attempt failed; ocr_metadata.can_retry says whether
                     a new request is worthwhile

    Transitions only happen through the conditional UPDATEs in
    db/documents.py. Structural extraction writes content and
    extraction_kind='structural' and never touches ocr_status.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "ocr_status IN ('none', 'processing', 'completed', 'failed')",
            name="documents_ocr_status_check",
        ),
        CheckConstraint(
            "extraction_kind IS NULL OR extraction_kind IN ('structural', 'ocr')",
            name="documents_extraction_kind_check",
        ),
        Index("idx_documents_owner_id",   "owner_id"),
        Index("idx_documents_ocr_status", "owner_id", "ocr_status"),
        {"schema": "saas"},
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Opaque identity from the auth verifier; never supplied by the client body
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)

    storage_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object store key of the raw upload",
    )
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Declared media type recorded at upload",
    )
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Extracted text
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extraction_kind: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # OCR state machine
    ocr_status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="none",
        server_default="none",
    )
    ocr_metadata: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="started_at/page_count, completion usage, or failure details",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} owner={self.owner_id} "
            f"ocr_status={self.ocr_status} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# QuotaProfile model: saas.quota_profiles
# ---------------------------------------------------------------------------

class QuotaProfile(Base):
    """
    Per-owner usage economy: tier, credit balance, monthly OCR counter.

    Mutated only by quota/ledger.py through single conditional UPDATEs so
    that concurrent requests can never drive credits negative.
    """

    __tablename__ = "quota_profiles"
    __table_args__ = (
        CheckConstraint(
            "tier IN ('free', 'pro', 'premium', 'enterprise')",
            name="quota_profiles_tier_check",
        ),
        CheckConstraint("credits >= 0",           name="quota_profiles_credits_check"),
        CheckConstraint("ocr_count_monthly >= 0", name="quota_profiles_ocr_count_check"),
        {"schema": "saas"},
    )

    owner_id: Mapped[str] = mapped_column(Text, primary_key=True)
    tier: Mapped[str] = mapped_column(Text, nullable=False, default="free", server_default="free")
    credits: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
        server_default="0",
    )
    ocr_count_monthly: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    ocr_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<QuotaProfile owner={self.owner_id} tier={self.tier} "
            f"credits={self.credits} ocr_count={self.ocr_count_monthly}>"
        )


# ---------------------------------------------------------------------------
# UsageRecord model: saas.usage_records
# ---------------------------------------------------------------------------

class UsageRecord(Base):
    """
    Append-only usage trail. Exactly one row per committed OCR attempt,
    written in the same transaction as the ledger debit.
    """

    __tablename__ = "usage_records"
    __table_args__ = (
        Index("idx_usage_records_owner_id",   "owner_id"),
        Index("idx_usage_records_created_at", "created_at"),
        {"schema": "saas"},
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)

    owner_id: Mapped[str] = mapped_column(Text, nullable=False)
    action_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="e.g. ocr_processing",
    )
    credits_used: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    usage_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # column name stays 'metadata'
        JSONType,
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageRecord id={self.id} owner={self.owner_id} "
            f"action={self.action_type!r} credits={self.credits_used}>"
        )
