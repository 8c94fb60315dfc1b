"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  session-scoped  : rsa keys, test_jwks
  function-scoped : db_engine, sessions, object_store, clock, providers,
                    orchestrator, facade, verifier, make_token, seed_* factories

Environment strategy:
  - The datastore is an in-memory SQLite database (aiosqlite) created fresh
    per test from the ORM metadata; the "saas" schema is translated away.
  - Object storage is an in-process dict (tests/fakes.py).
  - OCR providers are scripted stubs; no model or AWS calls.
  - JWT tokens are built with a test RSA key — no live auth provider needed.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # HTTP-level tests through the ASGI app
  pytest backend/tests/unit/test_epub.py
"""

from __future__ import annotations

import base64
import os
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("OPENAI_API_KEY",        "sk-test-key")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")
os.environ.setdefault("AUTH_ISSUER",           "https://test.auth.example.com/")
os.environ.setdefault("AUTH_AUDIENCE",         "test-api-audience")

from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from docingest.auth.token import JWTAuthVerifier  # noqa: E402
from docingest.db.documents import DocumentRepository  # noqa: E402
from docingest.db.session import build_sessionmaker  # noqa: E402
from docingest.models.documents import Base, Document, QuotaProfile  # noqa: E402
from docingest.processing.extractor import StructuralExtractor  # noqa: E402
from docingest.processing.ocr import OCRProviderChain  # noqa: E402
from docingest.quota.ledger import QuotaLedger  # noqa: E402
from docingest.services.ingestion import IngestionFacade  # noqa: E402
from docingest.services.ocr import OCROrchestrator  # noqa: E402
from tests.fakes import FixedClock, InMemoryObjectStore, StubOCRProvider  # noqa: E402


TEST_KID      = "test-key-id-2024"
TEST_ISSUER   = "https://test.auth.example.com/"
TEST_AUDIENCE = "test-api-audience"
TEST_OWNER    = "owner-aaaa-1111"
OTHER_OWNER   = "owner-bbbb-2222"

# Mid-month so a period started on the 1st is still current
TEST_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2026, 3, 1, tzinfo=timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# RSA key pair for signing test JWTs (generated once per session)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_private_key():
    """Generate a 2048-bit RSA private key for test JWT signing."""
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> bytes:
    """PEM-encoded private key bytes (used by jose.jwt.encode)."""
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def test_jwks(rsa_private_key) -> dict:
    """
    Build a JWKS document containing the test RSA public key.
    This is what the real /.well-known/jwks.json returns.
    """
    pub_numbers = rsa_private_key.public_key().public_numbers()

    def _b64url(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return base64.urlsafe_b64encode(
            n.to_bytes(byte_length, "big")
        ).rstrip(b"=").decode()

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": TEST_KID,
                "n":   _b64url(pub_numbers.n),
                "e":   _b64url(pub_numbers.e),
            }
        ]
    }


# ─────────────────────────────────────────────────────────────────────────────
# JWT token factory + verifier
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_token(rsa_private_key_pem):
    """
    Factory fixture: returns a function that builds signed test JWTs.

    Usage:
        token = make_token()
        token = make_token(owner_id=OTHER_OWNER)
        token = make_token(expired=True)
    """
    from jose import jwt as jose_jwt

    def _build(
        owner_id: str | None = TEST_OWNER,
        expired:  bool = False,
        audience: str  = TEST_AUDIENCE,
        issuer:   str  = TEST_ISSUER,
        kid:      str  = TEST_KID,
    ) -> str:
        now = int(time.time())
        claims: dict = {
            "iss": issuer,
            "aud": audience,
            "exp": now - 60 if expired else now + 3600,
            "iat": now,
        }
        if owner_id is not None:
            claims["sub"] = owner_id

        return jose_jwt.encode(
            claims,
            rsa_private_key_pem,
            algorithm="RS256",
            headers={"kid": kid},
        )

    return _build


@pytest.fixture
def verifier(test_jwks) -> JWTAuthVerifier:
    """Verifier with a primed JWKS cache — never touches the network."""
    v = JWTAuthVerifier(issuer=TEST_ISSUER, audience=TEST_AUDIENCE, owner_claim="sub", ttl_seconds=3600)
    v.prime(test_jwks)
    return v


# ─────────────────────────────────────────────────────────────────────────────
# Datastore: in-memory SQLite, one database per test
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        execution_options={"schema_translate_map": {"saas": None}},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(db_engine):
    return build_sessionmaker(db_engine)


@pytest.fixture
def seed_profile(sessions):
    """
    Factory: insert a quota profile.

        await seed_profile(tier="pro", credits=Decimal("10"))
    """
    async def _seed(
        owner_id:          str = TEST_OWNER,
        tier:              str = "free",
        credits:           Decimal | str | int = Decimal("10"),
        ocr_count_monthly: int = 0,
        ocr_period_start:  datetime = PERIOD_START,
    ) -> None:
        async with sessions.begin() as session:
            session.add(QuotaProfile(
                owner_id=owner_id,
                tier=tier,
                credits=Decimal(str(credits)),
                ocr_count_monthly=ocr_count_monthly,
                ocr_period_start=ocr_period_start,
            ))

    return _seed


@pytest.fixture
def seed_document(sessions, object_store):
    """
    Factory: insert a document row and (optionally) its bytes in the store.

        doc_id = await seed_document(content_type="application/pdf", body=b"%PDF")
    """
    async def _seed(
        owner_id:     str = TEST_OWNER,
        content_type: str = "application/pdf",
        body:         bytes | None = b"%PDF-1.4 scanned",
        storage_key:  str | None = None,
        filename:     str = "scan.pdf",
        ocr_status:   str = "none",
        ocr_metadata: dict | None = None,
    ) -> uuid.UUID:
        doc_id = uuid.uuid4()
        key = storage_key or f"owners/{owner_id}/documents/{doc_id}/{filename}"
        if body is not None:
            await object_store.put(key, body, content_type)
        async with sessions.begin() as session:
            session.add(Document(
                id=doc_id,
                owner_id=owner_id,
                storage_key=key,
                filename=filename,
                content_type=content_type,
                ocr_status=ocr_status,
                ocr_metadata=ocr_metadata or {},
            ))
        return doc_id

    return _seed


@pytest.fixture
def load_document(sessions):
    """Factory: read a document row back (fresh session, no identity-map reuse)."""
    async def _load(document_id: uuid.UUID) -> Document:
        async with sessions() as session:
            return await session.get(Document, document_id)

    return _load


@pytest.fixture
def load_profile(sessions):
    async def _load(owner_id: str = TEST_OWNER) -> QuotaProfile:
        async with sessions() as session:
            return await session.get(QuotaProfile, owner_id)

    return _load


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(TEST_NOW)


@pytest.fixture
def primary_provider() -> StubOCRProvider:
    return StubOCRProvider(name="openai:gpt-5-nano", text="---PAGE 1---\nFirst page\n---PAGE 2---\nSecond page")


@pytest.fixture
def fallback_provider() -> StubOCRProvider:
    return StubOCRProvider(name="textract", text="Fallback text", tokens=0)


@pytest.fixture
def provider_chain(primary_provider, fallback_provider) -> OCRProviderChain:
    return OCRProviderChain(primary=primary_provider, fallback=fallback_provider, timeout_seconds=0.5)


@pytest.fixture
def orchestrator(sessions, object_store, provider_chain, clock) -> OCROrchestrator:
    return OCROrchestrator(
        sessions=sessions,
        documents=DocumentRepository(),
        ledger=QuotaLedger(),
        storage=object_store,
        providers=provider_chain,
        clock=clock,
    )


@pytest.fixture
def facade(sessions, object_store, orchestrator) -> IngestionFacade:
    return IngestionFacade(
        sessions=sessions,
        documents=DocumentRepository(),
        storage=object_store,
        extractor=StructuralExtractor(),
        orchestrator=orchestrator,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal PDF (%PDF header)."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n%%EOF"
    )


@pytest.fixture
def sample_txt_bytes() -> bytes:
    """Plain text content with a UTF-8 BOM."""
    return "\ufeffChapter one.\nIt has multiple lines.\n".encode("utf-8")
