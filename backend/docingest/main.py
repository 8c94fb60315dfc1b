"""
FastAPI Application — Entry Point

Document Ingestion & Metered OCR API

Architecture:
  - All routes are versioned under /api/v1/
  - Authentication is JWT-based (OIDC issuer JWKS), enforced per-route
  - The owner id comes from the verified token, never from the request
  - Every IngestionError renders as a structured ErrorResponse

Wiring (built once in the lifespan, kept on app.state):
  engine → sessionmaker ─┐
  S3ObjectStore ─────────┼─► OCROrchestrator ─► IngestionFacade
  VisionLLM + Textract ──┘
  JWTAuthVerifier (owns its JWKS cache)

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID injection — X-Request-ID header on every response
  3. Gzip — compress responses > 1 KB
  4. Request logging — structured log per request with latency

/health and /ready are excluded from auth.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from docingest.api.v1.documents import router as documents_router
from docingest.auth.token import JWTAuthVerifier
from docingest.core.config import Settings, settings
from docingest.core.errors import IngestionError
from docingest.db.documents import DocumentRepository
from docingest.db.session import build_engine, build_sessionmaker, check_db_health
from docingest.processing.extractor import StructuralExtractor
from docingest.processing.ocr import OCRProviderChain, TextractProvider, VisionLLMProvider
from docingest.quota.ledger import QuotaLedger
from docingest.schemas.documents import IngestionErrors
from docingest.services.ingestion import IngestionFacade
from docingest.services.ocr import OCROrchestrator
from docingest.storage.s3 import S3ObjectStore

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------

def build_facade(config: Settings, engine) -> IngestionFacade:
    sessions  = build_sessionmaker(engine)
    documents = DocumentRepository()
    storage   = S3ObjectStore(bucket=config.s3_bucket, region=config.aws_region)
    providers = OCRProviderChain(
        primary=VisionLLMProvider(),
        fallback=TextractProvider(region=config.effective_textract_region),
        timeout_seconds=config.ocr_provider_timeout_seconds,
    )
    orchestrator = OCROrchestrator(
        sessions=sessions,
        documents=documents,
        ledger=QuotaLedger(),
        storage=storage,
        providers=providers,
    )
    return IngestionFacade(
        sessions=sessions,
        documents=documents,
        storage=storage,
        extractor=StructuralExtractor(),
        orchestrator=orchestrator,
    )


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: build the engine, validate DB connectivity, wire services.
    Run on shutdown: dispose of the connection pool.
    """
    logger.info(
        "Starting document ingestion API | env=%s ocr_model=%s",
        settings.app_env, settings.ocr_primary_model,
    )

    engine = build_engine(settings)
    db_health = await check_db_health(engine)
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        await engine.dispose()
        raise RuntimeError(f"DB unavailable: {db_health}")

    app.state.engine   = engine
    app.state.facade   = build_facade(settings, engine)
    app.state.verifier = JWTAuthVerifier(config=settings)

    logger.info("Database: connected")
    logger.info("Auth issuer: %s", settings.auth_issuer)
    logger.info("S3 bucket: %s", settings.s3_bucket)

    yield

    logger.info("Shutting down document ingestion API")
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Ingestion & Metered OCR",
        description=(
            "Structural text extraction for plain text and EPUB, and quota-metered "
            "OCR with provider fallback for PDFs."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = ["*"] if settings.app_env == "development" else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(IngestionError)
    async def ingestion_exception_handler(request: Request, exc: IngestionError):
        """Every taxonomy error carries its own HTTP status and context."""
        request_id = getattr(request.state, "request_id", None)
        level = logging.ERROR if exc.http_status >= 500 else logging.INFO
        logger.log(
            level,
            "Request failed | path=%s error_code=%s status=%d request_id=%s",
            request.url.path, exc.error_code, exc.http_status, request_id,
        )
        body = IngestionErrors.from_exception(exc, request_id)
        return JSONResponse(
            status_code=exc.http_status,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        body = IngestionErrors.validation_error(
            list(exc.errors()), getattr(request.state, "request_id", None),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=IngestionErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth: used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "docingest-api"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness(request: Request) -> JSONResponse:
        engine = getattr(request.app.state, "engine", None)
        if engine is None:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": {"status": "error", "detail": "not started"}},
            )
        db_status = await check_db_health(engine)
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docingest.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
