"""
Ingestion Error Taxonomy
════════════════════════

Every failure the pipeline reports to a caller is an IngestionError
subclass. Each class carries:

  error_code  : stable machine-readable code (clients switch on this)
  http_status : status used by the API exception handler
  context     : structured values a client needs to render an actionable
                message (limit vs current, required vs available, can_retry)

Propagation policy:
  - EPUB structural errors are recovered inside the StructuralExtractor and
    never reach a caller.
  - Quota / credit errors are raised before the document's OCR state is
    touched.
  - Provider and unexpected failures are raised AFTER the document has been
    persisted as `failed`.

Retry classification (is_retryable) lives here too, so the fragile
string-matching against provider error codes/messages has exactly one home.
"""

from __future__ import annotations

import errno
from decimal import Decimal
from typing import Any


class IngestionError(Exception):
    """Base class for all taxonomy errors."""

    error_code:  str = "INGESTION_ERROR"
    http_status: int = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe view of the error (Decimals rendered as strings)."""
        return {
            "error_code": self.error_code,
            "message":    self.message,
            "context":    {k: _json_safe(v) for k, v in self.context.items()},
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} code={self.error_code} message={self.message!r}>"


CREDIT_QUANTUM = Decimal("0.01")


def format_credits(value: Decimal) -> str:
    """Wire form of a credit amount, at the scale the ledger stores (12,2)."""
    return str(value.quantize(CREDIT_QUANTUM))


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format_credits(value)
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    return value


# ---------------------------------------------------------------------------
# Auth collaborator
# ---------------------------------------------------------------------------

class Unauthorized(IngestionError):
    error_code  = "UNAUTHORIZED"
    http_status = 401


class InvalidToken(IngestionError):
    error_code  = "INVALID_TOKEN"
    http_status = 401


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

class InvalidRequest(IngestionError):
    error_code  = "INVALID_REQUEST"
    http_status = 400


class UnsupportedMediaType(IngestionError):
    error_code  = "UNSUPPORTED_MEDIA_TYPE"
    http_status = 415

    def __init__(self, media_type: str) -> None:
        super().__init__(
            f"Media type '{media_type}' is not supported for extraction.",
            media_type=media_type,
        )


class NotFound(IngestionError):
    """Document absent OR not owned by the caller — intentionally indistinguishable."""
    error_code  = "NOT_FOUND"
    http_status = 404

    def __init__(self, message: str = "Document not found or access denied.", **context: Any) -> None:
        super().__init__(message, **context)


# ---------------------------------------------------------------------------
# EPUB structural failures (recovered locally into a placeholder)
# ---------------------------------------------------------------------------

class EpubStructureError(IngestionError):
    error_code  = "EPUB_STRUCTURE_ERROR"
    http_status = 422


class MalformedContainer(EpubStructureError):
    error_code = "EPUB_MALFORMED_CONTAINER"


class PackageNotFound(EpubStructureError):
    error_code = "EPUB_PACKAGE_NOT_FOUND"


class EmptyManifestOrSpine(EpubStructureError):
    error_code = "EPUB_EMPTY_MANIFEST_OR_SPINE"


# ---------------------------------------------------------------------------
# Quota ledger
# ---------------------------------------------------------------------------

class QuotaExceeded(IngestionError):
    error_code  = "QUOTA_EXCEEDED"
    http_status = 403

    def __init__(
        self,
        reason:        str,
        current_count: int,
        limit:         int | None,
        tier:          str,
        **context: Any,
    ) -> None:
        super().__init__(
            reason,
            reason=reason,
            current_count=current_count,
            limit=limit,
            tier=tier,
            **context,
        )
        self.current_count = current_count
        self.limit = limit


class InsufficientCredits(IngestionError):
    error_code  = "INSUFFICIENT_CREDITS"
    http_status = 402

    def __init__(self, required: Decimal, available: Decimal, **context: Any) -> None:
        super().__init__(
            f"Insufficient credits: {required} required, {available} available.",
            required=required,
            available=available,
            **context,
        )
        self.required = required
        self.available = available


# ---------------------------------------------------------------------------
# OCR state machine
# ---------------------------------------------------------------------------

class Conflict(IngestionError):
    error_code  = "CONFLICT"
    http_status = 409


class StorageUnavailable(IngestionError):
    error_code  = "STORAGE_UNAVAILABLE"
    http_status = 503


class ProviderFailure(IngestionError):
    error_code  = "PROVIDER_FAILURE"
    http_status = 502

    def __init__(self, message: str, can_retry: bool, attempts: list[dict] | None = None) -> None:
        super().__init__(message, can_retry=can_retry, attempts=attempts or [])
        self.can_retry = can_retry
        self.attempts = attempts or []


class UnexpectedFailure(IngestionError):
    error_code  = "UNEXPECTED_FAILURE"
    http_status = 500

    def __init__(self, message: str, can_retry: bool = False, **context: Any) -> None:
        super().__init__(message, can_retry=can_retry, **context)
        self.can_retry = can_retry


# ---------------------------------------------------------------------------
# Retryable error classification
# ---------------------------------------------------------------------------

# Transient-fault vocabulary. Matched (substring) against the exception class
# name, its machine-readable code, and its message.
RETRYABLE_ERROR_VOCABULARY: tuple[str, ...] = (
    # connection timeout
    "ETIMEDOUT",
    "TimeoutError",
    "ConnectTimeout",
    "ReadTimeout",
    "APITimeoutError",
    "ConnectTimeoutError",
    "ReadTimeoutError",
    # connection reset
    "ECONNRESET",
    "ConnectionResetError",
    "APIConnectionError",
    # DNS resolution
    "ENOTFOUND",
    "EAI_AGAIN",
    "gaierror",
    # provider rate limiting
    "rate_limit_exceeded",
    "RateLimitError",
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "SlowDown",
)


def _error_code(exc: BaseException) -> str | None:
    """Best-effort machine-readable code for provider / SDK / OS errors."""
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code

    # botocore ClientError
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        aws_code = response.get("Error", {}).get("Code")
        if aws_code:
            return str(aws_code)

    if isinstance(exc, OSError) and exc.errno in errno.errorcode:
        return errno.errorcode[exc.errno]
    return None


def _iter_chain(exc: BaseException, max_depth: int = 5):
    seen: set[int] = set()
    current: BaseException | None = exc
    depth = 0
    while current is not None and id(current) not in seen and depth < max_depth:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__
        depth += 1


def is_retryable(exc: BaseException) -> bool:
    """
    True if the error (or anything in its cause chain) matches the
    transient-fault vocabulary. Everything else is non-retryable.
    """
    for err in _iter_chain(exc):
        haystacks = [type(err).__name__, _error_code(err) or "", str(err)]
        for term in RETRYABLE_ERROR_VOCABULARY:
            if any(term in h for h in haystacks):
                return True
    return False
