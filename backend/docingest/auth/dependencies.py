"""
Composed FastAPI Dependencies

Route handlers import from here — never from auth/token or services
directly. The verifier and the facade are built once in the application
lifespan and hung on app.state; these dependencies just hand them out.

This is the single wiring point for the request context:
  Authorization: Bearer <jwt>  →  JWTAuthVerifier.verify  →  owner_id
  app.state.facade             →  IngestionFacade
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from docingest.auth.token import JWTAuthVerifier
from docingest.core.errors import Unauthorized
from docingest.services.ingestion import IngestionFacade

# auto_error=False so a missing header reaches our own Unauthorized (401 envelope)
bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# 1. Token verifier (one per app, owns the JWKS cache)
# ---------------------------------------------------------------------------

def get_verifier(request: Request) -> JWTAuthVerifier:
    return request.app.state.verifier


# ---------------------------------------------------------------------------
# 2. Authenticated owner id
#    The ONLY source of owner_id for every route.
# ---------------------------------------------------------------------------

async def get_owner_id(
    verifier:    Annotated[JWTAuthVerifier, Depends(get_verifier)],
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
) -> str:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Missing bearer token.")
    return await verifier.verify(credentials.credentials)


# ---------------------------------------------------------------------------
# 3. Ingestion facade
# ---------------------------------------------------------------------------

def get_facade(request: Request) -> IngestionFacade:
    return request.app.state.facade


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

OwnerId = Annotated[str,             Depends(get_owner_id)]
Facade  = Annotated[IngestionFacade, Depends(get_facade)]
