"""
JWT Token Verification — OIDC-Compatible

The ingestion API only needs one fact from a bearer token: the opaque owner
id of the caller. JWTAuthVerifier.verify(token) returns it after checking
signature, expiry, issuer and audience.

Tokens are RS256-signed by the identity provider with a rotating key set.
The public JWKS is fetched from <issuer>/.well-known/jwks.json and cached
per verifier instance (TTL from settings). If a kid is missing we refresh
once, which handles key rotation transparently.

Errors:
  no credential                      → Unauthorized
  malformed / expired / wrong aud    → InvalidToken
  unknown kid, JWKS endpoint failure → InvalidToken
"""

from __future__ import annotations

import logging
import time

import httpx
from jose import ExpiredSignatureError, JWTError, jwt

from docingest.core.config import Settings, settings as default_settings
from docingest.core.errors import InvalidToken, Unauthorized

logger = logging.getLogger(__name__)


class JWTAuthVerifier:
    """
    Verifies bearer tokens and extracts the owner id claim.

    One instance lives on app.state; its JWKS cache is private to it, so
    tests can build a verifier with a pre-populated cache and no network.
    """

    def __init__(
        self,
        issuer:      str | None = None,
        audience:    str | None = None,
        owner_claim: str | None = None,
        ttl_seconds: int | None = None,
        config:      Settings | None = None,
    ) -> None:
        cfg = config or default_settings
        self.issuer      = issuer or cfg.auth_issuer
        self.audience    = audience or cfg.auth_audience
        self.owner_claim = owner_claim or cfg.auth_owner_claim
        self._ttl        = ttl_seconds if ttl_seconds is not None else cfg.auth_jwks_ttl_seconds
        self._store: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)

    # ------------------------------------------------------------------
    # JWKS cache
    # ------------------------------------------------------------------

    def prime(self, jwks: dict) -> None:
        """Seed the cache (startup warm-up, tests)."""
        self._store[self.issuer] = (jwks, time.monotonic())

    def clear(self) -> None:
        """Drop every cached key set; the next verify refetches."""
        self._store.clear()

    async def _fetch(self, issuer: str) -> dict:
        """Fetch JWKS from well-known endpoint with TTL-based caching."""
        now    = time.monotonic()
        cached = self._store.get(issuer)
        if cached and (now - cached[1]) < self._ttl:
            return cached[0]

        uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
        try:
            async with httpx.AsyncClient(timeout=10.0) as http:
                resp = await http.get(uri)
                resp.raise_for_status()
                jwks = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("JWKS fetch failed | issuer=%s status=%d", issuer, exc.response.status_code)
            raise InvalidToken("Unable to retrieve token signing keys.") from exc
        except httpx.RequestError as exc:
            logger.error("JWKS fetch network error | issuer=%s error=%s", issuer, exc)
            raise InvalidToken("Unable to retrieve token signing keys.") from exc

        self._store[issuer] = (jwks, now)
        logger.debug("JWKS refreshed | issuer=%s keys=%d", issuer, len(jwks.get("keys", [])))
        return jwks

    async def _signing_key(self, token: str) -> dict:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidToken("Malformed token header.") from exc

        kid = header.get("kid")
        for attempt in range(2):   # 0 = cached, 1 = force refresh
            if attempt == 1:
                self._store.pop(self.issuer, None)

            jwks = await self._fetch(self.issuer)
            for key_data in jwks.get("keys", []):
                if key_data.get("kid") == kid:
                    return key_data

        raise InvalidToken(f"No signing key found for kid={kid!r}.")

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, token: str | None) -> str:
        """Return the owner id carried by a valid token."""
        if not token:
            raise Unauthorized("Missing bearer token.")

        key = await self._signing_key(token)
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": True},
            )
        except ExpiredSignatureError as exc:
            raise InvalidToken("Token has expired.") from exc
        except JWTError as exc:
            raise InvalidToken(f"Invalid token: {exc}") from exc

        owner_id = claims.get(self.owner_claim)
        if not owner_id:
            raise InvalidToken(f"Token missing {self.owner_claim} claim.")
        return str(owner_id)
