"""
Unit Tests — Bearer Token Verification
══════════════════════════════════════
Tests for:
  • JWTAuthVerifier.verify — valid token, expired, bad audience / issuer,
                             missing owner claim, malformed token
  • JWKS cache             — primed keys, clear, force-refresh on unknown kid,
                             endpoint failures
  • get_owner_id           — missing credential → Unauthorized

All tests use the test RSA key pair from conftest.py.
Zero network calls — JWKS fetch is patched or served by httpx.MockTransport.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.security import HTTPAuthorizationCredentials

from docingest.auth.dependencies import get_owner_id
from docingest.auth.token import JWTAuthVerifier
from docingest.core.errors import InvalidToken, Unauthorized
from tests.conftest import OTHER_OWNER, TEST_AUDIENCE, TEST_ISSUER, TEST_OWNER


def _client_with(handler):
    """AsyncClient factory whose requests are answered by handler."""
    real_client = httpx.AsyncClient

    def _factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    return _factory


# ─────────────────────────────────────────────────────────────────────────────
# Claims
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestVerify:

    async def test_valid_token_returns_owner(self, verifier, make_token):
        assert await verifier.verify(make_token()) == TEST_OWNER

    async def test_owner_comes_from_token(self, verifier, make_token):
        assert await verifier.verify(make_token(owner_id=OTHER_OWNER)) == OTHER_OWNER

    async def test_expired(self, verifier, make_token):
        with pytest.raises(InvalidToken, match="expired"):
            await verifier.verify(make_token(expired=True))

    async def test_wrong_audience(self, verifier, make_token):
        with pytest.raises(InvalidToken):
            await verifier.verify(make_token(audience="some-other-api"))

    async def test_wrong_issuer(self, verifier, make_token):
        with pytest.raises(InvalidToken):
            await verifier.verify(make_token(issuer="https://evil.example.com/"))

    async def test_missing_owner_claim(self, verifier, make_token):
        with pytest.raises(InvalidToken, match="sub"):
            await verifier.verify(make_token(owner_id=None))

    async def test_malformed_token(self, verifier):
        with pytest.raises(InvalidToken):
            await verifier.verify("not.a.jwt")

    @pytest.mark.parametrize("token", [None, ""])
    async def test_no_token(self, verifier, token):
        with pytest.raises(Unauthorized):
            await verifier.verify(token)

    async def test_custom_owner_claim(self, test_jwks, make_token):
        v = JWTAuthVerifier(issuer=TEST_ISSUER, audience=TEST_AUDIENCE, owner_claim="org_owner", ttl_seconds=60)
        v.prime(test_jwks)

        with pytest.raises(InvalidToken, match="org_owner"):
            await v.verify(make_token())


# ─────────────────────────────────────────────────────────────────────────────
# JWKS cache
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestJWKSCache:

    async def test_unknown_kid_triggers_single_refresh(self, verifier, make_token, test_jwks):
        token = make_token(kid="rotated-key")
        rotated = {"keys": [{**test_jwks["keys"][0], "kid": "rotated-key"}]}

        with patch.object(verifier, "_fetch", new=AsyncMock(side_effect=[test_jwks, rotated])) as fetch:
            assert await verifier.verify(token) == TEST_OWNER

        assert fetch.await_count == 2

    async def test_unknown_kid_after_refresh_raises(self, verifier, make_token):
        with patch.object(verifier, "_fetch", new=AsyncMock(return_value={"keys": []})):
            with pytest.raises(InvalidToken, match="No signing key"):
                await verifier.verify(make_token(kid="nobody"))

    async def test_primed_cache_is_used_without_network(self, verifier, make_token):
        def _fail(request: httpx.Request) -> httpx.Response:
            raise AssertionError(f"unexpected network call to {request.url}")

        with patch("docingest.auth.token.httpx.AsyncClient", new=_client_with(_fail)):
            assert await verifier.verify(make_token()) == TEST_OWNER

    async def test_clear_forces_refetch(self, verifier, make_token, test_jwks):
        seen: list[str] = []

        def _serve(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=test_jwks)

        verifier.clear()
        with patch("docingest.auth.token.httpx.AsyncClient", new=_client_with(_serve)):
            assert await verifier.verify(make_token()) == TEST_OWNER
            assert await verifier.verify(make_token()) == TEST_OWNER

        assert seen == ["https://test.auth.example.com/.well-known/jwks.json"]

    async def test_fetch_reads_well_known_endpoint(self, test_jwks):
        seen: list[str] = []

        def _serve(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=test_jwks)

        v = JWTAuthVerifier(issuer=TEST_ISSUER, audience=TEST_AUDIENCE, owner_claim="sub", ttl_seconds=60)
        with patch("docingest.auth.token.httpx.AsyncClient", new=_client_with(_serve)):
            first = await v._fetch(TEST_ISSUER)
            second = await v._fetch(TEST_ISSUER)

        assert first == second == test_jwks
        assert seen == ["https://test.auth.example.com/.well-known/jwks.json"]

    async def test_endpoint_error_status(self):
        v = JWTAuthVerifier(issuer=TEST_ISSUER, audience=TEST_AUDIENCE, owner_claim="sub", ttl_seconds=60)

        with patch(
            "docingest.auth.token.httpx.AsyncClient",
            new=_client_with(lambda request: httpx.Response(503)),
        ):
            with pytest.raises(InvalidToken, match="signing keys"):
                await v._fetch(TEST_ISSUER)

    async def test_endpoint_network_error(self):
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        v = JWTAuthVerifier(issuer=TEST_ISSUER, audience=TEST_AUDIENCE, owner_claim="sub", ttl_seconds=60)
        with patch("docingest.auth.token.httpx.AsyncClient", new=_client_with(_refuse)):
            with pytest.raises(InvalidToken):
                await v._fetch(TEST_ISSUER)


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI dependency
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestGetOwnerId:

    async def test_missing_credentials(self, verifier):
        with pytest.raises(Unauthorized):
            await get_owner_id(verifier, None)

    async def test_credentials_are_verified(self, verifier, make_token):
        creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials=make_token())

        assert await get_owner_id(verifier, creds) == TEST_OWNER
