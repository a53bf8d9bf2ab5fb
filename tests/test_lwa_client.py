"""Tests for the LWA token provider."""

import dataclasses
import httpx
import pytest
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

from marketsync.auth.lwa_client import AccessToken, LWAClient
from marketsync.errors import AuthError


def token_transport(responses, seen):
    def handler(request):
        seen.append(request)
        return responses[min(len(seen), len(responses)) - 1]
    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_refresh_access_token(credentials):
    """Test the refresh grant is posted form-encoded."""
    seen = []
    transport = token_transport([httpx.Response(200, json={"access_token": "Atza|abc", "expires_in": 3600})], seen)
    client = LWAClient(credentials, transport=transport)

    token = await client.refresh_access_token()

    assert token.value == "Atza|abc"
    assert token.expires_at is not None
    form = parse_qs(seen[0].content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == [credentials.lwa_refresh_token]
    assert form["client_id"] == [credentials.lwa_client_id]
    assert seen[0].headers["content-type"] == "application/x-www-form-urlencoded"


@pytest.mark.asyncio
async def test_get_access_token_without_cache_refreshes_every_time(credentials):
    """Test each call exchanges the refresh token when caching is off."""
    seen = []
    transport = token_transport([httpx.Response(200, json={"access_token": "Atza|abc", "expires_in": 3600})], seen)
    client = LWAClient(credentials, transport=transport)

    await client.get_access_token()
    await client.get_access_token()

    assert len(seen) == 2


@pytest.mark.asyncio
async def test_get_access_token_with_cache_reuses_token(credentials):
    """Test a cached token is reused until it nears expiry."""
    seen = []
    transport = token_transport([
        httpx.Response(200, json={"access_token": "first", "expires_in": 3600}),
        httpx.Response(200, json={"access_token": "second", "expires_in": 3600}),
    ], seen)
    client = LWAClient(credentials, cache_tokens=True, transport=transport)

    assert await client.get_access_token() == "first"
    assert await client.get_access_token() == "first"
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_rejected_refresh_raises_auth_error(credentials):
    """Test a non-200 token response raises AuthError with the body."""
    seen = []
    transport = token_transport([httpx.Response(400, json={"error": "invalid_grant"})], seen)
    client = LWAClient(credentials, transport=transport)

    with pytest.raises(AuthError) as exc_info:
        await client.get_access_token()

    assert "invalid_grant" in str(exc_info.value)


@pytest.mark.asyncio
async def test_missing_access_token_in_body_raises_auth_error(credentials):
    """Test a 200 without access_token is rejected."""
    seen = []
    transport = token_transport([httpx.Response(200, json={"token_type": "bearer"})], seen)
    client = LWAClient(credentials, transport=transport)

    with pytest.raises(AuthError):
        await client.get_access_token()


@pytest.mark.asyncio
async def test_missing_credentials_raise_before_any_request(credentials):
    """Test absent LWA values fail without touching the network."""
    seen = []
    transport = token_transport([httpx.Response(200, json={"access_token": "x"})], seen)
    client = LWAClient(dataclasses.replace(credentials, lwa_refresh_token=""), transport=transport)

    with pytest.raises(AuthError) as exc_info:
        await client.get_access_token()

    assert "AMZ_LWA_REFRESH_TOKEN" in str(exc_info.value)
    assert seen == []


@pytest.mark.asyncio
async def test_transport_error_raises_auth_error(credentials):
    """Test connection failures surface as AuthError."""
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = LWAClient(credentials, transport=httpx.MockTransport(handler))

    with pytest.raises(AuthError):
        await client.get_access_token()


def test_access_token_expiry():
    """Test expiry honours the refresh buffer."""
    issued = datetime(2025, 1, 1, tzinfo=timezone.utc)
    token = AccessToken("x", expires_in=3600, issued_at=issued)

    assert not token.is_expired(now=issued + timedelta(minutes=30))
    assert token.is_expired(now=issued + timedelta(minutes=59, seconds=30))
    assert AccessToken("x").is_expired()
