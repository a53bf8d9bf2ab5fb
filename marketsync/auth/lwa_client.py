"""Login with Amazon (LWA) token provider."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional
import httpx
from pydantic import BaseModel, ValidationError
import structlog

from marketsync.config import Credentials
from marketsync.errors import AuthError, ConfigurationFault
from marketsync.monitoring import metrics

logger = structlog.get_logger(__name__)


class LWATokenResponse(BaseModel):
    """Response from LWA token endpoint."""

    access_token: str
    token_type: Optional[str] = None
    expires_in: Optional[int] = None


class AccessToken:
    """Bearer token with optional expiry."""

    def __init__(self, value: str, expires_in: Optional[int] = None, issued_at: Optional[datetime] = None):
        self.value = value
        issued_at = issued_at or datetime.now(timezone.utc)
        self.expires_at = issued_at + timedelta(seconds=expires_in) if expires_in else None

    def is_expired(self, buffer_seconds: int = 60, now: Optional[datetime] = None) -> bool:
        """Check if token is expired or about to expire. Tokens without expiry never count as fresh."""
        if self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now >= (self.expires_at - timedelta(seconds=buffer_seconds))


class LWAClient:
    """Exchanges the long-lived refresh token for short-lived access tokens."""

    def __init__(
        self,
        credentials: Credentials,
        cache_tokens: bool = False,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize LWA client.

        Args:
            credentials: Process credentials
            cache_tokens: Reuse a token until shortly before it expires
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.credentials = credentials
        self.cache_tokens = cache_tokens
        self.timeout = timeout
        self.transport = transport
        self._cached: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    def _check_credentials(self) -> None:
        missing = [
            env_key for env_key, value in (
                ("AMZ_LWA_CLIENT_ID", self.credentials.lwa_client_id),
                ("AMZ_LWA_CLIENT_SECRET", self.credentials.lwa_client_secret),
                ("AMZ_LWA_REFRESH_TOKEN", self.credentials.lwa_refresh_token),
            ) if not value
        ]
        if missing:
            raise AuthError(str(ConfigurationFault(missing)))

    async def get_access_token(self) -> str:
        """
        Return a bearer token for the SP-API.

        Raises:
            AuthError: If credentials are missing or the exchange fails
        """
        if not self.cache_tokens:
            return (await self.refresh_access_token()).value

        async with self._lock:
            if self._cached is None or self._cached.is_expired():
                self._cached = await self.refresh_access_token()
            return self._cached.value

    async def refresh_access_token(self) -> AccessToken:
        """
        Refresh access token using the configured refresh token.

        Returns:
            AccessToken

        Raises:
            AuthError: If token refresh fails
        """
        self._check_credentials()
        logger.info("refreshing_access_token")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": self.credentials.lwa_refresh_token,
            "client_id": self.credentials.lwa_client_id,
            "client_secret": self.credentials.lwa_client_secret,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.credentials.lwa_token_url,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            metrics.lwa_token_refresh_total.labels(status="error").inc()
            logger.error("token_refresh_transport_error", error=str(e))
            raise AuthError(f"LWA token request failed: {e}") from e

        if response.status_code != 200:
            metrics.lwa_token_refresh_total.labels(status="rejected").inc()
            logger.error(
                "token_refresh_failed",
                status_code=response.status_code,
                error=response.text,
            )
            raise AuthError(f"LWA token error: {response.text}")

        try:
            token = LWATokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            metrics.lwa_token_refresh_total.labels(status="invalid").inc()
            logger.error("token_refresh_unexpected_body", error=str(e))
            raise AuthError(f"Unexpected LWA token response: {e}") from e

        metrics.lwa_token_refresh_total.labels(status="success").inc()
        logger.info("token_refresh_success", expires_in=token.expires_in)

        return AccessToken(token.access_token, token.expires_in)
