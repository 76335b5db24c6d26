"""
Twitch app access token provider.

Handles the OAuth client credentials flow against the Twitch identity
service, caching the token until shortly before it expires. Concurrent
callers share a single in-flight refresh.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

import aiohttp
from aiohttp import ClientSession
from pydantic import BaseModel, Field, model_validator

from ..lib.errors import (
    AuthenticationError, RateLimitError, RetryConfig, TransportError, retry_with_backoff
)
from ..models import TwitchConfig

logger = logging.getLogger(__name__)


class InvalidCredentialsError(AuthenticationError):
    """Client credentials were rejected."""
    pass


TOKEN_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=2.0,
    max_delay=15.0,
    retry_on=(TransportError,),
    dont_retry_on=(InvalidCredentialsError,),
)


class TokenResponse(BaseModel):
    """OAuth token response model."""

    access_token: str = Field(..., description="Access token")
    token_type: str = Field("bearer", description="Token type")
    expires_in: int = Field(..., description="Token lifetime in seconds")

    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = Field(None, description="Calculated expiration time")

    @model_validator(mode='after')
    def calculate_expiry(self):
        if self.expires_at is None:
            self.expires_at = self.issued_at + timedelta(seconds=self.expires_in)
        return self

    def is_expired(self, margin_seconds: int = 300) -> bool:
        """Check if token is expired or will expire soon."""
        margin = timedelta(seconds=margin_seconds)
        return datetime.now(timezone.utc) >= (self.expires_at - margin)


class TwitchTokenProvider:
    """
    Holds the current app access token and its expiry.

    The token is fetched lazily; a refresh in progress is awaited by every
    caller instead of being repeated.
    """

    def __init__(self, config: TwitchConfig, session: ClientSession):
        self.config = config
        self._session = session
        self._current_token: Optional[TokenResponse] = None
        self._token_lock = asyncio.Lock()
        self._retry = retry_with_backoff(replace(TOKEN_RETRY, max_attempts=config.max_retries))
        self._refresh_count = 0

    async def get_access_token(self) -> str:
        """
        Get valid access token, refreshing if necessary.

        Raises:
            InvalidCredentialsError: If the credentials are rejected
            TransportError: If the identity service cannot be reached
        """
        async with self._token_lock:
            if self._current_token and not self._current_token.is_expired(
                margin_seconds=self.config.refresh_margin_seconds
            ):
                return self._current_token.access_token

            logger.info("Requesting new OAuth token")
            self._current_token = await self._retry(self._request_token)()
            self._refresh_count += 1

            logger.info(f"Access token obtained, expires in {self._current_token.expires_in} seconds")
            return self._current_token.access_token

    async def invalidate(self, access_token: str) -> None:
        """Drop the cached token if it is still the one that was rejected."""
        async with self._token_lock:
            if self._current_token and self._current_token.access_token == access_token:
                logger.info("OAuth token rejected, discarding it")
                self._current_token = None

    async def _request_token(self) -> TokenResponse:
        data = {
            "grant_type": "client_credentials",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }

        try:
            async with self._session.post(self.config.token_url, data=data) as response:
                if response.status == 200:
                    token_data: Dict[str, Any] = await response.json()
                    return TokenResponse(**token_data)

                if response.status in (400, 401, 403):
                    error_text = await response.text()
                    raise InvalidCredentialsError(
                        f"Token request rejected ({response.status}): {error_text[:200]}",
                        status=response.status
                    )

                if response.status == 429:
                    retry_after = float(response.headers.get('Retry-After', '30'))
                    raise RateLimitError("Token request rate limited", retry_after=retry_after)

                raise TransportError(
                    f"Token request failed: HTTP {response.status}", status=response.status
                )

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Token request failed: {e}", cause=e) from e

    def get_stats(self) -> Dict[str, Any]:
        return {
            "has_token": self._current_token is not None,
            "expires_at": self._current_token.expires_at.isoformat() if self._current_token else None,
            "refresh_count": self._refresh_count,
        }
