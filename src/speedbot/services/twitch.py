"""
Twitch Helix client.

Fetches the currently-active streams for the configured games and reduces
them to the ones carrying a configured tag or title keyword.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from ..lib.errors import (
    ErrorCategory, RateLimitError, TransportError, create_retry_config, retry_with_backoff
)
from ..models import FilterConfig, ObservedStream, TwitchConfig
from .auth import TwitchTokenProvider

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
MAX_PAGES = 20


class TokenRejectedError(TransportError):
    """The API answered 401; the cached token has been discarded."""
    pass


def matches_filter(stream: ObservedStream, filter_config: FilterConfig) -> bool:
    """A stream matches on a shared tag or a title keyword."""
    if stream.tag_ids & filter_config.tag_ids:
        return True

    title = stream.title.lower()
    return any(keyword.lower() in title for keyword in filter_config.keywords)


def dedupe_streams(streams: Sequence[ObservedStream]) -> List[ObservedStream]:
    """Drop repeated streams, keeping first occurrence order."""
    seen = set()
    unique = []
    for stream in streams:
        key = stream.stream_id or stream.external_user_id
        if key in seen:
            continue
        seen.add(key)
        unique.append(stream)
    return unique


class TwitchClient:
    """Active-stream fetcher backed by the Helix API."""

    def __init__(self, config: TwitchConfig):
        self.config = config
        self._session: Optional[ClientSession] = None
        self.token_provider: Optional[TwitchTokenProvider] = None
        self._retry = retry_with_backoff(
            create_retry_config(ErrorCategory.TRANSPORT, max_attempts=config.max_retries)
        )
        self._request_count = 0
        self._last_ratelimit_remaining: Optional[str] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        if self._session:
            logger.warning("Twitch client already started")
            return

        self._session = ClientSession(
            timeout=ClientTimeout(total=self.config.timeout_seconds),
            headers={"Client-ID": self.config.client_id, "User-Agent": "speedbot/1.0.0"}
        )
        self.token_provider = TwitchTokenProvider(self.config, self._session)
        logger.info("Twitch client started")

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        self.token_provider = None

    async def api_request(self, endpoint: str, params: Sequence[Tuple[str, Any]] = ()) -> Dict[str, Any]:
        """GET a Helix endpoint and return the decoded JSON body, retrying transport failures."""
        return await self._retry(self._get)(endpoint, params)

    async def _get(self, endpoint: str, params: Sequence[Tuple[str, Any]]) -> Dict[str, Any]:
        if not self._session or not self.token_provider:
            raise TransportError("Twitch client not started")

        access_token = await self.token_provider.get_access_token()
        url = f"{self.config.api_base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        query = [(key, str(value)) for key, value in params if value is not None]

        logger.debug(f"API request to: {url}", extra={"api_endpoint": endpoint})
        try:
            async with self._session.get(
                url, params=query, headers={"Authorization": f"Bearer {access_token}"}
            ) as response:
                self._request_count += 1
                self._last_ratelimit_remaining = response.headers.get("Ratelimit-Remaining")

                if response.status == 200:
                    logger.debug(f"Quota left: {self._last_ratelimit_remaining}")
                    return await response.json()

                if response.status == 401:
                    await self.token_provider.invalidate(access_token)
                    raise TokenRejectedError("OAuth token rejected", status=401)

                if response.status == 429:
                    # Ratelimit-Reset is the epoch second at which the bucket refills
                    reset = response.headers.get("Ratelimit-Reset")
                    retry_after = None
                    if reset and reset.isdigit():
                        retry_after = max(1.0, float(reset) - time.time())
                    raise RateLimitError(f"Rate limited on {endpoint}", retry_after=retry_after)

                text = await response.text()
                raise TransportError(
                    f"{endpoint} returned HTTP {response.status}: {text[:200]}",
                    status=response.status
                )

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Request to {endpoint} failed: {e}", cause=e) from e

    async def get_streams(self, game_ids: Sequence[str] = ()) -> List[ObservedStream]:
        """All live streams for the given games, following pagination."""
        streams: List[ObservedStream] = []
        cursor = None

        for _ in range(MAX_PAGES):
            params: List[Tuple[str, Any]] = [("first", PAGE_SIZE)]
            params.extend(("game_id", game_id) for game_id in sorted(game_ids))
            if cursor:
                params.append(("after", cursor))

            body = await self.api_request("/streams", params)
            data = body.get("data") or []
            streams.extend(ObservedStream.from_helix(entry) for entry in data)

            cursor = (body.get("pagination") or {}).get("cursor")
            if not cursor or len(data) < PAGE_SIZE:
                break
        else:
            logger.warning(f"Stopped paging /streams after {MAX_PAGES} pages")

        return streams

    async def fetch_active_streams(self, filter_config: FilterConfig) -> List[ObservedStream]:
        """
        Currently-active streams matching the filter, deduplicated.

        Raises:
            TransportError: If the API cannot be reached or keeps failing
        """
        streams = await self.get_streams(filter_config.game_ids)
        matching = [s for s in streams if matches_filter(s, filter_config)]
        result = dedupe_streams(matching)

        logger.debug(f"{len(result)} of {len(streams)} active stream(s) match the search configuration")
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "request_count": self._request_count,
            "ratelimit_remaining": self._last_ratelimit_remaining,
            "token": self.token_provider.get_stats() if self.token_provider else None,
        }
