"""
Discord notifier.

Formats stream shoutouts and speedrun announcements and delivers them to
the configured Discord channel webhooks.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from ..lib.errors import (
    ErrorCategory, NotificationError, create_retry_config, retry_with_backoff
)
from ..models import DiscordConfig, ObservedStream

logger = logging.getLogger(__name__)

TWITCH_CHANNEL_URL = "https://www.twitch.tv/{login}"
THUMBNAIL_LOGIN_PATTERN = re.compile(r"^.*live_user_(.*)-.*$")
MARKDOWN_PATTERN = re.compile(r"[<>*_~|`]")


class MentionPolicy(str, Enum):
    """Whether a message may ping anyone."""
    ALLOW = "allow"
    SUPPRESS = "suppress"


@dataclass(frozen=True)
class DisplayPayload:
    """What a stream shoutout shows."""
    display_name: str
    title: str
    canonical_url: str
    mention_policy: MentionPolicy = MentionPolicy.SUPPRESS
    welcome: str = ""
    embed_link: bool = False

    def render(self) -> str:
        url = self.canonical_url if self.embed_link else f"<{self.canonical_url}>"
        welcome = self.welcome or f"{self.display_name} is live!"
        return f'> {welcome} - "{self.title}"\n> {url}'


def escape_markdown(text: str) -> str:
    return MARKDOWN_PATTERN.sub(lambda m: "\\" + m.group(0), text)


def login_from_thumbnail(thumbnail_url: str) -> Optional[str]:
    """Login name embedded in a live thumbnail URL, if any."""
    match = THUMBNAIL_LOGIN_PATTERN.match(thumbnail_url or "")
    return match.group(1) if match else None


class DiscordNotifier:
    """Delivers messages to Discord channel webhooks."""

    def __init__(self, config: DiscordConfig, allowlist_users=frozenset()):
        self.config = config
        self.allowlist_users = frozenset(allowlist_users)
        self._session: Optional[ClientSession] = None
        self._retry = retry_with_backoff(
            create_retry_config(ErrorCategory.NOTIFICATION, max_attempts=config.max_retries)
        )
        self._sent_count = 0
        self._failed_count = 0

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        if self._session:
            logger.warning("Discord notifier already started")
            return

        self._session = ClientSession(
            timeout=ClientTimeout(total=self.config.timeout_seconds),
            headers={"User-Agent": "speedbot/1.0.0", "Content-Type": "application/json"}
        )
        logger.info(f"Discord notifier started with {len(self.config.webhook_urls)} webhook(s)")

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def build_stream_payload(self, stream: ObservedStream) -> DisplayPayload:
        """Shoutout payload for a live stream."""
        login = login_from_thumbnail(stream.thumbnail_url) or stream.login_name or stream.display_name
        title = escape_markdown(stream.title).replace("\n", "").replace("\r", "")
        display_name = escape_markdown(stream.display_name)

        is_home = bool(self.config.home_user_id) and stream.external_user_id == self.config.home_user_id
        return DisplayPayload(
            display_name=display_name,
            title=title,
            canonical_url=TWITCH_CHANNEL_URL.format(login=login),
            mention_policy=MentionPolicy.ALLOW if is_home else MentionPolicy.SUPPRESS,
            welcome="@here We are Live!" if is_home else "",
            embed_link=stream.external_user_id in self.allowlist_users,
        )

    async def notify(self, payload: DisplayPayload) -> None:
        """Deliver a stream shoutout. Raises NotificationError on failure."""
        await self.send_message(payload.render(), payload.mention_policy)

    async def send_message(self, content: str, mention_policy: MentionPolicy = MentionPolicy.SUPPRESS) -> None:
        """Send raw message content to every configured webhook."""
        if not self.config.webhook_urls:
            raise NotificationError("No Discord webhook configured")

        message: Dict[str, Any] = {"content": content}
        if mention_policy == MentionPolicy.SUPPRESS:
            message["content"] = content.replace("@", "\\@")
            message["allowed_mentions"] = {"parse": []}

        logger.debug(message["content"].replace("\n", "\\n"))

        failures = []
        for url in self.config.webhook_urls:
            try:
                await self._retry(self._post)(url, message)
                self._sent_count += 1
            except NotificationError as e:
                self._failed_count += 1
                failures.append(e)

        if failures:
            raise NotificationError(
                f"Delivery failed for {len(failures)}/{len(self.config.webhook_urls)} webhook(s): {failures[0]}",
                cause=failures[0]
            )

    async def _post(self, url: str, message: Dict[str, Any]) -> None:
        if not self._session:
            raise NotificationError("Discord notifier not started")

        try:
            async with self._session.post(url, json=message) as response:
                if response.status == 429:
                    retry_after = await self._retry_after(response)
                    raise NotificationError(
                        f"Discord rate limited, retry after {retry_after}s", retry_after=retry_after
                    )
                if response.status >= 300:
                    text = await response.text()
                    raise NotificationError(f"Discord webhook returned {response.status}: {text[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NotificationError(f"Discord webhook request failed: {e}", cause=e) from e

    @staticmethod
    async def _retry_after(response: aiohttp.ClientResponse) -> float:
        """Seconds to wait from a 429 body, else the Retry-After header, else 1."""
        try:
            body = await response.json(content_type=None)
            return float(body["retry_after"])
        except (ValueError, TypeError, KeyError, aiohttp.ContentTypeError):
            pass

        try:
            return float(response.headers.get("Retry-After", 1))
        except (TypeError, ValueError):
            return 1.0

    def get_stats(self) -> Dict[str, int]:
        return {"sent": self._sent_count, "failed": self._failed_count}
