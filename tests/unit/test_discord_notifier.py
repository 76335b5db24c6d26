"""
Unit tests for Discord message formatting and webhook delivery.
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp

from fixtures.doubles import http_response, stream
from speedbot.lib.errors import NotificationError
from speedbot.models import DiscordConfig
from speedbot.services import DiscordNotifier, DisplayPayload, MentionPolicy
from speedbot.services.discord import escape_markdown, login_from_thumbnail

HOOK_A = "https://discord.com/api/webhooks/1/a"
HOOK_B = "https://discord.com/api/webhooks/2/b"


@pytest.fixture
def notifier():
    notifier = DiscordNotifier(
        DiscordConfig(webhook_urls=(HOOK_A,), home_user_id="1000"), allowlist_users={"42"}
    )
    notifier._session = MagicMock()
    return notifier


@pytest.fixture(autouse=True)
def no_backoff():
    with patch("speedbot.lib.errors.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestFormatting:

    def test_escape_markdown(self):
        assert escape_markdown("*any%* _no_ |glitch| `x` ~y~ <z>") == (
            "\\*any%\\* \\_no\\_ \\|glitch\\| \\`x\\` \\~y\\~ \\<z\\>"
        )

    def test_login_from_thumbnail(self):
        url = "https://static-cdn.jtvnw.net/previews-ttv/live_user_some_runner-{width}x{height}.jpg"

        assert login_from_thumbnail(url) == "some_runner"
        assert login_from_thumbnail("https://example.com/offline.jpg") is None

    def test_stream_payload(self, notifier):
        payload = notifier.build_stream_payload(stream("7", name="Runner", title="any%\nPB *pace*"))

        assert payload.canonical_url == "https://www.twitch.tv/runner"
        assert payload.title == "any%PB \\*pace\\*"
        assert payload.mention_policy == MentionPolicy.SUPPRESS
        assert payload.render() == '> Runner is live! - "any%PB \\*pace\\*"\n> <https://www.twitch.tv/runner>'

    def test_allowlisted_link_embeds(self, notifier):
        payload = notifier.build_stream_payload(stream("42", name="Friend"))

        assert payload.render().endswith("\n> https://www.twitch.tv/friend")

    def test_home_user_pings_here(self, notifier):
        payload = notifier.build_stream_payload(stream("1000", name="Home"))

        assert payload.mention_policy == MentionPolicy.ALLOW
        assert payload.render().startswith("> @here We are Live! - ")

    def test_login_falls_back_to_login_name(self, notifier):
        observed = stream("7", name="Runner").model_copy(update={"thumbnail_url": ""})

        assert notifier.build_stream_payload(observed).canonical_url == "https://www.twitch.tv/runner"


class TestDelivery:

    @pytest.mark.asyncio
    async def test_suppressed_mentions(self, notifier):
        notifier._session.post = MagicMock(return_value=http_response(204))

        await notifier.send_message("@everyone look", MentionPolicy.SUPPRESS)

        notifier._session.post.assert_called_once_with(
            HOOK_A, json={"content": "\\@everyone look", "allowed_mentions": {"parse": []}}
        )

    @pytest.mark.asyncio
    async def test_allowed_mentions_untouched(self, notifier):
        notifier._session.post = MagicMock(return_value=http_response(204))

        payload = DisplayPayload("Home", "t", "https://www.twitch.tv/home", MentionPolicy.ALLOW, "@here We are Live!")
        await notifier.notify(payload)

        sent = notifier._session.post.call_args.kwargs["json"]
        assert sent == {"content": '> @here We are Live! - "t"\n> <https://www.twitch.tv/home>'}

    @pytest.mark.asyncio
    async def test_posts_to_every_webhook(self):
        notifier = DiscordNotifier(DiscordConfig(webhook_urls=(HOOK_A, HOOK_B)))
        notifier._session = MagicMock()
        notifier._session.post = MagicMock(side_effect=[http_response(204), http_response(204)])

        await notifier.send_message("hi")

        assert [c.args[0] for c in notifier._session.post.call_args_list] == [HOOK_A, HOOK_B]
        assert notifier.get_stats() == {"sent": 2, "failed": 0}

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, notifier, no_backoff):
        notifier._session.post = MagicMock(side_effect=[
            http_response(500, text="oops"), http_response(204)
        ])

        await notifier.send_message("hi")

        assert notifier._session.post.call_count == 2
        assert no_backoff.await_count == 1

    @pytest.mark.asyncio
    async def test_persistent_failure_raises(self, notifier):
        notifier._session.post = MagicMock(side_effect=lambda *a, **k: http_response(404, text="Unknown Webhook"))

        with pytest.raises(NotificationError, match="1/1 webhook"):
            await notifier.send_message("hi")

        assert notifier._session.post.call_count == 3
        assert notifier.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_rate_limited_waits_retry_after(self, notifier, no_backoff):
        notifier._session.post = MagicMock(side_effect=lambda *a, **k: http_response(429, json_data={"retry_after": 2.5}))

        with pytest.raises(NotificationError) as exc_info:
            await notifier.send_message("hi")

        assert exc_info.value.cause.retry_after == 2.5
        assert [c.args[0] for c in no_backoff.await_args_list] == [2.5, 2.5]

    @pytest.mark.asyncio
    async def test_rate_limited_with_html_body(self, notifier, no_backoff):
        def cloudflare_page(*args, **kwargs):
            response = http_response(429, text="<html>Error 1015</html>", headers={"Retry-After": "4"})
            response.__aenter__.return_value.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
            return response

        notifier._session.post = MagicMock(side_effect=cloudflare_page)

        with pytest.raises(NotificationError, match="rate limited"):
            await notifier.send_message("hi")

        assert notifier._session.post.call_count == 3
        assert [c.args[0] for c in no_backoff.await_args_list] == [4.0, 4.0]

    @pytest.mark.asyncio
    async def test_rate_limited_without_hints_waits_one_second(self, notifier):
        notifier._session.post = MagicMock(side_effect=lambda *a, **k: http_response(429, json_data=None))

        with pytest.raises(NotificationError) as exc_info:
            await notifier.send_message("hi")

        assert exc_info.value.cause.retry_after == 1.0

    @pytest.mark.asyncio
    async def test_max_retries_from_config(self):
        notifier = DiscordNotifier(DiscordConfig(webhook_urls=(HOOK_A,), max_retries=5))
        notifier._session = MagicMock()
        notifier._session.post = MagicMock(side_effect=lambda *a, **k: http_response(502, text="bad gateway"))

        with pytest.raises(NotificationError):
            await notifier.send_message("hi")

        assert notifier._session.post.call_count == 5

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self, notifier):
        notifier._session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))

        with pytest.raises(NotificationError):
            await notifier.send_message("hi")

    @pytest.mark.asyncio
    async def test_no_webhooks(self):
        notifier = DiscordNotifier(DiscordConfig(webhook_urls=()))

        with pytest.raises(NotificationError):
            await notifier.send_message("hi")

    @pytest.mark.asyncio
    async def test_not_started(self):
        notifier = DiscordNotifier(DiscordConfig(webhook_urls=(HOOK_A,)))

        with pytest.raises(NotificationError):
            await notifier.send_message("hi")
