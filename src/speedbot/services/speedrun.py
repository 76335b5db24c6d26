"""
speedrun.com verified-run checker.

Polls the runs API for each configured game and announces runs verified
since the last check. The newest announced verify-date per game is kept in
the registry so restarts do not repeat announcements.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from ..lib.errors import (
    ErrorCategory, NotificationError, RateLimitError, TransportError,
    create_retry_config, retry_with_backoff
)
from ..models import SpeedrunConfig, SpeedrunRun
from .discord import DiscordNotifier, escape_markdown
from .registry import StreamRegistry

logger = logging.getLogger(__name__)


class SpeedrunChecker:
    """Announces newly verified runs for the configured games."""

    def __init__(self, config: SpeedrunConfig, registry: StreamRegistry, notifier: DiscordNotifier):
        self.config = config
        self.registry = registry
        self.notifier = notifier
        self._session: Optional[ClientSession] = None
        self._announced = 0

    async def start(self) -> None:
        if self._session:
            return
        self._session = ClientSession(
            timeout=ClientTimeout(total=self.config.timeout_seconds),
            headers={"User-Agent": "speedbot/1.0.0", "Accept": "application/json"}
        )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    @retry_with_backoff(create_retry_config(ErrorCategory.TRANSPORT))
    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self._session:
            raise TransportError("Speedrun checker not started")

        url = f"{self.config.api_base_url.rstrip('/')}/{path.lstrip('/')}"
        try:
            async with self._session.get(url, params=params) as response:
                if response.status == 200:
                    return await response.json()
                if response.status == 420 or response.status == 429:
                    raise RateLimitError(f"speedrun.com throttled {path}")
                raise TransportError(f"{path} returned HTTP {response.status}", status=response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Request to {path} failed: {e}", cause=e) from e

    async def fetch_recent_runs(self, game_id: str) -> List[SpeedrunRun]:
        """Most recently verified runs for a game, newest first."""
        body = await self._get_json("/runs", {
            "game": game_id,
            "status": "verified",
            "orderby": "verify-date",
            "direction": "desc",
            "embed": "players,category",
            "max": self.config.page_size,
        })

        runs = []
        for entry in body.get("data") or []:
            try:
                runs.append(SpeedrunRun.from_api(entry))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed run for game {game_id}: {e}")
        return runs

    async def resolve_runner_name(self, runner_id: str) -> str:
        """Name of a registered runner, from the cache or the users API."""
        cached = await self.registry.get_runner_name(runner_id)
        if cached:
            return cached

        body = await self._get_json(f"/users/{runner_id}")
        names = (body.get("data") or {}).get("names") or {}
        name = names.get("international") or names.get("japanese") or runner_id

        await self.registry.save_runner_name(runner_id, name)
        return name

    async def runner_names(self, run: SpeedrunRun) -> str:
        names = []
        for player in run.players:
            if player.name:
                if player.runner_id:
                    await self.registry.save_runner_name(player.runner_id, player.name)
                names.append(player.name)
            elif player.runner_id:
                names.append(await self.resolve_runner_name(player.runner_id))
        return ", ".join(names) if names else "unknown runner"

    async def format_announcement(self, run: SpeedrunRun) -> str:
        runners = escape_markdown(await self.runner_names(run))
        category = escape_markdown(run.category_name or "unknown category")
        return (
            f"> New verified run in {category}: {run.formatted_time()} by {runners}\n"
            f"> <{run.weblink}>"
        )

    async def check_game(self, game_id: str) -> int:
        """
        Announce runs verified since the stored marker. Returns the number announced.

        The first check of a game only records the marker. A failed
        announcement stops the game's check with the marker at the last
        success so the run is retried next time.
        """
        runs = await self.fetch_recent_runs(game_id)
        marker = await self.registry.get_latest_run_marker(game_id)

        if marker is None:
            if not runs:
                return 0
            latest = max(run.verified_epoch for run in runs)
            await self.registry.set_latest_run_marker(game_id, latest)
            logger.info(f"Started tracking verified runs for game {game_id}", extra={"game_id": game_id})
            return 0

        fresh = sorted(
            (run for run in runs if run.verified_epoch > marker),
            key=lambda run: run.verified_epoch
        )

        announced = 0
        for run in fresh:
            try:
                await self.notifier.send_message(await self.format_announcement(run))
            except NotificationError as e:
                logger.error(
                    f"Unable to announce run {run.run_id}: {e}",
                    extra={"game_id": game_id, "run_id": run.run_id},
                )
                break

            await self.registry.set_latest_run_marker(game_id, run.verified_epoch)
            announced += 1

        if announced:
            logger.info(f"Announced {announced} verified run(s) for game {game_id}", extra={"game_id": game_id})
        self._announced += announced
        return announced

    async def check_all(self) -> int:
        """Check every configured game; transport failures skip that game."""
        total = 0
        for game_id in self.config.game_ids:
            try:
                total += await self.check_game(game_id)
            except TransportError as e:
                logger.warning(f"Speedrun check for game {game_id} skipped: {e}", extra={"game_id": game_id})
        return total

    def get_stats(self) -> Dict[str, Any]:
        return {"games": len(self.config.game_ids), "announced": self._announced}
