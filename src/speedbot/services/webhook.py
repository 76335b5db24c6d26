"""
Stream-update webhook listener.

Receives Twitch stream change notifications so an ended stream is recorded
without waiting for the next poll, and exposes a health endpoint.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

from aiohttp import web
from aiohttp.web import Request, Response

from ..lib.errors import PersistenceError
from ..models import WebhookConfig
from .reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)


class WebhookServer:
    """aiohttp server for /streamUpdate/{user_id} and /health."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        config: WebhookConfig,
        stats_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        on_fatal: Optional[Callable[[Exception], None]] = None,
    ):
        self.engine = engine
        self.config = config
        self.stats_provider = stats_provider
        self.on_fatal = on_fatal

        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._is_running = False
        self._updates_received = 0

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/streamUpdate/{user_id}', self._handle_stream_update)
        app.router.add_post('/streamUpdate/{user_id}', self._handle_stream_update)
        app.router.add_get('/health', self._handle_health)
        return app

    async def start(self) -> None:
        """Start listening on the configured host and port."""
        if self._is_running:
            logger.warning("Webhook server already running")
            return

        logger.info(f"Starting webhook server on {self.config.host}:{self.config.port}")
        self.runner = web.AppRunner(self.create_app())
        await self.runner.setup()

        try:
            self.site = web.TCPSite(self.runner, self.config.host, self.config.port)
            await self.site.start()
        except OSError:
            await self.stop()
            raise

        self._is_running = True
        logger.info(f"Webhook server listening on http://{self.config.host}:{self.config.port}")

    async def stop(self) -> None:
        if self.site:
            await self.site.stop()
            self.site = None

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        if self._is_running:
            logger.info("Webhook server stopped")
        self._is_running = False

    async def _handle_stream_update(self, request: Request) -> Response:
        user_id = request.match_info['user_id']
        self._updates_received += 1

        challenge = request.query.get('hub.challenge')
        if challenge is not None:
            logger.info(f"Webhook subscription verified for user {user_id}")
            return Response(text=challenge, content_type='text/plain')

        if request.method != 'POST':
            return Response(status=200)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug(f"Ignoring stream update for {user_id} with a non-JSON body")
            return Response(status=200)

        # An empty data array means the stream went offline
        if isinstance(body, dict) and body.get('data') == []:
            try:
                await self.engine.end_stream(user_id)
            except PersistenceError as e:
                logger.critical(f"Failed to record end of stream for {user_id}: {e}")
                if self.on_fatal:
                    self.on_fatal(e)
                return Response(status=500)

        return Response(status=200)

    async def _handle_health(self, request: Request) -> Response:
        stats: Dict[str, Any] = {"status": "ok", "updates_received": self._updates_received}
        if self.stats_provider:
            stats["scheduler"] = self.stats_provider()

        return Response(text=json.dumps(stats, default=str), content_type='application/json')
