"""
CLI service commands.

Wires the configured services together and runs the poll scheduler until
it is interrupted or hits a fatal persistence failure.
"""

import argparse
import asyncio
import signal
from contextlib import AsyncExitStack

from rich.console import Console

from ..lib.config import ConfigurationManager, ValidationLevel
from ..lib.errors import ConfigurationError, ErrorTracker, PersistenceError
from ..lib.logging import get_logger
from ..services import (
    DiscordNotifier, NotificationPolicy, PollScheduler, ReconciliationEngine,
    SpeedrunChecker, StreamRegistry, TwitchClient, WebhookServer
)

EXIT_OK = 0
EXIT_CYCLE_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_PERSISTENCE_ERROR = 3


class ServiceCommands:
    """Service lifecycle CLI commands."""

    def __init__(self, console: Console = None):
        self.console = console or Console(stderr=True)
        self.logger = get_logger(__name__)

    def _load_config(self, args: argparse.Namespace) -> ConfigurationManager:
        config = ConfigurationManager(
            env_file=getattr(args, 'config', None), validation_level=ValidationLevel.STRICT
        )
        result = config.validate_configuration()
        for warning in result.warnings:
            self.logger.warning(warning)
        if not result.is_valid:
            problems = result.errors + result.invalid_values
            raise ConfigurationError("; ".join(problems))
        return config

    async def start(self, args: argparse.Namespace) -> int:
        """Start the shoutout service."""
        try:
            config = self._load_config(args)
            twitch_config = config.get_twitch_config()
            policy_config = config.get_policy_config()
            filter_config = config.get_filter_config()
            discord_config = config.get_discord_config()
            scheduler_config = config.get_scheduler_config()
            speedrun_config = config.get_speedrun_config()
            webhook_config = config.get_webhook_config()
        except ConfigurationError as e:
            self.logger.error(f"Configuration error: {e}")
            self.console.print(f"[red]Configuration error:[/red] {e}")
            return EXIT_CONFIG_ERROR

        registry = StreamRegistry(config.get_database_config())

        async with AsyncExitStack() as stack:
            try:
                await registry.connect()
            except PersistenceError as e:
                self.console.print(f"[red]Database unavailable:[/red] {e}")
                return EXIT_PERSISTENCE_ERROR
            stack.push_async_callback(registry.disconnect)

            notifier = DiscordNotifier(discord_config, allowlist_users=policy_config.allowlist_users)
            await stack.enter_async_context(notifier)

            client = TwitchClient(twitch_config)
            await stack.enter_async_context(client)

            engine = ReconciliationEngine(registry, notifier, NotificationPolicy(policy_config))

            checker = None
            if speedrun_config.game_ids:
                checker = SpeedrunChecker(speedrun_config, registry, notifier)
                await checker.start()
                stack.push_async_callback(checker.close)

            scheduler = PollScheduler(
                client, engine, filter_config, scheduler_config,
                speedrun_checker=checker, error_tracker=ErrorTracker(),
            )

            if getattr(args, 'once', False):
                return await self._run_once(scheduler)

            if webhook_config.enabled and not getattr(args, 'no_webhook', False):
                webhook = WebhookServer(
                    engine, webhook_config,
                    stats_provider=scheduler.get_stats, on_fatal=scheduler.fail
                )
                await webhook.start()
                stack.push_async_callback(webhook.stop)

            self._setup_signal_handlers(scheduler)

            await scheduler.start()
            self.console.print("[green]speedbot started[/green]")
            try:
                await scheduler.wait()
            finally:
                await scheduler.stop()

            if scheduler.fatal_error:
                self.console.print(f"[red]Stopped after fatal error:[/red] {scheduler.fatal_error}")
                return EXIT_PERSISTENCE_ERROR

        self.console.print("speedbot stopped")
        return EXIT_OK

    async def _run_once(self, scheduler: PollScheduler) -> int:
        try:
            report = await scheduler.run_cycle()
            if scheduler.speedrun_checker:
                await scheduler.run_speedrun_check()
        except PersistenceError as e:
            self.console.print(f"[red]Persistence failure:[/red] {e}")
            return EXIT_PERSISTENCE_ERROR

        if report is None:
            return EXIT_CYCLE_FAILED

        self.console.print(report.summary())
        return EXIT_OK

    def _setup_signal_handlers(self, scheduler: PollScheduler) -> None:
        loop = asyncio.get_running_loop()

        def handle_signal(signum):
            self.logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
            scheduler.request_stop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, handle_signal, signum)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(signum, lambda s, f: loop.call_soon_threadsafe(handle_signal, s))
