"""
CLI database commands.

Schema migration and a read-only view of the streams currently marked live.
"""

import argparse
import logging

from rich.console import Console
from rich.table import Table

from ..lib.config import ConfigurationManager, ValidationLevel
from ..lib.errors import ConfigurationError, PersistenceError
from ..services import StreamRegistry

logger = logging.getLogger(__name__)


class DatabaseCommands:
    """Database management CLI commands."""

    def __init__(self, console: Console = None):
        self.console = console or Console()

    def _registry(self, args: argparse.Namespace) -> StreamRegistry:
        config = ConfigurationManager(
            env_file=getattr(args, 'config', None), validation_level=ValidationLevel.LENIENT
        )
        return StreamRegistry(config.get_database_config())

    async def migrate(self, args: argparse.Namespace) -> int:
        """Run database schema migration."""
        try:
            registry = self._registry(args)
        except ConfigurationError as e:
            self.console.print(f"[red]Error:[/red] {e}")
            return 2

        try:
            await registry.connect()
            applied = await registry.migrate()
        except PersistenceError as e:
            logger.error(f"Migration failed: {e}")
            self.console.print(f"[red]✗ Migration failed:[/red] {e}")
            return 3
        finally:
            await registry.disconnect()

        if applied:
            for name in applied:
                self.console.print(f"  ✓ applied {name}")
        else:
            self.console.print("Schema is up to date")
        return 0

    async def live(self, args: argparse.Namespace) -> int:
        """List the streams currently marked live."""
        try:
            registry = self._registry(args)
        except ConfigurationError as e:
            self.console.print(f"[red]Error:[/red] {e}")
            return 2

        try:
            await registry.connect()
            records = await registry.list_live()
        except PersistenceError as e:
            self.console.print(f"[red]Error:[/red] {e}")
            return 3
        finally:
            await registry.disconnect()

        table = Table(title=f"Live streams ({len(records)})")
        table.add_column("User ID", style="cyan")
        table.add_column("Name")
        table.add_column("Game")
        table.add_column("Last shoutout", style="dim")

        for record in records:
            last = record.last_notified_at.strftime("%Y-%m-%d %H:%M UTC") if record.last_notified_at else "never"
            table.add_row(record.external_user_id, record.display_name, record.game_name or "", last)

        self.console.print(table)
        return 0
