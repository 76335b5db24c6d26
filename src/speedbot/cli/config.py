"""
CLI configuration commands.

Show the effective settings and validate them before starting the service.
"""

import argparse
import logging

from rich.console import Console
from rich.table import Table

from ..lib.config import ConfigurationManager, ValidationLevel
from ..lib.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ConfigCommands:
    """Configuration management CLI commands."""

    def __init__(self, console: Console = None):
        self.console = console or Console()

    def _load(self, args: argparse.Namespace, level: ValidationLevel = ValidationLevel.STRICT) -> ConfigurationManager:
        return ConfigurationManager(env_file=getattr(args, 'config', None), validation_level=level)

    async def show(self, args: argparse.Namespace) -> int:
        """Show current configuration."""
        try:
            config = self._load(args, ValidationLevel.LENIENT)
        except ConfigurationError as e:
            self.console.print(f"[red]Error:[/red] {e}")
            return 2

        data = config.get_all_config(include_sources=True, mask_secrets=getattr(args, 'mask_secrets', True))

        table = Table(title="speedbot configuration")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        table.add_column("Source", style="dim")

        for key in sorted(data['config']):
            table.add_row(key, str(data['config'][key]), data['sources'].get(key, ""))

        self.console.print(table)
        return 0

    async def validate(self, args: argparse.Namespace) -> int:
        """Validate configuration."""
        try:
            config = self._load(args, ValidationLevel(getattr(args, 'level', 'strict')))
        except ConfigurationError as e:
            self.console.print(f"[red]✗ {e}[/red]")
            return 2

        result = config.validate_configuration()

        if result.is_valid:
            self.console.print("[green]✓ Configuration validation passed[/green]")
        else:
            self.console.print("[red]✗ Configuration validation failed[/red]")
            for error in result.errors:
                self.console.print(f"  ✗ {error}")
            for invalid in result.invalid_values:
                self.console.print(f"  ✗ {invalid}")

        for warning in result.warnings:
            self.console.print(f"  [yellow]⚠ {warning}[/yellow]")

        return 0 if result.is_valid else 2
