"""
Main CLI entry point for speedbot.

Provides the command-line interface with argument parsing, command routing
and global options handling.
"""

import argparse
import asyncio
import os
import sys
from typing import List, Optional

from .. import __version__
from ..lib.logging import setup_logging
from .config import ConfigCommands
from .database import DatabaseCommands
from .service import ServiceCommands

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""

    parser = argparse.ArgumentParser(
        prog='speedbot',
        description='Twitch speedrun stream shoutouts and speedrun.com announcements for Discord',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  speedbot config validate
  speedbot db migrate
  speedbot start
  speedbot start --once --log-level DEBUG
  speedbot db live
        """
    )

    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument(
        '--config', '-c',
        type=str,
        help='Configuration file path (default: auto-detected .env or environment variables)'
    )
    parser.add_argument(
        '--log-level',
        choices=LOG_LEVELS,
        type=str.upper,
        help='Log level (default: SYSTEM_LOG_LEVEL/LOG_LEVEL or INFO)'
    )
    parser.add_argument(
        '--log-file', type=str,
        help='Also write JSON logs to this file (default: SYSTEM_LOG_FILE, if set)'
    )
    parser.add_argument('--json-logs', action='store_true', help='Log to the console as JSON')

    subparsers = parser.add_subparsers(dest='command', help='Available commands', metavar='COMMAND')

    # start
    start_parser = subparsers.add_parser('start', help='Run the shoutout service')
    start_parser.add_argument(
        '--log-level', choices=LOG_LEVELS, type=str.upper, default=argparse.SUPPRESS,
        help='Log level for this run'
    )
    start_parser.add_argument('--no-webhook', action='store_true', help='Do not run the stream-update listener')
    start_parser.add_argument('--once', action='store_true', help='Run a single poll cycle and exit')

    # db
    db_parser = subparsers.add_parser('db', help='Database operations')
    db_subparsers = db_parser.add_subparsers(dest='db_command', help='Database subcommands')
    db_subparsers.add_parser('migrate', help='Apply pending schema migrations')
    db_subparsers.add_parser('live', help='List streams currently marked live')

    # config
    config_parser = subparsers.add_parser('config', help='Configuration management')
    config_subparsers = config_parser.add_subparsers(dest='config_command', help='Configuration subcommands')

    show_parser = config_subparsers.add_parser('show', help='Show current configuration')
    show_parser.add_argument(
        '--no-mask-secrets', dest='mask_secrets', action='store_false',
        help='Show sensitive values in plain text'
    )

    validate_parser = config_subparsers.add_parser('validate', help='Validate configuration')
    validate_parser.add_argument(
        '--level', choices=['strict', 'lenient', 'minimal'], default='strict',
        help='Validation level (default: strict)'
    )

    return parser


def resolve_log_level(args: argparse.Namespace) -> str:
    """CLI flag, then SYSTEM_LOG_LEVEL/LOG_LEVEL, then INFO."""
    if getattr(args, 'log_level', None):
        return args.log_level

    env_level = (os.getenv('SYSTEM_LOG_LEVEL') or os.getenv('LOG_LEVEL') or 'INFO').upper()
    if env_level not in LOG_LEVELS:
        print(f"Warning: Invalid log level '{env_level}' in environment, using INFO", file=sys.stderr)
        return 'INFO'
    return env_level


def resolve_log_file(args: argparse.Namespace) -> Optional[str]:
    """CLI flag, then SYSTEM_LOG_FILE; None when neither is set."""
    return getattr(args, 'log_file', None) or os.getenv('SYSTEM_LOG_FILE') or None


async def run_command(args: argparse.Namespace) -> int:
    """Run the appropriate command based on parsed arguments."""
    setup_logging(
        level=resolve_log_level(args),
        log_file=resolve_log_file(args),
        json_format=getattr(args, 'json_logs', False),
        rich_console=not getattr(args, 'json_logs', False),
    )

    if args.command == 'start':
        return await ServiceCommands().start(args)

    if args.command == 'db':
        commands = DatabaseCommands()
        if args.db_command == 'migrate':
            return await commands.migrate(args)
        if args.db_command == 'live':
            return await commands.live(args)
        print("Error: No database subcommand specified", file=sys.stderr)
        return 2

    if args.command == 'config':
        commands = ConfigCommands()
        if args.config_command == 'show':
            return await commands.show(args)
        if args.config_command == 'validate':
            return await commands.validate(args)
        print("Error: No configuration subcommand specified", file=sys.stderr)
        return 2

    print("Error: No command specified", file=sys.stderr)
    return 2


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    try:
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        print("\nOperation cancelled", file=sys.stderr)
        return 0


if __name__ == '__main__':
    sys.exit(main())
