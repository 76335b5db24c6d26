"""
Configuration loading and validation with .env file support.

Settings are resolved from, in increasing priority: built-in defaults, a
.env file, environment variables and programmatic overrides. Builders turn
the flat key/value settings into the typed configuration objects the
services take.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional, List, Union
from dataclasses import dataclass, field
from enum import Enum

from dotenv import dotenv_values
from pydantic import ValidationError

from ..models import (
    DiscordConfig, FilterConfig, PolicyConfig, SchedulerConfig,
    SpeedrunConfig, TwitchConfig, WebhookConfig
)
from ..services.registry import DatabaseConfig
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIXES = (
    'DATABASE_', 'TWITCH_', 'FILTER_', 'POLICY_', 'DISCORD_',
    'MONITORING_', 'SPEEDRUN_', 'WEBHOOK_', 'SYSTEM_',
)

SENSITIVE_MARKERS = ('secret', 'password', 'token', 'webhook_urls', 'database_url')


class ValidationLevel(str, Enum):
    """Configuration validation levels."""
    STRICT = "strict"      # All required settings must be present and valid
    LENIENT = "lenient"    # Missing settings only warn
    MINIMAL = "minimal"    # Only validate value types


@dataclass
class ConfigValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    missing_required: List[str] = field(default_factory=list)
    invalid_values: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors or self.missing_required or self.invalid_values)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_missing_required(self, key: str) -> None:
        self.missing_required.append(key)
        self.is_valid = False

    def add_invalid_value(self, key: str, reason: str) -> None:
        self.invalid_values.append(f"{key}: {reason}")
        self.is_valid = False


class ConfigurationManager:
    """
    Centralized configuration management.

    Handles loading configuration from multiple sources with priority order:
    1. Explicit overrides (passed directly)
    2. Environment variables
    3. .env file
    4. Default values
    """

    REQUIRED_SETTINGS = {
        'TWITCH_CLIENT_ID': 'Twitch application client ID',
        'TWITCH_CLIENT_SECRET': 'Twitch application client secret',
        'DISCORD_WEBHOOK_URLS': 'Comma-separated Discord webhook URLs',
        'DATABASE_HOST': 'Database hostname',
        'DATABASE_NAME': 'Database name',
        'DATABASE_USER': 'Database username',
        'DATABASE_PASSWORD': 'Database password',
    }

    OPTIONAL_SETTINGS = {
        # Database
        'DATABASE_URL': ('', str, 'postgresql:// URL used instead of the DATABASE_HOST settings'),
        'DATABASE_PORT': ('5432', int, 'Database port number'),
        'DATABASE_POOL_SIZE': ('1', int, 'Minimum pooled connections'),
        'DATABASE_MAX_OVERFLOW': ('10', int, 'Maximum pooled connections'),
        'DATABASE_QUERY_TIMEOUT': ('30', float, 'Query timeout in seconds'),

        # Twitch
        'TWITCH_TOKEN_REFRESH_MARGIN': ('300', int, 'Seconds before token expiry to refresh'),
        'TWITCH_MAX_RETRY_ATTEMPTS': ('3', int, 'Maximum API retry attempts'),
        'TWITCH_TIMEOUT': ('30', float, 'API request timeout in seconds'),

        # Search
        'FILTER_GAME_IDS': ('', list, 'Twitch game IDs to search'),
        'FILTER_TAG_IDS': ('', list, 'Stream tags that qualify a stream'),
        'FILTER_KEYWORDS': ('', list, 'Title keywords that qualify a stream'),

        # Shoutout policy
        'POLICY_DENYLIST_KEYWORDS': ('', list, 'Title keywords that block shoutouts'),
        'POLICY_DENYLIST_TAGS': ('', list, 'Tags that block shoutouts'),
        'POLICY_DENYLIST_USERS': ('', list, 'User IDs never shouted out'),
        'POLICY_ALLOWLIST_USERS': ('', list, 'User IDs exempt from the cooldown'),
        'POLICY_RECONNECT_MINUTES': ('10', int, 'Reconnect grace period in minutes'),
        'POLICY_SHOUTOUT_COOLDOWN_HOURS': ('6', int, 'Minimum hours between shoutouts'),

        # Discord
        'DISCORD_HOME_USER_ID': ('', str, 'User whose stream pings @here'),
        'DISCORD_TIMEOUT': ('15', float, 'Webhook request timeout in seconds'),
        'DISCORD_MAX_RETRY_ATTEMPTS': ('3', int, 'Maximum webhook delivery attempts'),

        # Scheduling
        'MONITORING_STREAM_CHECK_INTERVAL': ('30', float, 'Stream check interval in seconds'),
        'MONITORING_INTEGRITY_SWEEP_INTERVAL': ('600', float, 'Integrity sweep interval in seconds'),
        'MONITORING_SPEEDRUN_CHECK_INTERVAL': ('300', float, 'Speedrun check interval in seconds'),
        'MONITORING_RATE_LIMIT_BACKOFF': ('30', float, 'Extra delay after rate limiting in seconds'),

        # speedrun.com
        'SPEEDRUN_GAME_IDS': ('', list, 'speedrun.com game IDs to announce runs for'),
        'SPEEDRUN_TIMEOUT': ('30', float, 'speedrun.com request timeout in seconds'),

        # Webhook listener
        'WEBHOOK_ENABLED': ('true', bool, 'Run the stream-update webhook listener'),
        'WEBHOOK_HOST': ('0.0.0.0', str, 'Webhook listener bind address'),
        'WEBHOOK_PORT': ('5001', int, 'Webhook listener port'),

        # System
        'SYSTEM_LOG_LEVEL': ('INFO', str, 'Application log level'),
        'SYSTEM_LOG_FILE': ('', str, 'Optional JSON log file path'),
    }

    def __init__(
        self,
        env_file: Optional[Union[str, Path]] = None,
        validation_level: ValidationLevel = ValidationLevel.STRICT,
        auto_load: bool = True,
        overrides: Optional[Dict[str, Any]] = None,
    ):
        self.env_file = Path(env_file) if env_file else None
        self.validation_level = validation_level
        self._overrides = dict(overrides or {})

        self._config: Dict[str, Any] = {}
        self._config_sources: Dict[str, str] = {}
        self._is_loaded = False

        if auto_load:
            self.load_configuration()

    def load_configuration(self) -> None:
        """Load configuration from all sources."""
        logger.info("Loading application configuration")

        self._config.clear()
        self._config_sources.clear()

        self._load_defaults()

        if self.env_file and self.env_file.exists():
            self._load_from_env_file(self.env_file)
        elif self.env_file:
            raise ConfigurationError(f"Configuration file not found: {self.env_file}")
        else:
            self._load_from_auto_detected_env_file()

        self._load_from_environment()
        self._apply_overrides()

        self._is_loaded = True
        logger.info(f"Configuration loaded from {len(set(self._config_sources.values()))} sources")

    def _load_defaults(self) -> None:
        for key, (default, _, _) in self.OPTIONAL_SETTINGS.items():
            self._config[key] = default
            self._config_sources[key] = "defaults"

    def _load_from_env_file(self, env_path: Path) -> None:
        logger.info(f"Loading configuration from: {env_path}")

        try:
            values = dotenv_values(env_path)
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Failed to load .env file {env_path}: {e}") from e

        for key, value in values.items():
            if value is None:
                logger.warning(f"Ignoring {key} in {env_path}: no value")
                continue
            self._config[key] = value
            self._config_sources[key] = str(env_path)

    def _load_from_auto_detected_env_file(self) -> None:
        possible_locations = [
            Path('.env'),
            Path('.env.local'),
            Path('config/.env'),
            Path(os.path.expanduser('~/.speedbot/.env')),
        ]

        for env_path in possible_locations:
            if env_path.exists():
                logger.info(f"Auto-detected .env file: {env_path}")
                self.env_file = env_path
                self._load_from_env_file(env_path)
                break

    def _load_from_environment(self) -> None:
        env_count = 0
        for key, value in os.environ.items():
            if key.startswith(ENV_PREFIXES) or key == 'LOG_LEVEL':
                self._config[key] = value
                self._config_sources[key] = "environment"
                env_count += 1

        if env_count:
            logger.debug(f"Loaded {env_count} settings from environment variables")

    def _apply_overrides(self) -> None:
        for key, value in self._overrides.items():
            self._config[key] = value
            self._config_sources[key] = "override"

    def validate_configuration(self) -> ConfigValidationResult:
        """Validate the loaded configuration."""
        result = ConfigValidationResult(is_valid=True)

        if not self._is_loaded:
            result.add_error("Configuration not loaded")
            return result

        if self.validation_level != ValidationLevel.MINIMAL:
            for key, description in self.REQUIRED_SETTINGS.items():
                if self.get(key) or (key.startswith('DATABASE_') and self.get('DATABASE_URL')):
                    continue
                if self.validation_level == ValidationLevel.STRICT:
                    result.add_missing_required(key)
                    result.add_error(f"Missing required setting: {key} ({description})")
                else:
                    result.add_warning(f"Missing required setting: {key} ({description})")

        for key, (_, expected_type, _) in self.OPTIONAL_SETTINGS.items():
            value = self.get(key)
            if value in (None, ''):
                continue
            try:
                if expected_type == int:
                    int(value)
                elif expected_type == float:
                    float(value)
            except (TypeError, ValueError):
                result.add_invalid_value(key, f"Expected {expected_type.__name__}, got: {value}")

        self._validate_database_config(result)
        self._validate_search_config(result)
        self._validate_scheduler_config(result)

        return result

    def _validate_database_config(self, result: ConfigValidationResult) -> None:
        port = self.get('DATABASE_PORT')
        if port:
            try:
                port_num = int(port)
                if port_num < 1 or port_num > 65535:
                    result.add_invalid_value('DATABASE_PORT', 'Port must be between 1 and 65535')
            except ValueError:
                pass  # reported by the type check

    def _validate_search_config(self, result: ConfigValidationResult) -> None:
        if not self.get_list('FILTER_GAME_IDS'):
            result.add_warning('FILTER_GAME_IDS is empty - streams of every game will be fetched')

        if not self.get_list('FILTER_TAG_IDS') and not self.get_list('FILTER_KEYWORDS'):
            result.add_warning('Neither FILTER_TAG_IDS nor FILTER_KEYWORDS is set - no stream will match')

        overlap = set(self.get_list('POLICY_ALLOWLIST_USERS')) & set(self.get_list('POLICY_DENYLIST_USERS'))
        if overlap:
            result.add_warning(
                f"Users on both allowlist and denylist are never shouted out: {', '.join(sorted(overlap))}"
            )

    def _validate_scheduler_config(self, result: ConfigValidationResult) -> None:
        interval = self.get_float('MONITORING_STREAM_CHECK_INTERVAL', 30.0)
        if interval <= 0:
            result.add_invalid_value('MONITORING_STREAM_CHECK_INTERVAL', 'Must be greater than 0')
        elif interval < 10:
            result.add_warning('MONITORING_STREAM_CHECK_INTERVAL below 10s risks Twitch rate limiting')

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key."""
        return self._config.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value in (None, ''):
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid integer value for {key}: {value}, using default: {default}")
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key)
        if value in (None, ''):
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid float value for {key}: {value}, using default: {default}")
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value in (None, ''):
            return default
        return self._parse_bool(value)

    def _parse_bool(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value

        if isinstance(value, str):
            return value.lower() in ('true', '1', 'yes', 'on', 'enabled')

        return bool(value)

    def get_list(self, key: str, separator: str = ',', default: Optional[List[str]] = None) -> List[str]:
        """Get configuration value as list."""
        value = self.get(key)
        if not value:
            return default or []

        if isinstance(value, (list, tuple, set, frozenset)):
            return list(value)

        return [item.strip() for item in str(value).split(separator) if item.strip()]

    def get_source(self, key: str) -> Optional[str]:
        return self._config_sources.get(key)

    def get_all_config(self, include_sources: bool = False, mask_secrets: bool = False) -> Dict[str, Any]:
        """Get all configuration as dictionary."""
        config = self._config.copy()
        if mask_secrets:
            config = {
                key: ("***" if value and any(m in key.lower() for m in SENSITIVE_MARKERS) else value)
                for key, value in config.items()
            }

        if include_sources:
            return {'config': config, 'sources': self._config_sources.copy()}
        return config

    @property
    def log_level(self) -> str:
        return str(self.get('LOG_LEVEL') or self.get('SYSTEM_LOG_LEVEL') or 'INFO').upper()

    # =========================================================================
    # TYPED CONFIGURATION BUILDERS
    # =========================================================================

    def _build(self, model, **values):
        try:
            return model(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid {model.__name__}: {e}") from e

    def get_database_config(self) -> DatabaseConfig:
        pool_settings = dict(
            min_connections=self.get_int('DATABASE_POOL_SIZE', 1),
            max_connections=self.get_int('DATABASE_MAX_OVERFLOW', 10),
            command_timeout=self.get_float('DATABASE_QUERY_TIMEOUT', 30.0),
        )

        url = self.get('DATABASE_URL')
        if url:
            try:
                return DatabaseConfig.from_url(url, **pool_settings)
            except ValueError as e:
                raise ConfigurationError(f"Invalid DATABASE_URL: {e}") from e

        return DatabaseConfig(
            host=self.get('DATABASE_HOST', 'localhost'),
            port=self.get_int('DATABASE_PORT', 5432),
            database=self.get('DATABASE_NAME', 'speedbot'),
            username=self.get('DATABASE_USER', 'speedbot'),
            password=self.get('DATABASE_PASSWORD', ''),
            **pool_settings
        )

    def get_twitch_config(self) -> TwitchConfig:
        client_id = self.get('TWITCH_CLIENT_ID')
        client_secret = self.get('TWITCH_CLIENT_SECRET')

        if not client_id or not client_secret:
            raise ConfigurationError("Missing required Twitch configuration (TWITCH_CLIENT_ID, TWITCH_CLIENT_SECRET)")

        return self._build(
            TwitchConfig,
            client_id=client_id,
            client_secret=client_secret,
            refresh_margin_seconds=self.get_int('TWITCH_TOKEN_REFRESH_MARGIN', 300),
            max_retries=self.get_int('TWITCH_MAX_RETRY_ATTEMPTS', 3),
            timeout_seconds=self.get_float('TWITCH_TIMEOUT', 30.0),
        )

    def get_filter_config(self) -> FilterConfig:
        return self._build(
            FilterConfig,
            game_ids=self.get_list('FILTER_GAME_IDS'),
            tag_ids=self.get_list('FILTER_TAG_IDS'),
            keywords=self.get_list('FILTER_KEYWORDS'),
        )

    def get_policy_config(self) -> PolicyConfig:
        return self._build(
            PolicyConfig,
            denylist_keywords=self.get_list('POLICY_DENYLIST_KEYWORDS'),
            denylist_tags=self.get_list('POLICY_DENYLIST_TAGS'),
            denylist_users=self.get_list('POLICY_DENYLIST_USERS'),
            allowlist_users=self.get_list('POLICY_ALLOWLIST_USERS'),
            reconnect_minutes=self.get_int('POLICY_RECONNECT_MINUTES', 10),
            shoutout_cooldown_hours=self.get_int('POLICY_SHOUTOUT_COOLDOWN_HOURS', 6),
        )

    def get_discord_config(self) -> DiscordConfig:
        return self._build(
            DiscordConfig,
            webhook_urls=self.get_list('DISCORD_WEBHOOK_URLS'),
            home_user_id=self.get('DISCORD_HOME_USER_ID') or None,
            timeout_seconds=self.get_float('DISCORD_TIMEOUT', 15.0),
            max_retries=self.get_int('DISCORD_MAX_RETRY_ATTEMPTS', 3),
        )

    def get_scheduler_config(self) -> SchedulerConfig:
        return self._build(
            SchedulerConfig,
            stream_check_interval=self.get_float('MONITORING_STREAM_CHECK_INTERVAL', 30.0),
            integrity_sweep_interval=self.get_float('MONITORING_INTEGRITY_SWEEP_INTERVAL', 600.0),
            speedrun_check_interval=self.get_float('MONITORING_SPEEDRUN_CHECK_INTERVAL', 300.0),
            rate_limit_backoff=self.get_float('MONITORING_RATE_LIMIT_BACKOFF', 30.0),
        )

    def get_speedrun_config(self) -> SpeedrunConfig:
        return self._build(
            SpeedrunConfig,
            game_ids=self.get_list('SPEEDRUN_GAME_IDS'),
            timeout_seconds=self.get_float('SPEEDRUN_TIMEOUT', 30.0),
        )

    def get_webhook_config(self) -> WebhookConfig:
        return self._build(
            WebhookConfig,
            enabled=self.get_bool('WEBHOOK_ENABLED', True),
            host=self.get('WEBHOOK_HOST') or '0.0.0.0',
            port=self.get_int('WEBHOOK_PORT', 5001),
        )

    @property
    def is_loaded(self) -> bool:
        return self._is_loaded
