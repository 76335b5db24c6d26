"""
Typed configuration objects passed explicitly into the services.

Built by speedbot.lib.config.ConfigurationManager from environment
variables and .env files.
"""

from typing import FrozenSet, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _normalized_set(values) -> FrozenSet[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = values.split(',')
    return frozenset(str(v).strip() for v in values if str(v).strip())


class PolicyConfig(BaseModel):
    """Suppression rules for shoutouts."""

    model_config = ConfigDict(frozen=True)

    denylist_keywords: FrozenSet[str] = Field(default_factory=frozenset)
    denylist_tags: FrozenSet[str] = Field(default_factory=frozenset)
    denylist_users: FrozenSet[str] = Field(default_factory=frozenset)
    allowlist_users: FrozenSet[str] = Field(default_factory=frozenset)
    reconnect_minutes: int = Field(10, ge=0, description="Grace period after going offline")
    shoutout_cooldown_hours: int = Field(6, ge=0, description="Minimum hours between shoutouts")

    @field_validator('denylist_tags', 'denylist_users', 'allowlist_users', mode='before')
    @classmethod
    def normalize_sets(cls, v):
        return _normalized_set(v)

    @field_validator('denylist_keywords', mode='before')
    @classmethod
    def normalize_keywords(cls, v):
        # Keywords compare case-insensitively
        return frozenset(k.lower() for k in _normalized_set(v))


class FilterConfig(BaseModel):
    """Which active streams the fetcher should report."""

    model_config = ConfigDict(frozen=True)

    game_ids: FrozenSet[str] = Field(default_factory=frozenset)
    tag_ids: FrozenSet[str] = Field(default_factory=frozenset)
    keywords: FrozenSet[str] = Field(default_factory=frozenset)

    @field_validator('game_ids', 'tag_ids', 'keywords', mode='before')
    @classmethod
    def normalize_sets(cls, v):
        return _normalized_set(v)


class TwitchConfig(BaseModel):
    """Twitch Helix API credentials and transport settings."""

    client_id: str
    client_secret: str
    token_url: str = "https://id.twitch.tv/oauth2/token"
    api_base_url: str = "https://api.twitch.tv/helix"
    timeout_seconds: float = 30.0
    max_retries: int = Field(3, ge=1, description="Attempts per request, including the first")
    refresh_margin_seconds: int = 300

    @field_validator('client_id', 'client_secret')
    @classmethod
    def validate_credentials(cls, v):
        if not v or not v.strip():
            raise ValueError("Twitch credentials cannot be empty")
        return v.strip()


class DiscordConfig(BaseModel):
    """Discord webhook delivery settings."""

    webhook_urls: Tuple[str, ...] = Field(default_factory=tuple)
    home_user_id: Optional[str] = Field(None, description="User whose going live pings @here")
    timeout_seconds: float = 15.0
    max_retries: int = Field(3, ge=1, description="Attempts per request, including the first")

    @field_validator('webhook_urls', mode='before')
    @classmethod
    def normalize_urls(cls, v):
        if isinstance(v, str):
            v = v.split(',')
        return tuple(url.strip() for url in (v or ()) if url.strip())


class SchedulerConfig(BaseModel):
    """Timer intervals in seconds."""

    stream_check_interval: float = Field(30.0, gt=0)
    integrity_sweep_interval: float = Field(600.0, gt=0)
    speedrun_check_interval: float = Field(300.0, gt=0)
    rate_limit_backoff: float = Field(30.0, ge=0)


class SpeedrunConfig(BaseModel):
    """speedrun.com polling settings."""

    game_ids: Tuple[str, ...] = Field(default_factory=tuple)
    api_base_url: str = "https://www.speedrun.com/api/v1"
    timeout_seconds: float = 30.0
    page_size: int = Field(20, gt=0, le=200)

    @field_validator('game_ids', mode='before')
    @classmethod
    def normalize_games(cls, v):
        if isinstance(v, str):
            v = v.split(',')
        return tuple(g.strip() for g in (v or ()) if g.strip())


class WebhookConfig(BaseModel):
    """Stream-update webhook listener settings."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(5001, ge=1, le=65535)
