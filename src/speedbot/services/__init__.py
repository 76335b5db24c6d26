"""
Services package for speedbot.

This package contains the external integrations (Twitch, Discord,
speedrun.com, PostgreSQL) and the reconciliation core that ties them
together.
"""

from .registry import (
    DatabaseConfig,
    StreamRegistry,
)

from .auth import (
    InvalidCredentialsError,
    TokenResponse,
    TwitchTokenProvider,
)

from .twitch import (
    TokenRejectedError,
    TwitchClient,
)

from .discord import (
    DiscordNotifier,
    DisplayPayload,
    MentionPolicy,
)

from .policy import (
    NotificationPolicy,
    PolicyDecision,
    ReasonCode,
)

from .reconciler import (
    CycleReport,
    ReconciliationEngine,
)

from .speedrun import SpeedrunChecker
from .scheduler import PollScheduler
from .webhook import WebhookServer

__all__ = [
    # Registry
    "DatabaseConfig",
    "StreamRegistry",

    # Twitch
    "InvalidCredentialsError",
    "TokenRejectedError",
    "TokenResponse",
    "TwitchClient",
    "TwitchTokenProvider",

    # Discord
    "DiscordNotifier",
    "DisplayPayload",
    "MentionPolicy",

    # Reconciliation
    "CycleReport",
    "NotificationPolicy",
    "PolicyDecision",
    "ReasonCode",
    "ReconciliationEngine",

    # Periodic jobs and listeners
    "PollScheduler",
    "SpeedrunChecker",
    "WebhookServer",
]
