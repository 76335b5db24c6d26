"""
Data models for speedbot.

This package contains the stream registry models, speedrun models and the
typed configuration objects handed to the services.
"""

from .stream import (
    ObservedStream,
    StreamRecord,
    StreamRecordError,
    Transition,
)

from .speedrun import (
    RunPlayer,
    SpeedrunRun,
)

from .configuration import (
    DiscordConfig,
    FilterConfig,
    PolicyConfig,
    SchedulerConfig,
    SpeedrunConfig,
    TwitchConfig,
    WebhookConfig,
)

__all__ = [
    # Stream models
    "ObservedStream",
    "StreamRecord",
    "StreamRecordError",
    "Transition",

    # Speedrun models
    "RunPlayer",
    "SpeedrunRun",

    # Configuration models
    "DiscordConfig",
    "FilterConfig",
    "PolicyConfig",
    "SchedulerConfig",
    "SpeedrunConfig",
    "TwitchConfig",
    "WebhookConfig",
]
