"""Shared pytest fixtures."""

import pytest

from fixtures.doubles import FixedClock, InMemoryRegistry, RecordingNotifier
from speedbot.models import PolicyConfig
from speedbot.services import NotificationPolicy, ReconciliationEngine


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def registry():
    return InMemoryRegistry()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def policy_config():
    return PolicyConfig(
        denylist_keywords={"randomizer"},
        denylist_tags={"Nosleep"},
        denylist_users={"666"},
        allowlist_users={"42"},
        reconnect_minutes=10,
        shoutout_cooldown_hours=6,
    )


@pytest.fixture
def engine(registry, notifier, policy_config, clock):
    return ReconciliationEngine(registry, notifier, NotificationPolicy(policy_config), clock=clock)
