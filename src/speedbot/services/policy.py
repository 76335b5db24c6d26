"""
Shoutout suppression policy.

Decides whether a stream transition should produce a notification, based on
denylists, the allowlist, the reconnect window and the shoutout cooldown.
Rules are evaluated in a fixed order and the first matching rule decides.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ..models import ObservedStream, PolicyConfig, StreamRecord, Transition

logger = logging.getLogger(__name__)


class ReasonCode(str, Enum):
    """Why a shoutout was approved or suppressed."""
    # Suppressions
    DENYLISTED_KEYWORD = "denylisted_keyword"
    DENYLISTED_TAG = "denylisted_tag"
    DENYLISTED_USER = "denylisted_user"
    RECONNECT_WINDOW = "reconnect_window"
    RECENTLY_NOTIFIED = "recently_notified"
    # Approvals
    ALLOWLISTED = "allowlisted"
    NEVER_NOTIFIED = "never_notified"
    CLOCK_SKEW = "clock_skew"
    COOLDOWN_EXPIRED = "cooldown_expired"


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a policy evaluation."""
    approve: bool
    reason: ReasonCode
    age: Optional[int] = None  # whole minutes or hours, depending on the rule

    def __str__(self) -> str:
        verdict = "approve" if self.approve else "suppress"
        return f"{verdict}:{self.reason.value}"


def whole_minutes_between(earlier: datetime, later: datetime) -> int:
    """Elapsed minutes, truncated towards zero."""
    return int((later - earlier).total_seconds() / 60)


def whole_hours_between(earlier: datetime, later: datetime) -> int:
    """Elapsed hours, truncated towards zero."""
    return int((later - earlier).total_seconds() / 3600)


class NotificationPolicy:
    """Evaluates shoutout suppression rules for one candidate stream."""

    def __init__(self, config: PolicyConfig):
        self.config = config

    def is_allowlisted(self, external_user_id: str) -> bool:
        return external_user_id in self.config.allowlist_users

    def should_notify(
        self,
        candidate: ObservedStream,
        record: Optional[StreamRecord],
        transition: Transition,
        now: datetime,
    ) -> PolicyDecision:
        """
        Decide whether to shout out a stream.

        Args:
            candidate: The observed stream
            record: Existing registry record, None for a NEW transition
            transition: NEW or GONE_LIVE
            now: Reference time for cooldown ages

        Returns:
            PolicyDecision with the first matching rule's reason
        """
        if transition not in (Transition.NEW, Transition.GONE_LIVE):
            raise ValueError(f"No shoutout policy for transition {transition.value}")

        title = candidate.title.lower()
        if any(keyword in title for keyword in self.config.denylist_keywords):
            return PolicyDecision(False, ReasonCode.DENYLISTED_KEYWORD)

        if candidate.tag_ids & self.config.denylist_tags:
            return PolicyDecision(False, ReasonCode.DENYLISTED_TAG)

        if candidate.external_user_id in self.config.denylist_users:
            return PolicyDecision(False, ReasonCode.DENYLISTED_USER)

        allowlisted = self.is_allowlisted(candidate.external_user_id)

        if transition == Transition.NEW or record is None:
            reason = ReasonCode.ALLOWLISTED if allowlisted else ReasonCode.NEVER_NOTIFIED
            return PolicyDecision(True, reason)

        if record.offline_since is not None:
            offline_minutes = whole_minutes_between(record.offline_since, now)
            if offline_minutes < self.config.reconnect_minutes:
                return PolicyDecision(False, ReasonCode.RECONNECT_WINDOW, offline_minutes)

        if allowlisted:
            return PolicyDecision(True, ReasonCode.ALLOWLISTED)

        if record.last_notified_at is None:
            return PolicyDecision(True, ReasonCode.NEVER_NOTIFIED)

        shoutout_age = whole_hours_between(record.last_notified_at, now)
        if shoutout_age < 0:
            return PolicyDecision(True, ReasonCode.CLOCK_SKEW, shoutout_age)

        if shoutout_age < self.config.shoutout_cooldown_hours:
            return PolicyDecision(False, ReasonCode.RECENTLY_NOTIFIED, shoutout_age)

        return PolicyDecision(True, ReasonCode.COOLDOWN_EXPIRED, shoutout_age)

    def describe(self, decision: PolicyDecision, candidate: ObservedStream) -> str:
        """Human-readable log line for a decision."""
        who = f"{candidate.display_name} ({candidate.external_user_id})"
        reason = decision.reason

        if reason == ReasonCode.DENYLISTED_KEYWORD:
            return f"Denylisted keyword found, suppressing shoutout for {who}"
        if reason == ReasonCode.DENYLISTED_TAG:
            return f"Denylisted tag found, suppressing shoutout for {who}"
        if reason == ReasonCode.DENYLISTED_USER:
            return f"Denylisted user, suppressing shoutout for {who}"
        if reason == ReasonCode.RECONNECT_WINDOW:
            return (
                f"Stream went offline {decision.age} minutes ago - probably just a reconnect, "
                f"suppressing shoutout for {who}"
            )
        if reason == ReasonCode.RECENTLY_NOTIFIED:
            return f"Stream was already shouted out {decision.age} hours ago - suppressing shoutout for {who}"
        if reason == ReasonCode.ALLOWLISTED:
            return f"User is in the allowlist - shouting out stream for {who}"
        if reason == ReasonCode.NEVER_NOTIFIED:
            return f"Last shoutout is not set - shouting out stream for {who}"
        if reason == ReasonCode.CLOCK_SKEW:
            return (
                f"Last shoutout was a negative number of hours ago ({decision.age}) - "
                f"shouting out stream for {who}"
            )
        return (
            f"Last shoutout was {decision.age} hours ago, which is over threshold - "
            f"shouting out stream for {who}"
        )
