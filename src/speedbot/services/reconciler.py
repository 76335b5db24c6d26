"""
Stream state reconciliation engine.

For each poll cycle, diffs the fetched active-stream set against the
registry, classifies every user's transition, applies the shoutout policy,
sends notifications and persists the updated state. A sweep at the end of
the cycle ends every live record that was not observed.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..lib.errors import NotificationError
from ..lib.logging import get_logger
from ..models import ObservedStream, StreamRecord, Transition
from .discord import DiscordNotifier
from .policy import NotificationPolicy, PolicyDecision, ReasonCode
from .registry import StreamRegistry

logger = get_logger(__name__)


@dataclass
class CycleReport:
    """What one reconciliation cycle did."""
    started_at: datetime
    outcomes: List[Tuple[str, Transition, Optional[PolicyDecision]]] = field(default_factory=list)
    notified: List[str] = field(default_factory=list)
    failed_notifications: List[str] = field(default_factory=list)

    def record(self, external_user_id: str, transition: Transition,
               decision: Optional[PolicyDecision] = None) -> None:
        self.outcomes.append((external_user_id, transition, decision))

    @property
    def transitions(self) -> Counter:
        return Counter(transition for _, transition, _ in self.outcomes)

    @property
    def suppressed(self) -> Counter:
        return Counter(
            decision.reason for _, _, decision in self.outcomes
            if decision is not None and not decision.approve
        )

    def transition_of(self, external_user_id: str) -> Optional[Transition]:
        for user_id, transition, _ in self.outcomes:
            if user_id == external_user_id:
                return transition
        return None

    def summary(self) -> Dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "transitions": {t.value: n for t, n in self.transitions.items()},
            "notified": len(self.notified),
            "suppressed": {r.value: n for r, n in self.suppressed.items()},
            "failed_notifications": len(self.failed_notifications),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationEngine:
    """Applies one poll result to the registry, notifying where policy allows."""

    def __init__(
        self,
        registry: StreamRegistry,
        notifier: DiscordNotifier,
        policy: NotificationPolicy,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry
        self.notifier = notifier
        self.policy = policy
        self.clock = clock

    async def reconcile(self, observed: Sequence[ObservedStream]) -> CycleReport:
        """
        Reconcile one fetch result against the registry.

        Users are processed concurrently; the offline sweep runs only after
        every observed user has been persisted. PersistenceError propagates.
        """
        now = self.clock()
        report = CycleReport(started_at=now)

        unique: Dict[str, ObservedStream] = {}
        for stream in observed:
            unique.setdefault(stream.external_user_id, stream)

        logger.debug(f"Reconciling {len(unique)} observed stream(s)")

        await asyncio.gather(*(
            self._reconcile_one(stream, now, report) for stream in unique.values()
        ))

        await self._sweep_ended(set(unique), now, report)

        logger.info(f"Reconciliation cycle finished: {report.summary()}")
        return report

    async def _reconcile_one(self, stream: ObservedStream, now: datetime, report: CycleReport) -> None:
        log = logger.bind(external_user_id=stream.external_user_id, display_name=stream.display_name)

        async with self.registry.user_lock(stream.external_user_id):
            record = await self.registry.get(stream.external_user_id)

            if record is None:
                transition = Transition.NEW
                log.info(
                    f"Stream of {stream.display_name} ({stream.external_user_id}) has never been seen before"
                )
            elif record.is_live:
                report.record(stream.external_user_id, Transition.STILL_LIVE)
                await self.registry.upsert(record.refreshed(stream))
                return
            else:
                transition = Transition.GONE_LIVE
                log.info(
                    f"Existing stream, seen newly live: {stream.display_name} ({stream.external_user_id})"
                )

            decision = self.policy.should_notify(stream, record, transition, now)
            level = logging.WARNING if decision.reason == ReasonCode.CLOCK_SKEW else logging.INFO
            log.log(
                level,
                self.policy.describe(decision, stream),
                extra={"transition": transition.value, "reason_code": decision.reason.value},
            )

            notified_at = None
            if decision.approve:
                if await self._deliver(stream):
                    notified_at = now
                    report.notified.append(stream.external_user_id)
                else:
                    report.failed_notifications.append(stream.external_user_id)

            if record is None:
                updated = StreamRecord.first_seen(stream, notified_at)
            else:
                updated = record.gone_live(stream, notified_at)

            report.record(stream.external_user_id, transition, decision)
            await self.registry.upsert(updated)

    async def _deliver(self, stream: ObservedStream) -> bool:
        try:
            payload = self.notifier.build_stream_payload(stream)
            await self.notifier.notify(payload)
            return True
        except NotificationError as e:
            logger.error(
                f"Unable to trigger alert for {stream.external_user_id} {stream.display_name}: {e}",
                extra={"external_user_id": stream.external_user_id, "display_name": stream.display_name},
            )
            return False

    async def _sweep_ended(self, observed_ids: set, now: datetime, report: CycleReport) -> None:
        for record in await self.registry.list_live():
            if record.external_user_id in observed_ids:
                continue

            async with self.registry.user_lock(record.external_user_id):
                current = await self.registry.get(record.external_user_id)
                if current is None or not current.is_live:
                    continue

                logger.info(f"Stream of {current.display_name} ({current.external_user_id}) has ended")
                await self.registry.upsert(current.ended(now))
                report.record(current.external_user_id, Transition.ENDED)

    async def end_stream(self, external_user_id: str) -> bool:
        """End one stream immediately. Returns False when nothing was live."""
        async with self.registry.user_lock(external_user_id):
            record = await self.registry.get(external_user_id)
            if record is None or not record.is_live:
                logger.debug(f"End of stream for {external_user_id} ignored, not live")
                return False

            await self.registry.upsert(record.ended(self.clock()))
            logger.info(f"Stream of {record.display_name} ({external_user_id}) ended by webhook")
            return True

    async def integrity_sweep(self) -> int:
        """Repair live records carrying an offline timestamp. Returns the number repaired."""
        repaired = await self.registry.repair_live_inconsistencies()
        for user_id in repaired:
            logger.warning(f"Repaired live record {user_id} that had offline_since set")

        live = await self.registry.list_live()
        logger.info(f"Integrity sweep done: {len(live)} live record(s), {len(repaired)} repaired")
        return len(repaired)
