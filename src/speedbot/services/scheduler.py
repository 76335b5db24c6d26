"""
Poll scheduler.

Drives the periodic jobs: the stream check (fetch, then reconcile), the
slower integrity sweep and the optional speedrun check. Each job has its own
timer; a tick that fires while the job's previous run is still in progress
is skipped.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..lib.errors import ErrorTracker, PersistenceError, RateLimitError, SpeedbotError, TransportError
from ..models import FilterConfig, SchedulerConfig
from .reconciler import CycleReport, ReconciliationEngine
from .speedrun import SpeedrunChecker
from .twitch import TwitchClient

logger = logging.getLogger(__name__)


class PollScheduler:
    """Runs poll cycles on a timer until stopped or a fatal error occurs."""

    def __init__(
        self,
        client: TwitchClient,
        engine: ReconciliationEngine,
        filter_config: FilterConfig,
        config: SchedulerConfig,
        speedrun_checker: Optional[SpeedrunChecker] = None,
        error_tracker: Optional[ErrorTracker] = None,
    ):
        self.client = client
        self.engine = engine
        self.filter_config = filter_config
        self.config = config
        self.speedrun_checker = speedrun_checker
        self.error_tracker = error_tracker or ErrorTracker()

        # Service state
        self._is_running = False
        self._stop_event = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._timers: List[asyncio.Task] = []
        self._jobs: Dict[str, asyncio.Task] = {}
        self._start_time: Optional[datetime] = None
        self._backoff = 0.0
        self.fatal_error: Optional[SpeedbotError] = None

        # Statistics
        self._total_cycles = 0
        self._successful_cycles = 0
        self._failed_cycles = 0
        self._skipped_ticks = 0
        self._last_report: Optional[CycleReport] = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def run_cycle(self) -> Optional[CycleReport]:
        """
        Fetch the active streams and reconcile them.

        Returns None when the cycle was skipped or failed in transport; the
        registry is not touched in that case. PersistenceError stops the
        scheduler and propagates.
        """
        if self._cycle_lock.locked():
            self._skipped_ticks += 1
            logger.warning("Previous poll cycle still running, skipping this tick")
            return None

        async with self._cycle_lock:
            self._total_cycles += 1
            logger.info("--- Starting stream check cycle ---")
            try:
                observed = await self.client.fetch_active_streams(self.filter_config)
                report = await self.engine.reconcile(observed)

            except RateLimitError as e:
                self._failed_cycles += 1
                self.error_tracker.record_error(e)
                self._backoff = e.retry_after or self.config.rate_limit_backoff
                logger.warning(f"Rate limited, delaying next cycle by {self._backoff:.0f}s: {e}")
                return None

            except TransportError as e:
                self._failed_cycles += 1
                self.error_tracker.record_error(e)
                # Refused connections get the same extra wait as rate limiting
                if e.status is None and isinstance(e.cause, OSError):
                    self._backoff = self.config.rate_limit_backoff
                logger.error(f"Stream fetch failed, registry left unchanged: {e}")
                return None

            except PersistenceError as e:
                self._failed_cycles += 1
                self.error_tracker.record_error(e)
                self.fail(e)
                raise

            finally:
                logger.info("--- Stream check cycle finished ---")

            self._successful_cycles += 1
            self._last_report = report
            return report

    async def run_integrity_sweep(self) -> int:
        try:
            return await self.engine.integrity_sweep()
        except PersistenceError as e:
            self.error_tracker.record_error(e)
            self.fail(e)
            raise

    async def run_speedrun_check(self) -> int:
        if not self.speedrun_checker:
            return 0
        try:
            return await self.speedrun_checker.check_all()
        except PersistenceError as e:
            self.error_tracker.record_error(e)
            self.fail(e)
            raise

    def fail(self, error: SpeedbotError) -> None:
        """Record a fatal error and stop every timer."""
        if self.fatal_error is None:
            logger.critical(f"Fatal {error.category.value} failure, stopping scheduler: {error}")
            self.fatal_error = error
        self._stop_event.set()

    async def start(self) -> None:
        """Start the job timers."""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        logger.info(
            f"Starting scheduler: stream check every {self.config.stream_check_interval}s, "
            f"integrity sweep every {self.config.integrity_sweep_interval}s"
        )
        self._start_time = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._is_running = True

        self._timers = [
            asyncio.create_task(self._timer("stream_check", self.config.stream_check_interval, self.run_cycle)),
            asyncio.create_task(self._timer(
                "integrity_sweep", self.config.integrity_sweep_interval, self.run_integrity_sweep, delay_first=True
            )),
        ]
        if self.speedrun_checker and self.speedrun_checker.config.game_ids:
            self._timers.append(asyncio.create_task(self._timer(
                "speedrun_check", self.config.speedrun_check_interval, self.run_speedrun_check
            )))

    def request_stop(self) -> None:
        """Ask the timers to stop; safe to call from a signal handler."""
        self._stop_event.set()

    async def wait(self) -> None:
        """Block until the scheduler is stopped."""
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Stop the timers and wait for in-flight jobs to finish."""
        if not self._is_running:
            return

        logger.info("Stopping scheduler")
        self._stop_event.set()

        for timer in self._timers:
            timer.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []

        pending = [job for job in self._jobs.values() if not job.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._jobs.clear()

        self._is_running = False
        logger.info("Scheduler stopped")

    async def _timer(self, name: str, interval: float, job: Callable[[], Awaitable[Any]],
                     delay_first: bool = False) -> None:
        if delay_first and await self._sleep(interval):
            return

        while not self._stop_event.is_set():
            previous = self._jobs.get(name)
            if previous and not previous.done():
                self._skipped_ticks += 1
                logger.warning(f"Previous {name} run still in progress, skipping this tick")
            else:
                self._jobs[name] = asyncio.create_task(self._run_job(name, job))

            wait_for = interval
            if name == "stream_check" and self._backoff:
                wait_for += self._backoff
                self._backoff = 0.0

            if await self._sleep(wait_for):
                return

    async def _run_job(self, name: str, job: Callable[[], Awaitable[Any]]) -> None:
        try:
            await job()
        except SpeedbotError as e:
            if not e.is_fatal:
                self.error_tracker.record_error(e)
                logger.error(f"{name} failed: {e}")
            elif e is not self.fatal_error:
                self.error_tracker.record_error(e)
                self.fail(e)
        except Exception as e:
            logger.exception(f"Unexpected error in {name}: {e}")

    async def _sleep(self, seconds: float) -> bool:
        """Wait for the interval; True when the scheduler was stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def get_stats(self) -> Dict[str, Any]:
        uptime = None
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return {
            "is_running": self._is_running,
            "uptime_seconds": uptime,
            "total_cycles": self._total_cycles,
            "successful_cycles": self._successful_cycles,
            "failed_cycles": self._failed_cycles,
            "skipped_ticks": self._skipped_ticks,
            "last_cycle": self._last_report.summary() if self._last_report else None,
            "fatal_error": str(self.fatal_error) if self.fatal_error else None,
            "errors": self.error_tracker.get_error_stats(),
        }
