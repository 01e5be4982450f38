"""
Billing Scheduler

Owns the timer lifecycle: a monthly anchor, an hourly tick and a delayed
catch-up run after start. Every trigger funnels into the batch runner, so
idempotency and partial-failure handling do not depend on the trigger.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Tuple

import structlog

from ..core.cron import CronExpression
from .base import PassType, utcnow
from .runner import BatchRunner, PassReport


logger = structlog.get_logger(__name__)


SleepFunc = Callable[[float], Awaitable[Any]]

# Passes run by each timer, in order.
TIMER_PASSES: Dict[PassType, Tuple[PassType, ...]] = {
    PassType.MONTHLY: (PassType.MONTHLY,),
    PassType.HOURLY: (PassType.HOURLY, PassType.NOTIFICATIONS),
}
CATCH_UP_PASSES = (PassType.MONTHLY, PassType.HOURLY, PassType.NOTIFICATIONS)


class BillingScheduler:
    """Timer-driven and manual triggering of billing passes."""

    def __init__(
        self,
        runner: BatchRunner,
        monthly_cron: str = "0 0 1 * *",
        hourly_cron: str = "0 * * * *",
        timezone: str = "UTC",
        startup_delay_seconds: Optional[float] = 60.0,
        history_size: int = 100,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.runner = runner
        self.timezone = timezone
        self.startup_delay_seconds = startup_delay_seconds
        self._timers: Dict[PassType, CronExpression] = {
            PassType.MONTHLY: CronExpression(monthly_cron, timezone),
            PassType.HOURLY: CronExpression(hourly_cron, timezone),
        }
        self._sleep = sleep
        self._clock = clock

        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._next_runs: Dict[PassType, Optional[datetime]] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._errors: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the timers."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        self._running = True
        for pass_type in self._timers:
            self._tasks.append(asyncio.create_task(self._timer_loop(pass_type)))
        if self.startup_delay_seconds is not None:
            self._tasks.append(asyncio.create_task(self._catch_up()))

        logger.info(
            "scheduler_started",
            timezone=self.timezone,
            monthly_cron=self._timers[PassType.MONTHLY].expression,
            hourly_cron=self._timers[PassType.HOURLY].expression,
        )

    async def stop(self) -> None:
        """Cancel the timers and wait for them to exit."""
        if not self._running and not self._tasks:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._next_runs.clear()

        logger.info("scheduler_stopped")

    async def _timer_loop(self, pass_type: PassType) -> None:
        cron = self._timers[pass_type]
        while self._running:
            try:
                now = self._clock()
                next_run = cron.next_occurrence(now)
                self._next_runs[pass_type] = next_run
                await self._sleep(max(0.0, (next_run - now).total_seconds()))

                for scheduled in TIMER_PASSES[pass_type]:
                    await self._execute(scheduled, trigger="schedule")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_timer_error", pass_type=pass_type.value, error=str(e))

    async def _catch_up(self) -> None:
        try:
            await self._sleep(self.startup_delay_seconds or 0)
            for pass_type in CATCH_UP_PASSES:
                await self._execute(pass_type, trigger="startup")
        except asyncio.CancelledError:
            pass

    async def _execute(
        self,
        pass_type: PassType,
        trigger: str,
        as_of: Optional[datetime] = None,
        raise_errors: bool = False,
    ) -> Optional[PassReport]:
        started = utcnow()
        try:
            report = await self.runner.run(pass_type, as_of)
        except Exception as e:
            logger.error(
                "scheduled_pass_failed",
                pass_type=pass_type.value,
                trigger=trigger,
                error=str(e),
            )
            self._errors.append({
                "passType": pass_type.value,
                "trigger": trigger,
                "error": str(e),
                "timestamp": started.isoformat(),
            })
            if raise_errors:
                raise
            return None

        summary = report.to_dict()
        summary["trigger"] = trigger
        summary.pop("notifications", None)
        self._history.append(summary)
        return report

    async def run_now(
        self,
        pass_types: Sequence[PassType],
        as_of: Optional[datetime] = None,
    ) -> Dict[str, PassReport]:
        """
        Manual trigger for any subset of pass types.

        Passes run in monthly, hourly, notifications order and share the
        runner's idempotency guard. An enumeration failure is raised.
        """
        results: Dict[str, PassReport] = {}
        for pass_type in PassType:
            if pass_type in pass_types:
                results[pass_type.value] = await self._execute(
                    pass_type, trigger="manual", as_of=as_of, raise_errors=True
                )
        return results

    def get_status(self) -> Dict[str, Any]:
        """Scheduler state for the status endpoint."""
        timers = {}
        for pass_type, cron in self._timers.items():
            next_run = self._next_runs.get(pass_type)
            timers[pass_type.value] = {
                "cron": cron.expression,
                "passes": [p.value for p in TIMER_PASSES[pass_type]],
                "nextRun": next_run.isoformat() if next_run else None,
            }

        return {
            "isRunning": self._running,
            "timezone": self.timezone,
            "timers": timers,
            "activePasses": [p.value for p in PassType if self.runner.is_running(p)],
            "lastRun": self._history[-1] if self._history else None,
        }

    def get_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent pass summaries, newest first."""
        return list(reversed(self._history))[:limit]

    def get_error_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent pass-level errors, newest first."""
        return list(reversed(self._errors))[:limit]
