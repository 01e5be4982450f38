"""Unit tests for the billing scheduler."""

import asyncio
import pytest
from datetime import datetime

from ispbill_core.billing.base import PassType, StorageError
from ispbill_core.billing.scheduler import BillingScheduler

from conftest import AS_OF, METERED_TARIFF, BrokenLedgerStore, make_account, make_engine, seeded


def fixed_clock():
    return AS_OF


async def wait_for_history(scheduler: BillingScheduler, count: int) -> None:
    for _ in range(200):
        if len(scheduler.get_history(limit=100)) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"expected {count} pass runs")


async def sleep_forever(delay: float) -> None:
    await asyncio.Event().wait()


class TestManualTrigger:
    """Tests for run_now."""

    @pytest.mark.asyncio
    async def test_runs_in_fixed_order(self, engine, store):
        """Test runs in fixed order."""
        store.add_account(make_account("a1", "1000"))
        store.add_account(make_account("m1", "90", METERED_TARIFF.id))

        results = await engine.scheduler.run_now(
            [PassType.NOTIFICATIONS, PassType.MONTHLY, PassType.HOURLY], AS_OF
        )

        assert list(results) == ["monthly", "hourly", "notifications"]
        assert results["monthly"].processed == 1
        assert results["hourly"].processed == 1
        history = engine.scheduler.get_history()
        assert [h["passType"] for h in history] == ["notifications", "hourly", "monthly"]
        assert all(h["trigger"] == "manual" for h in history)
        assert "notifications" not in history[0]

    @pytest.mark.asyncio
    async def test_subset(self, engine, store):
        """Test running a subset of passes."""
        store.add_account(make_account("a1", "1000"))

        results = await engine.run_tasks([PassType.HOURLY], AS_OF)

        assert list(results) == ["hourly"]
        assert results["hourly"].processed == 0

    @pytest.mark.asyncio
    async def test_enumeration_failure_is_raised_and_recorded(self):
        """Test enumeration failure is raised and recorded."""
        engine = make_engine(seeded(BrokenLedgerStore(RuntimeError("disk full"))))

        with pytest.raises(StorageError):
            await engine.run_tasks([PassType.MONTHLY], AS_OF)

        errors = engine.get_errors()
        assert len(errors) == 1
        assert errors[0]["passType"] == "monthly"
        assert errors[0]["trigger"] == "manual"
        assert "disk full" in errors[0]["error"]


class TestTimers:
    """Tests for the timer lifecycle."""

    @pytest.mark.asyncio
    async def test_status_reports_next_runs(self, engine):
        """Test status reports next runs."""
        scheduler = BillingScheduler(
            engine.runner,
            startup_delay_seconds=None,
            sleep=sleep_forever,
            clock=fixed_clock,
        )

        await scheduler.start()
        await asyncio.sleep(0)
        status = scheduler.get_status()
        await scheduler.stop()

        assert status["isRunning"] is True
        assert status["timezone"] == "UTC"
        assert status["timers"]["hourly"]["nextRun"] == datetime(2024, 1, 15, 14, 0).isoformat()
        assert status["timers"]["hourly"]["passes"] == ["hourly", "notifications"]
        assert status["timers"]["monthly"]["nextRun"] == datetime(2024, 2, 1, 0, 0).isoformat()
        assert status["activePasses"] == []
        assert scheduler.get_status()["isRunning"] is False
        assert scheduler.get_status()["timers"]["hourly"]["nextRun"] is None

    @pytest.mark.asyncio
    async def test_next_run_in_billing_timezone(self, engine):
        """Test next run in billing timezone."""
        scheduler = BillingScheduler(
            engine.runner,
            timezone="Europe/Moscow",
            startup_delay_seconds=None,
            sleep=sleep_forever,
            clock=fixed_clock,
        )

        await scheduler.start()
        await asyncio.sleep(0)
        status = scheduler.get_status()
        await scheduler.stop()

        # Midnight of Feb 1 in Moscow is 21:00 UTC on Jan 31
        assert status["timers"]["monthly"]["nextRun"] == datetime(2024, 1, 31, 21, 0).isoformat()

    @pytest.mark.asyncio
    async def test_hourly_tick_runs_hourly_then_notifications(self, engine, store):
        """Test hourly tick runs hourly then notifications."""
        store.add_account(make_account("m1", "1000", METERED_TARIFF.id))
        ticks = []

        async def sleep(delay: float) -> None:
            # Let the first hourly tick through, park everything else.
            if delay < 3600 and not ticks:
                ticks.append(delay)
                return
            await asyncio.Event().wait()

        scheduler = BillingScheduler(
            engine.runner,
            startup_delay_seconds=None,
            sleep=sleep,
            clock=fixed_clock,
        )

        await scheduler.start()
        await wait_for_history(scheduler, 2)
        await scheduler.stop()

        history = scheduler.get_history()
        assert ticks == [2400.0]
        assert [h["passType"] for h in history] == ["notifications", "hourly"]
        assert all(h["trigger"] == "schedule" for h in history)
        assert history[1]["processed"] == 1

    @pytest.mark.asyncio
    async def test_startup_catch_up(self, engine, store):
        """Test startup catch up."""
        store.add_account(make_account("a1", "1000"))

        async def sleep(delay: float) -> None:
            if delay == 5:
                return
            await asyncio.Event().wait()

        scheduler = BillingScheduler(
            engine.runner,
            startup_delay_seconds=5,
            sleep=sleep,
            clock=fixed_clock,
        )

        await scheduler.start()
        await wait_for_history(scheduler, 3)
        await scheduler.stop()

        history = scheduler.get_history()
        assert [h["passType"] for h in history] == ["notifications", "hourly", "monthly"]
        assert all(h["trigger"] == "startup" for h in history)
        assert history[2]["processed"] == 1

    @pytest.mark.asyncio
    async def test_failed_tick_is_recorded(self):
        """Test failed tick is recorded."""
        engine = make_engine(seeded(BrokenLedgerStore(RuntimeError("timeout"))))
        ticks = []

        async def sleep(delay: float) -> None:
            if delay < 3600 and not ticks:
                ticks.append(delay)
                return
            await asyncio.Event().wait()

        scheduler = BillingScheduler(
            engine.runner,
            startup_delay_seconds=None,
            sleep=sleep,
            clock=fixed_clock,
        )

        await scheduler.start()
        for _ in range(200):
            if len(scheduler.get_error_history()) >= 2:
                break
            await asyncio.sleep(0.01)
        status = scheduler.get_status()
        await scheduler.stop()

        errors = scheduler.get_error_history()
        assert [e["passType"] for e in errors] == ["notifications", "hourly"]
        assert status["isRunning"] is True

    @pytest.mark.asyncio
    async def test_start_twice_and_stop_twice(self, engine):
        """Test start twice and stop twice."""
        scheduler = BillingScheduler(
            engine.runner,
            startup_delay_seconds=None,
            sleep=sleep_forever,
            clock=fixed_clock,
        )

        await scheduler.start()
        await scheduler.start()
        assert len(scheduler._tasks) == 2

        await scheduler.stop()
        await scheduler.stop()
        assert scheduler.is_running is False

    def test_invalid_cron_is_rejected(self, engine):
        """Test invalid cron is rejected."""
        with pytest.raises(ValueError):
            BillingScheduler(engine.runner, hourly_cron="every hour")
