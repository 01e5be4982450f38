"""
Batch Runner

Walks the eligible account set for a pass and drives the account processor
through a bounded worker pool.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union
from zoneinfo import ZoneInfo

import structlog

from .base import (
    Account,
    BatchError,
    BatchReport,
    BillingPeriod,
    ChargeResult,
    LedgerStore,
    NotificationEntry,
    NotificationReport,
    PassType,
    StatusTransition,
    StorageError,
    utcnow,
)
from .pricing import TariffResolver, resolve_period
from .processor import AccountProcessor


logger = structlog.get_logger(__name__)

T = TypeVar("T")
PassReport = Union[BatchReport, NotificationReport]


class BatchRunner:
    """
    Runs billing passes.

    Passes of the same type are serialized; different pass types may
    overlap. Per-account failures land in the report's `errors`; only a
    failure to enumerate accounts is raised, as StorageError.
    """

    def __init__(
        self,
        store: LedgerStore,
        processor: AccountProcessor,
        resolver: TariffResolver,
        concurrency: int = 16,
        billing_timezone: ZoneInfo = ZoneInfo("UTC"),
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.store = store
        self.processor = processor
        self.resolver = resolver
        self.concurrency = concurrency
        self.tz = billing_timezone
        self._locks: Dict[PassType, asyncio.Lock] = {pt: asyncio.Lock() for pt in PassType}
        self.last_reports: Dict[PassType, PassReport] = {}

    def is_running(self, pass_type: PassType) -> bool:
        return self._locks[pass_type].locked()

    async def run(
        self,
        pass_type: PassType,
        as_of: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> PassReport:
        """Run any pass type."""
        if pass_type == PassType.NOTIFICATIONS:
            return await self.run_notifications(as_of)
        return await self.run_pass(pass_type, as_of, dry_run)

    async def run_pass(
        self,
        pass_type: PassType,
        as_of: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> BatchReport:
        """Run a monthly or hourly charge pass for the period containing `as_of`."""
        if pass_type == PassType.NOTIFICATIONS:
            raise ValueError("notifications is not a charge pass, use run_notifications")

        as_of = as_of or utcnow()
        period = resolve_period(pass_type, as_of, self.tz)

        async with self._locks[pass_type]:
            report = BatchReport(
                pass_type=pass_type,
                period_key=period.key,
                started_at=utcnow(),
                dry_run=dry_run,
            )
            logger.info(
                "pass_started",
                pass_type=pass_type.value,
                period_key=period.key,
                dry_run=dry_run,
            )

            self.resolver.reset()
            accounts = await self._enumerate(pass_type, period)

            async def process(account: Account) -> ChargeResult:
                return await self.processor.apply_charge(
                    account, period, dry_run=dry_run, as_of=as_of
                )

            results = await self._run_pool(accounts, process)

            for account, result in zip(accounts, results):
                if isinstance(result, BaseException):
                    report.errors.append(BatchError(account.id, str(result)))
                elif result.applied:
                    report.processed += 1
                    report.total_amount += result.amount
                    if result.transition == StatusTransition.BLOCKED:
                        report.blocked += 1
                    if result.error is not None:
                        report.errors.append(BatchError(account.id, result.error))
                elif result.error is not None:
                    report.errors.append(BatchError(account.id, result.error))
                else:
                    report.skipped += 1

            report.finished_at = utcnow()
            if not dry_run:
                self.last_reports[pass_type] = report

            logger.info(
                "pass_finished",
                pass_type=pass_type.value,
                period_key=period.key,
                processed=report.processed,
                total_amount=str(report.total_amount),
                errors=len(report.errors),
                skipped=report.skipped,
                blocked=report.blocked,
                duration_ms=report.duration_ms,
                dry_run=dry_run,
            )
            return report

    async def run_notifications(self, as_of: Optional[datetime] = None) -> NotificationReport:
        """Low-balance check over all ACTIVE accounts."""
        as_of = as_of or utcnow()
        period = resolve_period(PassType.NOTIFICATIONS, as_of, self.tz)

        async with self._locks[PassType.NOTIFICATIONS]:
            report = NotificationReport(period_key=period.key, started_at=utcnow())
            logger.info(
                "pass_started",
                pass_type=PassType.NOTIFICATIONS.value,
                period_key=period.key,
            )

            accounts = await self._enumerate(PassType.NOTIFICATIONS, period)

            async def check(account: Account) -> Optional[NotificationEntry]:
                return await self.processor.check_low_balance(account, as_of)

            results = await self._run_pool(accounts, check)

            for account, result in zip(accounts, results):
                if isinstance(result, BaseException):
                    report.errors.append(BatchError(account.id, str(result)))
                elif result is not None:
                    report.notifications.append(result)

            report.finished_at = utcnow()
            self.last_reports[PassType.NOTIFICATIONS] = report

            logger.info(
                "pass_finished",
                pass_type=PassType.NOTIFICATIONS.value,
                period_key=period.key,
                sent=report.sent,
                errors=len(report.errors),
            )
            return report

    async def _enumerate(self, pass_type: PassType, period: BillingPeriod) -> List[Account]:
        try:
            return await self.store.list_eligible_accounts(pass_type, period)
        except StorageError:
            logger.error("pass_enumeration_failed", pass_type=pass_type.value, period_key=period.key)
            raise
        except Exception as e:
            logger.error(
                "pass_enumeration_failed",
                pass_type=pass_type.value,
                period_key=period.key,
                error=str(e),
            )
            raise StorageError(f"Failed to enumerate accounts: {e}") from e

    async def _run_pool(
        self,
        items: List[Account],
        func: Callable[[Account], Awaitable[T]],
    ) -> List[Any]:
        """
        Apply `func` to every item with at most `concurrency` in flight.

        The queue holds at most `concurrency` pending items, so the producer
        blocks when the pool is saturated. Results keep the order of `items`;
        an exception raised by `func` is stored in place of its result.
        """
        results: List[Any] = [None] * len(items)
        if not items:
            return results

        queue: asyncio.Queue = asyncio.Queue(maxsize=self.concurrency)

        async def worker() -> None:
            while True:
                entry = await queue.get()
                if entry is None:
                    break
                index, item = entry
                try:
                    results[index] = await func(item)
                except Exception as e:
                    results[index] = e

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(self.concurrency, len(items)))
        ]
        for index, item in enumerate(items):
            await queue.put((index, item))
        for _ in workers:
            await queue.put(None)

        await asyncio.gather(*workers)
        return results
