"""
Account Processor

Applies one charge to one account: idempotency check, atomic ledger write,
block policy and low-balance warning. Never raises across account
boundaries; every failure is returned as `ChargeResult.error`.
"""

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

import structlog

from .base import (
    Account,
    AccountStatus,
    BillingMode,
    BillingPeriod,
    ChargeOutcome,
    ChargeResult,
    DeviceState,
    InsufficientFundsError,
    LedgerStore,
    NotificationEntry,
    NotificationType,
    PassType,
    StatusTransition,
    Tariff,
    utcnow,
)
from .boundary import CommandEmitter, NotificationTrigger
from .ledger import hours_covered
from .pricing import ChargeCalculator, TariffResolver, metered_window, resolve_period


logger = structlog.get_logger(__name__)


PASS_BILLING_MODE = {
    PassType.MONTHLY: BillingMode.PREPAID_PERIODIC,
    PassType.HOURLY: BillingMode.METERED,
}


class AccountProcessor:
    """Charge and policy evaluation for a single account."""

    def __init__(
        self,
        store: LedgerStore,
        resolver: TariffResolver,
        calculator: ChargeCalculator,
        notifier: NotificationTrigger,
        emitter: CommandEmitter,
        notification_threshold: Decimal = Decimal("100"),
        max_hourly_catchup_hours: int = 24,
        billing_timezone: ZoneInfo = ZoneInfo("UTC"),
    ):
        self.store = store
        self.resolver = resolver
        self.calculator = calculator
        self.notifier = notifier
        self.emitter = emitter
        self.notification_threshold = notification_threshold
        self.max_hourly_catchup_hours = max_hourly_catchup_hours
        self.tz = billing_timezone

    def compute_amount(
        self,
        account: Account,
        tariff: Tariff,
        period: BillingPeriod,
    ) -> Decimal:
        """Amount owed by the account for the period."""
        mode = PASS_BILLING_MODE[period.pass_type]
        start = period.start
        if mode == BillingMode.METERED:
            start = metered_window(account, period, self.max_hourly_catchup_hours)
        return self.calculator.compute_charge(tariff, mode, start, period.end)

    async def apply_charge(
        self,
        account: Account,
        period: BillingPeriod,
        dry_run: bool = False,
        as_of: Optional[datetime] = None,
    ) -> ChargeResult:
        """Apply the pass charge for `period` to `account`."""
        try:
            if period.pass_type == PassType.HOURLY and hours_covered(
                account.last_hourly_charge_at, period
            ):
                return ChargeResult(
                    account_id=account.id,
                    new_balance=account.balance,
                    dry_run=dry_run,
                )

            existing = await self.store.get_charge_record(
                account.id, period.pass_type, period.key
            )
            if existing is not None and existing.outcome == ChargeOutcome.APPLIED:
                return ChargeResult(
                    account_id=account.id,
                    new_balance=account.balance,
                    dry_run=dry_run,
                )

            tariff = await self.resolver.resolve(account)
            amount = self.compute_amount(account, tariff, period)

            if dry_run:
                return self._simulate(account, amount)

            try:
                application = await self.store.apply_charge_atomic(
                    account.id,
                    amount,
                    period,
                    reason=f"{period.pass_type.value} charge for {period.key}",
                )
            except InsufficientFundsError as e:
                await self.store.record_failed_charge(account.id, period, amount, e.message)
                raise

        except Exception as e:
            logger.warning(
                "account_charge_failed",
                account_id=account.id,
                pass_type=period.pass_type.value,
                period_key=period.key,
                error=str(e),
            )
            return ChargeResult(account_id=account.id, error=str(e), dry_run=dry_run)

        if application.already_applied:
            return ChargeResult(account_id=account.id, new_balance=application.new_balance)

        logger.info(
            "account_charged",
            account_id=account.id,
            pass_type=period.pass_type.value,
            period_key=period.key,
            amount=str(amount),
            new_balance=str(application.new_balance),
        )

        result = ChargeResult(
            account_id=account.id,
            applied=True,
            amount=amount,
            new_balance=application.new_balance,
        )
        charged = replace(
            account,
            balance=application.new_balance,
            status=application.status,
        )
        # The debit is committed; later failures are reported beside it.
        try:
            if application.blocked:
                await self._announce_block(charged)
                result.transition = StatusTransition.BLOCKED
            else:
                await self._warn_low_balance(charged, tariff, as_of or utcnow())
        except Exception as e:
            logger.warning(
                "account_policy_failed",
                account_id=account.id,
                pass_type=period.pass_type.value,
                period_key=period.key,
                error=str(e),
            )
            result.error = str(e)
        return result

    def _simulate(self, account: Account, amount: Decimal) -> ChargeResult:
        if account.balance < amount:
            raise InsufficientFundsError(account.id, amount, account.balance)

        new_balance = account.balance - amount
        transition = StatusTransition.NONE
        if account.status == AccountStatus.ACTIVE and account.is_below_threshold(new_balance):
            transition = StatusTransition.BLOCKED

        return ChargeResult(
            account_id=account.id,
            applied=True,
            amount=amount,
            new_balance=new_balance,
            transition=transition,
            dry_run=True,
        )

    async def block(self, account: Account) -> Account:
        """Persist BLOCKED, then notify and emit the block command once each."""
        blocked = await self.store.set_status(account.id, AccountStatus.BLOCKED)
        await self._announce_block(blocked)
        return blocked

    async def _announce_block(self, account: Account) -> None:
        logger.info(
            "account_blocked",
            account_id=account.id,
            balance=str(account.balance),
            block_threshold=str(account.block_threshold),
        )
        await self.notifier.notify(account, NotificationType.INSUFFICIENT_FUNDS, account.balance)
        await self.emitter.emit_command(account, DeviceState.BLOCKED)

    async def unblock(self, account: Account) -> Account:
        """Persist ACTIVE, then notify and emit the unblock command once each."""
        active = await self.store.set_status(account.id, AccountStatus.ACTIVE)
        logger.info(
            "account_unblocked",
            account_id=account.id,
            balance=str(account.balance),
        )
        await self.notifier.notify(active, NotificationType.UNBLOCKED, account.balance)
        await self.emitter.emit_command(active, DeviceState.ACTIVE)
        return active

    def _threshold_for(self, tariff: Optional[Tariff]) -> Decimal:
        if tariff is not None and tariff.notification_threshold is not None:
            return tariff.notification_threshold
        return self.notification_threshold

    def is_low_balance(self, account: Account, tariff: Optional[Tariff]) -> bool:
        return (
            account.status == AccountStatus.ACTIVE
            and Decimal("0") < account.balance <= self._threshold_for(tariff)
        )

    async def _warn_low_balance(
        self,
        account: Account,
        tariff: Optional[Tariff],
        as_of: datetime,
    ) -> Optional[NotificationEntry]:
        if not self.is_low_balance(account, tariff):
            return None

        day = resolve_period(PassType.NOTIFICATIONS, as_of, self.tz)
        if not await self.store.mark_notified(account.id, NotificationType.LOW_BALANCE, day.key):
            return None

        delivered = await self.notifier.notify(account, NotificationType.LOW_BALANCE)
        return NotificationEntry(
            account_id=account.id,
            type=NotificationType.LOW_BALANCE,
            balance=account.balance,
            delivered=delivered,
        )

    async def check_low_balance(
        self,
        account: Account,
        as_of: Optional[datetime] = None,
    ) -> Optional[NotificationEntry]:
        """Low-balance check used by the notifications pass."""
        tariff = await self.store.get_tariff(account.tariff_id)
        return await self._warn_low_balance(account, tariff, as_of or utcnow())
