"""
In-Memory Ledger Store

Ledger store backed by process memory. Each account mutation runs inside a
per-account asyncio.Lock so concurrent writers never lose an update.
"""

import asyncio
import uuid
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from .base import (
    Account,
    AccountNotFoundError,
    AccountStatus,
    BillingMode,
    BillingPeriod,
    ChargeApplication,
    ChargeOutcome,
    ChargeRecord,
    InsufficientFundsError,
    LedgerStore,
    NotificationType,
    PassType,
    PaymentRecord,
    PaymentSource,
    Tariff,
    utcnow,
)


ChargeKey = Tuple[str, PassType, str]


def charged_in_period(anchor: Optional[datetime], period: BillingPeriod) -> bool:
    """True when a charge anchor falls inside the period."""
    return anchor is not None and period.start <= anchor < period.end


def latest_anchor(anchor: Optional[datetime], start: datetime) -> datetime:
    """Charge anchors only move forward; a backdated charge keeps the later one."""
    if anchor is None or start > anchor:
        return start
    return anchor


def is_eligible(
    account: Account,
    tariff: Optional[Tariff],
    pass_type: PassType,
    period: BillingPeriod,
) -> bool:
    """Eligibility rule shared by the ledger store implementations."""
    if account.status != AccountStatus.ACTIVE:
        return False
    if pass_type == PassType.MONTHLY:
        # Accounts with a missing tariff are still visited so the
        # configuration problem is reported for them.
        if tariff is not None and tariff.billing_mode != BillingMode.PREPAID_PERIODIC:
            return False
        return not charged_in_period(account.last_monthly_charge_at, period)
    if pass_type == PassType.HOURLY:
        if tariff is None or tariff.billing_mode != BillingMode.METERED:
            return False
        return not hours_covered(account.last_hourly_charge_at, period)
    return True


def hours_covered(anchor: Optional[datetime], period: BillingPeriod) -> bool:
    """
    True when an hourly charge already billed the period's bucket.

    A catch-up charge bills every bucket up to its own, so any anchor at or
    after the period start covers it.
    """
    return anchor is not None and anchor >= period.start


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger store implementation."""

    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._tariffs: Dict[str, Tariff] = {}
        self._charges: Dict[ChargeKey, ChargeRecord] = {}
        self._payments: Dict[str, List[PaymentRecord]] = defaultdict(list)
        self._markers: Set[Tuple[str, NotificationType, str]] = set()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # Seeding, used by account management and tests

    def add_tariff(self, tariff: Tariff) -> Tariff:
        self._tariffs[tariff.id] = replace(tariff)
        return tariff

    def add_account(self, account: Account) -> Account:
        self._accounts[account.id] = replace(account)
        return account

    def payments_for(self, account_id: str) -> List[PaymentRecord]:
        return list(self._payments.get(account_id, []))

    # LedgerStore

    async def get_account(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return replace(account)

    async def get_tariff(self, tariff_id: str) -> Optional[Tariff]:
        tariff = self._tariffs.get(tariff_id)
        return replace(tariff) if tariff else None

    async def list_accounts(
        self,
        status: Optional[AccountStatus] = None,
    ) -> List[Account]:
        return [
            replace(a) for a in self._accounts.values()
            if status is None or a.status == status
        ]

    async def list_eligible_accounts(
        self,
        pass_type: PassType,
        period: BillingPeriod,
    ) -> List[Account]:
        return [
            replace(a) for a in self._accounts.values()
            if is_eligible(a, self._tariffs.get(a.tariff_id), pass_type, period)
        ]

    async def get_charge_record(
        self,
        account_id: str,
        pass_type: PassType,
        period_key: str,
    ) -> Optional[ChargeRecord]:
        record = self._charges.get((account_id, pass_type, period_key))
        return replace(record) if record else None

    async def apply_charge_atomic(
        self,
        account_id: str,
        amount: Decimal,
        period: BillingPeriod,
        reason: str = "",
    ) -> ChargeApplication:
        key = (account_id, period.pass_type, period.key)
        async with self._locks[account_id]:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            existing = self._charges.get(key)
            if existing is not None and existing.outcome == ChargeOutcome.APPLIED:
                return ChargeApplication(
                    new_balance=account.balance,
                    already_applied=True,
                    status=account.status,
                )

            if account.balance < amount:
                raise InsufficientFundsError(account_id, amount, account.balance)

            account.balance -= amount
            if period.pass_type == PassType.MONTHLY:
                account.last_monthly_charge_at = latest_anchor(
                    account.last_monthly_charge_at, period.start
                )
            elif period.pass_type == PassType.HOURLY:
                account.last_hourly_charge_at = latest_anchor(
                    account.last_hourly_charge_at, period.start
                )

            blocked = (
                account.status == AccountStatus.ACTIVE
                and account.is_below_threshold()
            )
            if blocked:
                account.status = AccountStatus.BLOCKED
                account.blocked_at = utcnow()

            self._charges[key] = ChargeRecord(
                id=existing.id if existing else str(uuid.uuid4()),
                account_id=account_id,
                pass_type=period.pass_type,
                period_key=period.key,
                amount=-amount,
                outcome=ChargeOutcome.APPLIED,
                reason=reason,
            )
            return ChargeApplication(
                new_balance=account.balance,
                already_applied=False,
                status=account.status,
                blocked=blocked,
            )

    async def record_failed_charge(
        self,
        account_id: str,
        period: BillingPeriod,
        amount: Decimal,
        reason: str,
    ) -> None:
        key = (account_id, period.pass_type, period.key)
        async with self._locks[account_id]:
            existing = self._charges.get(key)
            if existing is not None and existing.outcome == ChargeOutcome.APPLIED:
                return
            self._charges[key] = ChargeRecord(
                id=existing.id if existing else str(uuid.uuid4()),
                account_id=account_id,
                pass_type=period.pass_type,
                period_key=period.key,
                amount=-amount,
                outcome=ChargeOutcome.FAILED,
                reason=reason,
            )

    async def set_status(self, account_id: str, status: AccountStatus) -> Account:
        async with self._locks[account_id]:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            if account.status != status:
                account.status = status
                account.blocked_at = utcnow() if status == AccountStatus.BLOCKED else None
            return replace(account)

    async def apply_payment_atomic(
        self,
        account_id: str,
        amount: Decimal,
        source: PaymentSource,
        comment: str = "",
    ) -> Account:
        async with self._locks[account_id]:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            account.balance += amount
            self._payments[account_id].append(
                PaymentRecord(
                    id=str(uuid.uuid4()),
                    account_id=account_id,
                    amount=amount,
                    source=source,
                    comment=comment,
                )
            )
            return replace(account)

    async def mark_notified(
        self,
        account_id: str,
        notification_type: NotificationType,
        period_key: str,
    ) -> bool:
        marker = (account_id, notification_type, period_key)
        if marker in self._markers:
            return False
        self._markers.add(marker)
        return True

    async def list_charge_records(
        self,
        start: datetime,
        end: datetime,
        outcome: Optional[ChargeOutcome] = ChargeOutcome.APPLIED,
    ) -> List[ChargeRecord]:
        records = [
            replace(r) for r in self._charges.values()
            if start <= r.created_at <= end
            and (outcome is None or r.outcome == outcome)
        ]
        records.sort(key=lambda r: r.created_at)
        return records
