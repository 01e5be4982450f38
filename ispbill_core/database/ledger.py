"""
SQL Ledger Store

LedgerStore implementation over SQLAlchemy async sessions. Charge
idempotency is enforced by the unique (account_id, pass_type, period_key)
constraint on charge_records; balances change only through relative updates
on a locked row.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..billing.base import (
    Account,
    AccountNotFoundError,
    AccountStatus,
    AlreadyAppliedError,
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
    StorageError,
    Tariff,
    utcnow,
)
from ..billing.ledger import is_eligible, latest_anchor
from .base import DatabaseManager
from .models import AccountModel, ChargeRecordModel, NotificationMarker, Payment
from .repositories import (
    AccountRepository,
    ChargeRecordRepository,
    NotificationMarkerRepository,
    PaymentRepository,
    TariffRepository,
)


logger = logging.getLogger(__name__)


class SQLAlchemyLedgerStore(LedgerStore):
    """Ledger store backed by a relational database."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.db.session() as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Ledger storage failure: {e}")
            raise StorageError(f"Ledger storage failure: {e}") from e

    # =========================================================================
    # Seeding
    # =========================================================================

    async def add_tariff(self, tariff: Tariff) -> Tariff:
        async with self._session() as session:
            await TariffRepository(session).create(
                id=tariff.id,
                name=tariff.name,
                billing_mode=tariff.billing_mode.value,
                price=tariff.price,
                hourly_price=tariff.hourly_price,
                notification_threshold=tariff.notification_threshold,
                is_active=tariff.is_active,
            )
        return tariff

    async def add_account(self, account: Account) -> Account:
        async with self._session() as session:
            session.add(AccountModel.from_domain(account))
        return account

    async def payments_for(self, account_id: str) -> List[PaymentRecord]:
        async with self._session() as session:
            payments = await PaymentRepository(session).list_by_account(account_id)
            return [p.to_domain() for p in reversed(payments)]

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_account(self, account_id: str) -> Account:
        async with self._session() as session:
            model = await AccountRepository(session).get_by_id(account_id)
            if model is None:
                raise AccountNotFoundError(account_id)
            return model.to_domain()

    async def get_tariff(self, tariff_id: str) -> Optional[Tariff]:
        async with self._session() as session:
            model = await TariffRepository(session).get_by_id(tariff_id)
            return model.to_domain() if model else None

    async def list_accounts(
        self,
        status: Optional[AccountStatus] = None,
    ) -> List[Account]:
        async with self._session() as session:
            models = await AccountRepository(session).list_by_status(status)
            return [m.to_domain() for m in models]

    async def list_eligible_accounts(
        self,
        pass_type: PassType,
        period: BillingPeriod,
    ) -> List[Account]:
        async with self._session() as session:
            models = await AccountRepository(session).list_by_status(
                AccountStatus.ACTIVE, with_tariff=True
            )
            eligible = []
            for model in models:
                account = model.to_domain()
                tariff = model.tariff.to_domain() if model.tariff else None
                if is_eligible(account, tariff, pass_type, period):
                    eligible.append(account)
            return eligible

    async def get_charge_record(
        self,
        account_id: str,
        pass_type: PassType,
        period_key: str,
    ) -> Optional[ChargeRecord]:
        async with self._session() as session:
            model = await ChargeRecordRepository(session).get_by_key(
                account_id, pass_type, period_key
            )
            return model.to_domain() if model else None

    async def list_charge_records(
        self,
        start: datetime,
        end: datetime,
        outcome: Optional[ChargeOutcome] = ChargeOutcome.APPLIED,
    ) -> List[ChargeRecord]:
        async with self._session() as session:
            models = await ChargeRecordRepository(session).list_between(start, end, outcome)
            return [m.to_domain() for m in models]

    # =========================================================================
    # Writes
    # =========================================================================

    async def apply_charge_atomic(
        self,
        account_id: str,
        amount: Decimal,
        period: BillingPeriod,
        reason: str = "",
    ) -> ChargeApplication:
        try:
            return await self._apply_charge(account_id, amount, period, reason)
        except AlreadyAppliedError:
            pass
        except IntegrityError:
            # A concurrent writer inserted the same key first; nothing was debited here.
            logger.info(
                f"Charge {period.pass_type.value}/{period.key} for account {account_id} "
                "already applied by a concurrent writer"
            )

        account = await self.get_account(account_id)
        return ChargeApplication(
            new_balance=account.balance,
            already_applied=True,
            status=account.status,
        )

    async def _apply_charge(
        self,
        account_id: str,
        amount: Decimal,
        period: BillingPeriod,
        reason: str,
    ) -> ChargeApplication:
        async with self._session() as session:
            accounts = AccountRepository(session)
            charges = ChargeRecordRepository(session)

            account = await accounts.get_for_update(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            existing = await charges.get_by_key(account_id, period.pass_type, period.key)
            if existing is not None and existing.outcome == ChargeOutcome.APPLIED.value:
                raise AlreadyAppliedError(account_id, period.pass_type, period.key)

            if account.balance < amount:
                raise InsufficientFundsError(account_id, amount, Decimal(account.balance))

            # Record first: a duplicate key fails here, before the balance moves.
            if existing is not None:
                existing.amount = -amount
                existing.outcome = ChargeOutcome.APPLIED.value
                existing.reason = reason
                existing.created_at = utcnow()
            else:
                session.add(ChargeRecordModel(
                    account_id=account_id,
                    pass_type=period.pass_type.value,
                    period_key=period.key,
                    amount=-amount,
                    outcome=ChargeOutcome.APPLIED.value,
                    reason=reason,
                ))
            await session.flush()

            if period.pass_type == PassType.MONTHLY:
                anchor = {
                    "last_monthly_charge_at": latest_anchor(
                        account.last_monthly_charge_at, period.start
                    )
                }
            else:
                anchor = {
                    "last_hourly_charge_at": latest_anchor(
                        account.last_hourly_charge_at, period.start
                    )
                }
            new_balance = await accounts.adjust_balance(account_id, -amount, **anchor)

            status = AccountStatus(account.status)
            blocked = (
                status == AccountStatus.ACTIVE
                and new_balance < Decimal(account.block_threshold)
            )
            if blocked:
                await accounts.set_status(account_id, AccountStatus.BLOCKED)
                status = AccountStatus.BLOCKED

            return ChargeApplication(
                new_balance=new_balance,
                already_applied=False,
                status=status,
                blocked=blocked,
            )

    async def record_failed_charge(
        self,
        account_id: str,
        period: BillingPeriod,
        amount: Decimal,
        reason: str,
    ) -> None:
        try:
            async with self._session() as session:
                charges = ChargeRecordRepository(session)
                existing = await charges.get_by_key(account_id, period.pass_type, period.key)
                if existing is None:
                    session.add(ChargeRecordModel(
                        account_id=account_id,
                        pass_type=period.pass_type.value,
                        period_key=period.key,
                        amount=-amount,
                        outcome=ChargeOutcome.FAILED.value,
                        reason=reason,
                    ))
                elif existing.outcome != ChargeOutcome.APPLIED.value:
                    existing.amount = -amount
                    existing.outcome = ChargeOutcome.FAILED.value
                    existing.reason = reason
                    existing.created_at = utcnow()
        except IntegrityError:
            # Concurrent insert of the same key; that outcome wins.
            pass

    async def set_status(self, account_id: str, status: AccountStatus) -> Account:
        async with self._session() as session:
            accounts = AccountRepository(session)
            model = await accounts.get_for_update(account_id)
            if model is None:
                raise AccountNotFoundError(account_id)
            await accounts.set_status(account_id, status)
            await session.refresh(model)
            return model.to_domain()

    async def apply_payment_atomic(
        self,
        account_id: str,
        amount: Decimal,
        source: PaymentSource,
        comment: str = "",
    ) -> Account:
        async with self._session() as session:
            accounts = AccountRepository(session)
            model = await accounts.get_for_update(account_id)
            if model is None:
                raise AccountNotFoundError(account_id)

            await accounts.adjust_balance(account_id, amount)
            session.add(Payment(
                account_id=account_id,
                amount=amount,
                source=source.value,
                comment=comment,
            ))
            await session.flush()
            await session.refresh(model)
            return model.to_domain()

    async def mark_notified(
        self,
        account_id: str,
        notification_type: NotificationType,
        period_key: str,
    ) -> bool:
        try:
            async with self._session() as session:
                markers = NotificationMarkerRepository(session)
                if await markers.exists_for(account_id, notification_type.value, period_key):
                    return False
                session.add(NotificationMarker(
                    account_id=account_id,
                    notification_type=notification_type.value,
                    period_key=period_key,
                ))
            return True
        except IntegrityError:
            return False
