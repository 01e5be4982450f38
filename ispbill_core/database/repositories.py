"""
Database Repositories

Repository pattern implementation for ledger data access.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..billing.base import AccountStatus, ChargeOutcome, PassType, utcnow
from .base import Base
from .models import (
    AccountModel,
    ChargeRecordModel,
    NotificationMarker,
    Payment,
    TariffModel,
)


# =============================================================================
# Generic Type Variable
# =============================================================================


ModelType = TypeVar("ModelType", bound=Base)


# =============================================================================
# Base Repository
# =============================================================================


class BaseRepository(Generic[ModelType]):
    """Base repository with common CRUD operations."""

    model: Type[ModelType]

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Get entity by ID."""
        result = await self.session.execute(
            select(self.model).where(self.model.id == id)
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> ModelType:
        """Create a new entity."""
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.session.flush()
        return instance

    async def count(self) -> int:
        """Count all entities."""
        result = await self.session.execute(
            select(func.count()).select_from(self.model)
        )
        return result.scalar_one()


# =============================================================================
# Tariff Repository
# =============================================================================


class TariffRepository(BaseRepository[TariffModel]):
    """Repository for tariffs."""

    model = TariffModel


# =============================================================================
# Account Repository
# =============================================================================


class AccountRepository(BaseRepository[AccountModel]):
    """Repository for subscriber accounts."""

    model = AccountModel

    async def get_for_update(self, id: str) -> Optional[AccountModel]:
        """Get account and lock its row until the transaction ends."""
        result = await self.session.execute(
            select(AccountModel)
            .where(AccountModel.id == id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def list_by_status(
        self,
        status: Optional[AccountStatus] = None,
        with_tariff: bool = False,
    ) -> List[AccountModel]:
        """List accounts, optionally filtered by status."""
        query = select(AccountModel).order_by(AccountModel.created_at, AccountModel.id)
        if status is not None:
            query = query.where(AccountModel.status == status.value)
        if with_tariff:
            query = query.options(selectinload(AccountModel.tariff))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def adjust_balance(
        self,
        id: str,
        delta: Decimal,
        **values: Any,
    ) -> Decimal:
        """
        Relative balance update, `balance = balance + delta`.

        Returns the balance after the update.
        """
        await self.session.execute(
            update(AccountModel)
            .where(AccountModel.id == id)
            .values(
                balance=AccountModel.balance + delta,
                updated_at=utcnow(),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(
            select(AccountModel.balance).where(AccountModel.id == id)
        )
        return Decimal(result.scalar_one())

    async def set_status(self, id: str, status: AccountStatus) -> None:
        """Set account status, stamping blocked_at on block."""
        await self.session.execute(
            update(AccountModel)
            .where(AccountModel.id == id)
            .where(AccountModel.status != status.value)
            .values(
                status=status.value,
                blocked_at=utcnow() if status == AccountStatus.BLOCKED else None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )


# =============================================================================
# Charge Record Repository
# =============================================================================


class ChargeRecordRepository(BaseRepository[ChargeRecordModel]):
    """Repository for charge records."""

    model = ChargeRecordModel

    async def get_by_key(
        self,
        account_id: str,
        pass_type: PassType,
        period_key: str,
    ) -> Optional[ChargeRecordModel]:
        """Get the record for an idempotency key."""
        result = await self.session.execute(
            select(ChargeRecordModel).where(
                ChargeRecordModel.account_id == account_id,
                ChargeRecordModel.pass_type == pass_type.value,
                ChargeRecordModel.period_key == period_key,
            )
        )
        return result.scalar_one_or_none()

    async def list_between(
        self,
        start: datetime,
        end: datetime,
        outcome: Optional[ChargeOutcome] = ChargeOutcome.APPLIED,
    ) -> List[ChargeRecordModel]:
        """List records created within [start, end]."""
        query = (
            select(ChargeRecordModel)
            .where(ChargeRecordModel.created_at >= start)
            .where(ChargeRecordModel.created_at <= end)
            .order_by(ChargeRecordModel.created_at)
        )
        if outcome is not None:
            query = query.where(ChargeRecordModel.outcome == outcome.value)
        result = await self.session.execute(query)
        return list(result.scalars().all())


# =============================================================================
# Payment Repository
# =============================================================================


class PaymentRepository(BaseRepository[Payment]):
    """Repository for manual payment history."""

    model = Payment

    async def list_by_account(self, account_id: str, limit: int = 50) -> List[Payment]:
        """Most recent payments of an account."""
        result = await self.session.execute(
            select(Payment)
            .where(Payment.account_id == account_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


# =============================================================================
# Notification Marker Repository
# =============================================================================


class NotificationMarkerRepository(BaseRepository[NotificationMarker]):
    """Repository for notification markers."""

    model = NotificationMarker

    async def exists_for(
        self,
        account_id: str,
        notification_type: str,
        period_key: str,
    ) -> bool:
        result = await self.session.execute(
            select(func.count())
            .select_from(NotificationMarker)
            .where(
                NotificationMarker.account_id == account_id,
                NotificationMarker.notification_type == notification_type,
                NotificationMarker.period_key == period_key,
            )
        )
        return result.scalar_one() > 0


# =============================================================================
# Exports
# =============================================================================


__all__ = [
    "BaseRepository",
    "TariffRepository",
    "AccountRepository",
    "ChargeRecordRepository",
    "PaymentRepository",
    "NotificationMarkerRepository",
]
