"""
Database Models

SQLAlchemy ORM models for the billing ledger.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..billing.base import (
    Account,
    AccountStatus,
    BillingMode,
    ChargeOutcome,
    ChargeRecord,
    PassType,
    PaymentRecord,
    PaymentSource,
    Tariff,
    utcnow,
)
from .base import Base, TimestampMixin


MONEY = Numeric(12, 2)


# =============================================================================
# Tariffs and Accounts
# =============================================================================


class TariffModel(Base, TimestampMixin):
    """Tariff model."""

    __tablename__ = "tariffs"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_mode: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    hourly_price: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    notification_threshold: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    accounts = relationship("AccountModel", back_populates="tariff")

    def to_domain(self) -> Tariff:
        return Tariff(
            id=self.id,
            name=self.name,
            billing_mode=BillingMode(self.billing_mode),
            price=self.price,
            hourly_price=self.hourly_price,
            notification_threshold=self.notification_threshold,
            is_active=self.is_active,
        )


class AccountModel(Base, TimestampMixin):
    """Subscriber account model."""

    __tablename__ = "accounts"

    client_id: Mapped[str] = mapped_column(String(36), nullable=False)
    tariff_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tariffs.id"),
        nullable=False,
    )
    account_number: Mapped[str] = mapped_column(String(64), default="")
    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=AccountStatus.ACTIVE.value)
    block_threshold: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)

    # Idempotency anchors
    last_monthly_charge_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_hourly_charge_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Device binding
    device_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    mac_address: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    blocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    tariff = relationship("TariffModel", back_populates="accounts")

    __table_args__ = (
        Index("ix_accounts_status", "status"),
        Index("ix_accounts_tariff_id", "tariff_id"),
    )

    @classmethod
    def from_domain(cls, account: Account) -> "AccountModel":
        return cls(
            id=account.id,
            client_id=account.client_id,
            tariff_id=account.tariff_id,
            account_number=account.account_number,
            balance=account.balance,
            status=account.status.value,
            block_threshold=account.block_threshold,
            last_monthly_charge_at=account.last_monthly_charge_at,
            last_hourly_charge_at=account.last_hourly_charge_at,
            device_id=account.device_id,
            mac_address=account.mac_address,
            blocked_at=account.blocked_at,
            created_at=account.created_at,
        )

    def to_domain(self) -> Account:
        return Account(
            id=self.id,
            client_id=self.client_id,
            tariff_id=self.tariff_id,
            balance=Decimal(self.balance),
            status=AccountStatus(self.status),
            block_threshold=Decimal(self.block_threshold),
            account_number=self.account_number,
            last_monthly_charge_at=self.last_monthly_charge_at,
            last_hourly_charge_at=self.last_hourly_charge_at,
            device_id=self.device_id,
            mac_address=self.mac_address,
            blocked_at=self.blocked_at,
            created_at=self.created_at,
        )


# =============================================================================
# Ledger
# =============================================================================


class ChargeRecordModel(Base):
    """One charge per (account, pass type, period key)."""

    __tablename__ = "charge_records"

    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id"),
        nullable=False,
    )
    pass_type: Mapped[str] = mapped_column(String(20), nullable=False)
    period_key: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "pass_type", "period_key",
            name="uq_charge_account_pass_period",
        ),
        Index("ix_charge_records_created_at", "created_at"),
    )

    def to_domain(self) -> ChargeRecord:
        return ChargeRecord(
            id=self.id,
            account_id=self.account_id,
            pass_type=PassType(self.pass_type),
            period_key=self.period_key,
            amount=Decimal(self.amount),
            outcome=ChargeOutcome(self.outcome),
            reason=self.reason or "",
            created_at=self.created_at,
        )


class Payment(Base):
    """Manual credit/debit history."""

    __tablename__ = "payments"

    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("accounts.id"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payments_account_id", "account_id"),
    )

    def to_domain(self) -> PaymentRecord:
        return PaymentRecord(
            id=self.id,
            account_id=self.account_id,
            amount=Decimal(self.amount),
            source=PaymentSource(self.source),
            comment=self.comment or "",
            created_at=self.created_at,
        )


class NotificationMarker(Base):
    """Marks a notification as sent for (account, type, period)."""

    __tablename__ = "notification_markers"

    account_id: Mapped[str] = mapped_column(String(36), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(32), nullable=False)
    period_key: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "notification_type", "period_key",
            name="uq_notification_marker",
        ),
    )


# =============================================================================
# Outbox
# =============================================================================


class NotificationOutbox(Base):
    """Pending notification for the external delivery worker."""

    __tablename__ = "notifications"

    client_id: Mapped[str] = mapped_column(String(36), nullable=False)
    account_id: Mapped[str] = mapped_column(String(36), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notifications_status", "status"),
    )


class DeviceCommandOutbox(Base):
    """Pending device command for the external provisioning worker."""

    __tablename__ = "device_commands"

    account_id: Mapped[str] = mapped_column(String(36), nullable=False)
    device_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_device_commands_status", "status"),
    )


__all__ = [
    "TariffModel",
    "AccountModel",
    "ChargeRecordModel",
    "Payment",
    "NotificationMarker",
    "NotificationOutbox",
    "DeviceCommandOutbox",
]
