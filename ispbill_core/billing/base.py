"""
Billing Base Types

Core types, storage interface and errors for the billing cycle engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PassType(str, Enum):
    """Billing pass cadences."""
    MONTHLY = "monthly"
    HOURLY = "hourly"
    NOTIFICATIONS = "notifications"


class BillingMode(str, Enum):
    """Tariff billing modes."""
    PREPAID_PERIODIC = "PREPAID_PERIODIC"
    METERED = "METERED"


class AccountStatus(str, Enum):
    """Subscriber account states."""
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    SUSPENDED = "SUSPENDED"


class ChargeOutcome(str, Enum):
    """Outcome of a charge record."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class NotificationType(str, Enum):
    """Notifications the engine can request."""
    LOW_BALANCE = "LOW_BALANCE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    UNBLOCKED = "UNBLOCKED"


class DeviceState(str, Enum):
    """Desired device state for provisioning commands."""
    BLOCKED = "BLOCKED"
    ACTIVE = "ACTIVE"

    @property
    def command_type(self) -> str:
        return "BLOCK_CLIENT" if self is DeviceState.BLOCKED else "UNBLOCK_CLIENT"


class StatusTransition(str, Enum):
    """Status transition caused by a ledger mutation."""
    NONE = "none"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"


class PaymentSource(str, Enum):
    """Origin of a manual ledger entry."""
    MANUAL = "MANUAL"
    TOP_UP = "TOP_UP"
    ADJUSTMENT = "ADJUSTMENT"


@dataclass
class Tariff:
    """Tariff definition. Immutable for the duration of a pass."""

    id: str
    name: str
    billing_mode: BillingMode
    price: Optional[Decimal] = None
    hourly_price: Optional[Decimal] = None
    notification_threshold: Optional[Decimal] = None
    is_active: bool = True

    def hourly_rate(self) -> Optional[Decimal]:
        """Hourly rate used for metered billing and session costing."""
        if self.billing_mode == BillingMode.METERED:
            return self.hourly_price if self.hourly_price is not None else self.price
        if self.price is None:
            return None
        # Periodic tariffs are prorated over a 30-day month.
        return self.price / Decimal(30 * 24)

    def monthly_equivalent(self) -> Decimal:
        """Approximate monthly price, used for forecasting."""
        if self.billing_mode == BillingMode.PREPAID_PERIODIC:
            return self.price or Decimal("0")
        rate = self.hourly_rate() or Decimal("0")
        return rate * Decimal(30 * 24)


@dataclass
class Account:
    """Subscriber account as seen by the billing engine."""

    id: str
    client_id: str
    tariff_id: str
    balance: Decimal
    status: AccountStatus = AccountStatus.ACTIVE
    block_threshold: Decimal = Decimal("0")
    account_number: str = ""
    last_monthly_charge_at: Optional[datetime] = None
    last_hourly_charge_at: Optional[datetime] = None

    # Device binding, only used to build provisioning commands
    device_id: Optional[str] = None
    mac_address: Optional[str] = None

    blocked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_below_threshold(self, balance: Optional[Decimal] = None) -> bool:
        value = self.balance if balance is None else balance
        return value < self.block_threshold


@dataclass(frozen=True)
class BillingPeriod:
    """A resolved billing period. `key` is the idempotency unit."""

    pass_type: PassType
    key: str
    start: datetime
    end: datetime


@dataclass
class ChargeRecord:
    """Ledger entry for one (account, pass, period)."""

    account_id: str
    pass_type: PassType
    period_key: str
    amount: Decimal
    outcome: ChargeOutcome
    reason: str = ""
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "accountId": self.account_id,
            "passType": self.pass_type.value,
            "periodKey": self.period_key,
            "amount": float(self.amount),
            "outcome": self.outcome.value,
            "reason": self.reason,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class PaymentRecord:
    """Manual credit or debit entry in the payment history."""

    account_id: str
    amount: Decimal
    source: PaymentSource
    comment: str = ""
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[str] = None


@dataclass
class ChargeApplication:
    """Result of an atomic charge write."""

    new_balance: Decimal
    already_applied: bool
    status: AccountStatus
    blocked: bool = False


@dataclass
class ChargeResult:
    """Outcome of processing one account in one pass."""

    account_id: str
    applied: bool = False
    amount: Decimal = Decimal("0")
    new_balance: Optional[Decimal] = None
    transition: StatusTransition = StatusTransition.NONE
    error: Optional[str] = None
    dry_run: bool = False


@dataclass
class BatchError:
    """Per-account failure entry of a batch report."""

    account_id: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"accountId": self.account_id, "error": self.error}


@dataclass
class BatchReport:
    """Summary of one charge pass execution."""

    pass_type: PassType
    period_key: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    total_amount: Decimal = Decimal("0")
    errors: List[BatchError] = field(default_factory=list)
    skipped: int = 0
    blocked: int = 0
    dry_run: bool = False

    @property
    def duration_ms(self) -> Optional[int]:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passType": self.pass_type.value,
            "periodKey": self.period_key,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "processed": self.processed,
            "totalAmount": float(self.total_amount),
            "errors": [e.to_dict() for e in self.errors],
            "skipped": self.skipped,
            "blocked": self.blocked,
            "dryRun": self.dry_run,
        }


@dataclass
class NotificationEntry:
    """A low-balance notification produced by the notifications pass."""

    account_id: str
    type: NotificationType
    balance: Decimal
    delivered: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "type": self.type.value,
            "balance": float(self.balance),
            "delivered": self.delivered,
        }


@dataclass
class NotificationReport:
    """Summary of one notifications pass."""

    period_key: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    notifications: List[NotificationEntry] = field(default_factory=list)
    errors: List[BatchError] = field(default_factory=list)

    @property
    def pass_type(self) -> PassType:
        return PassType.NOTIFICATIONS

    @property
    def sent(self) -> int:
        return len(self.notifications)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passType": PassType.NOTIFICATIONS.value,
            "periodKey": self.period_key,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "sent": self.sent,
            "notifications": [n.to_dict() for n in self.notifications],
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class SessionCost:
    """Ad-hoc session costing result."""

    duration_minutes: Decimal
    cost: Decimal
    hourly_rate: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": float(self.duration_minutes),
            "cost": float(self.cost),
            "hourlyRate": float(self.hourly_rate),
        }


@dataclass
class NotificationRequest:
    """Payload handed to the notification collaborator."""

    client_id: str
    account_id: str
    type: NotificationType
    message: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clientId": self.client_id,
            "accountId": self.account_id,
            "type": self.type.value,
            "message": self.message,
            "timestamp": self.created_at.isoformat(),
        }


@dataclass
class DeviceCommand:
    """Payload handed to the device command channel."""

    device_id: Optional[str]
    account_id: str
    mac_address: Optional[str]
    desired_state: DeviceState
    issued_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.desired_state.command_type,
            "deviceId": self.device_id,
            "accountId": self.account_id,
            "macAddress": self.mac_address,
            "desiredState": self.desired_state.value,
            "timestamp": self.issued_at.isoformat(),
        }


class LedgerStore(ABC):
    """Abstract ledger storage interface."""

    @abstractmethod
    async def get_account(self, account_id: str) -> Account:
        """Get account by ID. Raises AccountNotFoundError."""
        pass

    @abstractmethod
    async def get_tariff(self, tariff_id: str) -> Optional[Tariff]:
        """Get tariff by ID."""
        pass

    @abstractmethod
    async def list_accounts(
        self,
        status: Optional[AccountStatus] = None,
    ) -> List[Account]:
        """List accounts, optionally filtered by status."""
        pass

    @abstractmethod
    async def list_eligible_accounts(
        self,
        pass_type: PassType,
        period: BillingPeriod,
    ) -> List[Account]:
        """
        List ACTIVE accounts a pass must visit for the given period.

        Monthly: PREPAID_PERIODIC tariff (or a missing tariff, so the problem
        is reported) and no monthly charge anchored inside the period.
        Hourly: METERED tariff and no hourly charge anchored inside the period.
        Notifications: every ACTIVE account.
        """
        pass

    @abstractmethod
    async def get_charge_record(
        self,
        account_id: str,
        pass_type: PassType,
        period_key: str,
    ) -> Optional[ChargeRecord]:
        """Get the charge record for an idempotency key."""
        pass

    @abstractmethod
    async def apply_charge_atomic(
        self,
        account_id: str,
        amount: Decimal,
        period: BillingPeriod,
        reason: str = "",
    ) -> ChargeApplication:
        """
        Debit an account and write its charge record in one critical section.

        Returns `already_applied=True` without mutating anything when an
        applied record exists for (account, pass, period). Raises
        InsufficientFundsError when the balance does not cover the amount.
        An ACTIVE account whose new balance falls below its block threshold
        is set BLOCKED in the same write and reported with `blocked=True`.
        """
        pass

    @abstractmethod
    async def record_failed_charge(
        self,
        account_id: str,
        period: BillingPeriod,
        amount: Decimal,
        reason: str,
    ) -> None:
        """Persist a failed outcome unless the key is already applied."""
        pass

    @abstractmethod
    async def set_status(self, account_id: str, status: AccountStatus) -> Account:
        """Set account status."""
        pass

    @abstractmethod
    async def apply_payment_atomic(
        self,
        account_id: str,
        amount: Decimal,
        source: PaymentSource,
        comment: str = "",
    ) -> Account:
        """Apply a signed manual credit/debit and append a payment entry."""
        pass

    @abstractmethod
    async def mark_notified(
        self,
        account_id: str,
        notification_type: NotificationType,
        period_key: str,
    ) -> bool:
        """Create a notification marker. Returns False if it already existed."""
        pass

    @abstractmethod
    async def list_charge_records(
        self,
        start: datetime,
        end: datetime,
        outcome: Optional[ChargeOutcome] = ChargeOutcome.APPLIED,
    ) -> List[ChargeRecord]:
        """List charge records created within [start, end]."""
        pass


# Billing errors

class BillingError(Exception):
    """Base billing error."""

    def __init__(self, message: str, code: str = "billing_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class ConfigurationError(BillingError):
    """Bad tariff or threshold data. Fatal for the affected account only."""

    def __init__(self, message: str):
        super().__init__(message, "configuration_error")


class AlreadyAppliedError(BillingError):
    """The pass was already applied to the account for this period."""

    def __init__(self, account_id: str, pass_type: PassType, period_key: str):
        self.account_id = account_id
        self.pass_type = pass_type
        self.period_key = period_key
        super().__init__(
            f"{pass_type.value} charge for {period_key} already applied to account {account_id}",
            "already_applied",
        )


class StorageError(BillingError):
    """Ledger read/write failure."""

    def __init__(self, message: str):
        super().__init__(message, "storage_error")


class AccountNotFoundError(BillingError):
    """Account does not exist."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}", "account_not_found")


class InsufficientFundsError(BillingError):
    """Balance does not cover a pending charge."""

    def __init__(self, account_id: str, required: Decimal, available: Decimal):
        self.account_id = account_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds: required {required}, available {available}",
            "insufficient_funds",
        )


class InvalidPeriodError(BillingError):
    """Zero or negative elapsed time given to the calculator."""

    def __init__(self, message: str):
        super().__init__(message, "invalid_period")


class PolicyViolationError(BillingError):
    """Manual operation would break the block-threshold invariant."""

    def __init__(self, message: str):
        super().__init__(message, "policy_violation")


class BoundaryDeliveryError(BillingError):
    """Notification or device command could not be delivered."""

    def __init__(self, message: str, target: str):
        self.target = target
        super().__init__(message, "boundary_delivery_error")
