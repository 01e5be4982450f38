"""
Billing Module

Billing cycle engine for subscriber accounts: periodic and metered charges,
block/unblock policy, notifications and device commands.

Example usage:

    from ispbill_core.billing import create_billing_engine, PassType

    engine = create_billing_engine(billing_timezone="Europe/Moscow")
    await engine.start()

    report = await engine.process_monthly()
    print(report.processed, report.total_amount, report.errors)

    results = await engine.run_tasks([PassType.HOURLY, PassType.NOTIFICATIONS])

    await engine.stop()
"""

from .base import (
    Account,
    AccountNotFoundError,
    AccountStatus,
    AlreadyAppliedError,
    BatchError,
    BatchReport,
    BillingError,
    BillingMode,
    BillingPeriod,
    BoundaryDeliveryError,
    ChargeApplication,
    ChargeOutcome,
    ChargeRecord,
    ChargeResult,
    ConfigurationError,
    DeviceCommand,
    DeviceState,
    InsufficientFundsError,
    InvalidPeriodError,
    LedgerStore,
    NotificationEntry,
    NotificationReport,
    NotificationRequest,
    NotificationType,
    PassType,
    PaymentRecord,
    PaymentSource,
    PolicyViolationError,
    SessionCost,
    StatusTransition,
    StorageError,
    Tariff,
    utcnow,
)
from .boundary import (
    CommandChannel,
    CommandEmitter,
    HttpCommandChannel,
    HttpNotificationSender,
    NotificationSender,
    NotificationTrigger,
    NullCommandChannel,
    NullNotificationSender,
)
from .engine import BillingEngine, BillingEngineConfig, create_billing_engine
from .ledger import InMemoryLedgerStore
from .payment import PaymentResult, PaymentService
from .pricing import (
    ChargeCalculator,
    TariffResolver,
    resolve_period,
    round_currency,
)
from .processor import AccountProcessor
from .reports import BillingReports
from .runner import BatchRunner
from .scheduler import BillingScheduler

__all__ = [
    # Types
    "Account",
    "AccountStatus",
    "BatchError",
    "BatchReport",
    "BillingMode",
    "BillingPeriod",
    "ChargeApplication",
    "ChargeOutcome",
    "ChargeRecord",
    "ChargeResult",
    "DeviceCommand",
    "DeviceState",
    "NotificationEntry",
    "NotificationReport",
    "NotificationRequest",
    "NotificationType",
    "PassType",
    "PaymentRecord",
    "PaymentSource",
    "SessionCost",
    "StatusTransition",
    "Tariff",
    "utcnow",
    # Errors
    "AccountNotFoundError",
    "AlreadyAppliedError",
    "BillingError",
    "BoundaryDeliveryError",
    "ConfigurationError",
    "InsufficientFundsError",
    "InvalidPeriodError",
    "PolicyViolationError",
    "StorageError",
    # Storage
    "LedgerStore",
    "InMemoryLedgerStore",
    # Pricing
    "ChargeCalculator",
    "TariffResolver",
    "resolve_period",
    "round_currency",
    # Boundary
    "CommandChannel",
    "CommandEmitter",
    "HttpCommandChannel",
    "HttpNotificationSender",
    "NotificationSender",
    "NotificationTrigger",
    "NullCommandChannel",
    "NullNotificationSender",
    # Cycle
    "AccountProcessor",
    "BatchRunner",
    "BillingScheduler",
    # Services
    "PaymentResult",
    "PaymentService",
    "BillingReports",
    # Engine
    "BillingEngine",
    "BillingEngineConfig",
    "create_billing_engine",
]
