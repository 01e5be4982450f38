"""
Billing Engine

Main billing engine that wires the cycle components together and exposes
the operations used by the API layer.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from .base import (
    BatchReport,
    ConfigurationError,
    LedgerStore,
    NotificationReport,
    PassType,
    PaymentSource,
    SessionCost,
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
from .ledger import InMemoryLedgerStore
from .payment import PaymentResult, PaymentService
from .pricing import ChargeCalculator, TariffResolver
from .processor import AccountProcessor
from .reports import BillingReports
from .runner import BatchRunner, PassReport
from .scheduler import BillingScheduler

if TYPE_CHECKING:
    from ..config import Settings


logger = logging.getLogger(__name__)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class BillingEngineConfig:
    """Configuration for the billing engine."""

    billing_timezone: str = "UTC"

    # Scheduler
    monthly_cron: str = "0 0 1 * *"
    hourly_cron: str = "0 * * * *"
    scheduler_enabled: bool = True
    scheduler_startup_delay_seconds: Optional[float] = 60.0

    # Batch processing
    batch_concurrency: int = 16
    notification_threshold: Decimal = Decimal("100")
    max_hourly_catchup_hours: int = 24

    # Boundary collaborators
    boundary_timeout_seconds: float = 5.0
    command_gateway_url: Optional[str] = None
    notification_gateway_url: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "BillingEngineConfig":
        return cls(
            billing_timezone=settings.billing_timezone,
            monthly_cron=settings.monthly_cron,
            hourly_cron=settings.hourly_cron,
            scheduler_enabled=settings.scheduler_enabled,
            scheduler_startup_delay_seconds=settings.scheduler_startup_delay_seconds,
            batch_concurrency=settings.batch_concurrency,
            notification_threshold=settings.notification_threshold,
            max_hourly_catchup_hours=settings.max_hourly_catchup_hours,
            boundary_timeout_seconds=settings.boundary_timeout_seconds,
            command_gateway_url=settings.command_gateway_url,
            notification_gateway_url=settings.notification_gateway_url,
        )


class BillingEngine:
    """
    Billing cycle engine.

    Orchestrates:
    - Monthly, hourly and notification passes
    - Timer and manual triggering
    - Manual credits, debits and status overrides
    - Session costing and reports
    """

    def __init__(
        self,
        config: BillingEngineConfig,
        store: Optional[LedgerStore] = None,
        notification_sender: Optional[NotificationSender] = None,
        command_channel: Optional[CommandChannel] = None,
    ):
        """Initialize billing engine."""
        self._config = config
        self._tz = ZoneInfo(config.billing_timezone)
        self._running = False

        self.store = store or InMemoryLedgerStore()
        self._notification_sender = notification_sender or self._default_sender()
        self._command_channel = command_channel or self._default_channel()

        self._init_components()

    def _default_sender(self) -> NotificationSender:
        if self._config.notification_gateway_url:
            return HttpNotificationSender(
                self._config.notification_gateway_url,
                timeout=self._config.boundary_timeout_seconds,
            )
        return NullNotificationSender()

    def _default_channel(self) -> CommandChannel:
        if self._config.command_gateway_url:
            return HttpCommandChannel(
                self._config.command_gateway_url,
                timeout=self._config.boundary_timeout_seconds,
            )
        return NullCommandChannel()

    def _init_components(self) -> None:
        """Initialize all billing components."""
        self.calculator = ChargeCalculator()
        self.resolver = TariffResolver(self.store)

        # Boundary
        self.notifier = NotificationTrigger(
            self._notification_sender,
            timeout=self._config.boundary_timeout_seconds,
        )
        self.emitter = CommandEmitter(
            self._command_channel,
            timeout=self._config.boundary_timeout_seconds,
        )

        # Cycle
        self.processor = AccountProcessor(
            self.store,
            self.resolver,
            self.calculator,
            self.notifier,
            self.emitter,
            notification_threshold=self._config.notification_threshold,
            max_hourly_catchup_hours=self._config.max_hourly_catchup_hours,
            billing_timezone=self._tz,
        )
        self.runner = BatchRunner(
            self.store,
            self.processor,
            self.resolver,
            concurrency=self._config.batch_concurrency,
            billing_timezone=self._tz,
        )
        self.scheduler = BillingScheduler(
            self.runner,
            monthly_cron=self._config.monthly_cron,
            hourly_cron=self._config.hourly_cron,
            timezone=self._config.billing_timezone,
            startup_delay_seconds=self._config.scheduler_startup_delay_seconds,
        )

        # Services
        self.payments = PaymentService(self.store, self.processor)
        self.reports = BillingReports(self.store, self._tz, self.runner.last_reports)

    async def start(self) -> None:
        """Start the billing engine."""
        if self._running:
            return

        self._running = True
        if self._config.scheduler_enabled:
            await self.scheduler.start()

        logger.info("Billing engine started")

    async def stop(self) -> None:
        """Stop the billing engine."""
        self._running = False
        await self.scheduler.stop()

        for collaborator in (self._notification_sender, self._command_channel):
            if isinstance(collaborator, (HttpNotificationSender, HttpCommandChannel)):
                await collaborator.close()

        logger.info("Billing engine stopped")

    # =========================================================================
    # Passes
    # =========================================================================

    async def process_monthly(self, as_of: Optional[datetime] = None) -> BatchReport:
        return await self.runner.run_pass(PassType.MONTHLY, as_of)

    async def process_hourly(self, as_of: Optional[datetime] = None) -> BatchReport:
        return await self.runner.run_pass(PassType.HOURLY, as_of)

    async def check_notifications(self, as_of: Optional[datetime] = None) -> NotificationReport:
        return await self.runner.run_notifications(as_of)

    async def run_tasks(
        self,
        pass_types: Sequence[PassType],
        as_of: Optional[datetime] = None,
    ) -> Dict[str, PassReport]:
        """Manual combined trigger, keyed by pass name."""
        return await self.scheduler.run_now(pass_types, as_of)

    async def test_billing(
        self,
        pass_types: Sequence[PassType] = (PassType.MONTHLY, PassType.HOURLY),
        as_of: Optional[datetime] = None,
    ) -> Dict[str, BatchReport]:
        """Dry run: would-be charges without ledger writes or boundary calls."""
        results: Dict[str, BatchReport] = {}
        for pass_type in (PassType.MONTHLY, PassType.HOURLY):
            if pass_type in pass_types:
                results[pass_type.value] = await self.runner.run_pass(
                    pass_type, as_of, dry_run=True
                )
        return results

    # =========================================================================
    # Session costing
    # =========================================================================

    async def calculate_session_cost(
        self,
        account_id: str,
        start: datetime,
        end: datetime,
    ) -> SessionCost:
        account = await self.store.get_account(account_id)
        tariff = await self.store.get_tariff(account.tariff_id)
        if tariff is None:
            raise ConfigurationError(
                f"Tariff {account.tariff_id} not found for account {account.id}"
            )
        return self.calculator.session_cost(tariff, to_naive_utc(start), to_naive_utc(end))

    # =========================================================================
    # Manual operations
    # =========================================================================

    async def credit(
        self,
        account_id: str,
        amount: Decimal,
        source: PaymentSource = PaymentSource.MANUAL,
        comment: str = "",
    ) -> PaymentResult:
        return await self.payments.credit(account_id, amount, source, comment)

    async def debit(self, account_id: str, amount: Decimal, comment: str = "") -> PaymentResult:
        return await self.payments.debit(account_id, amount, comment)

    async def block_account(self, account_id: str) -> PaymentResult:
        return await self.payments.block(account_id)

    async def unblock_account(self, account_id: str) -> PaymentResult:
        return await self.payments.unblock(account_id)

    async def handle_top_up(self, account_id: str) -> Optional[PaymentResult]:
        return await self.payments.handle_top_up(account_id)

    # =========================================================================
    # Scheduler
    # =========================================================================

    def get_scheduler_status(self) -> Dict[str, Any]:
        return self.scheduler.get_status()

    async def start_scheduler(self) -> Dict[str, Any]:
        await self.scheduler.start()
        return self.scheduler.get_status()

    async def stop_scheduler(self) -> Dict[str, Any]:
        await self.scheduler.stop()
        return self.scheduler.get_status()

    def get_errors(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self.scheduler.get_error_history(limit)


def create_billing_engine(
    store: Optional[LedgerStore] = None,
    notification_sender: Optional[NotificationSender] = None,
    command_channel: Optional[CommandChannel] = None,
    **kwargs,
) -> BillingEngine:
    """Create billing engine with configuration."""
    config = BillingEngineConfig(**kwargs)
    return BillingEngine(
        config,
        store=store,
        notification_sender=notification_sender,
        command_channel=command_channel,
    )
