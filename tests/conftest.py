"""Shared pytest fixtures for testing."""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, List

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

from ispbill_core.billing.base import (
    Account,
    AccountStatus,
    BillingMode,
    BoundaryDeliveryError,
    DeviceCommand,
    NotificationRequest,
    Tariff,
)
from ispbill_core.billing.boundary import CommandChannel, NotificationSender
from ispbill_core.billing.engine import BillingEngine, BillingEngineConfig
from ispbill_core.billing.ledger import InMemoryLedgerStore


# Mid-month, mid-hour reference point used by most pass tests.
AS_OF = datetime(2024, 1, 15, 13, 20)


# =============================================================================
# Boundary Fakes
# =============================================================================


class RecordingSender(NotificationSender):
    """Notification sender that keeps every request."""

    def __init__(self):
        self.sent: List[NotificationRequest] = []

    async def send(self, request: NotificationRequest) -> None:
        self.sent.append(request)


class RecordingChannel(CommandChannel):
    """Command channel that keeps every command."""

    def __init__(self):
        self.commands: List[DeviceCommand] = []

    async def send(self, command: DeviceCommand) -> None:
        self.commands.append(command)


class FailingSender(NotificationSender):
    def __init__(self):
        self.attempts = 0

    async def send(self, request: NotificationRequest) -> None:
        self.attempts += 1
        raise BoundaryDeliveryError("gateway unavailable", "notifications")


class FailingChannel(CommandChannel):
    def __init__(self):
        self.attempts = 0

    async def send(self, command: DeviceCommand) -> None:
        self.attempts += 1
        raise BoundaryDeliveryError("gateway unavailable", "mikrotik-commands")


class HangingChannel(CommandChannel):
    """Command channel that never answers."""

    def __init__(self):
        self.attempts = 0

    async def send(self, command: DeviceCommand) -> None:
        self.attempts += 1
        await asyncio.Event().wait()


# =============================================================================
# Test Data
# =============================================================================


MONTHLY_TARIFF = Tariff(
    id="tariff-monthly",
    name="Home 100",
    billing_mode=BillingMode.PREPAID_PERIODIC,
    price=Decimal("500"),
)

METERED_TARIFF = Tariff(
    id="tariff-metered",
    name="Pay as you go",
    billing_mode=BillingMode.METERED,
    hourly_price=Decimal("5"),
)


def make_account(
    account_id: str,
    balance: str,
    tariff_id: str = MONTHLY_TARIFF.id,
    block_threshold: str = "0",
    status: AccountStatus = AccountStatus.ACTIVE,
    **kwargs,
) -> Account:
    """Build an account with string money values."""
    return Account(
        id=account_id,
        client_id=f"client-{account_id}",
        tariff_id=tariff_id,
        balance=Decimal(balance),
        status=status,
        block_threshold=Decimal(block_threshold),
        account_number=f"N-{account_id}",
        device_id=f"router-{account_id}",
        mac_address="AA:BB:CC:DD:EE:FF",
        **kwargs,
    )


class BrokenLedgerStore(InMemoryLedgerStore):
    """Store whose account listing fails."""

    def __init__(self, error: Exception):
        super().__init__()
        self.error = error

    async def list_eligible_accounts(self, pass_type, period):
        raise self.error


def seeded(store: InMemoryLedgerStore) -> InMemoryLedgerStore:
    """Add the test tariffs to a store."""
    store.add_tariff(MONTHLY_TARIFF)
    store.add_tariff(METERED_TARIFF)
    return store


def make_engine(store, sender=None, channel=None, **overrides) -> BillingEngine:
    """Engine with the scheduler disabled and short boundary timeouts."""
    values = dict(
        billing_timezone="UTC",
        scheduler_enabled=False,
        scheduler_startup_delay_seconds=None,
        boundary_timeout_seconds=0.2,
    )
    values.update(overrides)
    return BillingEngine(
        BillingEngineConfig(**values),
        store=store,
        notification_sender=sender or RecordingSender(),
        command_channel=channel or RecordingChannel(),
    )


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def store() -> InMemoryLedgerStore:
    """In-memory store seeded with one monthly and one metered tariff."""
    return seeded(InMemoryLedgerStore())


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def engine(store, sender, channel) -> BillingEngine:
    return make_engine(store, sender, channel)


# =============================================================================
# API Fixtures
# =============================================================================


@pytest.fixture
def app(engine: BillingEngine) -> FastAPI:
    """Create test FastAPI application around the in-memory engine."""
    from ispbill_core.api.app import create_app, AppConfig

    config = AppConfig(
        docs_enabled=False,
        scheduler_enabled=False,
    )
    return create_app(config, engine=engine)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def database(tmp_path):
    """SQLite database with the billing schema."""
    from ispbill_core.database.base import DatabaseManager

    db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await db.create_all()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def sql_store(database):
    """SQL ledger store seeded with the test tariffs."""
    from ispbill_core.database.ledger import SQLAlchemyLedgerStore

    store = SQLAlchemyLedgerStore(database)
    await store.add_tariff(MONTHLY_TARIFF)
    await store.add_tariff(METERED_TARIFF)
    return store
