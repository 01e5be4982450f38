"""Integration tests for the SQLAlchemy ledger store on SQLite."""

import asyncio
import pytest
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ispbill_core.billing.base import (
    AccountNotFoundError,
    AccountStatus,
    ChargeOutcome,
    InsufficientFundsError,
    NotificationType,
    PassType,
    PaymentSource,
)
from ispbill_core.billing.pricing import resolve_period
from ispbill_core.database.models import (
    ChargeRecordModel,
    DeviceCommandOutbox,
    NotificationOutbox,
)
from ispbill_core.database.outbox import OutboxCommandChannel, OutboxNotificationSender

from conftest import AS_OF, METERED_TARIFF, make_account, make_engine


MONTH = resolve_period(PassType.MONTHLY, AS_OF)


class TestChargeWrites:
    """Tests for atomic charge application."""

    @pytest.mark.asyncio
    async def test_apply_once(self, sql_store):
        """Test apply once."""
        await sql_store.add_account(make_account("a1", "1000"))

        first = await sql_store.apply_charge_atomic("a1", Decimal("500"), MONTH)
        second = await sql_store.apply_charge_atomic("a1", Decimal("500"), MONTH)

        account = await sql_store.get_account("a1")
        assert first.already_applied is False
        assert first.new_balance == Decimal("500")
        assert second.already_applied is True
        assert account.balance == Decimal("500")
        assert account.last_monthly_charge_at == MONTH.start

    @pytest.mark.asyncio
    async def test_insufficient_funds_changes_nothing(self, sql_store):
        """Test insufficient funds changes nothing."""
        await sql_store.add_account(make_account("a1", "100"))

        with pytest.raises(InsufficientFundsError):
            await sql_store.apply_charge_atomic("a1", Decimal("500"), MONTH)

        assert (await sql_store.get_account("a1")).balance == Decimal("100")
        assert await sql_store.get_charge_record("a1", PassType.MONTHLY, MONTH.key) is None

    @pytest.mark.asyncio
    async def test_failed_record_is_upgraded(self, sql_store):
        """Test failed record is upgraded."""
        await sql_store.add_account(make_account("a1", "100"))

        await sql_store.record_failed_charge("a1", MONTH, Decimal("500"), "Insufficient funds")
        failed = await sql_store.get_charge_record("a1", PassType.MONTHLY, MONTH.key)
        await sql_store.apply_payment_atomic("a1", Decimal("400"), PaymentSource.TOP_UP)
        await sql_store.apply_charge_atomic("a1", Decimal("500"), MONTH)
        applied = await sql_store.get_charge_record("a1", PassType.MONTHLY, MONTH.key)

        assert failed.outcome == ChargeOutcome.FAILED
        assert applied.outcome == ChargeOutcome.APPLIED
        assert applied.id == failed.id

    @pytest.mark.asyncio
    async def test_failed_record_never_overwrites_applied(self, sql_store):
        """Test failed record never overwrites applied."""
        await sql_store.add_account(make_account("a1", "1000"))

        await sql_store.apply_charge_atomic("a1", Decimal("500"), MONTH)
        await sql_store.record_failed_charge("a1", MONTH, Decimal("500"), "late failure")

        record = await sql_store.get_charge_record("a1", PassType.MONTHLY, MONTH.key)
        assert record.outcome == ChargeOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_unique_charge_key(self, sql_store, database):
        """Test unique charge key."""
        await sql_store.add_account(make_account("a1", "1000"))
        await sql_store.apply_charge_atomic("a1", Decimal("500"), MONTH)

        with pytest.raises(IntegrityError):
            async with database.session() as session:
                session.add(ChargeRecordModel(
                    account_id="a1",
                    pass_type="monthly",
                    period_key=MONTH.key,
                    amount=Decimal("-500"),
                    outcome="applied",
                ))

    @pytest.mark.asyncio
    async def test_unknown_account(self, sql_store):
        """Test unknown account."""
        with pytest.raises(AccountNotFoundError):
            await sql_store.apply_charge_atomic("ghost", Decimal("1"), MONTH)


class TestAccountWrites:
    """Tests for status and payment writes."""

    @pytest.mark.asyncio
    async def test_set_status(self, sql_store):
        """Test set status."""
        await sql_store.add_account(make_account("a1", "10"))

        blocked = await sql_store.set_status("a1", AccountStatus.BLOCKED)
        active = await sql_store.set_status("a1", AccountStatus.ACTIVE)

        assert blocked.status == AccountStatus.BLOCKED
        assert blocked.blocked_at is not None
        assert active.status == AccountStatus.ACTIVE
        assert active.blocked_at is None

    @pytest.mark.asyncio
    async def test_payments_are_relative(self, sql_store):
        """Test payments are relative."""
        await sql_store.add_account(make_account("a1", "100"))

        await sql_store.apply_payment_atomic("a1", Decimal("50.25"), PaymentSource.MANUAL, "cash")
        account = await sql_store.apply_payment_atomic("a1", Decimal("-20"), PaymentSource.ADJUSTMENT)

        payments = await sql_store.payments_for("a1")
        assert account.balance == Decimal("130.25")
        assert [p.amount for p in payments] == [Decimal("50.25"), Decimal("-20")]
        assert payments[0].comment == "cash"

    @pytest.mark.asyncio
    async def test_notification_marker(self, sql_store):
        """Test notification marker."""
        await sql_store.add_account(make_account("a1", "10"))

        first = await sql_store.mark_notified("a1", NotificationType.LOW_BALANCE, "2024-01-15")
        second = await sql_store.mark_notified("a1", NotificationType.LOW_BALANCE, "2024-01-15")
        other_day = await sql_store.mark_notified("a1", NotificationType.LOW_BALANCE, "2024-01-16")

        assert (first, second, other_day) == (True, False, True)


class TestEligibility:
    """Tests for account enumeration."""

    @pytest.mark.asyncio
    async def test_monthly_eligibility(self, sql_store):
        """Test monthly eligibility."""
        await sql_store.add_account(make_account("a1", "1000"))
        await sql_store.add_account(make_account(
            "a2", "1000", last_monthly_charge_at=datetime(2024, 1, 1)
        ))
        await sql_store.add_account(make_account(
            "a3", "1000", last_monthly_charge_at=datetime(2023, 12, 1)
        ))
        await sql_store.add_account(make_account("b1", "1000", status=AccountStatus.BLOCKED))
        await sql_store.add_account(make_account("m1", "1000", METERED_TARIFF.id))

        eligible = await sql_store.list_eligible_accounts(PassType.MONTHLY, MONTH)
        hourly = await sql_store.list_eligible_accounts(
            PassType.HOURLY, resolve_period(PassType.HOURLY, AS_OF)
        )

        assert sorted(a.id for a in eligible) == ["a1", "a3"]
        assert [a.id for a in hourly] == ["m1"]


class TestEngineOnSql:
    """End-to-end passes through the SQL store."""

    @pytest.mark.asyncio
    async def test_monthly_pass(self, sql_store):
        """Test monthly pass."""
        engine = make_engine(sql_store, batch_concurrency=1)
        await sql_store.add_account(make_account("a1", "1000"))
        await sql_store.add_account(make_account("a2", "100"))
        await sql_store.add_account(make_account("a3", "550", block_threshold="100"))

        report = await engine.process_monthly(AS_OF)
        again = await engine.process_monthly(AS_OF)

        assert report.processed == 2
        assert report.blocked == 1
        assert [e.account_id for e in report.errors] == ["a2"]
        assert again.processed == 0
        assert (await sql_store.get_account("a1")).balance == Decimal("500")
        assert (await sql_store.get_account("a3")).status == AccountStatus.BLOCKED

        records = await sql_store.list_charge_records(datetime(2000, 1, 1), datetime(2100, 1, 1), None)
        assert sorted((r.account_id, r.outcome.value) for r in records) == [
            ("a1", "applied"),
            ("a2", "failed"),
            ("a3", "applied"),
        ]

    @pytest.mark.asyncio
    async def test_outbox_collaborators(self, sql_store, database):
        """Test outbox collaborators."""
        engine = make_engine(
            sql_store,
            OutboxNotificationSender(database),
            OutboxCommandChannel(database),
            batch_concurrency=1,
        )
        await sql_store.add_account(make_account("a1", "150", block_threshold="100"))

        result = await engine.debit("a1", Decimal("60"))

        assert result.account.balance == Decimal("90")
        assert result.account.status == AccountStatus.BLOCKED
        async with database.session() as session:
            notifications = (await session.execute(select(NotificationOutbox))).scalars().all()
            commands = (await session.execute(select(DeviceCommandOutbox))).scalars().all()
            total = await session.scalar(select(func.count()).select_from(ChargeRecordModel))

        assert [n.type for n in notifications] == ["INSUFFICIENT_FUNDS"]
        assert notifications[0].status == "PENDING"
        assert [c.type for c in commands] == ["BLOCK_CLIENT"]
        assert commands[0].payload["accountId"] == "a1"
        assert total == 0


class TestAtomicBlock:
    """Tests for the block transition written with the debit."""

    @pytest.mark.asyncio
    async def test_charge_blocks_in_the_same_transaction(self, sql_store):
        """Test that a debit below threshold commits the BLOCKED status with it."""
        await sql_store.add_account(make_account("a1", "550", block_threshold="100"))

        application = await sql_store.apply_charge_atomic("a1", Decimal("500"), MONTH)

        account = await sql_store.get_account("a1")
        assert application.blocked is True
        assert application.status == AccountStatus.BLOCKED
        assert account.status == AccountStatus.BLOCKED
        assert account.blocked_at is not None
        assert account.balance == Decimal("50")

    @pytest.mark.asyncio
    async def test_backdated_hour_keeps_later_anchor(self, sql_store):
        """Test that an earlier hourly charge never moves the anchor back."""
        await sql_store.add_account(make_account("m1", "100", METERED_TARIFF.id))
        later = resolve_period(PassType.HOURLY, datetime(2024, 1, 15, 16, 10))
        earlier = resolve_period(PassType.HOURLY, datetime(2024, 1, 15, 14, 30))

        await sql_store.apply_charge_atomic("m1", Decimal("5"), later)
        await sql_store.apply_charge_atomic("m1", Decimal("5"), earlier)

        account = await sql_store.get_account("m1")
        assert account.last_hourly_charge_at == datetime(2024, 1, 15, 16, 0)
        assert account.balance == Decimal("90")


class TestConcurrentWriters:
    """Tests for concurrent writers on one account."""

    @pytest.mark.asyncio
    async def test_concurrent_debits_lose_nothing(self, sql_store):
        """Test that parallel debits on one account all land."""
        await sql_store.add_account(make_account("a1", "100"))

        await asyncio.gather(*(
            sql_store.apply_payment_atomic("a1", Decimal("-10"), PaymentSource.MANUAL)
            for _ in range(5)
        ))

        assert (await sql_store.get_account("a1")).balance == Decimal("50")
        assert len(await sql_store.payments_for("a1")) == 5

    @pytest.mark.asyncio
    async def test_charge_races_credits(self, sql_store):
        """Test a charge interleaved with credits on one account."""
        await sql_store.add_account(make_account("a1", "1000"))

        await asyncio.gather(
            sql_store.apply_charge_atomic("a1", Decimal("500"), MONTH),
            sql_store.apply_payment_atomic("a1", Decimal("25"), PaymentSource.TOP_UP),
            sql_store.apply_payment_atomic("a1", Decimal("-40"), PaymentSource.MANUAL),
        )

        assert (await sql_store.get_account("a1")).balance == Decimal("485")

    @pytest.mark.asyncio
    async def test_same_key_applies_once(self, sql_store):
        """Test that racing writers of one charge key debit exactly once."""
        await sql_store.add_account(make_account("a1", "1000"))

        results = await asyncio.gather(*(
            sql_store.apply_charge_atomic("a1", Decimal("500"), MONTH)
            for _ in range(3)
        ))

        assert [r.already_applied for r in results].count(False) == 1
        assert (await sql_store.get_account("a1")).balance == Decimal("500")


class TestDatabaseManager:
    """Tests for engine setup."""

    def test_async_driver_urls(self):
        """Test that plain driver URLs are swapped for async drivers."""
        from ispbill_core.database.base import async_database_url

        assert async_database_url("sqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"
        assert (
            async_database_url("postgresql://u:p@db/billing")
            == "postgresql+asyncpg://u:p@db/billing"
        )
        assert async_database_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"

    @pytest.mark.asyncio
    async def test_health_check(self, database):
        """Test connectivity check against the test database."""
        assert await database.health_check() is True
