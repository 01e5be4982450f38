"""Unit tests for concurrent writes against the in-memory ledger store."""

import asyncio
import pytest
from decimal import Decimal

from ispbill_core.billing.base import AccountStatus, PassType, PaymentSource
from ispbill_core.billing.ledger import InMemoryLedgerStore
from ispbill_core.billing.pricing import resolve_period

from conftest import AS_OF, make_account, make_engine, seeded


MONTH = resolve_period(PassType.MONTHLY, AS_OF)


class YieldingLedgerStore(InMemoryLedgerStore):
    """Store that suspends between reading an account and writing it."""

    async def list_eligible_accounts(self, pass_type, period):
        accounts = await super().list_eligible_accounts(pass_type, period)
        await asyncio.sleep(0.01)
        return accounts

    async def get_charge_record(self, account_id, pass_type, period_key):
        record = await super().get_charge_record(account_id, pass_type, period_key)
        await asyncio.sleep(0)
        return record


class TestConcurrentWrites:
    """Tests for concurrent writers on one account."""

    @pytest.mark.asyncio
    async def test_concurrent_debits_lose_nothing(self, store):
        """Test that parallel debits on one account all land."""
        store.add_account(make_account("a1", "100"))

        await asyncio.gather(*(
            store.apply_payment_atomic("a1", Decimal("-10"), PaymentSource.MANUAL)
            for _ in range(10)
        ))

        assert (await store.get_account("a1")).balance == Decimal("0")
        assert len(store.payments_for("a1")) == 10

    @pytest.mark.asyncio
    async def test_charge_races_credits_and_debits(self, store):
        """Test a charge interleaved with credits and debits on one account."""
        store.add_account(make_account("a1", "1000"))

        writes = [store.apply_charge_atomic("a1", Decimal("500"), MONTH)]
        writes += [
            store.apply_payment_atomic("a1", Decimal("10"), PaymentSource.TOP_UP)
            for _ in range(5)
        ]
        writes += [
            store.apply_payment_atomic("a1", Decimal("-20"), PaymentSource.MANUAL)
            for _ in range(5)
        ]
        await asyncio.gather(*writes)

        assert (await store.get_account("a1")).balance == Decimal("450")

    @pytest.mark.asyncio
    async def test_same_key_applies_once(self, store):
        """Test that racing writers of one charge key debit exactly once."""
        store.add_account(make_account("a1", "1000"))

        results = await asyncio.gather(*(
            store.apply_charge_atomic("a1", Decimal("500"), MONTH)
            for _ in range(5)
        ))

        assert [r.already_applied for r in results].count(False) == 1
        assert (await store.get_account("a1")).balance == Decimal("500")

    @pytest.mark.asyncio
    async def test_charge_blocks_in_the_same_write(self, store):
        """Test that the debit and the block transition are written together."""
        store.add_account(make_account("a1", "550", block_threshold="100"))

        application = await store.apply_charge_atomic("a1", Decimal("500"), MONTH)

        account = await store.get_account("a1")
        assert application.blocked is True
        assert application.status == AccountStatus.BLOCKED
        assert account.status == AccountStatus.BLOCKED
        assert account.blocked_at is not None


class TestIndependentRunners:
    """Tests for separate runners sharing one ledger."""

    @pytest.mark.asyncio
    async def test_two_engines_charge_each_account_once(self):
        """Test that per-key idempotency holds without the runner's pass lock."""
        store = seeded(YieldingLedgerStore())
        for i in range(5):
            store.add_account(make_account(f"a{i}", "1000"))
        first = make_engine(store)
        second = make_engine(store)

        reports = await asyncio.gather(
            first.process_monthly(AS_OF),
            second.process_monthly(AS_OF),
        )

        assert sum(r.processed for r in reports) == 5
        assert sum(r.total_amount for r in reports) == Decimal("2500")
        assert all(r.errors == [] for r in reports)
        for i in range(5):
            assert (await store.get_account(f"a{i}")).balance == Decimal("500")
