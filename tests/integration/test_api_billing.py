"""Integration tests for billing API."""

import pytest
from httpx import AsyncClient, ASGITransport

from ispbill_core.billing.base import AccountStatus

from conftest import BrokenLedgerStore, METERED_TARIFF, make_account, make_engine, seeded


AS_OF = "2024-01-15T13:20:00Z"


class TestPassEndpoints:
    """Tests for pass trigger endpoints."""

    @pytest.mark.asyncio
    async def test_process_monthly(self, client: AsyncClient, store):
        """Test process monthly."""
        store.add_account(make_account("a1", "1000"))
        store.add_account(make_account("a2", "100"))

        response = await client.post("/api/billing/process-monthly", json={"asOf": AS_OF})

        assert response.status_code == 200
        data = response.json()
        assert data["passType"] == "monthly"
        assert data["periodKey"] == "2024-01"
        assert data["processed"] == 1
        assert data["totalAmount"] == 500.0
        assert data["errors"][0]["accountId"] == "a2"

        again = await client.post("/api/billing/process-monthly", json={"asOf": AS_OF})
        assert again.json()["processed"] == 0

    @pytest.mark.asyncio
    async def test_process_without_body(self, client: AsyncClient, store):
        """Test process without body."""
        store.add_account(make_account("m1", "100", METERED_TARIFF.id))

        response = await client.post("/api/billing/process-hourly")

        assert response.status_code == 200
        assert response.json()["processed"] == 1

    @pytest.mark.asyncio
    async def test_check_notifications(self, client: AsyncClient, store):
        """Test check notifications."""
        store.add_account(make_account("a1", "60"))

        response = await client.post("/api/billing/check-notifications", json={"asOf": AS_OF})

        assert response.status_code == 200
        data = response.json()
        assert data["periodKey"] == "2024-01-15"
        assert data["sent"] == 1
        assert data["notifications"][0]["type"] == "LOW_BALANCE"

    @pytest.mark.asyncio
    async def test_run_tasks(self, client: AsyncClient, store):
        """Test run tasks."""
        store.add_account(make_account("a1", "1000"))

        response = await client.post(
            "/api/billing/run-tasks",
            json={"tasks": ["notifications", "monthly"], "asOf": AS_OF},
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert list(results) == ["monthly", "notifications"]
        assert results["monthly"]["processed"] == 1

    @pytest.mark.asyncio
    async def test_run_tasks_validation(self, client: AsyncClient):
        """Test run tasks validation."""
        empty = await client.post("/api/billing/run-tasks", json={"tasks": []})
        unknown = await client.post("/api/billing/run-tasks", json={"tasks": ["yearly"]})

        assert empty.status_code == 422
        assert unknown.status_code == 422

    @pytest.mark.asyncio
    async def test_dry_run(self, client: AsyncClient, store):
        """Test dry run."""
        store.add_account(make_account("a1", "1000"))

        response = await client.post("/api/billing/test", json={"tasks": ["monthly"], "asOf": AS_OF})

        assert response.status_code == 200
        monthly = response.json()["results"]["monthly"]
        assert monthly["dryRun"] is True
        assert monthly["processed"] == 1
        assert (await store.get_account("a1")).balance == 1000

    @pytest.mark.asyncio
    async def test_enumeration_failure(self):
        """Test enumeration failure."""
        from ispbill_core.api.app import AppConfig, create_app

        engine = make_engine(seeded(BrokenLedgerStore(RuntimeError("database is locked"))))
        app = create_app(AppConfig(docs_enabled=False), engine=engine)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/api/billing/process-monthly")
            errors = await client.get("/api/billing/errors")

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Billing processing failed"
        assert "database is locked" in body["details"]
        assert body["request_id"] == response.headers["X-Request-ID"]
        # Direct pass endpoints bypass the scheduler's error history
        assert errors.json() == {"errors": []}

    @pytest.mark.asyncio
    async def test_session_cost(self, client: AsyncClient, store):
        """Test session cost."""
        store.add_account(make_account("m1", "100", METERED_TARIFF.id))

        response = await client.post(
            "/api/billing/calculate-session-cost",
            json={
                "accountId": "m1",
                "startTime": "2024-01-15T10:00:00Z",
                "endTime": "2024-01-15T10:30:00Z",
            },
        )
        reversed_range = await client.post(
            "/api/billing/calculate-session-cost",
            json={
                "accountId": "m1",
                "startTime": "2024-01-15T10:30:00Z",
                "endTime": "2024-01-15T10:00:00Z",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"duration": 30.0, "cost": 2.5, "hourlyRate": 5.0}
        assert reversed_range.status_code == 400
        assert reversed_range.json()["code"] == "VAL_2006"


class TestManualOperations:
    """Tests for credit, debit, block and unblock endpoints."""

    @pytest.mark.asyncio
    async def test_debit_then_credit(self, client: AsyncClient, store, channel):
        """Test debit then credit."""
        store.add_account(make_account("a1", "150", block_threshold="100"))

        debit = await client.post("/api/billing/debit", json={"accountId": "a1", "amount": 60})
        refused = await client.post("/api/billing/accounts/a1/unblock")
        credit = await client.post(
            "/api/billing/credit",
            json={"accountId": "a1", "amount": "20", "source": "TOP_UP"},
        )

        assert debit.status_code == 200
        assert debit.json() == {
            "accountId": "a1",
            "balance": 90.0,
            "status": "BLOCKED",
            "transition": "blocked",
        }
        assert refused.status_code == 409
        assert "below threshold" in refused.json()["error"]
        assert credit.json()["status"] == "ACTIVE"
        assert credit.json()["transition"] == "unblocked"
        assert [c.to_dict()["type"] for c in channel.commands] == ["BLOCK_CLIENT", "UNBLOCK_CLIENT"]

    @pytest.mark.asyncio
    async def test_unknown_account(self, client: AsyncClient):
        """Test unknown account."""
        response = await client.post("/api/billing/debit", json={"accountId": "ghost", "amount": 1})

        assert response.status_code == 404
        body = response.json()
        assert body["code"] == "RES_3001"
        assert "ghost" in body["error"]
        assert body["request_id"]

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, client: AsyncClient, store):
        """Test amount must be positive."""
        store.add_account(make_account("a1", "150"))

        response = await client.post("/api/billing/debit", json={"accountId": "a1", "amount": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_block_and_top_up(self, client: AsyncClient, store):
        """Test block and top up."""
        store.add_account(make_account("a1", "5000", block_threshold="100"))
        store.add_account(make_account("a2", "5000"))

        blocked = await client.post("/api/billing/accounts/a1/block")
        top_up = await client.post("/api/billing/balance-topup", json={"accountId": "a1"})
        noop = await client.post("/api/billing/balance-topup", json={"accountId": "a2"})

        assert blocked.json()["status"] == "BLOCKED"
        assert top_up.json()["result"]["transition"] == "unblocked"
        assert noop.json() == {"result": None}
        assert (await store.get_account("a1")).status == AccountStatus.ACTIVE


class TestSchedulerEndpoints:
    """Tests for scheduler control."""

    @pytest.mark.asyncio
    async def test_status_start_stop(self, client: AsyncClient):
        """Test status start stop."""
        status = await client.get("/api/billing/scheduler/status")
        started = await client.post("/api/billing/scheduler/start")
        stopped = await client.post("/api/billing/scheduler/stop")

        assert status.status_code == 200
        assert status.json()["isRunning"] is False
        assert set(status.json()["timers"]) == {"monthly", "hourly"}
        assert started.json()["isRunning"] is True
        assert stopped.json()["isRunning"] is False

    @pytest.mark.asyncio
    async def test_errors_after_failed_run_tasks(self):
        """Test errors after failed run tasks."""
        from ispbill_core.api.app import AppConfig, create_app

        engine = make_engine(seeded(BrokenLedgerStore(RuntimeError("no route to host"))))
        app = create_app(AppConfig(docs_enabled=False), engine=engine)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/api/billing/run-tasks", json={"tasks": ["hourly"]})
            errors = await client.get("/api/billing/errors", params={"limit": 5})

        assert response.status_code == 500
        assert errors.json()["errors"][0]["passType"] == "hourly"


class TestReportEndpoints:
    """Tests for report endpoints."""

    @pytest.mark.asyncio
    async def test_reports(self, client: AsyncClient, store):
        """Test report endpoints after a monthly pass."""
        store.add_account(make_account("a1", "1000"))
        store.add_account(make_account("a2", "550", block_threshold="100"))
        await client.post("/api/billing/process-monthly")

        stats = await client.get("/api/billing/stats")
        charges = await client.get("/api/billing/reports/charges")
        blocked = await client.get("/api/billing/reports/blocked-accounts")
        low = await client.get("/api/billing/low-balance")
        forecast = await client.get("/api/billing/reports/revenue-forecast", params={"months": 2})
        next_charge = await client.get("/api/billing/next-charge/a1")

        assert stats.json()["totalCharges"] == 2
        assert charges.json()["summary"]["totalAmount"] == 1000.0
        assert blocked.json()["accounts"][0]["accountId"] == "a2"
        assert low.json()["total"] == 1
        assert len(forecast.json()["forecast"]) == 2
        assert next_charge.json()["daysUntilCharge"] >= 1

    @pytest.mark.asyncio
    async def test_report_validation(self, client: AsyncClient):
        """Test report validation."""
        forecast = await client.get("/api/billing/reports/revenue-forecast", params={"months": 0})
        missing = await client.get("/api/billing/next-charge/ghost")

        assert forecast.status_code == 422
        assert missing.status_code == 404


class TestHealth:
    """Tests for the health endpoint."""

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        """Test health endpoint without a database."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"] == "not_configured"
        assert data["checks"]["scheduler"] == "stopped"


class TestLifespan:
    """Tests for application startup and shutdown."""

    @pytest.mark.asyncio
    async def test_lifespan_configures_logging(self, monkeypatch, engine):
        """Test that app startup configures logging from the app config."""
        import ispbill_core.api.app as app_module

        calls = []
        monkeypatch.setattr(app_module, "configure_logging", lambda *args: calls.append(args))
        app = app_module.create_app(
            app_module.AppConfig(docs_enabled=False, log_level="debug", log_format="pretty"),
            engine=engine,
        )

        async with app.router.lifespan_context(app):
            assert calls == [("debug", "pretty", "ispbill-billing")]
