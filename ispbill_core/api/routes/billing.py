"""
Billing API Routes

Provides REST API endpoints for the billing cycle: pass triggers, session
costing, manual ledger operations, scheduler control and reports.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from ...billing.base import PassType, PaymentSource, utcnow
from ...billing.engine import BillingEngine, to_naive_utc
from ...billing.reports import BillingReports
from ..dependencies import get_engine, get_reports


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


# =============================================================================
# Request Models
# =============================================================================


class CamelModel(BaseModel):
    """Request model accepting camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True)


class PassRequest(CamelModel):
    """Optional pass parameters."""
    as_of: Optional[datetime] = Field(default=None, alias="asOf")


class RunTasksRequest(CamelModel):
    """Combined manual trigger."""
    tasks: List[PassType] = Field(..., min_length=1)
    as_of: Optional[datetime] = Field(default=None, alias="asOf")


class DryRunRequest(CamelModel):
    """Dry run of the charge passes."""
    tasks: List[PassType] = Field(default_factory=lambda: [PassType.MONTHLY, PassType.HOURLY])
    as_of: Optional[datetime] = Field(default=None, alias="asOf")


class SessionCostRequest(CamelModel):
    """Ad-hoc session costing."""
    account_id: str = Field(..., alias="accountId")
    start_time: datetime = Field(..., alias="startTime")
    end_time: datetime = Field(..., alias="endTime")


class DebitRequest(CamelModel):
    """Manual debit."""
    account_id: str = Field(..., alias="accountId")
    amount: Decimal = Field(..., gt=0)
    comment: str = ""


class CreditRequest(CamelModel):
    """Manual credit or top-up."""
    account_id: str = Field(..., alias="accountId")
    amount: Decimal = Field(..., gt=0)
    comment: str = ""
    source: PaymentSource = PaymentSource.MANUAL


class TopUpRequest(CamelModel):
    """Notification of an external payment."""
    account_id: str = Field(..., alias="accountId")


def _as_of(body: Optional[PassRequest]) -> Optional[datetime]:
    if body is None or body.as_of is None:
        return None
    return to_naive_utc(body.as_of)


# =============================================================================
# Pass Triggers
# =============================================================================


@router.post(
    "/process-monthly",
    summary="Run Monthly Pass",
    description="Charge PREPAID_PERIODIC accounts for the current month.",
)
async def process_monthly(
    body: Optional[PassRequest] = None,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    report = await engine.process_monthly(_as_of(body))
    return report.to_dict()


@router.post(
    "/process-hourly",
    summary="Run Hourly Pass",
    description="Charge METERED accounts for the current hour.",
)
async def process_hourly(
    body: Optional[PassRequest] = None,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    report = await engine.process_hourly(_as_of(body))
    return report.to_dict()


@router.post(
    "/check-notifications",
    summary="Run Notifications Pass",
    description="Send low-balance warnings to ACTIVE accounts.",
)
async def check_notifications(
    body: Optional[PassRequest] = None,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    report = await engine.check_notifications(_as_of(body))
    return report.to_dict()


@router.post(
    "/run-tasks",
    summary="Run Passes",
    description="Run any subset of monthly, hourly and notifications.",
)
async def run_tasks(
    body: RunTasksRequest,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    as_of = to_naive_utc(body.as_of) if body.as_of else None
    results = await engine.run_tasks(body.tasks, as_of)
    return {"results": {name: report.to_dict() for name, report in results.items()}}


@router.post(
    "/test",
    summary="Dry Run",
    description="Compute would-be charges without writing to the ledger.",
)
async def test_billing(
    body: Optional[DryRunRequest] = None,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    body = body or DryRunRequest()
    as_of = to_naive_utc(body.as_of) if body.as_of else None
    results = await engine.test_billing(body.tasks, as_of)
    return {"results": {name: report.to_dict() for name, report in results.items()}}


@router.post(
    "/calculate-session-cost",
    summary="Calculate Session Cost",
)
async def calculate_session_cost(
    body: SessionCostRequest,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    cost = await engine.calculate_session_cost(body.account_id, body.start_time, body.end_time)
    return cost.to_dict()


# =============================================================================
# Manual Operations
# =============================================================================


@router.post("/debit", summary="Manual Debit")
async def debit(
    body: DebitRequest,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    result = await engine.debit(body.account_id, body.amount, body.comment)
    return result.to_dict()


@router.post("/credit", summary="Manual Credit")
async def credit(
    body: CreditRequest,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    result = await engine.credit(body.account_id, body.amount, body.source, body.comment)
    return result.to_dict()


@router.post(
    "/balance-topup",
    summary="Handle Balance Top-Up",
    description="Re-evaluate a BLOCKED account after an external payment.",
)
async def balance_topup(
    body: TopUpRequest,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    result = await engine.handle_top_up(body.account_id)
    return {"result": result.to_dict() if result else None}


@router.post("/accounts/{account_id}/block", summary="Block Account")
async def block_account(
    account_id: str,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    result = await engine.block_account(account_id)
    logger.info(f"Manual block requested for account {account_id}")
    return result.to_dict()


@router.post("/accounts/{account_id}/unblock", summary="Unblock Account")
async def unblock_account(
    account_id: str,
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    result = await engine.unblock_account(account_id)
    logger.info(f"Manual unblock requested for account {account_id}")
    return result.to_dict()


# =============================================================================
# Scheduler
# =============================================================================


@router.get("/scheduler/status", summary="Scheduler Status")
async def scheduler_status(engine: BillingEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.get_scheduler_status()


@router.post("/scheduler/start", summary="Start Scheduler")
async def start_scheduler(engine: BillingEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.start_scheduler()


@router.post("/scheduler/stop", summary="Stop Scheduler")
async def stop_scheduler(engine: BillingEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await engine.stop_scheduler()


@router.get("/errors", summary="Pass Error History")
async def billing_errors(
    limit: int = Query(10, ge=1, le=100),
    engine: BillingEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return {"errors": engine.get_errors(limit)}


# =============================================================================
# Reports
# =============================================================================


@router.get("/stats", summary="Billing Statistics")
async def billing_stats(
    days: int = Query(30, ge=1, le=366),
    reports: BillingReports = Depends(get_reports),
) -> Dict[str, Any]:
    return await reports.statistics(days)


@router.get("/next-charge/{account_id}", summary="Next Charge")
async def next_charge(
    account_id: str,
    reports: BillingReports = Depends(get_reports),
) -> Dict[str, Any]:
    return await reports.next_charge_info(account_id)


@router.get("/low-balance", summary="Low Balance Accounts")
async def low_balance(reports: BillingReports = Depends(get_reports)) -> Dict[str, Any]:
    accounts = await reports.low_balance_accounts()
    return {"total": len(accounts), "accounts": accounts}


@router.get("/reports/charges", summary="Charges Report")
async def charges_report(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    reports: BillingReports = Depends(get_reports),
) -> Dict[str, Any]:
    end = to_naive_utc(end_date) if end_date else utcnow()
    start = to_naive_utc(start_date) if start_date else end - timedelta(days=30)
    return await reports.charges_report(start, end)


@router.get("/reports/blocked-accounts", summary="Blocked Accounts Report")
async def blocked_accounts_report(reports: BillingReports = Depends(get_reports)) -> Dict[str, Any]:
    return await reports.blocked_accounts()


@router.get("/reports/revenue-forecast", summary="Revenue Forecast")
async def revenue_forecast(
    months: int = Query(3, ge=1, le=24),
    reports: BillingReports = Depends(get_reports),
) -> Dict[str, Any]:
    return await reports.revenue_forecast(months)
