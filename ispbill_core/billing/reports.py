"""
Billing Reports

Read-only views over the ledger: statistics, charge listings, blocked and
low-balance accounts, next-charge estimates and a revenue forecast.
"""

import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from .base import (
    AccountStatus,
    BillingMode,
    LedgerStore,
    PassType,
    Tariff,
    utcnow,
)
from .pricing import period_key_for, resolve_period, round_currency


class BillingReports:
    """Reporting queries for dashboards and the reports API."""

    def __init__(
        self,
        store: LedgerStore,
        billing_timezone: ZoneInfo = ZoneInfo("UTC"),
        last_reports: Optional[Dict[PassType, Any]] = None,
    ):
        self._store = store
        self._tz = billing_timezone
        self._last_reports = last_reports if last_reports is not None else {}

    async def _tariffs(self) -> Dict[str, Optional[Tariff]]:
        cache: Dict[str, Optional[Tariff]] = {}
        for account in await self._store.list_accounts():
            if account.tariff_id not in cache:
                cache[account.tariff_id] = await self._store.get_tariff(account.tariff_id)
        return cache

    async def statistics(self, days: int = 30) -> Dict[str, Any]:
        """Charge totals over the last `days` days plus account health."""
        now = utcnow()
        charges = await self._store.list_charge_records(now - timedelta(days=days), now)
        accounts = await self._store.list_accounts()
        blocked = [a for a in accounts if a.status == AccountStatus.BLOCKED]

        total = sum((abs(c.amount) for c in charges), Decimal("0"))
        average = (
            round_currency(sum((a.balance for a in accounts), Decimal("0")) / len(accounts))
            if accounts else Decimal("0")
        )

        return {
            "days": days,
            "totalCharges": len(charges),
            "totalAmount": float(total),
            "blockedAccounts": len(blocked),
            "averageBalance": float(average),
            "recentActivity": [
                self._last_reports[p].to_dict()
                for p in PassType
                if p in self._last_reports
            ],
        }

    async def charges_report(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """Applied charges created within [start, end]."""
        records = await self._store.list_charge_records(start, end)
        amounts = [abs(r.amount) for r in records]
        total = sum(amounts, Decimal("0"))

        return {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "summary": {
                "totalCharges": len(records),
                "totalAmount": float(total),
                "totalAccounts": len({r.account_id for r in records}),
                "averageCharge": float(round_currency(total / len(records))) if records else 0.0,
            },
            "charges": [
                {
                    "accountId": r.account_id,
                    "amount": float(abs(r.amount)),
                    "date": r.created_at.isoformat(),
                    "type": r.pass_type.value,
                    "periodKey": r.period_key,
                }
                for r in records
            ],
        }

    async def blocked_accounts(self) -> Dict[str, Any]:
        """Accounts currently BLOCKED."""
        accounts = await self._store.list_accounts(AccountStatus.BLOCKED)
        return {
            "total": len(accounts),
            "accounts": [
                {
                    "accountId": a.id,
                    "accountNumber": a.account_number,
                    "clientId": a.client_id,
                    "balance": float(a.balance),
                    "blockThreshold": float(a.block_threshold),
                    "blockedAt": a.blocked_at.isoformat() if a.blocked_at else None,
                    "reason": "Balance below threshold" if a.is_below_threshold() else "Manual block",
                }
                for a in accounts
            ],
        }

    async def low_balance_accounts(self) -> List[Dict[str, Any]]:
        """ACTIVE accounts whose balance is at most max(tariff price, block threshold)."""
        tariffs = await self._tariffs()
        result = []
        for account in await self._store.list_accounts(AccountStatus.ACTIVE):
            tariff = tariffs.get(account.tariff_id)
            price = tariff.price if tariff and tariff.price is not None else Decimal("0")
            threshold = max(price, account.block_threshold)
            if account.balance <= threshold:
                result.append({
                    "accountId": account.id,
                    "accountNumber": account.account_number,
                    "clientId": account.client_id,
                    "balance": float(account.balance),
                    "threshold": float(threshold),
                })
        return result

    async def next_charge_info(self, account_id: str) -> Dict[str, Any]:
        """When the account will be charged next, and how much."""
        account = await self._store.get_account(account_id)
        tariff = await self._store.get_tariff(account.tariff_id)
        now = utcnow()

        if tariff is None:
            return {"nextChargeDate": None, "nextChargeAmount": 0.0, "daysUntilCharge": None}

        if tariff.billing_mode == BillingMode.METERED:
            period = resolve_period(PassType.HOURLY, now, self._tz)
            return {
                "nextChargeDate": period.end.isoformat(),
                "nextChargeAmount": float(round_currency(tariff.hourly_rate() or Decimal("0"))),
                "daysUntilCharge": None,
            }

        period = resolve_period(PassType.MONTHLY, now, self._tz)
        if period_key_for(PassType.MONTHLY, account.last_monthly_charge_at, self._tz) == period.key:
            next_date = period.end
        else:
            # Current month not charged yet, due now
            next_date = now
        days = max(0, math.ceil((next_date - now).total_seconds() / 86400))

        return {
            "nextChargeDate": next_date.isoformat(),
            "nextChargeAmount": float(round_currency(tariff.price or Decimal("0"))),
            "daysUntilCharge": days,
        }

    async def revenue_forecast(self, months: int = 3) -> Dict[str, Any]:
        """
        Flat projection of monthly revenue from current ACTIVE accounts.

        Each future month is projected with the current tariff mix; growth is
        not modelled, so `growthRate` is 0.
        """
        if months < 1:
            raise ValueError("months must be >= 1")

        tariffs = await self._tariffs()
        active = await self._store.list_accounts(AccountStatus.ACTIVE)
        monthly = sum(
            (tariffs[a.tariff_id].monthly_equivalent() for a in active if tariffs.get(a.tariff_id)),
            Decimal("0"),
        )
        monthly = round_currency(monthly)
        arpu = round_currency(monthly / len(active)) if active else Decimal("0")

        forecast = []
        period = resolve_period(PassType.MONTHLY, utcnow(), self._tz)
        for _ in range(months):
            period = resolve_period(PassType.MONTHLY, period.end, self._tz)
            forecast.append({
                "month": period.key,
                "projectedRevenue": float(monthly),
                "activeAccounts": len(active),
                "averageArpu": float(arpu),
            })

        return {
            "forecast": forecast,
            "summary": {
                "totalProjectedRevenue": float(monthly * months),
                "growthRate": 0.0,
            },
        }
