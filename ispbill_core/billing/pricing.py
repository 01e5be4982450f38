"""
Pricing

Tariff resolution, period resolution and charge calculation.

Money is rounded to the smallest currency unit (0.01) with ROUND_HALF_UP:
0.005 becomes 0.01, 2.5 stays 2.50.
"""

from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from .base import (
    Account,
    BillingMode,
    BillingPeriod,
    ConfigurationError,
    InvalidPeriodError,
    LedgerStore,
    PassType,
    SessionCost,
    Tariff,
)


CURRENCY_QUANTUM = Decimal("0.01")
MINUTES_PER_HOUR = Decimal(60)


def round_currency(amount: Decimal) -> Decimal:
    """Round to the smallest currency unit, half-up."""
    return amount.quantize(CURRENCY_QUANTUM, rounding=ROUND_HALF_UP)


def elapsed_minutes(start: datetime, end: datetime) -> Decimal:
    """Exact elapsed minutes between two datetimes."""
    delta = end - start
    seconds = Decimal(delta.days * 86400 + delta.seconds) + Decimal(delta.microseconds) / Decimal(1_000_000)
    return seconds / MINUTES_PER_HOUR


# =============================================================================
# Periods
# =============================================================================


def _to_local(value: datetime, tz: ZoneInfo) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def _to_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def resolve_period(
    pass_type: PassType,
    as_of: datetime,
    tz: ZoneInfo = ZoneInfo("UTC"),
) -> BillingPeriod:
    """
    Resolve the billing period containing `as_of`.

    Keys are computed in the billing timezone:
    monthly "2024-01", hourly "2024-01-15T13", notifications "2024-01-15".
    Start and end are naive UTC.
    """
    local = _to_local(as_of, tz)

    if pass_type == PassType.MONTHLY:
        start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        key = start.strftime("%Y-%m")
    elif pass_type == PassType.HOURLY:
        start = local.replace(minute=0, second=0, microsecond=0)
        end = start + timedelta(hours=1)
        key = start.strftime("%Y-%m-%dT%H")
    else:
        start = local.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1)
        key = start.strftime("%Y-%m-%d")

    return BillingPeriod(
        pass_type=pass_type,
        key=key,
        start=_to_utc(start),
        end=_to_utc(end),
    )


def period_key_for(
    pass_type: PassType,
    value: Optional[datetime],
    tz: ZoneInfo = ZoneInfo("UTC"),
) -> Optional[str]:
    if value is None:
        return None
    return resolve_period(pass_type, value, tz).key


# =============================================================================
# Tariff Resolver
# =============================================================================


class TariffResolver:
    """
    Resolves the tariff applicable to an account.

    Tariffs are snapshotted per pass: call `reset()` at the start of a pass so
    a tariff change takes effect on the next pass only.
    """

    def __init__(self, store: LedgerStore):
        self._store = store
        self._cache: Dict[str, Tariff] = {}

    def reset(self) -> None:
        self._cache.clear()

    async def resolve(self, account: Account) -> Tariff:
        tariff = self._cache.get(account.tariff_id)
        if tariff is None:
            tariff = await self._store.get_tariff(account.tariff_id)
            if tariff is None:
                raise ConfigurationError(
                    f"Tariff {account.tariff_id} not found for account {account.id}"
                )
            self._validate(tariff)
            self._cache[account.tariff_id] = tariff
        return tariff

    @staticmethod
    def _validate(tariff: Tariff) -> None:
        if tariff.billing_mode == BillingMode.PREPAID_PERIODIC:
            if tariff.price is None:
                raise ConfigurationError(f"Tariff {tariff.id} has no price")
            if tariff.price < 0:
                raise ConfigurationError(f"Tariff {tariff.id} has a negative price")
        else:
            rate = tariff.hourly_rate()
            if rate is None:
                raise ConfigurationError(f"Tariff {tariff.id} has no hourly price")
            if rate < 0:
                raise ConfigurationError(f"Tariff {tariff.id} has a negative hourly price")


# =============================================================================
# Charge Calculator
# =============================================================================


class ChargeCalculator:
    """Pure charge computation for one account and one pass."""

    def compute_charge(
        self,
        tariff: Tariff,
        mode: BillingMode,
        period_start: datetime,
        period_end: datetime,
    ) -> Decimal:
        """Amount owed for the period. Always >= 0."""
        if mode == BillingMode.PREPAID_PERIODIC:
            if tariff.price is None:
                raise ConfigurationError(f"Tariff {tariff.id} has no price")
            return round_currency(tariff.price)

        rate = tariff.hourly_rate()
        if rate is None:
            raise ConfigurationError(f"Tariff {tariff.id} has no hourly price")

        minutes = elapsed_minutes(period_start, period_end)
        if minutes <= 0:
            raise InvalidPeriodError(
                f"Elapsed time must be positive, got {minutes} minutes"
            )

        return round_currency(rate * minutes / MINUTES_PER_HOUR)

    def session_cost(
        self,
        tariff: Tariff,
        start: datetime,
        end: datetime,
    ) -> SessionCost:
        """Cost of an ad-hoc session using the metered proration formula."""
        rate = tariff.hourly_rate()
        if rate is None:
            raise ConfigurationError(f"Tariff {tariff.id} has no hourly price")

        minutes = elapsed_minutes(start, end)
        if minutes <= 0:
            raise InvalidPeriodError("Session end must be after session start")

        cost = self.compute_charge(tariff, BillingMode.METERED, start, end)
        return SessionCost(
            duration_minutes=minutes,
            cost=cost,
            hourly_rate=round_currency(rate),
        )


def metered_window(
    account: Account,
    period: BillingPeriod,
    max_catchup_hours: int,
) -> datetime:
    """
    Start of the window billed by an hourly pass.

    Runs from the end of the last charged bucket, never further back than
    `max_catchup_hours` before the period end. Without a previous charge the
    window is the period itself.
    """
    if account.last_hourly_charge_at is None:
        return period.start

    earliest = period.end - timedelta(hours=max(1, max_catchup_hours))
    last_end = account.last_hourly_charge_at + timedelta(hours=1)
    return max(last_end, earliest)
