"""
Cron Expressions
================

Five-field cron parser used by the billing scheduler. Occurrences are
evaluated in a configurable timezone and returned as naive UTC datetimes.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Set
from zoneinfo import ZoneInfo


class CronExpression:
    """
    Parses and evaluates cron expressions.

    Supports standard 5-field cron syntax:
    minute hour day_of_month month day_of_week

    Special characters:
    - * : any value
    - , : value list separator
    - - : range of values
    - / : step values

    Examples:
    - "0 * * * *" : every hour
    - "*/15 * * * *" : every 15 minutes
    - "0 0 1 * *" : first of month
    """

    def __init__(self, expression: str, tz: str = "UTC"):
        self.expression = expression
        self.tz = ZoneInfo(tz)
        self._parts = self._parse(expression)

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r}, tz={self.tz.key!r})"

    def _parse(self, expression: str) -> Dict[str, Set[int]]:
        """Parse cron expression into parts"""
        parts = expression.split()

        if len(parts) != 5:
            raise ValueError(
                f"Invalid cron expression: {expression}. "
                "Expected 5 fields (minute hour day month weekday)"
            )

        return {
            "minute": self._parse_field(parts[0], 0, 59),
            "hour": self._parse_field(parts[1], 0, 23),
            "day": self._parse_field(parts[2], 1, 31),
            "month": self._parse_field(parts[3], 1, 12),
            # 7 is an alias for Sunday
            "weekday": {v % 7 for v in self._parse_field(parts[4], 0, 7)},
        }

    def _parse_field(
        self,
        field: str,
        min_val: int,
        max_val: int
    ) -> Set[int]:
        """Parse a single cron field"""
        values = set()

        try:
            for part in field.split(","):
                if part == "*":
                    values.update(range(min_val, max_val + 1))
                elif "/" in part:
                    base, step = part.split("/")
                    if base == "*":
                        start, end = min_val, max_val
                    elif "-" in base:
                        start, end = (int(v) for v in base.split("-"))
                    else:
                        start, end = int(base), max_val
                    values.update(range(start, end + 1, int(step)))
                elif "-" in part:
                    start, end = part.split("-")
                    values.update(range(int(start), int(end) + 1))
                else:
                    values.add(int(part))
        except ValueError:
            raise ValueError(f"Invalid cron field: {field}")

        if not values or min(values) < min_val or max(values) > max_val:
            raise ValueError(f"Cron field out of range [{min_val}-{max_val}]: {field}")

        return values

    def matches(self, dt: datetime) -> bool:
        """Check if a local datetime matches the cron expression"""
        return (
            dt.minute in self._parts["minute"] and
            dt.hour in self._parts["hour"] and
            dt.day in self._parts["day"] and
            dt.month in self._parts["month"] and
            dt.isoweekday() % 7 in self._parts["weekday"]
        )

    def next_occurrence(self, after: Optional[datetime] = None) -> datetime:
        """Find the next occurrence strictly after a naive UTC datetime"""
        if after is None:
            after = datetime.now(timezone.utc).replace(tzinfo=None)

        local = after.replace(tzinfo=timezone.utc).astimezone(self.tz)
        # Start from the next minute, wall clock
        current = local.replace(second=0, microsecond=0, tzinfo=None) + timedelta(minutes=1)

        # Search up to 4 years ahead
        limit = current + timedelta(days=365 * 4)
        while current < limit:
            if current.month not in self._parts["month"]:
                current = (current.replace(day=1, hour=0, minute=0) + timedelta(days=32)).replace(day=1)
                continue
            if (
                current.day not in self._parts["day"]
                or current.isoweekday() % 7 not in self._parts["weekday"]
            ):
                current = current.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if current.hour not in self._parts["hour"]:
                current = current.replace(minute=0) + timedelta(hours=1)
                continue
            if current.minute in self._parts["minute"]:
                return (
                    current.replace(tzinfo=self.tz)
                    .astimezone(timezone.utc)
                    .replace(tzinfo=None)
                )
            current += timedelta(minutes=1)

        raise ValueError(f"No next occurrence found for {self.expression}")
