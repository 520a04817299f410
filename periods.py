from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from models import BudgetPeriod
from recurrence import add_months


@dataclass(frozen=True)
class Period:
    """Calendar period with an inclusive ``end`` date."""

    slug: str
    start: date
    end: date

    def window(self) -> tuple[datetime, datetime]:
        """Half-open ``[start, end)`` datetime bounds covering every day of the period."""
        return (
            datetime.combine(self.start, time.min),
            datetime.combine(self.end + timedelta(days=1), time.min),
        )


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period in {p.value for p in BudgetPeriod}:
        return budget_period_bounds(BudgetPeriod(period), datetime.combine(today, time.min))
    if period != "this_month":
        raise ValueError(f"Unknown period '{period}'")
    return budget_period_bounds(BudgetPeriod.monthly, datetime.combine(today, time.min))


def budget_period_bounds(period: BudgetPeriod, as_of: datetime) -> Period:
    day = as_of.date()
    if period == BudgetPeriod.daily:
        return Period(period.value, day, day)
    if period == BudgetPeriod.weekly:
        # Weeks start on Monday.
        start = day - timedelta(days=day.weekday())
        return Period(period.value, start, start + timedelta(days=6))
    if period == BudgetPeriod.monthly:
        start = day.replace(day=1)
        return Period(period.value, start, add_months(start, 1) - date.resolution)
    start = date(day.year, 1, 1)
    return Period(period.value, start, date(day.year, 12, 31))
